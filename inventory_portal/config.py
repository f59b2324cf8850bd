import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() == 'true'


class Config:
    # Determine if running in test mode
    TEST_MODE = _env_flag('TEST_MODE')

    # Database configuration
    DATABASE_URL = os.getenv('TEST_DATABASE_URL') if TEST_MODE else os.getenv('DATABASE_URL')
    DB_HOST = os.getenv('TEST_DB_HOST') if TEST_MODE else os.getenv('DB_HOST')
    DB_PORT = os.getenv('TEST_DB_PORT') if TEST_MODE else os.getenv('DB_PORT')
    DB_USER = os.getenv('TEST_DB_USER') if TEST_MODE else os.getenv('DB_USER')
    DB_PASSWORD = os.getenv('TEST_DB_PASSWORD') if TEST_MODE else os.getenv('DB_PASSWORD')
    DB_NAME = os.getenv('TEST_DB_NAME') if TEST_MODE else os.getenv('DB_NAME')
    DB_ECHO = _env_flag('DB_ECHO')
    SQLITE_PATH = os.getenv('SQLITE_PATH', 'inventory.db')

    # Application configuration
    DEFAULT_LOW_STOCK_THRESHOLD = int(os.getenv('DEFAULT_LOW_STOCK_THRESHOLD', '5'))
    MAX_ITEMS_OUT_COUNT = int(os.getenv('MAX_ITEMS_OUT_COUNT', '500'))
    APPROVAL_POLICY = os.getenv('APPROVAL_POLICY', 'any').lower()

    # Logging
    LOG_DIR = os.getenv('LOG_DIR')

    @classmethod
    def database_url(cls) -> str:
        """Async SQLAlchemy URL for the configured store.

        DATABASE_URL wins; otherwise a PostgreSQL URL is assembled from the
        DB_* parts, and with no host configured a local SQLite file is used.
        """
        if cls.DATABASE_URL:
            return cls.DATABASE_URL
        if cls.DB_HOST:
            return (
                f"postgresql+asyncpg://{cls.DB_USER}:{cls.DB_PASSWORD}"
                f"@{cls.DB_HOST}:{cls.DB_PORT or 5432}/{cls.DB_NAME}"
            )
        return f"sqlite+aiosqlite:///{cls.SQLITE_PATH}"
