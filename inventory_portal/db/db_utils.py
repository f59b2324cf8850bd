import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Hashable, Iterable, Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from inventory_portal.config import Config
from inventory_portal.common.d_logger import Logs
from inventory_portal.ds_exceptions import InventoryError
from .models import Base

logger = Logs().get_logger("db")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class RowLocks:
    """Exclusive in-process locks keyed by (table, primary key).

    Keys are always taken in sorted order so two units locking overlapping
    rows cannot deadlock. These pair with SELECT ... FOR UPDATE, which is a
    no-op on engines without row locks (SQLite).
    """

    def __init__(self):
        self._locks = {}
        self._users = defaultdict(int)

    @asynccontextmanager
    async def hold(self, keys: Iterable[Hashable]):
        ordered = sorted(set(keys))
        registered = []
        held = []
        try:
            for key in ordered:
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._users[key] += 1
                registered.append(key)
                await lock.acquire()
                held.append(key)
            yield ordered
        finally:
            for key in reversed(held):
                self._locks[key].release()
            for key in registered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self):
        return len(self._locks)


class DbUtil:
    """Store handle: one async engine, its session factory and row locks.

    Built explicitly by the caller and closed with close(); services receive
    it through their constructors.
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = url or Config.database_url()
        self.engine = create_async_engine(
            self.url,
            echo=Config.DB_ECHO if echo is None else echo,
            future=True
        )
        if self.engine.dialect.name == 'sqlite':
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        self.async_session = sessionmaker(
            class_=AsyncSession,
            expire_on_commit=False,
            bind=self.engine
        )
        self.row_locks = RowLocks()

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self):
        await self.engine.dispose()
        logger.debug(f"Disposed engine for {self.engine.url!r}")

    @asynccontextmanager
    async def session(self):
        """Provides a session context manager that automatically handles commit/rollback"""
        session = self.async_session()
        try:
            yield session
            await session.commit()
        except InventoryError as e:
            await session.rollback()
            logger.warning(f"Rolled back: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error: {e}")
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def unit(self, lock_keys: Iterable[Hashable] = ()):
        """Atomic unit of work holding the given row locks until commit or rollback"""
        async with self.row_locks.hold(lock_keys):
            async with self.session() as session:
                yield session


def item_key(item_id: int):
    return ('item', item_id)


def request_key(request_id: int):
    return ('request', request_id)
