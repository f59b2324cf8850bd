import pandas as pd
from inventory_portal.common.d_logger import Logs
from .db_utils import DbUtil
from .models import Category, Item, User

logger = Logs().get_logger("db")


class DbApi:
    """Schema management and bulk seeding for a DbUtil store"""

    model_map = {
        'category': Category,
        'items': Item,
        'users': User,
    }

    def __init__(self, db_util: DbUtil):
        self.db_util = db_util

    async def create_tables(self):
        await self.db_util.create_tables()

    async def drop_tables(self):
        await self.db_util.drop_tables()

    async def initialize_db(self):
        await self.drop_tables()
        await self.create_tables()

    async def insert_df(self, table: str, new_df: pd.DataFrame) -> bool:
        """Insert DataFrame records into database"""
        logger.debug(f"=== Starting DB Insert for {table} ===")
        logger.debug(f"Columns in DataFrame: {new_df.columns.tolist()}")

        model = self.model_map.get(table)
        if not model:
            logger.error(f"No model found for table: {table}")
            return False

        # NaN from missing cells must reach the database as NULL
        records = new_df.astype(object).where(pd.notnull(new_df), None).to_dict('records')
        for record in records:
            logger.debug(f"Record to insert: {record}")

        try:
            async with self.db_util.session() as session:
                session.add_all([model(**record) for record in records])
        except Exception as e:
            logger.error(f"Error in insert_df for {table}: {e}")
            return False
        logger.debug(f"Inserted {len(records)} rows into {table}")
        return True
