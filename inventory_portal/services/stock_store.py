from typing import Dict, Iterable, List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from inventory_portal.common.d_logger import Logs
from inventory_portal.constants import MAX_QUANTITY
from inventory_portal.db.db_utils import DbUtil, item_key
from inventory_portal.db.models import Item
from inventory_portal.ds_exceptions import (InsufficientStockError, InvalidInputError,
                                            NonExistentItemIdError)
from inventory_portal.schemas import StockAdjustment

logger = Logs().get_logger("db")


class StockStore:
    """Sole writer of Item.quantity.

    Every method takes the session of an open unit of work
    (``DbUtil.unit``) that already holds the item's row lock key.
    """

    def __init__(self, db_util: DbUtil):
        self.db_util = db_util

    @staticmethod
    def lock_keys(item_ids: Iterable[int]) -> List[tuple]:
        return [item_key(item_id) for item_id in item_ids]

    def _check_held(self, item_id: int):
        if not self.db_util.row_locks.is_locked(item_key(item_id)):
            raise RuntimeError(
                f"Item {item_id} must be locked through DbUtil.unit() before its quantity is read"
            )

    async def lock_item(self, session: AsyncSession, item_id: int) -> Item:
        """Read the item row under an exclusive lock, bypassing the identity map"""
        return (await self.lock_items(session, [item_id]))[item_id]

    async def lock_items(self, session: AsyncSession, item_ids: Iterable[int]) -> Dict[int, Item]:
        """Lock several item rows in one statement, in ascending id order"""
        wanted = sorted(set(item_ids))
        for item_id in wanted:
            self._check_held(item_id)
        query = (
            select(Item)
            .where(Item.item_id.in_(wanted))
            .order_by(Item.item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(query)
        items = {item.item_id: item for item in result.scalars().all()}
        for item_id in wanted:
            if item_id not in items:
                raise NonExistentItemIdError(f"Item {item_id} not found")
        return items

    async def adjust_quantity(self, session: AsyncSession, item_id: int, delta: int) -> Item:
        """Apply quantity += delta, refusing to go below zero"""
        StockAdjustment(item_id=item_id, delta=delta)
        item = await self.lock_item(session, item_id)
        new_qty = item.quantity + delta
        if new_qty < 0:
            raise InsufficientStockError(item.item_id, item.item_name,
                                         available=item.quantity, requested=-delta)
        if new_qty > MAX_QUANTITY:
            raise InvalidInputError(
                f"Item '{item.item_name}' cannot hold {new_qty} units; the limit is {MAX_QUANTITY}"
            )
        logger.debug(f"item {item_id}: {item.quantity} -> {new_qty}")
        item.quantity = new_qty
        await session.flush()
        return item

    async def low_stock_items(self, session: AsyncSession) -> List[Item]:
        query = (
            select(Item)
            .where(Item.quantity <= Item.low_stock_threshold)
            .order_by(Item.item_name)
        )
        result = await session.execute(query)
        return list(result.scalars().all())
