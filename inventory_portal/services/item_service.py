from datetime import datetime
from typing import Optional
from sqlalchemy import func, select
from inventory_portal.common.d_logger import Logs
from inventory_portal.config import Config
from inventory_portal.db.db_utils import DbUtil, item_key
from inventory_portal.db.models import Category, IssuanceRecord, Item, RequestItem
from inventory_portal.ds_exceptions import (InvalidInputError, InvalidStateError,
                                            NonExistentCategoryIdError,
                                            NonExistentItemIdError)
from inventory_portal.schemas import ItemDraft, ItemUpdate
from inventory_portal.services.low_stock import LowStockSignal
from inventory_portal.services.stock_store import StockStore

audit_logger = Logs().get_logger("audit")


class ItemService:
    """Catalog administration for items.

    Quantity edits are routed through the StockStore like any other stock
    movement, so they take the same row lock and trigger the same low-stock
    evaluation.
    """

    def __init__(self, db_util: DbUtil, stock_store: StockStore, signal: LowStockSignal):
        self.db_util = db_util
        self.stock_store = stock_store
        self.signal = signal
        self.default_threshold = Config.DEFAULT_LOW_STOCK_THRESHOLD

    async def _check_category(self, session, category_id: Optional[int]):
        if category_id is None:
            return
        if await session.get(Category, category_id) is None:
            raise NonExistentCategoryIdError(f"Category {category_id} not found")

    async def _check_unique(self, session, item_name: str, item_id: Optional[int] = None):
        query = select(Item.item_id).where(Item.item_name == item_name)
        if item_id is not None:
            query = query.where(Item.item_id != item_id)
        if await session.scalar(query) is not None:
            raise InvalidInputError(f"Item '{item_name}' already exists")

    async def get_item_by_id(self, item_id: int) -> Item:
        async with self.db_util.session() as session:
            item = await session.get(Item, item_id)
            if item is None:
                raise NonExistentItemIdError(f"Item {item_id} not found")
            return item

    async def get_item_by_name(self, item_name: str) -> Optional[Item]:
        async with self.db_util.session() as session:
            return await session.scalar(select(Item).where(Item.item_name == item_name))

    async def create_item(self, item_name: str, quantity: int = 0,
                          low_stock_threshold: Optional[int] = None,
                          category_id: Optional[int] = None,
                          description: Optional[str] = None,
                          vendor_name: Optional[str] = None,
                          unit_price=None,
                          actor: Optional[str] = None) -> Item:
        if low_stock_threshold is None:
            low_stock_threshold = self.default_threshold
        draft = ItemDraft(item_name=item_name, quantity=quantity,
                          low_stock_threshold=low_stock_threshold, category_id=category_id,
                          description=description, vendor_name=vendor_name,
                          unit_price=unit_price)

        async with self.db_util.session() as session:
            await self._check_unique(session, draft.item_name)
            await self._check_category(session, draft.category_id)
            item = Item(**draft.model_dump())
            session.add(item)
            await session.flush()
            await session.refresh(item, attribute_names=['category'])
            alerts = self.signal.evaluate([item])

        audit_logger.info(f"create_item actor={actor} item_id={item.item_id} quantity={draft.quantity}")
        self.signal.publish(alerts)
        return item

    async def update_item(self, item_id: int, update_reason: str,
                          quantity: Optional[int] = None,
                          actor: Optional[str] = None, **fields) -> Item:
        """Edit an item. A reason is mandatory and is appended to the item's history.

        ``quantity`` is the new absolute count; the difference is applied as
        a stock adjustment under the item's row lock.
        """
        update = ItemUpdate(update_reason=update_reason, quantity=quantity, **fields)
        fields = update.changes()

        async with self.db_util.unit([item_key(item_id)]) as session:
            item = await self.stock_store.lock_item(session, item_id)
            if 'item_name' in fields:
                await self._check_unique(session, fields['item_name'], item_id)
            if 'category_id' in fields:
                await self._check_category(session, fields['category_id'])

            previous_qty = item.quantity
            if update.quantity is not None and update.quantity != previous_qty:
                item = await self.stock_store.adjust_quantity(session, item_id,
                                                              update.quantity - previous_qty)
            for key, value in fields.items():
                setattr(item, key, value)

            entry = f"{update.update_reason} at {datetime.now():%Y-%m-%d %H:%M:%S}"
            item.update_reasons = f"{item.update_reasons} | {entry}" if item.update_reasons else entry
            await session.flush()
            await session.refresh(item, attribute_names=['category'])

            stock_touched = item.quantity != previous_qty or 'low_stock_threshold' in fields
            alerts = self.signal.evaluate([item]) if stock_touched else []

        audit_logger.info(
            f"update_item actor={actor} item_id={item_id} reason={update.update_reason!r} "
            f"quantity={previous_qty}->{item.quantity}"
        )
        self.signal.publish(alerts)
        return item

    async def delete_item(self, item_id: int, actor: Optional[str] = None) -> bool:
        """Delete an item that no issuance or request line refers to"""
        async with self.db_util.unit([item_key(item_id)]) as session:
            item = await self.stock_store.lock_item(session, item_id)
            issued = await session.scalar(
                select(func.count(IssuanceRecord.issue_id)).where(IssuanceRecord.item_id == item_id)
            )
            requested = await session.scalar(
                select(func.count(RequestItem.request_item_id)).where(RequestItem.item_id == item_id)
            )
            if issued or requested:
                raise InvalidStateError(
                    f"Item '{item.item_name}' is referenced by {issued} issuance record(s) "
                    f"and {requested} request line(s) and cannot be deleted"
                )
            await session.delete(item)
        audit_logger.info(f"delete_item actor={actor} item_id={item_id} item_name={item.item_name!r}")
        return True
