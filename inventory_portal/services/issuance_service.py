from typing import Optional
from inventory_portal.common.d_logger import Logs
from inventory_portal.db.db_utils import DbUtil, item_key
from inventory_portal.db.models import IssuanceRecord
from inventory_portal.ds_exceptions import InsufficientStockError, NotFoundError
from inventory_portal.schemas import IssueInput
from inventory_portal.services.low_stock import LowStockSignal
from inventory_portal.services.stock_store import StockStore

audit_logger = Logs().get_logger("audit")


class IssuanceService:
    """Direct 'items out': one locked decrement plus its history row"""

    def __init__(self, db_util: DbUtil, stock_store: StockStore, signal: LowStockSignal):
        self.db_util = db_util
        self.stock_store = stock_store
        self.signal = signal

    async def issue(self, person_name: str, item_id: int, quantity: int,
                    issued_by: Optional[str] = None) -> IssuanceRecord:
        """Take quantity units of an item out of stock for person_name.

        Not idempotent: every successful call is a separate issuance, so
        callers must not blindly retry after an ambiguous failure.
        """
        order = IssueInput(person_name=person_name, item_id=item_id, quantity=quantity,
                           issued_by=issued_by)
        person_name = order.person_name

        async with self.db_util.unit([item_key(item_id)]) as session:
            item = await self.stock_store.lock_item(session, item_id)
            if quantity > item.quantity:
                raise InsufficientStockError(item.item_id, item.item_name,
                                             available=item.quantity, requested=quantity)
            record = IssuanceRecord(
                person_name=person_name,
                item_id=item_id,
                quantity=quantity,
                issued_by=issued_by,
            )
            session.add(record)
            item = await self.stock_store.adjust_quantity(session, item_id, -quantity)
            alerts = self.signal.evaluate([item])
            remaining = item.quantity

        audit_logger.info(
            f"issue_item actor={issued_by} item_id={item_id} quantity={quantity} "
            f"person={person_name} issue_id={record.issue_id} remaining={remaining}"
        )
        self.signal.publish(alerts)
        return record

    async def get_issuance(self, issue_id: int) -> IssuanceRecord:
        async with self.db_util.session() as session:
            record = await session.get(IssuanceRecord, issue_id)
            if record is None:
                raise NotFoundError(f"Issuance {issue_id} not found")
            return record
