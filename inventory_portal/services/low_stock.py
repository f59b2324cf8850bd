import asyncio
import inspect
from typing import Iterable, List, Optional, Set
from inventory_portal.common.d_logger import Logs
from inventory_portal.constants import RequestStatus
from inventory_portal.schemas import LowStockAlert

logger = Logs().get_logger("notify")


def is_low(item) -> bool:
    """True when the item sits at or below its low-stock threshold"""
    return item.quantity <= item.low_stock_threshold


class Notifier:
    """Outbound channel for stock and request signals.

    Implementations deliver however they like; the return value only tells
    the signal whether to log a delivery failure.
    """

    async def notify_low_stock(self, alerts: List[LowStockAlert]) -> bool:
        raise NotImplementedError

    async def notify_request_status(self, request_id: int, status: RequestStatus) -> bool:
        return True


class LoggingNotifier(Notifier):
    async def notify_low_stock(self, alerts: List[LowStockAlert]) -> bool:
        for alert in alerts:
            logger.warning(
                f"Low stock: {alert.item_name} (item {alert.item_id}) "
                f"has {alert.quantity}, threshold {alert.threshold}"
            )
        return True

    async def notify_request_status(self, request_id: int, status: RequestStatus) -> bool:
        logger.info(f"Request {request_id} is now {status.value}")
        return True


class LowStockSignal:
    """Turns committed stock state into fire-and-forget notifications.

    evaluate() is pure and runs inside the unit of work; publish() runs after
    commit and schedules delivery on the running loop. Delivery errors are
    logged here and never reach the caller that changed the stock.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LoggingNotifier()
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def evaluate(items: Iterable) -> List[LowStockAlert]:
        return [LowStockAlert.from_item(item) for item in items if is_low(item)]

    def publish(self, alerts: List[LowStockAlert]):
        if not alerts:
            return
        names = ", ".join(alert.item_name for alert in alerts)
        self._dispatch(f"low stock alert for {names}",
                       lambda: self.notifier.notify_low_stock(list(alerts)))

    def publish_status(self, request_id: int, status: RequestStatus):
        self._dispatch(f"status change of request {request_id}",
                       lambda: self.notifier.notify_request_status(request_id, status))

    def _dispatch(self, description: str, send):
        task = asyncio.get_running_loop().create_task(self._deliver(description, send))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, description: str, send):
        try:
            delivered = send()
            if inspect.isawaitable(delivered):
                delivered = await delivered
        except Exception as e:
            logger.error(f"Failed to deliver {description}: {e}", exc_info=True)
            return False
        if delivered is False:
            logger.error(f"Notifier refused {description}")
        return delivered

    async def drain(self):
        """Wait for every scheduled delivery to finish"""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def pending(self) -> int:
        return len(self._pending)
