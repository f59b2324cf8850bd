from typing import Optional
from inventory_portal.common.d_logger import Logs
from inventory_portal.db.db_apis import DbApi
from inventory_portal.db.db_utils import DbUtil
from inventory_portal.services.category_service import CategoryService
from inventory_portal.services.issuance_service import IssuanceService
from inventory_portal.services.item_service import ItemService
from inventory_portal.services.low_stock import LowStockSignal, Notifier
from inventory_portal.services.report_service import ReportService
from inventory_portal.services.request_service import RequestService
from inventory_portal.services.stock_store import StockStore
from inventory_portal.services.user_service import UserService

logger = Logs().get_logger("main")


class InventoryPortal:
    """Wires one store handle into every service.

    Usage::

        async with InventoryPortal() as portal:
            await portal.issue("Alice", item_id, 3)
    """

    def __init__(self, db_url: Optional[str] = None, notifier: Optional[Notifier] = None,
                 approval_policy: Optional[str] = None, echo: Optional[bool] = None):
        self.db_util = DbUtil(db_url, echo=echo)
        self.db_api = DbApi(self.db_util)
        self.signal = LowStockSignal(notifier)
        self.stock_store = StockStore(self.db_util)

        self.categories = CategoryService(self.db_util)
        self.items = ItemService(self.db_util, self.stock_store, self.signal)
        self.users = UserService(self.db_util)
        self.issuance = IssuanceService(self.db_util, self.stock_store, self.signal)
        self.requests = RequestService(self.db_util, self.stock_store, self.signal,
                                       approval_policy=approval_policy)
        self.reports = ReportService(self.db_util)

    async def open(self, create_schema: bool = True) -> "InventoryPortal":
        if create_schema:
            await self.db_api.create_tables()
        logger.info(f"Inventory portal opened on {self.db_util.engine.url!r}")
        return self

    async def close(self):
        await self.signal.drain()
        await self.db_util.close()
        logger.info("Inventory portal closed")

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # Mutating operations

    async def issue(self, person_name, item_id, quantity, issued_by=None):
        return await self.issuance.issue(person_name, item_id, quantity, issued_by=issued_by)

    async def create_request(self, requester, lines, approvers, request_type='material_request'):
        return await self.requests.create_request(requester, lines, approvers, request_type)

    async def update_request(self, request_id, requester, lines):
        return await self.requests.update_request(request_id, requester, lines)

    async def approve(self, request_id, approver_id, signature=None):
        return await self.requests.approve(request_id, approver_id, signature=signature)

    async def reject(self, request_id, approver_id, reason):
        return await self.requests.reject(request_id, approver_id, reason)

    async def finalize(self, request_id, lines, released_by):
        return await self.requests.finalize(request_id, lines, released_by)

    async def create_category(self, category_name, description=None, actor=None):
        return await self.categories.create_category(category_name, description, actor=actor)

    async def update_category(self, category_id, category_name=None, description=None, actor=None):
        return await self.categories.update_category(category_id, category_name, description,
                                                     actor=actor)

    async def delete_category(self, category_id, actor=None):
        return await self.categories.delete_category(category_id, actor=actor)

    async def create_item(self, item_name, **kwargs):
        return await self.items.create_item(item_name, **kwargs)

    async def update_item(self, item_id, update_reason, **kwargs):
        return await self.items.update_item(item_id, update_reason, **kwargs)

    async def delete_item(self, item_id, actor=None):
        return await self.items.delete_item(item_id, actor=actor)

    async def create_user(self, user_name, full_name=None, role='requester', actor=None):
        return await self.users.create_user(user_name, full_name, role, actor=actor)

    async def update_user(self, user_id, full_name=None, role=None, actor=None):
        return await self.users.update_user(user_id, full_name, role, actor=actor)

    async def update_user_role(self, user_id, role, actor=None):
        return await self.users.update_user_role(user_id, role, actor=actor)

    async def delete_user(self, user_id, actor=None):
        return await self.users.delete_user(user_id, actor=actor)

    async def list_approvers(self):
        return await self.users.list_approvers()

    # Reads

    async def list_items(self):
        return await self.reports.list_items()

    async def list_items_out(self, limit=None):
        return await self.reports.list_items_out(limit)

    async def list_low_stock(self):
        return await self.reports.list_low_stock()

    async def get_dashboard_stats(self):
        return await self.reports.get_dashboard_stats()

    async def list_requests(self, viewer_id=None, viewer_role=None):
        return await self.reports.list_requests(viewer_id, viewer_role)

    async def get_request_details(self, request_id):
        return await self.reports.get_request_details(request_id)

    async def list_categories(self):
        return await self.categories.get_categories()

    async def export_csv(self, report, path):
        return await self.reports.export_csv(report, path)
