import os
import pytest
from inventory_portal.constants import RequestType, UserRole
from inventory_portal.portal import InventoryPortal
from inventory_portal.schemas import ApproverSelection, RequesterInfo, RequestLine
from inventory_portal.services.low_stock import Notifier
from inventory_portal.services.request_service import RequestService

TEST_DB_URL = os.getenv('TEST_DB_URL')


class RecordingNotifier(Notifier):
    """Keeps every delivered signal for assertions"""

    def __init__(self):
        self.alerts = []
        self.statuses = []

    async def notify_low_stock(self, alerts):
        self.alerts.append(list(alerts))
        return True

    async def notify_request_status(self, request_id, status):
        self.statuses.append((request_id, status))
        return True

    @property
    def alerted_item_ids(self):
        return {alert.item_id for batch in self.alerts for alert in batch}


class FailingNotifier(Notifier):
    def __init__(self):
        self.calls = 0

    async def notify_low_stock(self, alerts):
        self.calls += 1
        raise ConnectionError("mail server unreachable")

    async def notify_request_status(self, request_id, status):
        self.calls += 1
        return False


class PlainNotifier(Notifier):
    """Synchronous notifier; low-stock delivery raises before returning"""

    def __init__(self):
        self.calls = 0

    def notify_low_stock(self, alerts):
        self.calls += 1
        raise RuntimeError("webhook rejected")

    def notify_request_status(self, request_id, status):
        self.calls += 1
        return True


@pytest.fixture
def db_url(tmp_path):
    """Create test database url"""
    return TEST_DB_URL or f"sqlite+aiosqlite:///{tmp_path / 'inventory_test.db'}"


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def portal(db_url, notifier):
    """Portal on a clean schema with a recording notifier"""
    portal = InventoryPortal(db_url, notifier=notifier, echo=False)
    await portal.db_api.initialize_db()  # Clean slate
    yield portal
    await portal.close()


@pytest.fixture
async def failing_portal(db_url):
    """Portal whose notifier raises or refuses every delivery"""
    portal = InventoryPortal(db_url, notifier=FailingNotifier(), echo=False)
    await portal.db_api.initialize_db()
    yield portal
    await portal.close()


@pytest.fixture
def plain_notifier():
    return PlainNotifier()


@pytest.fixture
async def plain_portal(db_url, plain_notifier):
    """Portal whose notifier is a plain synchronous object"""
    portal = InventoryPortal(db_url, notifier=plain_notifier, echo=False)
    await portal.db_api.initialize_db()
    yield portal
    await portal.close()

@pytest.fixture
def all_policy_requests(portal):
    """Request workflow over the same store, requiring every approver"""
    return RequestService(portal.db_util, portal.stock_store, portal.signal, approval_policy='all')


@pytest.fixture
async def category(portal):
    return await portal.create_category("Cables", "Fibre and copper")


@pytest.fixture
async def item(portal, category):
    """10 units with a threshold of 5"""
    return await portal.create_item("Drop cable", quantity=10, low_stock_threshold=5,
                                    category_id=category.category_id)


@pytest.fixture
async def approvers(portal):
    first = await portal.create_user("approver1", "First Approver", UserRole.Approver)
    second = await portal.create_user("approver2", "Second Approver", UserRole.Approver)
    return first, second


@pytest.fixture
def requester():
    return RequesterInfo(
        created_by="Tom",
        team_leader_name="Tina",
        team_leader_phone="0700000000",
        project_name="Estate rollout",
        location="Block C",
    )


@pytest.fixture
def make_request(portal, requester):
    """Create a request of (item_id, quantity) lines assigned to the given approvers"""
    async def _make(lines, approvers, request_type=RequestType.MaterialRequest, portal=portal):
        return await portal.create_request(
            requester,
            [RequestLine(quantity_requested=qty, item_id=item_id) for item_id, qty in lines],
            ApproverSelection.explicit(*[user.user_id for user in approvers]),
            request_type,
        )
    return _make
