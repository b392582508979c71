import pytest
import pytest_asyncio

from aftersales_core.collaborators import RefundResult
from aftersales_core.config import Config
from aftersales_core.database import Database
from aftersales_core.enums import CaseType, RefundReason
from aftersales_core.events import EventDispatcher, InMemoryEventSink
from aftersales_core.models import Actor, CaseRecord, ProductSnapshot
from aftersales_core.oms import OmsReconciliationService
from aftersales_core.service import AftersalesService, CaseApplication


class FakeSnapshotProvider:
    def __init__(self) -> None:
        self.snapshots: dict[tuple[str, str], ProductSnapshot] = {}
        self.calls: list[tuple[str, str]] = []

    def add(self, order_number: str, order_product_id: str, **overrides) -> ProductSnapshot:
        payload = {
            "product_id": "P-100",
            "sku_id": "P-100-RED",
            "product_name": "Ceramic Kettle",
            "sku_name": "Red",
            "original_price_cents": 12_000,
            "paid_price_cents": 9_900,
            "order_quantity": 1,
            "refund_quantity": 1,
        }
        payload.update(overrides)
        snapshot = ProductSnapshot(**payload)
        self.snapshots[(order_number, order_product_id)] = snapshot
        return snapshot

    async def get_snapshot(self, order_number: str, order_product_id: str) -> ProductSnapshot | None:
        self.calls.append((order_number, order_product_id))
        return self.snapshots.get((order_number, order_product_id))


class FakeUserDirectory:
    def __init__(self) -> None:
        self.users: dict[str, str] = {}
        self.fail = False

    async def find_by_phone(self, phone: str) -> str | None:
        if self.fail:
            raise ConnectionError("user directory unavailable")
        return self.users.get(phone)


class FakeRefundGateway:
    """Returns queued results in order; an exception in the queue is raised."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[str] = []

    async def refund(self, execution, case) -> RefundResult:
        self.calls.append(execution.refund_no)
        result = self.results.pop(0) if self.results else RefundResult(success=True, transaction_no="TXN-DEFAULT")
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def snapshot_provider() -> FakeSnapshotProvider:
    return FakeSnapshotProvider()


@pytest.fixture
def user_directory() -> FakeUserDirectory:
    directory = FakeUserDirectory()
    directory.users["13800138000"] = "user-42"
    return directory


@pytest.fixture
def customer() -> Actor:
    return Actor.user("user-42")


@pytest.fixture
def operator() -> Actor:
    return Actor.operator("op-7")


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def service(db, config, event_sink, snapshot_provider, user_directory) -> AftersalesService:
    return AftersalesService(
        db,
        config,
        dispatcher=EventDispatcher([event_sink]),
        snapshot_provider=snapshot_provider,
        user_directory=user_directory,
    )


@pytest.fixture
def oms(service) -> OmsReconciliationService:
    return OmsReconciliationService(service)


@pytest.fixture
def case_builder():
    """Build an unsaved CaseRecord for direct database tests."""

    def _build(**overrides) -> CaseRecord:
        payload = {
            "reference_number": "AS-TEST-0001",
            "case_type": CaseType.RETURN_REFUND,
            "reason": RefundReason.OTHER,
            "order_number": "ORD-1001",
            "original_refund_cents": 10_000,
        }
        payload.update(overrides)
        return CaseRecord(**payload)

    return _build


@pytest_asyncio.fixture
async def case_factory(service, customer):
    """Open a case through the service. Defaults avoid auto-approval."""

    async def _factory(**overrides) -> CaseRecord:
        payload = {
            "case_type": CaseType.RETURN_REFUND,
            "reason": RefundReason.OTHER,
            "order_number": "ORD-1001",
            "refund_amount_cents": 10_000,
        }
        payload.update(overrides)
        return await service.apply_case(CaseApplication(**payload), customer)

    return _factory


@pytest.fixture
def make_gateway():
    return FakeRefundGateway
