"""
API Test Layer Configuration

Both FastAPI apps run through TestClient with their service dependency
overridden; the lifespan (database, scheduler) never starts. The two apps
share one OrderService so an order created over the order API can be
held and charged over the payment API.
"""
import pytest
from fastapi.testclient import TestClient

from core.distributed_lock import DistributedLockManager
from core.ttl_cache import TTLCache
from microservices.order_service import main as order_main
from microservices.order_service.events.publishers import RecordingEventBus
from microservices.order_service.order_service import OrderService
from microservices.payment_service import main as payment_main
from microservices.payment_service.charge_scheduler import ChargeScheduler
from microservices.payment_service.factory import PaymentComponents
from microservices.payment_service.payment_service import PaymentService
from microservices.payment_service.refund_service import RefundService

from tests.component.mocks import FakeGateway, InMemoryLockStore, InMemoryOrderRepository

CARD = {
    "card_number": "4580000000000000",
    "exp_month": "04",
    "exp_year": "28",
    "cvv": "123",
    "holder_id": "000000018",
    "holder_name": "Dana Levi",
}


@pytest.fixture
def components() -> PaymentComponents:
    repo = InMemoryOrderRepository()
    gateway = FakeGateway()
    lock_store = InMemoryLockStore()
    locks = DistributedLockManager(lock_store, instance_id="api-test")
    order_service = OrderService(
        repo, cache=TTLCache(default_ttl=60), post_commit_handlers=[RecordingEventBus()], locks=locks,
    )
    payment_service = PaymentService(order_service, gateway, locks=locks)

    async def no_sleep(seconds):
        return None

    return PaymentComponents(
        order_service=order_service,
        payment_service=payment_service,
        refund_service=RefundService(order_service, gateway, locks=locks),
        scheduler=ChargeScheduler(repo, payment_service, locks, sleep=no_sleep),
        locks=locks,
        gateway=gateway,
        lock_store=lock_store,
    )


@pytest.fixture
def order_client(components):
    order_main.app.dependency_overrides[order_main.get_order_service] = lambda: components.order_service
    yield TestClient(order_main.app)
    order_main.app.dependency_overrides.clear()


@pytest.fixture
def payment_client(components):
    payment_main.app.dependency_overrides[payment_main.get_components] = lambda: components
    yield TestClient(payment_main.app)
    payment_main.app.dependency_overrides.clear()


@pytest.fixture
def card() -> dict:
    return dict(CARD)


@pytest.fixture
def new_order(order_client):
    """POST an order and return its JSON"""
    def _create(prices=("100.00",), shipping="0", user_id="user_1") -> dict:
        response = order_client.post("/api/v1/orders", json={
            "user_id": user_id,
            "items": [{"name": f"Item {i}", "price": p} for i, p in enumerate(prices)],
            "shipping": shipping,
        })
        assert response.status_code == 200, response.text
        return response.json()["order"]
    return _create
