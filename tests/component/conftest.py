"""
Component Test Layer Configuration

Services are built exactly as the factories build them, with the I/O
dependencies swapped for the in-memory fakes in tests/component/mocks.

Usage:
    pytest tests/component -v
    pytest tests/component/payment_service -v
"""
from decimal import Decimal
from typing import List, Optional

import pytest

from core.config import ChargeSchedulerConfig
from core.distributed_lock import DistributedLockManager
from core.ttl_cache import TTLCache
from microservices.order_service.events.publishers import RecordingEventBus
from microservices.order_service.models import OrderCreateRequest, SupplierOrderRequest
from microservices.order_service.order_service import OrderService
from microservices.payment_service.charge_scheduler import ChargeScheduler
from microservices.payment_service.models import CardDetails
from microservices.payment_service.payment_service import PaymentService
from microservices.payment_service.refund_service import RefundService
from microservices.payment_service.retry_policy import RetryPolicy

from tests.component.mocks import FakeGateway, InMemoryLockStore, InMemoryOrderRepository


# =============================================================================
# Dependencies
# =============================================================================

@pytest.fixture
def repo() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def lock_store() -> InMemoryLockStore:
    return InMemoryLockStore()


@pytest.fixture
def bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def cache() -> TTLCache:
    return TTLCache(default_ttl=300)


@pytest.fixture
def make_locks(lock_store, clock):
    """Lock manager per simulated process instance, all on one store"""
    def _make(instance_id: str = "instance-a") -> DistributedLockManager:
        return DistributedLockManager(lock_store, instance_id=instance_id, default_ttl=60, clock=clock)
    return _make


@pytest.fixture
def locks(make_locks) -> DistributedLockManager:
    return make_locks("instance-a")


@pytest.fixture
def scheduler_config() -> ChargeSchedulerConfig:
    return ChargeSchedulerConfig(batch_size=10, inter_order_delay=2.0, lock_ttl_seconds=60)


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def order_service(repo, cache, bus, clock, make_locks) -> OrderService:
    return OrderService(repo, cache=cache, post_commit_handlers=[bus], clock=clock, locks=make_locks("order-api"))


@pytest.fixture
def payment_service(order_service, gateway, locks, clock) -> PaymentService:
    return PaymentService(order_service, gateway, locks=locks, retry_policy=RetryPolicy(), clock=clock)


@pytest.fixture
def refund_service(order_service, gateway, locks, clock) -> RefundService:
    return RefundService(order_service, gateway, locks=locks, clock=clock)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def scheduler(repo, payment_service, locks, scheduler_config, clock, sleeps) -> ChargeScheduler:
    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ChargeScheduler(repo, payment_service, locks, config=scheduler_config, sleep=record_sleep, clock=clock)


# =============================================================================
# Data helpers
# =============================================================================

@pytest.fixture
def card() -> CardDetails:
    return CardDetails(
        card_number="4580000000000000",
        exp_month="04",
        exp_year="28",
        cvv="123",
        holder_id="000000018",
        holder_name="Dana Levi",
    )


def make_create_request(prices: List[str], shipping: str = "0", user_id: str = "user_1") -> OrderCreateRequest:
    return OrderCreateRequest(
        user_id=user_id,
        items=[{"name": f"Item {i + 1}", "price": price, "product_id": f"prod_{i + 1}"} for i, price in enumerate(prices)],
        shipping=Decimal(shipping),
        customer={"name": "Dana Levi", "email": "dana@example.com", "phone": "0501234567"},
    )


@pytest.fixture
def create_order(order_service):
    async def _create(prices: List[str], shipping: str = "0", user_id: str = "user_1"):
        response = await order_service.create_order(make_create_request(prices, shipping, user_id))
        assert response.success
        return response.order
    return _create


@pytest.fixture
def held_order(create_order, payment_service, card):
    """Create an order and place the card hold; returns the order id"""
    async def _held(prices: List[str], shipping: str = "0") -> str:
        order = await create_order(prices, shipping)
        result = await payment_service.hold_credit(order.order_id, card)
        assert result.success
        return order.order_id
    return _held


@pytest.fixture
def ready_order(held_order, order_service):
    """
    Held order where the first items are ordered from the supplier and the
    item indexes in ``cancel`` are cancelled; returns the order id.
    """
    async def _ready(prices: List[str], shipping: str = "0", cancel: Optional[List[int]] = None) -> str:
        order_id = await held_order(prices, shipping)
        order = await order_service.load(order_id)
        cancel = set(cancel or [])
        for index, item in enumerate(order.items):
            if index in cancel:
                response = await order_service.cancel_item(order_id, item.item_id, "Out of stock", "staff_1")
            else:
                response = await order_service.order_from_supplier(
                    order_id, item.item_id, SupplierOrderRequest(supplier_name="Acme", actor="staff_1"),
                )
            assert response.success, response.message
        return order_id
    return _ready
