"""
Order Repository Mock for Component Testing

Implements OrderRepositoryProtocol over a dict of deep copies, with the
same version semantics as the PostgreSQL repository.
"""
from datetime import datetime
from typing import Dict, List, Optional

from microservices.order_service.models import Order, PaymentStatus, TimelineEntry, utc_now
from microservices.order_service.protocols import (
    ConcurrentModificationError,
    DuplicateOrderError,
    OrderNotFoundError,
)


class InMemoryOrderRepository:
    """Mock order repository; implements OrderRepositoryProtocol"""

    def __init__(self):
        self._data: Dict[str, Order] = {}
        self.calls: List[str] = []
        self.conflicts_to_raise = 0

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    def put(self, order: Order) -> Order:
        """Seed an order directly"""
        self._data[order.order_id] = order.model_copy(deep=True)
        return order

    def peek(self, order_id: str) -> Optional[Order]:
        stored = self._data.get(order_id)
        return stored.model_copy(deep=True) if stored else None

    async def create_order(self, order: Order) -> Order:
        self.calls.append("create_order")
        if any(o.order_number == order.order_number for o in self._data.values()):
            raise DuplicateOrderError(f"Order {order.order_number} already exists")
        order.version = 0
        self._data[order.order_id] = order.model_copy(deep=True)
        return order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Optional[Order]:
        self.calls.append("get_order")
        return self.peek(order_id)

    async def order_number_exists(self, order_number: str) -> bool:
        return any(o.order_number == order_number for o in self._data.values())

    async def save(self, order: Order) -> Order:
        self.calls.append("save")
        stored = self._data.get(order.order_id)
        if stored is None:
            raise OrderNotFoundError(f"Order {order.order_id} not found")
        if self.conflicts_to_raise > 0:
            self.conflicts_to_raise -= 1
            raise ConcurrentModificationError(f"Order {order.order_id} changed (injected)")
        if stored.version != order.version:
            raise ConcurrentModificationError(
                f"Order {order.order_id} changed (expected v{order.version}, found v{stored.version})"
            )
        order.updated_at = utc_now()
        order.version = stored.version + 1
        self._data[order.order_id] = order.model_copy(deep=True)
        return order

    async def mark_ready_if_on_hold(self, order_id: str, message: str) -> Optional[Order]:
        self.calls.append("mark_ready_if_on_hold")
        stored = self._data.get(order_id)
        if stored is None or stored.payment.status != PaymentStatus.HOLD:
            return None
        now = utc_now()
        stored.payment.status = PaymentStatus.READY_TO_CHARGE
        stored.payment.ready_at = now
        stored.updated_at = now
        stored.timeline.append(TimelineEntry(status=PaymentStatus.READY_TO_CHARGE.value, message=message, timestamp=now))
        stored.version += 1
        return stored.model_copy(deep=True)

    async def find_chargeable(self, now: datetime, limit: int) -> List[Order]:
        self.calls.append("find_chargeable")
        due = [
            o for o in self._data.values()
            if o.payment.hyp_transaction_id
            and (
                o.payment.status == PaymentStatus.READY_TO_CHARGE
                or (
                    o.payment.status == PaymentStatus.RETRY_PENDING
                    and o.payment.next_retry_at is not None
                    and o.payment.next_retry_at <= now
                )
            )
        ]
        due.sort(key=lambda o: o.payment.hold_at or datetime.max.replace(tzinfo=now.tzinfo))
        return [o.model_copy(deep=True) for o in due[:limit]]
