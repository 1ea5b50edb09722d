"""
Order Service Protocols (Interfaces)

These interfaces define contracts for dependency injection.
NO import-time I/O dependencies - safe to import anywhere.
"""
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable

# Import only models (no I/O dependencies)
from .events.models import OrderEvent
from .models import Order


# ============================================================================
# Custom Exceptions - defined here to avoid importing repository
# ============================================================================

class OrderServiceError(Exception):
    """Base exception for order service errors"""
    pass


class OrderNotFoundError(OrderServiceError):
    """Order not found error"""
    pass


class OrderValidationError(OrderServiceError):
    """Rejected input; never retried"""
    pass


class InvalidItemTransitionError(OrderValidationError):
    """Item status change not allowed from its current status"""
    pass


class InvariantViolationError(OrderServiceError):
    """Operation would break an aggregate invariant"""
    pass


class InvalidPaymentTransitionError(InvariantViolationError):
    """Payment status write outside the lifecycle graph"""
    pass


class ConcurrentModificationError(OrderServiceError):
    """Optimistic save lost against a newer version"""
    pass


class DuplicateOrderError(OrderServiceError):
    """Order number already taken"""
    pass


class PaymentBusyError(OrderServiceError):
    """Capture is in flight; item decisions wait for it"""
    pass


# ============================================================================
# Repository Protocol
# ============================================================================

@runtime_checkable
class OrderRepositoryProtocol(Protocol):
    """
    Interface for Order Repository.

    Implementations must provide these methods.
    Used for dependency injection to enable testing.
    """

    async def initialize(self) -> None:
        ...

    async def create_order(self, order: Order) -> Order:
        """Insert a new order; raises DuplicateOrderError on number clash"""
        ...

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Get order by ID"""
        ...

    async def order_number_exists(self, order_number: str) -> bool:
        ...

    async def save(self, order: Order) -> Order:
        """
        Optimistic save: succeeds only if the stored version equals
        order.version, then bumps it. Raises ConcurrentModificationError.
        """
        ...

    async def mark_ready_if_on_hold(self, order_id: str, message: str) -> Optional[Order]:
        """
        Single conditional update: payment hold -> ready_to_charge plus one
        timeline entry. Returns None when the order was not on hold.
        """
        ...

    async def find_chargeable(self, now: datetime, limit: int) -> List[Order]:
        """
        ready_to_charge, or retry_pending with next_retry_at <= now, having a
        gateway transaction id; oldest hold first.
        """
        ...


# ============================================================================
# Post-commit handler
# ============================================================================

PostCommitHandler = Callable[[OrderEvent], Awaitable[None]]


__all__ = [
    "OrderServiceError",
    "OrderNotFoundError",
    "OrderValidationError",
    "InvalidItemTransitionError",
    "InvariantViolationError",
    "InvalidPaymentTransitionError",
    "ConcurrentModificationError",
    "DuplicateOrderError",
    "PaymentBusyError",
    "OrderRepositoryProtocol",
    "PostCommitHandler",
]
