"""
Order state machines

Allowed edges for payment status and item status. Every service-layer write
to either field is checked here first.
"""

from typing import Dict, FrozenSet

from .models import ItemStatus, PaymentStatus
from .protocols import InvalidItemTransitionError, InvalidPaymentTransitionError

P = PaymentStatus

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    P.PENDING: frozenset({P.HOLD, P.FAILED}),
    P.HOLD: frozenset({P.READY_TO_CHARGE, P.CANCELLED}),
    P.READY_TO_CHARGE: frozenset({P.CHARGED, P.RETRY_PENDING, P.FAILED, P.CANCELLED}),
    P.RETRY_PENDING: frozenset({P.RETRY_PENDING, P.CHARGED, P.FAILED, P.CANCELLED}),
    P.CHARGED: frozenset({P.PARTIAL_REFUND, P.FULL_REFUND}),
    P.PARTIAL_REFUND: frozenset({P.PARTIAL_REFUND, P.FULL_REFUND}),
    P.FULL_REFUND: frozenset(),
    P.CANCELLED: frozenset(),
    P.FAILED: frozenset(),
}

# Statuses the charge scheduler may capture from
CAPTURABLE_STATUSES = frozenset({P.READY_TO_CHARGE, P.RETRY_PENDING})

REFUNDABLE_STATUSES = frozenset({P.CHARGED, P.PARTIAL_REFUND})


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())


def assert_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    if not can_transition_payment(current, target):
        raise InvalidPaymentTransitionError(
            f"Payment status cannot change from {current.value} to {target.value}"
        )


I = ItemStatus

ITEM_TRANSITIONS: Dict[ItemStatus, FrozenSet[ItemStatus]] = {
    I.PENDING: frozenset({I.ORDERED, I.CANCELLED}),
    I.ORDERED: frozenset({I.IN_TRANSIT, I.CANCELLED}),
    I.IN_TRANSIT: frozenset({I.ARRIVED}),
    I.ARRIVED: frozenset({I.SHIPPED_TO_CUSTOMER}),
    I.SHIPPED_TO_CUSTOMER: frozenset({I.DELIVERED}),
    I.DELIVERED: frozenset(),
    I.CANCELLED: frozenset(),
}

# Cancelling once the parcel left for the customer is not possible
NON_CANCELLABLE_ITEM_STATUSES = frozenset({I.SHIPPED_TO_CUSTOMER, I.DELIVERED, I.CANCELLED})


def assert_item_transition(current: ItemStatus, target: ItemStatus) -> None:
    if target not in ITEM_TRANSITIONS.get(current, frozenset()):
        raise InvalidItemTransitionError(
            f"Item status cannot change from {current.value} to {target.value}"
        )
