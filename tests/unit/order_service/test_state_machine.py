"""
Payment and item state machines - Unit Tests
"""

import pytest

from microservices.order_service.models import ItemStatus, PaymentStatus
from microservices.order_service.protocols import (
    InvalidItemTransitionError,
    InvalidPaymentTransitionError,
    InvariantViolationError,
    OrderValidationError,
)
from microservices.order_service.state_machine import (
    PAYMENT_TRANSITIONS,
    assert_item_transition,
    assert_payment_transition,
    can_transition_payment,
)

pytestmark = [pytest.mark.unit]

P = PaymentStatus


class TestPaymentTransitions:

    @pytest.mark.parametrize("current,target", [
        (P.PENDING, P.HOLD),
        (P.HOLD, P.READY_TO_CHARGE),
        (P.HOLD, P.CANCELLED),
        (P.READY_TO_CHARGE, P.CHARGED),
        (P.READY_TO_CHARGE, P.RETRY_PENDING),
        (P.READY_TO_CHARGE, P.CANCELLED),
        (P.RETRY_PENDING, P.RETRY_PENDING),
        (P.RETRY_PENDING, P.FAILED),
        (P.CHARGED, P.PARTIAL_REFUND),
        (P.PARTIAL_REFUND, P.FULL_REFUND),
    ])
    def test_allowed(self, current, target):
        assert can_transition_payment(current, target)
        assert_payment_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (P.HOLD, P.RETRY_PENDING),
        (P.HOLD, P.CHARGED),
        (P.PENDING, P.READY_TO_CHARGE),
        (P.CHARGED, P.CHARGED),
        (P.CANCELLED, P.HOLD),
        (P.FULL_REFUND, P.PARTIAL_REFUND),
    ])
    def test_rejected(self, current, target):
        assert not can_transition_payment(current, target)
        with pytest.raises(InvalidPaymentTransitionError):
            assert_payment_transition(current, target)

    def test_terminal_statuses_have_no_exits(self):
        for status in (P.CANCELLED, P.FAILED, P.FULL_REFUND):
            assert PAYMENT_TRANSITIONS[status] == frozenset()

    def test_payment_transition_error_is_an_invariant_violation(self):
        assert issubclass(InvalidPaymentTransitionError, InvariantViolationError)


class TestItemTransitions:

    def test_forward_progression(self):
        path = [
            ItemStatus.PENDING, ItemStatus.ORDERED, ItemStatus.IN_TRANSIT,
            ItemStatus.ARRIVED, ItemStatus.SHIPPED_TO_CUSTOMER, ItemStatus.DELIVERED,
        ]
        for current, target in zip(path, path[1:]):
            assert_item_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (ItemStatus.PENDING, ItemStatus.ARRIVED),
        (ItemStatus.DELIVERED, ItemStatus.PENDING),
        (ItemStatus.ARRIVED, ItemStatus.ORDERED),
        (ItemStatus.CANCELLED, ItemStatus.ORDERED),
    ])
    def test_invalid_transitions_are_rejected(self, current, target):
        with pytest.raises(InvalidItemTransitionError):
            assert_item_transition(current, target)

    def test_item_transition_error_is_a_validation_error(self):
        assert issubclass(InvalidItemTransitionError, OrderValidationError)
