"""
Refund Service Component Tests

Item, full and goodwill refunds on charged orders.

Usage:
    pytest tests/component/payment_service/test_refund_service_component.py -v
"""
from decimal import Decimal

import pytest

from microservices.order_service.events.models import OrderEventType
from microservices.order_service.models import ItemStatus, PaymentStatus, RefundStatus
from microservices.order_service.protocols import OrderValidationError
from microservices.payment_service.models import CaptureOutcome, GatewayOperation
from microservices.payment_service.refund_service import REFUND_LOCK_PREFIX

from tests.component.mocks import gateway_result

pytestmark = [pytest.mark.component, pytest.mark.asyncio]


@pytest.fixture
def charged_order(ready_order, payment_service):
    async def _charged(prices, shipping="0", cancel=None) -> str:
        order_id = await ready_order(prices, shipping, cancel)
        result = await payment_service.capture_payment(order_id)
        assert result.kind == CaptureOutcome.CHARGED
        return order_id
    return _charged


class TestCalculateRefund:

    async def test_shipping_only_when_all_active_items_selected(self, charged_order, order_service, refund_service):
        order_id = await charged_order(["100.00", "50.00"], shipping="20")
        order = await order_service.load(order_id)

        one = refund_service.calculate_refund_amount(order, [order.items[0].item_id])
        both = refund_service.calculate_refund_amount(order, [i.item_id for i in order.items])
        implicit = refund_service.calculate_refund_amount(order, [])

        assert one.amount == Decimal("100.00")
        assert one.shipping_refund == Decimal("0.00")
        assert one.is_full_refund is False
        assert both.amount == Decimal("170.00")
        assert both.shipping_refund == Decimal("20.00")
        assert implicit.amount == both.amount

    async def test_unknown_item_rejected(self, charged_order, order_service, refund_service):
        order_id = await charged_order(["100.00"])
        order = await order_service.load(order_id)
        with pytest.raises(OrderValidationError):
            refund_service.calculate_refund_amount(order, ["item_nope"])

    async def test_eligibility_requires_charge(self, held_order, order_service, refund_service):
        order_id = await held_order(["100.00"])
        eligibility = refund_service.can_refund(await order_service.load(order_id))
        assert eligibility.can_refund is False
        assert eligibility.max_refundable == Decimal("0")


class TestProcessRefund:

    async def test_item_refund_is_partial(self, charged_order, order_service, refund_service, gateway, repo, card, bus):
        order_id = await charged_order(["100.00", "50.00"], shipping="20")
        order = await order_service.load(order_id)

        result = await refund_service.process_refund(order_id, [order.items[1].item_id], "Damaged", "staff_1", card)

        assert result.success
        assert result.refund.amount == Decimal("50.00")
        assert result.refund.status == RefundStatus.COMPLETED
        assert result.refund.invoice_number == "889"
        assert gateway.calls_of(GatewayOperation.CARD_CREDIT)[0]["amount"] == Decimal("50.00")
        stored = repo.peek(order_id)
        assert stored.payment.status == PaymentStatus.PARTIAL_REFUND
        assert stored.payment.refunded_amount == Decimal("50.00")
        assert stored.pricing.total_refunds == Decimal("50.00")
        refunded = stored.items[1]
        assert refunded.item_status == ItemStatus.CANCELLED
        assert refunded.cancellation.refund_processed is True
        assert len(bus.of_type(OrderEventType.REFUND_PROCESSED)) == 1

    async def test_remaining_items_complete_full_refund(self, charged_order, order_service, refund_service, repo, card):
        order_id = await charged_order(["100.00", "50.00"], shipping="20")
        order = await order_service.load(order_id)

        await refund_service.process_refund(order_id, [order.items[0].item_id], "Damaged", "staff_1", card)
        result = await refund_service.process_refund(order_id, [], "Customer returned the rest", "staff_1", card)

        assert result.success
        assert result.refund.amount == Decimal("70.00")
        stored = repo.peek(order_id)
        assert stored.payment.status == PaymentStatus.FULL_REFUND
        assert stored.payment.refunded_amount == Decimal("170.00")
        assert refund_service.can_refund(stored).can_refund is False

    async def test_refund_capped_at_remaining_charge(self, charged_order, order_service, refund_service, repo, card):
        order_id = await charged_order(["100.00", "50.00"], shipping="20")
        await refund_service.process_refund(order_id, [], "Late delivery", "staff_1", card, custom_amount=Decimal("150.00"))
        order = await order_service.load(order_id)

        result = await refund_service.process_refund(order_id, [order.items[0].item_id], "Damaged", "staff_1", card)

        assert result.refund.amount == Decimal("20.00")
        assert repo.peek(order_id).payment.status == PaymentStatus.FULL_REFUND

    async def test_goodwill_refund_keeps_items(self, charged_order, refund_service, repo, card):
        order_id = await charged_order(["100.00"])

        result = await refund_service.process_refund(
            order_id, [], "Goodwill gesture", "staff_1", card, custom_amount=Decimal("15.00"),
        )

        assert result.success
        assert result.refund.items == []
        stored = repo.peek(order_id)
        assert stored.payment.refunded_amount == Decimal("15.00")
        assert stored.payment.status == PaymentStatus.PARTIAL_REFUND
        assert stored.items[0].item_status == ItemStatus.ORDERED

    async def test_gateway_failure_records_failed_refund(self, charged_order, refund_service, gateway, repo, card):
        order_id = await charged_order(["100.00"])
        gateway.script(GatewayOperation.CARD_CREDIT, gateway_result(GatewayOperation.CARD_CREDIT, success=False, code="4"))

        result = await refund_service.process_refund(order_id, [], "Damaged", "staff_1", card)

        assert result.success is False
        assert result.refund.status == RefundStatus.FAILED
        stored = repo.peek(order_id)
        assert stored.payment.status == PaymentStatus.CHARGED
        assert stored.payment.refunded_amount == Decimal("0")
        assert stored.timeline[-1].status == "refund_failed"

    async def test_not_charged_order_rejected(self, held_order, refund_service, gateway, card):
        order_id = await held_order(["100.00"])
        with pytest.raises(OrderValidationError):
            await refund_service.process_refund(order_id, [], "Damaged", "staff_1", card)
        assert gateway.calls_of(GatewayOperation.CARD_CREDIT) == []

    async def test_concurrent_refund_rejected(self, charged_order, refund_service, make_locks, card):
        order_id = await charged_order(["100.00"])
        assert await make_locks("instance-b").acquire(f"{REFUND_LOCK_PREFIX}{order_id}")

        result = await refund_service.process_refund(order_id, [], "Damaged", "staff_1", card)

        assert result.success is False
        assert result.error_code == "REFUND_IN_PROGRESS"

    async def test_refund_history(self, charged_order, refund_service, card):
        order_id = await charged_order(["100.00", "40.00"])
        await refund_service.process_refund(order_id, [], "Goodwill", "staff_1", card, custom_amount=Decimal("10.00"))

        history = await refund_service.get_order_refunds(order_id)

        assert len(history.refunds) == 1
        assert history.total_refunded == Decimal("10.00")
        assert history.max_refundable == Decimal("130.00")


class TestRefundWithoutCard:

    async def test_refund_goes_to_captured_transaction(self, charged_order, order_service, refund_service, gateway):
        order_id = await charged_order(["100.00", "50.00"], cancel=[1])
        order = await order_service.load(order_id)
        capture_id = next(
            h.transaction_id for h in order.payment.history if h.action == GatewayOperation.PARTIAL_CAPTURE.value
        )

        result = await refund_service.process_refund(order_id, [order.items[0].item_id], "Damaged", "staff_1")

        assert result.success
        assert result.payment_status == PaymentStatus.FULL_REFUND
        calls = gateway.calls_of(GatewayOperation.REFUND_BY_TRANSACTION)
        assert calls == [{"transaction_id": capture_id, "amount": Decimal("100.00")}]
        assert capture_id != order.payment.hyp_transaction_id
        assert gateway.calls_of(GatewayOperation.CARD_CREDIT) == []

    async def test_failed_transaction_refund_is_recorded(self, charged_order, refund_service, gateway):
        order_id = await charged_order(["100.00"])
        gateway.script(
            GatewayOperation.REFUND_BY_TRANSACTION,
            gateway_result(GatewayOperation.REFUND_BY_TRANSACTION, success=False, code="4"),
        )

        result = await refund_service.process_refund(order_id, [], "Damaged", "staff_1")

        assert result.success is False
        assert result.refund.status == RefundStatus.FAILED
        assert result.payment_status == PaymentStatus.CHARGED
