"""
Refund Service Business Logic

Item refunds against a charged order, capped at what was charged minus
what was already refunded. With card details the refund is a card credit
(a negative-amount charge); without them it goes back against the captured
transaction.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from core.distributed_lock import DistributedLockManager

from microservices.order_service.events.models import OrderEvent, OrderEventType
from microservices.order_service.models import (
    Cancellation,
    ItemStatus,
    ItemStatusChange,
    Order,
    OrderItem,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
    money,
    utc_now,
)
from microservices.order_service.order_service import OrderService
from microservices.order_service.protocols import InvariantViolationError, OrderValidationError
from microservices.order_service.readiness import active_items, items_total
from microservices.order_service.state_machine import REFUNDABLE_STATUSES, assert_payment_transition

from .clients.hyp_client import validate_card_details
from .models import (
    CardDetails,
    GatewayOperation,
    GatewayResult,
    OrderRefundsResponse,
    RefundCalculation,
    RefundEligibility,
    RefundResult,
)
from .payment_service import record_gateway_call
from .protocols import CardValidationError, PaymentGatewayProtocol

logger = logging.getLogger(__name__)

REFUND_LOCK_PREFIX = "refund_order_"
REFUND_LOCK_TTL = 60
CAPTURE_ACTIONS = frozenset({GatewayOperation.COMMIT.value, GatewayOperation.PARTIAL_CAPTURE.value})


def captured_transaction_id(order: Order) -> Optional[str]:
    """Transaction the charge landed on; a partial capture issues a new one"""
    for entry in reversed(order.payment.history):
        if entry.success and entry.action in CAPTURE_ACTIONS and entry.transaction_id:
            return entry.transaction_id
    return order.payment.hyp_transaction_id


def max_refundable(order: Order) -> Decimal:
    return money(max(order.payment.charged_amount - order.payment.refunded_amount, Decimal("0")))


def _select_items(order: Order, item_ids: List[str]) -> List[OrderItem]:
    if not item_ids:
        return active_items(order)
    selected = []
    for item_id in item_ids:
        item = order.get_item(item_id)
        if item is None:
            raise OrderValidationError(f"Item not found in order: {item_id}")
        if item.is_cancelled:
            raise OrderValidationError(f"Item {item.name} is already cancelled or refunded")
        selected.append(item)
    return selected


class RefundService:
    """Refund business logic service"""

    def __init__(
        self,
        order_service: OrderService,
        gateway: PaymentGatewayProtocol,
        locks: Optional[DistributedLockManager] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.order_service = order_service
        self.gateway = gateway
        self.locks = locks
        self.clock = clock

        logger.info("✅ RefundService initialized")

    def calculate_refund_amount(self, order: Order, item_ids: List[str]) -> RefundCalculation:
        """
        Amount owed for refunding the given items.

        An empty selection means every active item. Shipping is refunded
        only when the selection covers every active item.
        """
        selected = _select_items(order, item_ids)
        selected_ids = {item.item_id for item in selected}
        covers_all = bool(selected) and selected_ids >= {item.item_id for item in active_items(order)}

        total_items = items_total(selected)
        shipping = order.pricing.shipping if covers_all else Decimal("0")
        requested = money(total_items + shipping)
        cap = max_refundable(order)
        return RefundCalculation(
            items_total=total_items,
            shipping_refund=money(shipping),
            requested_amount=requested,
            max_refundable=cap,
            amount=min(requested, cap),
            is_full_refund=covers_all,
            item_ids=[item.item_id for item in selected],
            capped=requested > cap,
        )

    def can_refund(self, order: Order) -> RefundEligibility:
        payment = order.payment
        cap = max_refundable(order)
        reason = None
        if payment.status not in REFUNDABLE_STATUSES:
            reason = f"Payment is {payment.status.value}; only charged orders can be refunded"
        elif cap <= 0:
            reason = "Nothing left to refund"
        return RefundEligibility(
            can_refund=reason is None,
            reason=reason,
            max_refundable=cap if reason is None else Decimal("0"),
            charged_amount=payment.charged_amount,
            refunded_amount=payment.refunded_amount,
            payment_status=payment.status,
        )

    async def get_order_refunds(self, order_id: str) -> OrderRefundsResponse:
        order = await self.order_service.load(order_id)
        return OrderRefundsResponse(
            order_id=order_id,
            refunds=order.refunds,
            total_refunded=order.payment.refunded_amount,
            charged_amount=order.payment.charged_amount,
            max_refundable=max_refundable(order),
        )

    async def process_refund(
        self,
        order_id: str,
        item_ids: List[str],
        reason: str,
        actor: str,
        card: Optional[CardDetails] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> RefundResult:
        """
        Refund items (or a custom amount) to the customer.

        A custom amount with no items is a goodwill refund: no item is
        marked as refunded. Without card details the refund is issued
        against the captured transaction.

        Raises:
            OrderValidationError: missing reason, bad card, nothing refundable
        """
        if not reason or not reason.strip():
            raise OrderValidationError("Refund reason is required")
        errors = validate_card_details(card) if card is not None else []
        if errors:
            raise CardValidationError(errors)

        if self.locks is None:
            return await self._process_locked(order_id, item_ids, reason.strip(), actor, card, custom_amount)

        async with self.locks.lock(f"{REFUND_LOCK_PREFIX}{order_id}", ttl_seconds=REFUND_LOCK_TTL) as acquired:
            if not acquired:
                return RefundResult(success=False, error="Another refund for this order is in progress",
                                    error_code="REFUND_IN_PROGRESS")
            return await self._process_locked(order_id, item_ids, reason.strip(), actor, card, custom_amount)

    async def _process_locked(
        self,
        order_id: str,
        item_ids: List[str],
        reason: str,
        actor: str,
        card: Optional[CardDetails],
        custom_amount: Optional[Decimal],
    ) -> RefundResult:
        order = await self.order_service.load(order_id)
        eligibility = self.can_refund(order)
        if not eligibility.can_refund:
            raise OrderValidationError(eligibility.reason)

        goodwill = custom_amount is not None and not item_ids
        if goodwill:
            refunded_items: List[str] = []
            amount = min(money(custom_amount), eligibility.max_refundable)
        else:
            calculation = self.calculate_refund_amount(order, item_ids)
            refunded_items = calculation.item_ids
            amount = calculation.amount
            if custom_amount is not None:
                amount = min(money(custom_amount), calculation.max_refundable)
        if amount <= 0:
            raise OrderValidationError("Refund amount must be greater than zero")

        if card is not None:
            result = await self.gateway.refund(
                order_number=order.order_number,
                amount=amount,
                card=card,
                info=f"Refund for order {order.order_number}",
            )
        else:
            transaction_id = captured_transaction_id(order)
            if not transaction_id:
                raise InvariantViolationError("No captured transaction to refund against")
            result = await self.gateway.refund_by_transaction(transaction_id, amount)
        now = self.clock()

        if not result.success:
            saved = await self.order_service.mutate(
                order_id,
                lambda o: self._apply_failure(o, result, amount, reason, actor, refunded_items, now),
                readiness_handled=True,
            )
            logger.error(f"❌ Refund of {amount} for order {order.order_number} failed: {result.code} {result.error}")
            return RefundResult(
                success=False,
                refund=saved.refunds[-1],
                payment_status=saved.payment.status,
                error=result.error,
                error_code=result.code,
            )

        saved = await self.order_service.mutate(
            order_id,
            lambda o: self._apply_success(o, result, amount, reason, actor, refunded_items, now),
            readiness_handled=True,
        )
        logger.info(
            f"✅ Refunded {amount} for order {order.order_number} "
            f"({saved.payment.refunded_amount}/{saved.payment.charged_amount})"
        )
        return RefundResult(success=True, refund=saved.refunds[-1], payment_status=saved.payment.status)

    @staticmethod
    def _record(
        result: GatewayResult,
        amount: Decimal,
        reason: str,
        actor: str,
        item_ids: List[str],
        status: RefundStatus,
        now: datetime,
    ) -> RefundRecord:
        return RefundRecord(
            refund_id=f"ref_{uuid.uuid4().hex[:16]}",
            amount=amount,
            reason=reason,
            items=list(item_ids),
            processed_by=actor,
            processed_at=now,
            status=status,
            transaction_id=result.transaction_id,
            auth_code=result.auth_code,
            invoice_number=result.invoice_number,
            error=result.error,
        )

    def _apply_failure(self, order, result, amount, reason, actor, item_ids, now) -> List[OrderEvent]:
        record_gateway_call(order, result, amount, now)
        order.refunds.append(self._record(result, amount, reason, actor, item_ids, RefundStatus.FAILED, now))
        order.add_timeline("refund_failed", f"Refund of {amount} failed: {result.error}", actor=actor)
        return [self._event(order, OrderEventType.REFUND_FAILED, amount=str(amount), error=result.error)]

    def _apply_success(self, order, result, amount, reason, actor, item_ids, now) -> List[OrderEvent]:
        payment = order.payment
        if amount > max_refundable(order):
            raise InvariantViolationError(
                f"Refund {amount} exceeds refundable {max_refundable(order)} for order {order.order_number}"
            )

        record_gateway_call(order, result, amount, now)
        order.refunds.append(self._record(result, amount, reason, actor, item_ids, RefundStatus.COMPLETED, now))
        payment.refunded_amount = money(payment.refunded_amount + amount)
        order.pricing.total_refunds = payment.refunded_amount

        for item_id in item_ids:
            item = order.get_item(item_id)
            item.item_status = ItemStatus.CANCELLED
            item.cancellation = Cancellation(
                cancelled=True,
                reason=reason,
                cancelled_by=actor,
                cancelled_at=now,
                refund_amount=item.line_total,
                refund_processed=True,
            )
            item.status_history.append(ItemStatusChange(
                status=ItemStatus.CANCELLED, changed_at=now, changed_by=actor, notes=f"Refunded: {reason}",
            ))

        target = (
            PaymentStatus.FULL_REFUND
            if payment.refunded_amount >= payment.charged_amount
            else PaymentStatus.PARTIAL_REFUND
        )
        assert_payment_transition(payment.status, target)
        payment.status = target

        order.add_timeline(
            "refund",
            f"Refunded {amount} ({len(item_ids)} item(s)): {reason}",
            actor=actor,
        )
        return [self._event(order, OrderEventType.REFUND_PROCESSED, amount=str(amount), items=list(item_ids))]

    @staticmethod
    def _event(order: Order, event_type: OrderEventType, **data) -> OrderEvent:
        return OrderEvent(
            event_type=event_type,
            order_id=order.order_id,
            order_number=order.order_number,
            user_id=order.user_id,
            payment_status=order.payment.status.value,
            data=data,
        )
