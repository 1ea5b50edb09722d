"""
Payment Service Business Logic

Hold, capture and cancel against the card gateway for dropship orders.
Gateway calls happen once; the recorded outcome is then applied to the
order through OrderService.mutate, which re-applies it on a version
conflict without calling the gateway again.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from core.distributed_lock import CHARGE_LOCK_PREFIX, DistributedLockManager, charge_lock_key

from microservices.order_service.events.models import OrderEvent, OrderEventType
from microservices.order_service.models import (
    Order,
    PaymentHistoryEntry,
    PaymentStatus,
    RetryErrorEntry,
    utc_now,
)
from microservices.order_service.order_service import OrderService
from microservices.order_service.protocols import (
    InvariantViolationError,
    OrderValidationError,
)
from microservices.order_service.readiness import all_items_cancelled, chargeable_amount
from microservices.order_service.state_machine import (
    CAPTURABLE_STATUSES,
    NON_CANCELLABLE_ITEM_STATUSES,
    assert_payment_transition,
)

from .clients.hyp_client import validate_card_details
from .models import (
    CancelResult,
    CaptureOutcome,
    CaptureResult,
    CardDetails,
    FailureKind,
    GatewayResult,
    HoldResult,
    TransactionQueryResult,
)
from .protocols import CardValidationError, PaymentGatewayProtocol
from .retry_policy import RetryPolicy, classify_failure

logger = logging.getLogger(__name__)

MAX_RETRY_ERRORS = 10
HOLDABLE_STATUSES = frozenset({PaymentStatus.HOLD, PaymentStatus.READY_TO_CHARGE, PaymentStatus.RETRY_PENDING})


def _payment_event(order: Order, event_type: OrderEventType, **data) -> OrderEvent:
    return OrderEvent(
        event_type=event_type,
        order_id=order.order_id,
        order_number=order.order_number,
        user_id=order.user_id,
        payment_status=order.payment.status.value,
        data=data,
    )


def record_gateway_call(order: Order, result: GatewayResult, amount: Optional[Decimal], at: datetime) -> None:
    """Append to payment history and, on failure, the staff-visible last error"""
    order.payment.history.append(PaymentHistoryEntry(
        action=result.operation.value,
        amount=amount,
        transaction_id=result.transaction_id or order.payment.hyp_transaction_id,
        success=result.success,
        code=result.code,
        error=result.error,
        timestamp=at,
    ))
    if not result.success:
        order.payment.last_error = result.error
        order.payment.last_error_code = result.code or (str(result.http_status) if result.http_status else None)
        order.payment.last_error_at = at


class PaymentService:
    """
    Payment lifecycle business logic service

    Handles card holds, capture with partial-capture and retry rules, and
    hold cancellation.
    """

    def __init__(
        self,
        order_service: OrderService,
        gateway: PaymentGatewayProtocol,
        locks: Optional[DistributedLockManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.order_service = order_service
        self.gateway = gateway
        self.locks = locks
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock

        logger.info("✅ PaymentService initialized")

    # ====================
    # Hold
    # ====================

    async def hold_credit(self, order_id: str, card: CardDetails) -> HoldResult:
        """
        Reserve the order amount on the customer's card (J5, no charge).

        Raises:
            CardValidationError: malformed card input
            InvariantViolationError: order not awaiting a hold
        """
        errors = validate_card_details(card)
        if errors:
            raise CardValidationError(errors)

        order = await self.order_service.load(order_id)
        if order.payment.status != PaymentStatus.PENDING:
            raise InvariantViolationError(
                f"Order {order.order_number} payment is {order.payment.status.value}, expected pending"
            )
        amount = chargeable_amount(order)
        if amount <= 0:
            raise InvariantViolationError(f"Order {order.order_number} has nothing to hold")

        result = await self.gateway.hold(
            order_number=order.order_number,
            amount=amount,
            card=card,
            info=f"Order {order.order_number} - {len(order.items)} items",
            client_name=order.customer.name,
            email=order.customer.email,
            phone=order.customer.phone,
        )
        now = self.clock()

        def apply(o: Order) -> List[OrderEvent]:
            record_gateway_call(o, result, amount, now)
            if not result.success:
                assert_payment_transition(o.payment.status, PaymentStatus.FAILED)
                o.payment.status = PaymentStatus.FAILED
                o.payment.failed_at = now
                o.add_timeline("payment_hold_failed", f"Card hold declined: {result.error}")
                return [_payment_event(o, OrderEventType.PAYMENT_FAILED, stage="hold", error=result.error)]

            assert_payment_transition(o.payment.status, PaymentStatus.HOLD)
            p = o.payment
            p.status = PaymentStatus.HOLD
            p.hyp_transaction_id = result.transaction_id
            p.hyp_auth_code = result.auth_code
            p.hyp_uid = result.uid
            p.hyp_token = result.token
            p.hyp_token_month = result.token_month
            p.hyp_token_year = result.token_year
            p.hold_amount = amount
            p.hold_at = now
            p.max_retries = self.retry_policy.max_retries
            o.add_timeline("hold", f"Credit hold of {amount} placed")
            return [_payment_event(o, OrderEventType.PAYMENT_HELD, amount=str(amount))]

        # Readiness re-check runs inside persist: items may all be decided already
        await self.order_service.mutate(order_id, apply)

        if not result.success:
            logger.warning(f"⚠️  Hold declined for order {order.order_number}: {result.code} {result.error}")
            return HoldResult(success=False, order_id=order_id, error=result.error, error_code=result.code)

        logger.info(f"✅ Hold placed for order {order.order_number}: {amount} (txn {result.transaction_id})")
        return HoldResult(
            success=True,
            order_id=order_id,
            transaction_id=result.transaction_id,
            auth_code=result.auth_code,
            uid=result.uid,
            amount=amount,
        )

    # ====================
    # Capture
    # ====================

    async def capture_payment(self, order_id: str) -> CaptureResult:
        """
        Capture an order that is ready_to_charge or due for retry.

        Callers must hold the order's charge lock.
        """
        order = await self.order_service.repository.get_order(order_id)
        if order is None:
            return CaptureResult(order_id=order_id, kind=CaptureOutcome.ERROR, error="Order not found")

        payment = order.payment
        if not payment.hyp_transaction_id:
            return CaptureResult(
                order_id=order_id, kind=CaptureOutcome.ERROR,
                error="No gateway transaction reference", payment_status=payment.status,
            )
        if payment.status not in CAPTURABLE_STATUSES:
            return CaptureResult(
                order_id=order_id, kind=CaptureOutcome.ERROR,
                error=f"Payment is {payment.status.value}, not capturable", payment_status=payment.status,
            )

        amount = chargeable_amount(order)
        if all_items_cancelled(order) or amount <= 0:
            return await self._release_hold(order, "All items cancelled - no charge")

        if amount > payment.hold_amount:
            return CaptureResult(
                order_id=order_id, kind=CaptureOutcome.ERROR, payment_status=payment.status,
                error=f"Chargeable amount {amount} exceeds hold {payment.hold_amount}",
            )

        partial = amount < payment.hold_amount
        info = f"Order {order.order_number} charge"
        if partial and payment.hyp_auth_code and payment.hyp_uid:
            result = await self.gateway.capture_partial(
                order_number=order.order_number,
                amount=amount,
                original_amount=payment.hold_amount,
                original_uid=payment.hyp_uid,
                auth_code=payment.hyp_auth_code,
                info=info,
                token=payment.hyp_token,
                token_month=payment.hyp_token_month,
                token_year=payment.hyp_token_year,
            )
        else:
            if partial:
                logger.warning(
                    f"⚠️  Order {order.order_number} has no authorization metadata; "
                    f"capturing {amount} of {payment.hold_amount} via commitTrans"
                )
            result = await self.gateway.capture_full(payment.hyp_transaction_id, amount)

        if not result.success:
            return await self._handle_failure(order_id, result, amount)

        now = self.clock()

        def apply(o: Order) -> List[OrderEvent]:
            assert_payment_transition(o.payment.status, PaymentStatus.CHARGED)
            record_gateway_call(o, result, amount, now)
            p = o.payment
            p.status = PaymentStatus.CHARGED
            p.charged_amount = amount
            p.charged_at = now
            p.retry_count = 0
            p.next_retry_at = None
            p.last_error = None
            p.last_error_code = None
            p.last_error_at = None
            note = f" (partial, held {p.hold_amount})" if partial else ""
            o.add_timeline("charged", f"Charged {amount}{note}")
            now_chargeable = chargeable_amount(o)
            if now_chargeable != amount:
                # An unlocked item decision slipped in during the gateway call
                logger.error(
                    f"❌ Order {o.order_number} charged {amount} but items now total {now_chargeable}; refund needed"
                )
                o.add_timeline("charge_mismatch", f"Charged {amount}, items now total {now_chargeable}; refund the difference")
            return [_payment_event(o, OrderEventType.PAYMENT_CHARGED, amount=str(amount), partial=partial)]

        await self.order_service.mutate(order_id, apply, readiness_handled=True)
        logger.info(f"✅ Charged order {order.order_number}: {amount}{' (partial)' if partial else ''}")
        return CaptureResult(
            order_id=order_id,
            kind=CaptureOutcome.CHARGED,
            success=True,
            charged_amount=amount,
            partial=partial,
            payment_status=PaymentStatus.CHARGED,
        )

    async def _release_hold(self, order: Order, message: str) -> CaptureResult:
        result = await self.gateway.cancel(order.payment.hyp_transaction_id)
        if not result.success:
            return await self._handle_failure(order.order_id, result, None)

        now = self.clock()

        def apply(o: Order) -> List[OrderEvent]:
            assert_payment_transition(o.payment.status, PaymentStatus.CANCELLED)
            record_gateway_call(o, result, None, now)
            o.payment.status = PaymentStatus.CANCELLED
            o.payment.cancelled_at = now
            o.payment.next_retry_at = None
            o.add_timeline("payment_cancelled", message)
            return [_payment_event(o, OrderEventType.PAYMENT_CANCELLED, reason=message)]

        await self.order_service.mutate(order.order_id, apply, readiness_handled=True)
        logger.info(f"Hold released for order {order.order_number}: {message}")
        return CaptureResult(
            order_id=order.order_id,
            kind=CaptureOutcome.CANCELLED,
            success=True,
            payment_status=PaymentStatus.CANCELLED,
        )

    async def _handle_failure(self, order_id: str, result: GatewayResult, amount: Optional[Decimal]) -> CaptureResult:
        kind = classify_failure(result)
        now = self.clock()

        def apply(o: Order) -> List[OrderEvent]:
            record_gateway_call(o, result, amount, now)
            p = o.payment
            if kind == FailureKind.RETRYABLE:
                decision = self.retry_policy.decide(p.retry_count, now, p.max_retries)
                p.retry_errors.append(RetryErrorEntry(
                    attempt=p.retry_count + 1, error=result.error or "unknown", code=p.last_error_code, at=now,
                ))
                del p.retry_errors[:-MAX_RETRY_ERRORS]
                if decision.retry:
                    assert_payment_transition(p.status, PaymentStatus.RETRY_PENDING)
                    p.status = PaymentStatus.RETRY_PENDING
                    p.retry_count = decision.retry_count
                    p.next_retry_at = decision.next_retry_at
                    o.add_timeline(
                        "retry_pending",
                        f"Charge attempt failed ({result.error}); retry {p.retry_count}/{p.max_retries} "
                        f"at {p.next_retry_at.isoformat()}",
                    )
                    return [_payment_event(o, OrderEventType.PAYMENT_RETRY_SCHEDULED,
                                           retry_count=p.retry_count, error=result.error)]
                p.retry_count = decision.retry_count
                message = f"Charge failed after {p.retry_count} attempts: {result.error}"
            else:
                message = f"Charge failed: {result.error}"

            assert_payment_transition(p.status, PaymentStatus.FAILED)
            p.status = PaymentStatus.FAILED
            p.failed_at = now
            p.next_retry_at = None
            o.add_timeline("failed", message)
            return [_payment_event(o, OrderEventType.PAYMENT_FAILED, error=result.error, kind=kind.value)]

        order = await self.order_service.mutate(order_id, apply, readiness_handled=True)
        p = order.payment
        if p.status == PaymentStatus.RETRY_PENDING:
            logger.warning(f"⚠️  Order {order.order_number} charge failed ({result.error}), retry at {p.next_retry_at}")
            return CaptureResult(
                order_id=order_id,
                kind=CaptureOutcome.RETRY,
                will_retry=True,
                retry_at=p.next_retry_at,
                retry_count=p.retry_count,
                error=result.error,
                error_code=p.last_error_code,
                payment_status=p.status,
            )

        logger.error(f"❌ Order {order.order_number} charge failed ({kind.value}): {result.error}")
        return CaptureResult(
            order_id=order_id,
            kind=CaptureOutcome.FAILED,
            retry_count=p.retry_count,
            error=result.error,
            error_code=p.last_error_code,
            payment_status=p.status,
        )

    # ====================
    # Cancel / query
    # ====================

    async def cancel_transaction(self, transaction_id: str) -> CancelResult:
        """Release a hold at the gateway; does not touch any order"""
        if not transaction_id:
            raise OrderValidationError("Transaction id is required")
        result = await self.gateway.cancel(transaction_id)
        if result.success:
            logger.info(f"Gateway transaction {transaction_id} cancelled")
        else:
            logger.warning(f"⚠️  Cancel of {transaction_id} failed: {result.code} {result.error}")
        return CancelResult(
            success=result.success,
            transaction_id=transaction_id,
            error=result.error,
            error_code=result.code,
        )

    async def cancel_hold(self, order_id: str, reason: str, actor: str) -> CancelResult:
        """
        Staff cancel a whole order before capture: release the hold and
        cancel every remaining item.
        """
        if not reason or not reason.strip():
            raise OrderValidationError("Cancellation reason is required")

        if self.locks is None:
            return await self._cancel_hold_locked(order_id, reason.strip(), actor)

        async with self.locks.lock(charge_lock_key(order_id)) as acquired:
            if not acquired:
                return CancelResult(success=False, error="Order is being charged right now; try again shortly")
            return await self._cancel_hold_locked(order_id, reason.strip(), actor)

    async def _cancel_hold_locked(self, order_id: str, reason: str, actor: str) -> CancelResult:
        order = await self.order_service.load(order_id)
        payment = order.payment
        if payment.status not in HOLDABLE_STATUSES:
            raise InvariantViolationError(f"Payment is {payment.status.value}; there is no hold to cancel")
        if not payment.hyp_transaction_id:
            raise InvariantViolationError("No gateway transaction reference")

        result = await self.gateway.cancel(payment.hyp_transaction_id)
        now = self.clock()
        if not result.success:
            def record(o: Order) -> List[OrderEvent]:
                record_gateway_call(o, result, None, now)
                return []

            await self.order_service.mutate(order_id, record, readiness_handled=True)
            return CancelResult(
                success=False,
                transaction_id=payment.hyp_transaction_id,
                error=result.error,
                error_code=result.code,
            )

        def apply(o: Order) -> List[OrderEvent]:
            assert_payment_transition(o.payment.status, PaymentStatus.CANCELLED)
            record_gateway_call(o, result, None, now)
            events = []
            for item in o.items:
                if not item.is_cancelled and item.item_status not in NON_CANCELLABLE_ITEM_STATUSES:
                    events.append(self.order_service.apply_cancel(o, item.item_id, reason, actor))
            o.payment.status = PaymentStatus.CANCELLED
            o.payment.cancelled_at = now
            o.payment.next_retry_at = None
            o.add_timeline("payment_cancelled", f"Order cancelled by {actor}: {reason}", actor=actor)
            events.append(_payment_event(o, OrderEventType.PAYMENT_CANCELLED, reason=reason))
            return events

        await self.order_service.mutate(order_id, apply, readiness_handled=True)
        logger.info(f"Order {order.order_number} cancelled before capture by {actor}")
        return CancelResult(success=True, transaction_id=payment.hyp_transaction_id)

    async def query_transaction(self, transaction_id: str) -> TransactionQueryResult:
        result = await self.gateway.query(transaction_id)
        return TransactionQueryResult(
            exists=result.success,
            transaction_id=result.transaction_id or transaction_id,
            status=result.raw.get("Status"),
            amount=result.raw.get("Amount"),
            error=result.error,
        )


__all__ = [
    "CHARGE_LOCK_PREFIX",
    "PaymentService",
    "charge_lock_key",
    "record_gateway_call",
]
