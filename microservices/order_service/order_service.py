"""
Order Service Business Logic

Order lifecycle for the dropship workflow: staff order items from suppliers
or cancel them, customers cancel pending items, and once every item is
decided the order's payment moves from hold to ready_to_charge exactly once.
"""

import logging
import random
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from core.distributed_lock import DistributedLockManager, charge_lock_key
from core.ttl_cache import TTLCache

from .events.models import OrderEvent, OrderEventType
from .events.publishers import dispatch_post_commit
from .models import (
    BulkUpdateRequest,
    Cancellation,
    ItemStatus,
    ItemStatusChange,
    Order,
    OrderCreateRequest,
    OrderItem,
    OrderResponse,
    PaymentStatus,
    SupplierOrder,
    SupplierOrderRequest,
    money,
    utc_now,
)
from .protocols import (
    ConcurrentModificationError,
    DuplicateOrderError,
    InvalidItemTransitionError,
    OrderNotFoundError,
    OrderRepositoryProtocol,
    OrderServiceError,
    OrderValidationError,
    PaymentBusyError,
    PostCommitHandler,
)
from .readiness import all_items_cancelled, build_pricing, chargeable_amount, is_ready, refresh_derived
from .state_machine import (
    CAPTURABLE_STATUSES,
    NON_CANCELLABLE_ITEM_STATUSES,
    REFUNDABLE_STATUSES,
    assert_item_transition,
)

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "AM"
MAX_ORDER_NUMBER_ATTEMPTS = 10
MAX_SAVE_ATTEMPTS = 3

# Applies one change to a freshly loaded order and returns the events it produced
Mutation = Callable[[Order], List[OrderEvent]]


def _event(order: Order, event_type: OrderEventType, item_id: Optional[str] = None, **data) -> OrderEvent:
    return OrderEvent(
        event_type=event_type,
        order_id=order.order_id,
        order_number=order.order_number,
        user_id=order.user_id,
        item_id=item_id,
        payment_status=order.payment.status.value,
        data=data,
    )


class OrderService:
    """
    Order management business logic service

    Every write goes through ``persist``: derived fields are recomputed,
    the document is saved optimistically, readiness is re-checked and
    post-commit handlers run.
    """

    def __init__(
        self,
        repository: OrderRepositoryProtocol,
        cache: Optional[TTLCache] = None,
        post_commit_handlers: Optional[List[PostCommitHandler]] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
        locks: Optional[DistributedLockManager] = None,
    ):
        """
        Initialize Order Service

        Args:
            repository: Order repository (injected)
            cache: Read cache for get_order (optional)
            post_commit_handlers: Async callables invoked after each committed write
            clock: Time source for derived fields
            rng: Random source for order numbers
            locks: Charge lock shared with the capture path; item decisions
                on a capturable order wait for it
        """
        self.repository = repository
        self.cache = cache
        self.post_commit_handlers: List[PostCommitHandler] = list(post_commit_handlers or [])
        self.clock = clock
        self.rng = rng or random.SystemRandom()
        self.locks = locks

        logger.info("✅ OrderService initialized")

    def add_post_commit_handler(self, handler: PostCommitHandler) -> None:
        self.post_commit_handlers.append(handler)

    # ====================
    # Persistence helpers
    # ====================

    def _cache_key(self, order_id: str) -> str:
        return f"order:{order_id}"

    def _invalidate(self, order_id: str) -> None:
        if self.cache is not None:
            self.cache.delete(self._cache_key(order_id))

    async def load(self, order_id: str) -> Order:
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        return order

    async def persist(self, order: Order, events: List[OrderEvent], readiness_handled: bool = False) -> Order:
        """
        Save a mutated order and run its post-commit work.

        When the caller does not follow up with try_mark_ready itself, the
        readiness check runs here as a fallback, gated on payment hold.
        """
        refresh_derived(order, self.clock())
        saved = await self.repository.save(order)
        self._invalidate(order.order_id)

        if not readiness_handled:
            promoted = await self._readiness_safety_net(saved)
            if promoted is not None:
                saved = promoted
                events.append(_event(saved, OrderEventType.READY_TO_CHARGE, amount=str(chargeable_amount(saved))))

        await dispatch_post_commit(self.post_commit_handlers, events)
        return saved

    async def mutate(self, order_id: str, mutation: Mutation, readiness_handled: bool = False) -> Order:
        """
        Load, apply and persist; on a version conflict reload and re-apply.

        The mutation must be synchronous and free of external side effects
        since it may run more than once.
        """
        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            order = await self.load(order_id)
            events = mutation(order)
            try:
                return await self.persist(order, events, readiness_handled=readiness_handled)
            except ConcurrentModificationError as e:
                logger.info(f"Order {order_id} changed concurrently (attempt {attempt}): {e}")
        raise ConcurrentModificationError(f"Order {order_id} kept changing; gave up after {MAX_SAVE_ATTEMPTS} attempts")

    # ====================
    # Readiness
    # ====================

    def _ready_message(self, order: Order) -> str:
        if all_items_cancelled(order):
            return "All items cancelled - hold will be released"
        return f"All items decided - ready to charge {chargeable_amount(order)}"

    async def _readiness_safety_net(self, order: Order) -> Optional[Order]:
        if order.payment.status != PaymentStatus.HOLD or not is_ready(order):
            return None
        promoted = await self.repository.mark_ready_if_on_hold(order.order_id, self._ready_message(order))
        if promoted is not None:
            self._invalidate(order.order_id)
            logger.warning(f"⚠️  Readiness fallback moved order {order.order_number} to ready_to_charge")
        return promoted

    async def try_mark_ready(self, order_id: str) -> bool:
        """
        Move payment hold -> ready_to_charge if every item is decided.

        Safe to call any number of times concurrently; only one caller
        performs the transition.

        Returns:
            True if this call performed the transition
        """
        order = await self.repository.get_order(order_id)
        if order is None or order.payment.status != PaymentStatus.HOLD or not is_ready(order):
            return False

        promoted = await self.repository.mark_ready_if_on_hold(order_id, self._ready_message(order))
        if promoted is None:
            logger.info(f"Order {order.order_number} already left hold, nothing to do")
            return False

        self._invalidate(order_id)
        logger.info(f"✅ Order {order.order_number} ready to charge ({chargeable_amount(promoted)})")
        await dispatch_post_commit(
            self.post_commit_handlers,
            [_event(promoted, OrderEventType.READY_TO_CHARGE, amount=str(chargeable_amount(promoted)))],
        )
        return True

    # ====================
    # Order lifecycle
    # ====================

    async def _generate_order_number(self) -> str:
        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            candidate = f"{ORDER_NUMBER_PREFIX}{self.rng.randint(0, 99_999_999):08d}"
            if not await self.repository.order_number_exists(candidate):
                return candidate
        raise OrderServiceError("Could not generate a unique order number")

    async def create_order(self, request: OrderCreateRequest) -> OrderResponse:
        """Create an order; payment starts pending until the card is held"""
        items = [
            OrderItem(
                item_id=f"item_{uuid.uuid4().hex[:12]}",
                product_id=i.product_id,
                name=i.name,
                price=money(i.price),
                quantity=i.quantity,
                status_history=[ItemStatusChange(status=ItemStatus.PENDING, changed_by=request.user_id)],
            )
            for i in request.items
        ]

        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            order = Order(
                order_id=f"order_{uuid.uuid4().hex[:16]}",
                order_number=await self._generate_order_number(),
                user_id=request.user_id,
                customer=request.customer or {},
                items=items,
                pricing=build_pricing(items, request.shipping),
            )
            order.add_timeline("pending", "Order created", actor=request.user_id)
            refresh_derived(order, self.clock())
            try:
                created = await self.repository.create_order(order)
                break
            except DuplicateOrderError:
                logger.info(f"Order number {order.order_number} taken concurrently, regenerating")
        else:
            raise OrderServiceError("Could not allocate an order number")

        logger.info(f"Order created: {created.order_number} for user {request.user_id} ({created.pricing.total})")
        await dispatch_post_commit(
            self.post_commit_handlers,
            [_event(created, OrderEventType.ORDER_CREATED, total=str(created.pricing.total))],
        )
        return OrderResponse(success=True, order=created, message="Order created successfully")

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Get order by ID"""
        if self.cache is not None:
            cached = self.cache.get(self._cache_key(order_id))
            if cached is not None:
                return cached.model_copy(deep=True)
        order = await self.repository.get_order(order_id)
        if order is not None and self.cache is not None:
            self.cache.set(self._cache_key(order_id), order.model_copy(deep=True))
        return order

    # ====================
    # Item mutations (pure, applied inside mutate)
    # ====================

    @staticmethod
    def _require_item(order: Order, item_id: str) -> OrderItem:
        item = order.get_item(item_id)
        if item is None:
            raise OrderNotFoundError(f"Item {item_id} not found in order {order.order_number}")
        return item

    def _apply_supplier_order(self, order: Order, item_id: str, request: SupplierOrderRequest) -> OrderEvent:
        item = self._require_item(order, item_id)
        if item.is_cancelled:
            raise InvalidItemTransitionError(f"Item {item.name} is cancelled")
        assert_item_transition(item.item_status, ItemStatus.ORDERED)

        now = self.clock()
        item.item_status = ItemStatus.ORDERED
        item.supplier_order = SupplierOrder(
            ordered_at=now,
            ordered_by=request.actor,
            supplier_name=request.supplier_name,
            supplier_order_number=request.supplier_order_number,
            actual_cost=request.actual_cost,
        )
        item.status_history.append(ItemStatusChange(status=ItemStatus.ORDERED, changed_at=now, changed_by=request.actor))
        order.add_timeline("item_ordered", f"Item '{item.name}' ordered from supplier", actor=request.actor)
        return _event(order, OrderEventType.ITEM_ORDERED, item_id=item_id, supplier=request.supplier_name)

    def apply_cancel(
        self,
        order: Order,
        item_id: str,
        reason: str,
        actor: str,
        requested_by_customer: bool = False,
        only_if_pending: bool = False,
    ) -> OrderEvent:
        item = self._require_item(order, item_id)
        if item.is_cancelled:
            raise InvalidItemTransitionError(f"Item {item.name} is already cancelled")
        if item.item_status in NON_CANCELLABLE_ITEM_STATUSES:
            raise InvalidItemTransitionError(f"Item {item.name} is {item.item_status.value} and cannot be cancelled")
        if only_if_pending and item.item_status != ItemStatus.PENDING:
            raise OrderValidationError(f"Item {item.name} was already ordered from the supplier")
        if order.payment.status in REFUNDABLE_STATUSES or order.payment.status == PaymentStatus.FULL_REFUND:
            raise OrderValidationError("Order was already charged - cancel the item through a refund")

        now = self.clock()
        item.item_status = ItemStatus.CANCELLED
        item.cancellation = Cancellation(
            cancelled=True,
            reason=reason,
            cancelled_by=actor,
            cancelled_at=now,
            refund_amount=item.line_total,
            refund_processed=False,
            requested_by_customer=requested_by_customer,
        )
        item.status_history.append(ItemStatusChange(status=ItemStatus.CANCELLED, changed_at=now, changed_by=actor, notes=reason))
        order.add_timeline("item_cancelled", f"Item '{item.name}' cancelled: {reason}", actor=actor)
        return _event(order, OrderEventType.ITEM_CANCELLED, item_id=item_id, reason=reason, by_customer=requested_by_customer)

    def _apply_status(self, order: Order, item_id: str, status: ItemStatus, actor: str, notes: Optional[str]) -> OrderEvent:
        item = self._require_item(order, item_id)
        assert_item_transition(item.item_status, status)
        now = self.clock()
        previous = item.item_status
        item.item_status = status
        item.status_history.append(ItemStatusChange(status=status, changed_at=now, changed_by=actor, notes=notes))
        order.add_timeline("item_status", f"Item '{item.name}': {previous.value} -> {status.value}", actor=actor)
        return _event(order, OrderEventType.ITEM_STATUS_CHANGED, item_id=item_id, old=previous.value, new=status.value)

    @staticmethod
    def _validate_reason(reason: Optional[str]) -> str:
        if not reason or not reason.strip():
            raise OrderValidationError("Cancellation reason is required")
        return reason.strip()

    async def _decide(self, order_id: str, mutation: Mutation, message: str) -> OrderResponse:
        """
        Persist an item decision, then attempt the readiness transition.

        Once the order is capturable the decision changes what the scheduler
        will charge, so it is made under the order's charge lock.
        """
        if self.locks is None:
            return await self._apply_decision(order_id, mutation, message, charge_locked=True)

        current = await self.repository.get_order(order_id)
        if current is None or current.payment.status not in CAPTURABLE_STATUSES:
            return await self._apply_decision(order_id, mutation, message, charge_locked=False)

        async with self.locks.lock(charge_lock_key(order_id)) as acquired:
            if not acquired:
                logger.info(f"Order {current.order_number} is being charged, item decision deferred")
                return OrderResponse(
                    success=False,
                    message="Payment capture in progress; try again shortly",
                    error_code="PAYMENT_BUSY",
                )
            return await self._apply_decision(order_id, mutation, message, charge_locked=True)

    async def _apply_decision(self, order_id: str, mutation: Mutation, message: str, charge_locked: bool) -> OrderResponse:
        def guarded(order: Order) -> List[OrderEvent]:
            # Became capturable after the pre-check
            if not charge_locked and order.payment.status in CAPTURABLE_STATUSES:
                raise PaymentBusyError(f"Order {order.order_number} became ready to charge")
            return mutation(order)

        try:
            order = await self.mutate(order_id, guarded, readiness_handled=True)
        except OrderNotFoundError as e:
            return OrderResponse(success=False, message=str(e), error_code="ORDER_NOT_FOUND")
        except OrderValidationError as e:
            return OrderResponse(success=False, message=str(e), error_code="VALIDATION_ERROR")
        except PaymentBusyError as e:
            return OrderResponse(success=False, message=f"{e}; try again shortly", error_code="PAYMENT_BUSY")

        ready = await self.try_mark_ready(order_id)
        if ready:
            order = await self.load(order_id)
        return OrderResponse(success=True, order=order, message=message, ready_to_charge=ready)

    # ====================
    # Item operations
    # ====================

    async def order_from_supplier(self, order_id: str, item_id: str, request: SupplierOrderRequest) -> OrderResponse:
        """Staff ordered the item upstream: pending -> ordered"""
        return await self._decide(
            order_id,
            lambda order: [self._apply_supplier_order(order, item_id, request)],
            "Item ordered from supplier",
        )

    async def cancel_item(
        self,
        order_id: str,
        item_id: str,
        reason: Optional[str],
        actor: str,
    ) -> OrderResponse:
        """Staff cancelled the item before capture"""
        try:
            reason = self._validate_reason(reason)
        except OrderValidationError as e:
            return OrderResponse(success=False, message=str(e), error_code="VALIDATION_ERROR")
        return await self._decide(
            order_id,
            lambda order: [self.apply_cancel(order, item_id, reason, actor)],
            "Item cancelled",
        )

    async def request_item_cancellation(
        self,
        order_id: str,
        item_id: str,
        user_id: str,
        reason: Optional[str],
    ) -> OrderResponse:
        """Customer cancels an item that was not yet ordered from the supplier"""
        try:
            reason = self._validate_reason(reason)
        except OrderValidationError as e:
            return OrderResponse(success=False, message=str(e), error_code="VALIDATION_ERROR")

        def mutation(order: Order) -> List[OrderEvent]:
            if order.user_id != user_id:
                raise OrderNotFoundError(f"Order not found: {order_id}")
            return [self.apply_cancel(
                order, item_id, reason, actor=f"customer:{user_id}",
                requested_by_customer=True, only_if_pending=True,
            )]

        return await self._decide(order_id, mutation, "Item cancellation accepted")

    async def update_item_status(
        self,
        order_id: str,
        item_id: str,
        status: ItemStatus,
        actor: str,
        notes: Optional[str] = None,
    ) -> OrderResponse:
        """Forward-only status progression for one item"""
        if status == ItemStatus.CANCELLED:
            return await self.cancel_item(order_id, item_id, notes, actor)
        if status == ItemStatus.ORDERED:
            return await self.order_from_supplier(order_id, item_id, SupplierOrderRequest(actor=actor))
        return await self._decide(
            order_id,
            lambda order: [self._apply_status(order, item_id, status, actor, notes)],
            f"Item status updated to {status.value}",
        )

    async def bulk_update_items(self, order_id: str, request: BulkUpdateRequest) -> OrderResponse:
        """
        Apply several item changes in one write.

        Either every change applies or none does; readiness is evaluated
        once after the write.
        """
        def mutation(order: Order) -> List[OrderEvent]:
            events = []
            for update in request.updates:
                if update.cancel or update.status == ItemStatus.CANCELLED:
                    reason = self._validate_reason(update.reason or update.notes)
                    events.append(self.apply_cancel(order, update.item_id, reason, request.actor))
                elif update.status == ItemStatus.ORDERED or update.supplier is not None:
                    supplier = update.supplier or SupplierOrderRequest(actor=request.actor)
                    events.append(self._apply_supplier_order(order, update.item_id, supplier))
                elif update.status is not None:
                    events.append(self._apply_status(order, update.item_id, update.status, request.actor, update.notes))
                else:
                    raise OrderValidationError(f"No change given for item {update.item_id}")
            events.append(_event(order, OrderEventType.ITEMS_BULK_UPDATED, count=len(request.updates)))
            return events

        return await self._decide(order_id, mutation, f"{len(request.updates)} item(s) updated")
