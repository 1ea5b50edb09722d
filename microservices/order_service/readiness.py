"""
Readiness and derived order fields

Pure functions over an Order. Nothing here touches persistence, so every
mutation path may call them speculatively and repeatedly.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from .models import (
    ComputedFields,
    ItemStatus,
    Order,
    OrderItem,
    OrderStatus,
    OverallProgress,
    Pricing,
    money,
    utc_now,
)

VAT_RATE = Decimal("0.18")

# An item past pending that was not cancelled went through "ordered"
DECIDED_ITEM_STATUSES = frozenset({
    ItemStatus.ORDERED,
    ItemStatus.IN_TRANSIT,
    ItemStatus.ARRIVED,
    ItemStatus.SHIPPED_TO_CUSTOMER,
    ItemStatus.DELIVERED,
})

PROGRESS_WEIGHTS = {
    ItemStatus.PENDING: 0,
    ItemStatus.ORDERED: 15,
    ItemStatus.IN_TRANSIT: 40,
    ItemStatus.ARRIVED: 70,
    ItemStatus.SHIPPED_TO_CUSTOMER: 85,
    ItemStatus.DELIVERED: 100,
}

STUCK_AFTER = timedelta(days=3)


def is_item_decided(item: OrderItem) -> bool:
    return item.is_cancelled or item.item_status in DECIDED_ITEM_STATUSES


def active_items(order: Order) -> List[OrderItem]:
    return [item for item in order.items if not item.is_cancelled]


def is_ready(order: Order) -> bool:
    """Every item ordered from the supplier or cancelled"""
    return bool(order.items) and all(is_item_decided(item) for item in order.items)


def all_items_cancelled(order: Order) -> bool:
    return bool(order.items) and all(item.is_cancelled for item in order.items)


def items_total(items: List[OrderItem]) -> Decimal:
    return money(sum((item.price * item.quantity for item in items), Decimal("0")))


def chargeable_amount(order: Order) -> Decimal:
    """
    Amount to capture: active line items plus shipping.

    Shipping is dropped once every item is cancelled.
    """
    active = active_items(order)
    shipping = order.pricing.shipping if active else Decimal("0")
    return money(items_total(active) + shipping)


def vat_included(total: Decimal) -> Decimal:
    """VAT portion of a VAT-inclusive amount"""
    return money(total * VAT_RATE / (1 + VAT_RATE))


def build_pricing(items: List[OrderItem], shipping: Decimal) -> Pricing:
    subtotal = items_total(items)
    total = money(subtotal + shipping)
    return Pricing(
        subtotal=subtotal,
        shipping=money(shipping),
        tax=vat_included(total),
        total=total,
        adjusted_total=total,
    )


def derive_order_status(order: Order) -> OrderStatus:
    if not order.items:
        return OrderStatus.PENDING
    active = active_items(order)
    if not active:
        return OrderStatus.CANCELLED

    statuses = [item.item_status for item in active]
    if all(s == ItemStatus.DELIVERED for s in statuses):
        return OrderStatus.DELIVERED
    if any(s in (ItemStatus.DELIVERED, ItemStatus.SHIPPED_TO_CUSTOMER) for s in statuses):
        return OrderStatus.SHIPPED
    if all(s == ItemStatus.ARRIVED for s in statuses):
        return OrderStatus.READY_TO_SHIP
    if any(s != ItemStatus.PENDING for s in statuses):
        return OrderStatus.IN_PROGRESS
    return OrderStatus.PENDING


def _last_change(item: OrderItem, order: Order) -> datetime:
    if item.status_history:
        return item.status_history[-1].changed_at
    return order.created_at


def compute_fields(order: Order, now: Optional[datetime] = None) -> ComputedFields:
    now = now or utc_now()
    active = active_items(order)
    cancelled_count = len(order.items) - len(active)

    if order.items and not active:
        progress = OverallProgress.CANCELLED
    elif active and all(i.item_status == ItemStatus.DELIVERED for i in active):
        progress = OverallProgress.COMPLETED
    elif all(i.item_status == ItemStatus.PENDING for i in active):
        progress = OverallProgress.PENDING
    else:
        progress = OverallProgress.IN_PROGRESS

    if active:
        completion = round(sum(PROGRESS_WEIGHTS[i.item_status] for i in active) / len(active))
    else:
        completion = 100 if order.items else 0

    stuck = any(
        i.item_status != ItemStatus.DELIVERED and now - _last_change(i, order) >= STUCK_AFTER
        for i in active
    )

    return ComputedFields(
        overall_progress=progress,
        completion_percentage=completion,
        has_active_items=bool(active),
        all_items_delivered=bool(active) and all(i.item_status == ItemStatus.DELIVERED for i in active),
        active_item_count=len(active),
        cancelled_item_count=cancelled_count,
        needs_attention=stuck,
        last_computed_at=now,
    )


def refresh_derived(order: Order, now: Optional[datetime] = None) -> Order:
    """
    Recompute adjusted pricing, business status and computed fields in
    place. Called by the service before every persisted write.
    """
    now = now or utc_now()
    adjusted = chargeable_amount(order)
    order.pricing.adjusted_total = adjusted
    order.pricing.tax = vat_included(adjusted)
    order.status = derive_order_status(order)
    order.computed = compute_fields(order, now)
    return order
