"""
Order Service Event Models

Pydantic models for events emitted to post-commit handlers
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class OrderEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ITEM_ORDERED = "order.item.ordered"
    ITEM_CANCELLED = "order.item.cancelled"
    ITEM_STATUS_CHANGED = "order.item.status_changed"
    ITEMS_BULK_UPDATED = "order.items.bulk_updated"
    READY_TO_CHARGE = "order.payment.ready_to_charge"
    PAYMENT_HELD = "order.payment.held"
    PAYMENT_CHARGED = "order.payment.charged"
    PAYMENT_CANCELLED = "order.payment.cancelled"
    PAYMENT_FAILED = "order.payment.failed"
    PAYMENT_RETRY_SCHEDULED = "order.payment.retry_scheduled"
    REFUND_PROCESSED = "order.refund.processed"
    REFUND_FAILED = "order.refund.failed"


class OrderEvent(BaseModel):
    """Emitted after an order write has committed"""
    event_type: OrderEventType
    order_id: str
    order_number: Optional[str] = None
    user_id: Optional[str] = None
    item_id: Optional[str] = None
    payment_status: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
