"""
Order Service Data Models

Pydantic models for the order aggregate: line items, pricing, the embedded
payment sub-document, derived progress fields, timeline and refunds.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

TWO_PLACES = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Quantize an amount to 2 decimal places"""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ====================
# Enums
# ====================

class ItemStatus(str, Enum):
    """Line item fulfillment status"""
    PENDING = "pending"
    ORDERED = "ordered"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    SHIPPED_TO_CUSTOMER = "shipped_to_customer"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Older documents carry the pre-simplification status names
DEPRECATED_ITEM_STATUSES: Dict[str, ItemStatus] = {
    "ordered_from_supplier": ItemStatus.ORDERED,
    "arrived_us_warehouse": ItemStatus.IN_TRANSIT,
    "shipped_to_israel": ItemStatus.IN_TRANSIT,
    "customs_israel": ItemStatus.IN_TRANSIT,
    "arrived_israel": ItemStatus.ARRIVED,
    "ready_for_delivery": ItemStatus.ARRIVED,
    "shipped": ItemStatus.SHIPPED_TO_CUSTOMER,
    "refunded": ItemStatus.CANCELLED,
}


class PaymentStatus(str, Enum):
    """Payment lifecycle status"""
    PENDING = "pending"
    HOLD = "hold"
    READY_TO_CHARGE = "ready_to_charge"
    RETRY_PENDING = "retry_pending"
    CHARGED = "charged"
    PARTIAL_REFUND = "partial_refund"
    FULL_REFUND = "full_refund"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderStatus(str, Enum):
    """Business fulfillment status, independent of payment"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    READY_TO_SHIP = "ready_to_ship"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OverallProgress(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


# ====================
# Order Item
# ====================

class Cancellation(BaseModel):
    cancelled: bool = False
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: Decimal = Decimal("0")
    refund_processed: bool = False
    requested_by_customer: bool = False


class SupplierOrder(BaseModel):
    ordered_at: datetime = Field(default_factory=utc_now)
    ordered_by: Optional[str] = None
    supplier_name: Optional[str] = None
    supplier_order_number: Optional[str] = None
    actual_cost: Optional[Decimal] = None


class ItemStatusChange(BaseModel):
    status: ItemStatus
    changed_at: datetime = Field(default_factory=utc_now)
    changed_by: Optional[str] = None
    notes: Optional[str] = None


class OrderItem(BaseModel):
    """Line item owned by exactly one order"""
    item_id: str
    product_id: Optional[str] = None
    name: str
    price: Decimal
    quantity: int = 1
    item_status: ItemStatus = ItemStatus.PENDING
    cancellation: Optional[Cancellation] = None
    supplier_order: Optional[SupplierOrder] = None
    status_history: List[ItemStatusChange] = Field(default_factory=list)

    @field_validator("item_status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str) and v in DEPRECATED_ITEM_STATUSES:
            return DEPRECATED_ITEM_STATUSES[v]
        return v

    @property
    def is_cancelled(self) -> bool:
        return bool(self.cancellation and self.cancellation.cancelled) or self.item_status == ItemStatus.CANCELLED

    @property
    def line_total(self) -> Decimal:
        return money(self.price * self.quantity)


# ====================
# Pricing / Payment
# ====================

class Pricing(BaseModel):
    subtotal: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    adjusted_total: Optional[Decimal] = None
    total_refunds: Decimal = Decimal("0")


class RetryErrorEntry(BaseModel):
    attempt: int
    error: str
    code: Optional[str] = None
    at: datetime = Field(default_factory=utc_now)


class PaymentHistoryEntry(BaseModel):
    """One gateway operation against this order"""
    action: str
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    success: bool
    code: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class Payment(BaseModel):
    """Embedded payment sub-document"""
    status: PaymentStatus = PaymentStatus.PENDING
    method: str = "credit_card"

    hyp_transaction_id: Optional[str] = None
    hyp_auth_code: Optional[str] = None
    hyp_uid: Optional[str] = None
    hyp_token: Optional[str] = None
    hyp_token_month: Optional[str] = None
    hyp_token_year: Optional[str] = None

    hold_amount: Decimal = Decimal("0")
    charged_amount: Decimal = Decimal("0")
    refunded_amount: Decimal = Decimal("0")

    hold_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    charged_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    retry_errors: List[RetryErrorEntry] = Field(default_factory=list)

    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_at: Optional[datetime] = None

    history: List[PaymentHistoryEntry] = Field(default_factory=list)


# ====================
# Derived / Logs
# ====================

class ComputedFields(BaseModel):
    """Materialized projections, recomputed on every write"""
    overall_progress: OverallProgress = OverallProgress.PENDING
    completion_percentage: int = 0
    has_active_items: bool = True
    all_items_delivered: bool = False
    active_item_count: int = 0
    cancelled_item_count: int = 0
    needs_attention: bool = False
    last_computed_at: Optional[datetime] = None


class TimelineEntry(BaseModel):
    status: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    actor: Optional[str] = None


class RefundRecord(BaseModel):
    refund_id: str
    amount: Decimal
    reason: str
    items: List[str] = Field(default_factory=list)
    processed_by: Optional[str] = None
    processed_at: datetime = Field(default_factory=utc_now)
    status: RefundStatus
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    invoice_number: Optional[str] = None
    error: Optional[str] = None


class CustomerInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


# ====================
# Order Aggregate
# ====================

class Order(BaseModel):
    """Root aggregate"""
    order_id: str
    order_number: str
    user_id: str
    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    items: List[OrderItem] = Field(default_factory=list)
    pricing: Pricing = Field(default_factory=Pricing)
    payment: Payment = Field(default_factory=Payment)
    status: OrderStatus = OrderStatus.PENDING
    computed: ComputedFields = Field(default_factory=ComputedFields)
    timeline: List[TimelineEntry] = Field(default_factory=list)
    refunds: List[RefundRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    def get_item(self, item_id: str) -> Optional[OrderItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None

    def add_timeline(self, status: str, message: str, actor: Optional[str] = None) -> TimelineEntry:
        entry = TimelineEntry(status=status, message=message, actor=actor)
        self.timeline.append(entry)
        return entry


# ====================
# Request Models
# ====================

class OrderItemCreate(BaseModel):
    product_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)


class OrderCreateRequest(BaseModel):
    """Create order request"""
    user_id: str = Field(..., description="Customer placing the order")
    items: List[OrderItemCreate] = Field(..., min_length=1)
    shipping: Decimal = Field(default=Decimal("0"), ge=0)
    customer: Optional[CustomerInfo] = None


class SupplierOrderRequest(BaseModel):
    supplier_name: Optional[str] = None
    supplier_order_number: Optional[str] = None
    actual_cost: Optional[Decimal] = Field(None, ge=0)
    actor: str = Field(..., description="Staff member ordering from supplier")


class CancelItemRequest(BaseModel):
    reason: str = Field(..., description="Cancellation reason")
    actor: str


class CustomerCancelRequest(BaseModel):
    user_id: str
    reason: str


class ItemStatusUpdateRequest(BaseModel):
    status: ItemStatus
    actor: str
    notes: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if isinstance(v, str) and v in DEPRECATED_ITEM_STATUSES:
            return DEPRECATED_ITEM_STATUSES[v]
        return v


class BulkItemUpdate(BaseModel):
    """One change inside a bulk update; set either status or cancel"""
    item_id: str
    status: Optional[ItemStatus] = None
    cancel: bool = False
    reason: Optional[str] = None
    notes: Optional[str] = None
    supplier: Optional[SupplierOrderRequest] = None


class BulkUpdateRequest(BaseModel):
    updates: List[BulkItemUpdate] = Field(..., min_length=1)
    actor: str


# ====================
# Response Models
# ====================

class OrderResponse(BaseModel):
    """Order operation response"""
    success: bool
    order: Optional[Order] = None
    message: str
    error_code: Optional[str] = None
    ready_to_charge: bool = False


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
