"""
Payment Service Data Models

Gateway results, card input, capture/refund outcomes and scheduler stats.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from microservices.order_service.models import PaymentStatus, RefundRecord


class GatewayOperation(str, Enum):
    """Gateway calls; each has its own success-code table"""
    HOLD = "hold"
    PARTIAL_CAPTURE = "partial_capture"
    CARD_CREDIT = "card_credit"
    COMMIT = "commit"
    CANCEL = "cancel"
    REFUND_BY_TRANSACTION = "refund_by_transaction"
    QUERY = "query"


class FailureKind(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class CaptureOutcome(str, Enum):
    CHARGED = "charged"
    CANCELLED = "cancelled"
    RETRY = "retry"
    FAILED = "failed"
    ERROR = "error"


# ====================
# Card input
# ====================

class CardDetails(BaseModel):
    """Raw card data; never persisted or logged"""
    card_number: str
    exp_month: str
    exp_year: str
    cvv: str
    holder_id: str
    holder_name: Optional[str] = None

    @field_validator("card_number", mode="before")
    @classmethod
    def strip_spaces(cls, v):
        return re.sub(r"\s", "", v) if isinstance(v, str) else v

    def __repr__(self) -> str:
        return f"CardDetails(****{self.card_number[-4:]})"

    __str__ = __repr__


# ====================
# Gateway
# ====================

class GatewayResult(BaseModel):
    """Normalized outcome of one gateway call"""
    operation: GatewayOperation
    success: bool
    code: Optional[str] = None
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    uid: Optional[str] = None
    token: Optional[str] = None
    token_month: Optional[str] = None
    token_year: Optional[str] = None
    invoice_number: Optional[str] = None
    http_status: Optional[int] = None
    transport_error: bool = False
    error: Optional[str] = None
    raw: Dict[str, str] = Field(default_factory=dict)


# ====================
# Operation results
# ====================

class HoldResult(BaseModel):
    success: bool
    order_id: str
    transaction_id: Optional[str] = None
    auth_code: Optional[str] = None
    uid: Optional[str] = None
    amount: Optional[Decimal] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class CaptureResult(BaseModel):
    """Outcome of one capture attempt for an order"""
    order_id: str
    kind: CaptureOutcome
    success: bool = False
    charged_amount: Optional[Decimal] = None
    partial: bool = False
    will_retry: bool = False
    retry_at: Optional[datetime] = None
    retry_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None


class CancelResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class TransactionQueryResult(BaseModel):
    exists: bool
    transaction_id: str
    status: Optional[str] = None
    amount: Optional[str] = None
    error: Optional[str] = None


class RefundCalculation(BaseModel):
    items_total: Decimal
    shipping_refund: Decimal
    requested_amount: Decimal
    max_refundable: Decimal
    amount: Decimal
    is_full_refund: bool
    item_ids: List[str] = Field(default_factory=list)
    capped: bool = False


class RefundResult(BaseModel):
    success: bool
    refund: Optional[RefundRecord] = None
    payment_status: Optional[PaymentStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class RefundEligibility(BaseModel):
    can_refund: bool
    reason: Optional[str] = None
    max_refundable: Decimal = Decimal("0")
    charged_amount: Decimal = Decimal("0")
    refunded_amount: Decimal = Decimal("0")
    payment_status: Optional[PaymentStatus] = None


class OrderRefundsResponse(BaseModel):
    order_id: str
    refunds: List[RefundRecord] = Field(default_factory=list)
    total_refunded: Decimal = Decimal("0")
    charged_amount: Decimal = Decimal("0")
    max_refundable: Decimal = Decimal("0")


class ChargeRunStats(BaseModel):
    """Statistics for one charge scheduler run"""
    processed: int = 0
    succeeded: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: int = 0
    retrying: int = 0
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0
    already_running: bool = False


# ====================
# Request Models
# ====================

class HoldRequest(BaseModel):
    card: CardDetails


class CancelHoldRequest(BaseModel):
    reason: str
    actor: str


class RefundRequest(BaseModel):
    item_ids: List[str] = Field(default_factory=list)
    reason: str
    actor: str
    card: Optional[CardDetails] = Field(None, description="Omit to refund against the captured transaction")
    custom_amount: Optional[Decimal] = Field(None, gt=0)


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
