"""
Payment Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from microservices.order_service.protocols import OrderServiceError, OrderValidationError

from .models import CardDetails, GatewayResult


# ====================
# Exceptions
# ====================

class PaymentServiceError(OrderServiceError):
    """Base exception for payment service errors"""
    pass


class CardValidationError(OrderValidationError):
    """Malformed card input"""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class GatewayNotConfiguredError(PaymentServiceError):
    """Terminal credentials missing"""
    pass


# ====================
# Gateway Protocol
# ====================

@runtime_checkable
class PaymentGatewayProtocol(Protocol):
    """
    Card-processing gateway primitives.

    Implementations never raise for declines or transport failures; those
    come back as unsuccessful GatewayResult values.
    """

    async def hold(
        self,
        order_number: str,
        amount: Decimal,
        card: CardDetails,
        info: str,
        client_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> GatewayResult:
        """J5 authorization (Postpone=True) reserving amount on the card"""
        ...

    async def capture_full(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        """commitTrans against the held transaction"""
        ...

    async def capture_partial(
        self,
        order_number: str,
        amount: Decimal,
        original_amount: Decimal,
        original_uid: str,
        auth_code: str,
        info: str,
        token: Optional[str] = None,
        token_month: Optional[str] = None,
        token_year: Optional[str] = None,
    ) -> GatewayResult:
        """Capture less than the hold, referencing the original authorization"""
        ...

    async def cancel(self, transaction_id: str) -> GatewayResult:
        """Release a hold"""
        ...

    async def refund(self, order_number: str, amount: Decimal, card: CardDetails, info: str) -> GatewayResult:
        """Credit the card (negative-amount charge)"""
        ...

    async def refund_by_transaction(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        """zikoyAPI refund against a captured transaction"""
        ...

    async def query(self, transaction_id: str) -> GatewayResult:
        """Transaction status lookup"""
        ...
