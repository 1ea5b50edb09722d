"""
Hyp Pay Gateway Client

Async HTTP adapter for the Hyp Pay card-processing API. Requests and
responses are URL-encoded key/value pairs; the ``action`` parameter selects
the operation and every operation has its own success-code table.
"""

import logging
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, FrozenSet, List, Optional
from urllib.parse import parse_qsl

import httpx

from core.config import HypGatewayConfig

from ..models import CardDetails, GatewayOperation, GatewayResult
from ..protocols import GatewayNotConfiguredError

logger = logging.getLogger(__name__)

ACTIONS: Dict[GatewayOperation, str] = {
    GatewayOperation.HOLD: "soft",
    GatewayOperation.PARTIAL_CAPTURE: "soft",
    GatewayOperation.CARD_CREDIT: "soft",
    GatewayOperation.COMMIT: "commitTrans",
    GatewayOperation.CANCEL: "CancelTrans",
    GatewayOperation.REFUND_BY_TRANSACTION: "zikoyAPI",
    GatewayOperation.QUERY: "QueryTrans",
}

# 700/800 mean "J5 hold accepted" and only count for a hold;
# 250 is commitTrans "captured with warning"
SUCCESS_CODES: Dict[GatewayOperation, FrozenSet[str]] = {
    GatewayOperation.HOLD: frozenset({"0", "700", "800"}),
    GatewayOperation.PARTIAL_CAPTURE: frozenset({"0"}),
    GatewayOperation.CARD_CREDIT: frozenset({"0"}),
    GatewayOperation.COMMIT: frozenset({"0", "250"}),
    GatewayOperation.CANCEL: frozenset({"0"}),
    GatewayOperation.REFUND_BY_TRANSACTION: frozenset({"0"}),
    GatewayOperation.QUERY: frozenset({"0"}),
}

ERROR_MESSAGES: Dict[str, str] = {
    "1": "Card blocked",
    "2": "Card reported stolen",
    "3": "Contact the card issuer",
    "4": "Transaction declined",
    "5": "Counterfeit card",
    "6": "Communication failure",
    "7": "Invalid CVV",
    "33": "Invalid card",
    "36": "Card expired",
    "39": "Card details error",
    "51": "Insufficient credit",
    "54": "Card expired",
    "57": "Operation not allowed for this card",
    "58": "Operation not allowed for this terminal",
    "61": "Amount exceeds credit limit",
    "62": "Restricted card",
    "65": "Transaction count limit exceeded",
    "75": "Invalid CVV - try again",
    "79": "Card not in use",
    "96": "System fault",
}

CARD_NUMBER_RE = re.compile(r"^\d{13,19}$")
EXP_MONTH_RE = re.compile(r"^(0[1-9]|1[0-2])$")
EXP_YEAR_RE = re.compile(r"^\d{2}$")
CVV_RE = re.compile(r"^\d{3,4}$")

COIN_ILS = "1"


def is_success_code(operation: GatewayOperation, code: Optional[str]) -> bool:
    return code is not None and code in SUCCESS_CODES[operation]


def error_message(raw: Dict[str, str]) -> str:
    if raw.get("errMsg"):
        return raw["errMsg"]
    code = raw.get("CCode")
    return ERROR_MESSAGES.get(code, f"Unknown gateway error (code: {code})")


def parse_response(text: str) -> Dict[str, str]:
    """Gateway replies with a URL-encoded string"""
    return dict(parse_qsl(text.strip(), keep_blank_values=True))


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def to_agorot(amount: Decimal) -> str:
    return str(int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def validate_card_details(card: CardDetails) -> List[str]:
    """Return a list of problems; empty when the card input is usable"""
    errors = []
    if not CARD_NUMBER_RE.match(card.card_number or ""):
        errors.append("Invalid card number")
    if not EXP_MONTH_RE.match(card.exp_month or ""):
        errors.append("Invalid expiry month")
    if not EXP_YEAR_RE.match(card.exp_year or ""):
        errors.append("Invalid expiry year")
    if not CVV_RE.match(card.cvv or ""):
        errors.append("Invalid CVV")
    if not card.holder_id or len(card.holder_id) < 5:
        errors.append("Invalid card holder id")
    return errors


class HypPayClient:
    """Client for the Hyp Pay gateway"""

    def __init__(self, config: Optional[HypGatewayConfig] = None, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize Hyp Pay client

        Args:
            config: Terminal credentials and endpoint
            http_client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.config = config or HypGatewayConfig.from_env()
        self.client = http_client or httpx.AsyncClient(timeout=self.config.timeout)
        logger.info(f"HypPayClient initialized with api_url: {self.config.api_url}")

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _send(self, operation: GatewayOperation, params: Dict[str, Optional[str]]) -> GatewayResult:
        if not self.config.is_configured:
            raise GatewayNotConfiguredError("Hyp Pay credentials not configured (HYP_MASOF / HYP_PASSP)")

        action = ACTIONS[operation]
        form = {
            "Masof": self.config.masof,
            "PassP": self.config.passp,
            "UTF8": "True",
            "UTF8out": "True",
            "action": action,
        }
        form.update({k: str(v) for k, v in params.items() if v is not None})

        if self.config.test_mode:
            logger.debug(f"Hyp request action={action} amount={form.get('Amount')} order={form.get('Order')}")

        try:
            response = await self.client.post(
                self.config.api_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"❌ Hyp {action} failed: HTTP {e.response.status_code}")
            return GatewayResult(
                operation=operation,
                success=False,
                http_status=e.response.status_code,
                error=f"HTTP {e.response.status_code}",
            )
        except httpx.TransportError as e:
            # Covers timeouts, connect and read errors
            logger.error(f"❌ Hyp {action} transport error: {e.__class__.__name__}: {e}")
            return GatewayResult(
                operation=operation,
                success=False,
                transport_error=True,
                error=f"{e.__class__.__name__}: {e}",
            )

        raw = parse_response(response.text)
        code = raw.get("CCode")
        success = is_success_code(operation, code)

        if self.config.test_mode:
            logger.debug(f"Hyp response action={action} CCode={code} success={success} Id={raw.get('Id')}")

        return GatewayResult(
            operation=operation,
            success=success,
            code=code,
            transaction_id=raw.get("Id"),
            auth_code=raw.get("ACode"),
            uid=raw.get("UID"),
            token=raw.get("Token"),
            token_month=raw.get("Tmonth"),
            token_year=raw.get("Tyear"),
            invoice_number=raw.get("HeshASM") or raw.get("Hesh"),
            http_status=response.status_code,
            error=None if success else error_message(raw),
            raw=raw,
        )

    # ====================
    # Operations
    # ====================

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
        return await self._send(GatewayOperation.HOLD, {
            "Amount": format_amount(amount),
            "Postpone": "True",
            "Order": order_number,
            "Info": info,
            "UserId": card.holder_id,
            "ClientName": client_name or card.holder_name or "Customer",
            "email": email or "",
            "phone": phone or "",
            "CC": card.card_number,
            "Tmonth": card.exp_month,
            "Tyear": card.exp_year,
            "cvv": card.cvv,
            "Coin": COIN_ILS,
        })

    async def capture_full(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        return await self._send(GatewayOperation.COMMIT, {
            "TransId": transaction_id,
            "Amount": format_amount(amount),
        })

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
        params = {
            "Amount": format_amount(amount),
            "inputObj.originalUid": original_uid,
            "inputObj.originalAmount": to_agorot(original_amount),
            "AuthNum": auth_code,
            "inputObj.authorizationCodeManpik": "7",
            "Coin": COIN_ILS,
            "Order": order_number,
            "Info": info,
        }
        if token:
            params.update({"CC": token, "Token": "True", "Tmonth": token_month, "Tyear": token_year})
        return await self._send(GatewayOperation.PARTIAL_CAPTURE, params)

    async def cancel(self, transaction_id: str) -> GatewayResult:
        return await self._send(GatewayOperation.CANCEL, {"TransId": transaction_id})

    async def refund(self, order_number: str, amount: Decimal, card: CardDetails, info: str) -> GatewayResult:
        return await self._send(GatewayOperation.CARD_CREDIT, {
            "Amount": f"-{format_amount(amount)}",
            "CC": card.card_number,
            "Tmonth": card.exp_month.zfill(2),
            "Tyear": card.exp_year,
            "Cvv": card.cvv,
            "UserId": card.holder_id,
            "Coin": COIN_ILS,
            "Order": order_number,
            "Info": info,
        })

    async def refund_by_transaction(self, transaction_id: str, amount: Decimal) -> GatewayResult:
        return await self._send(GatewayOperation.REFUND_BY_TRANSACTION, {
            "TransId": transaction_id,
            "Amount": format_amount(amount),
        })

    async def query(self, transaction_id: str) -> GatewayResult:
        return await self._send(GatewayOperation.QUERY, {"TransId": transaction_id})
