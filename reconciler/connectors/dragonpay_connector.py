"""
Dragonpay payment gateway connector.

Pay.aspx  - customer redirect carrying a SHA1 request digest
Query.aspx - status inquiry by our transaction id

Inquiry never raises: any transport or parsing problem is reported as an
"unknown" outcome so callers can treat it as "try again later".
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode
import asyncio
import hashlib
import secrets
import aiohttp
from reconciler.connectors.base_connector import BaseConnector
from reconciler.config import get_settings
from reconciler.errors import ExternalUnavailable
from reconciler.utils.helpers import format_amount
from reconciler.utils.logger import log

settings = get_settings()


class GatewayOutcome:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"
    REFUNDED = "refunded"
    CHARGEBACK = "chargeback"
    VOIDED = "voided"
    AUTHORIZED = "authorized"


STATUS_CODES = {
    "S": GatewayOutcome.SUCCEEDED,
    "F": GatewayOutcome.FAILED,
    "P": GatewayOutcome.PENDING,
    "U": GatewayOutcome.UNKNOWN,
    "R": GatewayOutcome.REFUNDED,
    "K": GatewayOutcome.CHARGEBACK,
    "V": GatewayOutcome.VOIDED,
    "A": GatewayOutcome.AUTHORIZED,
}


@dataclass
class PaymentIntent:
    transaction_id: str
    digest: str
    redirect_url: str
    amount: str
    params: Dict[str, str] = field(default_factory=dict)


@dataclass
class InquiryResult:
    transaction_id: str
    outcome: str
    raw_status: Optional[str] = None
    reference_number: Optional[str] = None
    message: Optional[str] = None


def outcome_for_code(code: Optional[str]) -> str:
    """Map a single gateway status letter to an outcome; anything else is unknown"""
    if not code:
        return GatewayOutcome.UNKNOWN
    return STATUS_CODES.get(code.strip().upper(), GatewayOutcome.UNKNOWN)


def parse_inquiry_status(body: Optional[str]) -> Tuple[str, Optional[str], Optional[str], Optional[str]]:
    """
    Parse a Query.aspx response body.

    Accepts a bare status letter or "Status:RefNo[:Message]".

    Returns:
        (outcome, raw_status, reference_number, message)
    """
    text = (body or "").strip()
    if not text:
        return GatewayOutcome.UNKNOWN, None, None, "Empty inquiry response"

    if ":" in text:
        parts = text.split(":", 2)
        raw_status = parts[0].strip()
        refno = (parts[1].strip() or None) if len(parts) > 1 else None
        message = parts[2].strip() if len(parts) > 2 else None
    else:
        raw_status, refno, message = text, None, None

    outcome = outcome_for_code(raw_status)
    if outcome == GatewayOutcome.UNKNOWN and raw_status.upper() != "U":
        message = message or f"Unknown status: {raw_status}"
    return outcome, raw_status.upper(), refno, message


def sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


class DragonpayConnector(BaseConnector):
    """Connector for the Dragonpay collection gateway"""

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__("Dragonpay", timeout_seconds or settings.gateway_timeout_seconds)
        self.merchant_id = merchant_id if merchant_id is not None else settings.dragonpay_merchant_id
        self.secret_key = secret_key if secret_key is not None else settings.dragonpay_secret_key
        self.base_url = (base_url or settings.dragonpay_base_url).rstrip("/")
        self.currency = currency or settings.dragonpay_currency

    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.secret_key)

    # ── Digests ──────────────────────────────────────────

    def request_digest(self, txnid: str, amount: str, description: str, email: str) -> str:
        message = ":".join([
            self.merchant_id.upper(), txnid, amount, self.currency, description, email, self.secret_key
        ])
        return sha1_hex(message)

    def inquiry_digest(self, txnid: str) -> str:
        return sha1_hex(f"{self.merchant_id}:{txnid}:{self.secret_key}")

    def verify_callback_digest(
        self,
        txnid: str,
        refno: Optional[str],
        status: Optional[str],
        message: Optional[str],
        digest: Optional[str],
    ) -> bool:
        """Verify a postback/return digest: SHA1 of txnid:refno:status:message:secret"""
        if not digest or not self.secret_key:
            return False
        expected = sha1_hex(":".join([txnid or "", refno or "", status or "", message or "", self.secret_key]))
        return secrets.compare_digest(expected.lower(), digest.strip().lower())

    # ── Intent ───────────────────────────────────────────

    def create_intent(self, order, attempt: int, description: Optional[str] = None) -> PaymentIntent:
        """
        Build a payment intent for an order.

        The transaction id is derived from the order code and the attempt
        number, so it is stable for a given attempt and never reused.
        """
        txnid = f"{order.order_code}-{attempt}"
        amount = format_amount(order.total_price)
        description = description or f"Order {order.order_code}"
        email = order.customer_email or ""
        digest = self.request_digest(txnid, amount, description, email)

        params = {
            "merchantid": self.merchant_id,
            "txnid": txnid,
            "amount": amount,
            "ccy": self.currency,
            "description": description,
            "email": email,
            "param1": order.order_code,
            "digest": digest,
        }
        redirect_url = f"{self.base_url}/Pay.aspx?{urlencode(params)}"

        log.info(f"Created Dragonpay intent {txnid} for order {order.order_code} ({amount} {self.currency})")
        return PaymentIntent(
            transaction_id=txnid,
            digest=digest,
            redirect_url=redirect_url,
            amount=amount,
            params=params,
        )

    # ── Inquiry ──────────────────────────────────────────

    async def _fetch_inquiry(self, txnid: str) -> str:
        """GET Query.aspx; raises ExternalUnavailable on transport problems"""
        params = {
            "merchantid": self.merchant_id,
            "txnid": txnid,
            "digest": self.inquiry_digest(txnid),
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(f"{self.base_url}/Query.aspx", params=params) as response:
                    body = await response.text()
                    if response.status >= 500:
                        raise ExternalUnavailable(self.name, f"HTTP {response.status}", status=response.status)
                    if response.status >= 400:
                        # Client errors are not retried; surface as an empty body
                        log.warning(f"Dragonpay inquiry {txnid} returned {response.status}")
                        return ""
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ExternalUnavailable(self.name, f"{type(e).__name__}: {e}")

    async def inquire(self, transaction_id: str) -> InquiryResult:
        """Ask the gateway for the current status of a transaction"""
        if not self.is_configured():
            log.warning("Dragonpay credentials not configured, inquiry skipped")
            return InquiryResult(transaction_id, GatewayOutcome.UNKNOWN, message="Gateway not configured")

        try:
            body = await self._retry_operation(
                lambda: self._fetch_inquiry(transaction_id),
                operation_name="inquire",
            )
        except Exception as e:
            log.error(f"Dragonpay inquiry failed for {transaction_id}: {e}")
            return InquiryResult(transaction_id, GatewayOutcome.UNKNOWN, message=f"API Error: {e}")

        outcome, raw_status, refno, message = parse_inquiry_status(body)
        log.info(f"Dragonpay inquiry {transaction_id}: {raw_status} ({outcome})")
        return InquiryResult(
            transaction_id=transaction_id,
            outcome=outcome,
            raw_status=raw_status,
            reference_number=refno,
            message=message,
        )

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status["base_url"] = self.base_url
        return status
