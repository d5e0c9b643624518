"""
Notification Service
Sends customer notifications for order lifecycle events.
"""
import smtplib
import asyncio
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from reconciler.config import get_settings
from reconciler.models.outbox import OutboxKind
from reconciler.utils.helpers import format_amount
from reconciler.utils.logger import log
from reconciler.utils.retry import calculate_backoff

settings = get_settings()


@dataclass
class DeliveryResult:
    """Tracks delivery attempt results for auditing."""
    success: bool = False
    channel: str = ""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    final_error: Optional[str] = None


class EmailSender(ABC):
    """Transport for rendered notifications"""

    channel = "email"

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        pass


class LoggingEmailSender(EmailSender):
    """Used when SMTP is not configured; the message only reaches the log"""

    channel = "log"

    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        self.sent.append((to, subject, body))
        log.info(f"[notification] to={to} subject={subject!r}")
        return DeliveryResult(success=True, channel=self.channel, attempts=1)


class SmtpEmailSender(EmailSender):
    """
    SMTP delivery with retry logic.

    Retries on transient errors (connection, timeout, SMTP 4xx) with
    exponential backoff.
    """

    # Retry configuration
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 30.0  # seconds

    def __init__(self):
        self.total_sent = 0
        self.total_failed = 0
        self.total_retries = 0

    def _send_sync(self, to: str, subject: str, body: str):
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = settings.notification_email_from or settings.smtp_user
        msg['To'] = to
        msg.attach(MIMEText(body, 'plain'))

        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30) as server:
            server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)

    async def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        result = DeliveryResult(channel=self.channel)

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            result.attempts = attempt

            try:
                await asyncio.to_thread(self._send_sync, to, subject, body)

                result.success = True
                self.total_sent += 1
                if attempt > 1:
                    self.total_retries += (attempt - 1)
                    log.info(f"Email sent after {attempt} attempts: {subject}")
                else:
                    log.info(f"Email sent: {subject}")
                return result

            except Exception as e:
                error_str = f"{type(e).__name__}: {str(e)}"
                result.errors.append(error_str)
                result.final_error = error_str

                if attempt >= self.RETRY_MAX_ATTEMPTS or not self._is_retryable_email_error(e):
                    self.total_failed += 1
                    log.error(f"Email failed after {attempt} attempts: {error_str}")
                    return result

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.RETRY_BASE_DELAY,
                    max_delay=self.RETRY_MAX_DELAY
                )
                result.total_delay_seconds += delay

                log.warning(f"Email attempt {attempt} failed: {e}. Retrying in {delay:.1f}s...")
                await asyncio.sleep(delay)

        self.total_failed += 1
        return result

    def _is_retryable_email_error(self, error: Exception) -> bool:
        """Check if email error is retryable."""
        # SMTP temporary failures (4xx) are retryable
        if isinstance(error, smtplib.SMTPResponseException):
            return 400 <= error.smtp_code < 500

        if isinstance(error, (ConnectionError, TimeoutError, OSError)):
            return True

        error_str = str(error).lower()
        retryable_patterns = ['timeout', 'connection', 'temporary', 'try again', 'unavailable']
        return any(pattern in error_str for pattern in retryable_patterns)


def get_email_sender() -> EmailSender:
    """SMTP when configured, otherwise the logging sender"""
    if settings.smtp_host:
        return SmtpEmailSender()
    return LoggingEmailSender()


# ── Templates ────────────────────────────────────────────

def _render_order_confirmed(order) -> Tuple[str, str]:
    lines = [f"Hi {order.customer_name or 'there'},", "", f"Thank you for your order {order.order_code}."]
    for item in order.items:
        lines.append(f"  {item.quantity} x {item.product_name} @ {format_amount(item.unit_price)}")
    lines += ["", f"Total: {format_amount(order.total_price)} {order.currency}"]
    if order.is_cod:
        lines.append("Payment will be collected on delivery.")
    else:
        lines.append("We have received your payment and are preparing your parcel.")
    return f"Order {order.order_code} confirmed", "\n".join(lines)


def _render_dispatched(order) -> Tuple[str, str]:
    body = "\n".join([
        f"Hi {order.customer_name or 'there'},",
        "",
        f"Your order {order.order_code} has been picked up by {settings.carrier_name}.",
        f"Tracking number: {order.tracking_number or 'pending'}",
    ])
    return f"Order {order.order_code} is on its way", body


def _render_delivered(order) -> Tuple[str, str]:
    body = "\n".join([
        f"Hi {order.customer_name or 'there'},",
        "",
        f"Your order {order.order_code} has been delivered.",
        "If anything is wrong with your parcel, reply to this email.",
    ])
    return f"Order {order.order_code} delivered", body


TEMPLATES = {
    OutboxKind.NOTIFY_ORDER_CONFIRMED: _render_order_confirmed,
    OutboxKind.NOTIFY_DISPATCHED: _render_dispatched,
    OutboxKind.NOTIFY_DELIVERED: _render_delivered,
}


class NotificationDispatcher:
    """Renders lifecycle notifications and hands them to an EmailSender"""

    def __init__(self, sender: Optional[EmailSender] = None):
        self.sender = sender or get_email_sender()

    async def dispatch(self, kind: str, order, payload: Optional[Dict[str, Any]] = None) -> DeliveryResult:
        """Send one notification; errors are logged and returned, never raised"""
        renderer = TEMPLATES.get(kind)
        if renderer is None:
            log.warning(f"No notification template for {kind}")
            return DeliveryResult(channel=self.sender.channel, final_error=f"Unknown notification kind: {kind}")

        if not order.customer_email:
            log.warning(f"Order {order.order_code} has no customer email; {kind} skipped")
            return DeliveryResult(success=True, channel="none")

        try:
            subject, body = renderer(order)
            return await self.sender.send(order.customer_email, subject, body)
        except Exception as e:
            log.error(f"Notification {kind} for order {order.order_code} failed: {e}")
            return DeliveryResult(
                channel=self.sender.channel,
                attempts=1,
                errors=[f"{type(e).__name__}: {e}"],
                final_error=f"{type(e).__name__}: {e}",
            )
