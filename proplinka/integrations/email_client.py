"""
Transactional email through the Resend HTTP API.

Implements:
- Retry with exponential backoff on transport errors, 429 and 5xx
- No-op delivery when no API key is configured
- Bulk sends with per-recipient results
"""
import html
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from proplinka.config import get_settings
from proplinka.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class EmailDeliveryError(Exception):
    """Raised when an email cannot be delivered."""

    pass


class RetryableEmailError(EmailDeliveryError):
    """Temporary failure from the email API (rate limit or server error)."""

    pass


@dataclass
class EmailMessage:
    to: List[str]
    subject: str
    html: str
    text: Optional[str] = None
    template: str = "custom"


@dataclass
class EmailResult:
    sent: bool
    message_id: Optional[str] = None
    reason: Optional[str] = None


class EmailClient:
    """
    Resend API client.

    Business flows treat email as best effort: they catch EmailDeliveryError
    and log it instead of failing the state change that triggered it.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        wait: Optional[wait_base] = None,
    ):
        """
        Initialize email client.

        Args:
            http_client: Optional preconfigured httpx client
            max_attempts: Attempts per email including the first
            wait: Tenacity wait strategy between attempts
        """
        self.settings = get_settings()
        self._client = http_client
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential(multiplier=1, min=1, max=8)

    @property
    def enabled(self) -> bool:
        return self.settings.email_enabled

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.resend_api_base,
                timeout=self.settings.email_timeout_seconds,
            )
        return self._client

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._get_client().post(
            "/emails",
            json=payload,
            headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableEmailError(
                f"Email API temporarily unavailable ({response.status_code})"
            )
        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"Email API rejected message ({response.status_code}): {response.text}"
            )
        return response.json()

    async def send(self, message: EmailMessage) -> EmailResult:
        """
        Send one email.

        Args:
            message: Email to send

        Returns:
            EmailResult: sent=False with reason 'not_configured' when disabled

        Raises:
            EmailDeliveryError: If delivery fails after retries
        """
        if not self.enabled:
            logger.info(
                "email_skipped_not_configured",
                template=message.template,
                recipients=len(message.to),
            )
            metrics.record_email(message.template, "skipped")
            return EmailResult(sent=False, reason="not_configured")

        payload: Dict[str, Any] = {
            "from": self.settings.email_from,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type((RetryableEmailError, httpx.TransportError)),
                stop=stop_after_attempt(self.max_attempts),
                wait=self.wait,
                reraise=True,
            ):
                with attempt:
                    data = await self._post(payload)
        except httpx.TransportError as e:
            metrics.record_email(message.template, "failed")
            logger.error("email_send_failed", template=message.template, error=str(e))
            raise EmailDeliveryError(f"Email delivery failed: {str(e)}") from e
        except EmailDeliveryError as e:
            metrics.record_email(message.template, "failed")
            logger.error("email_send_failed", template=message.template, error=str(e))
            raise

        metrics.record_email(message.template, "sent")
        logger.info("email_sent", template=message.template, message_id=data.get("id"))
        return EmailResult(sent=True, message_id=data.get("id"))

    async def send_bulk(self, messages: Sequence[EmailMessage]) -> List[EmailResult]:
        """Send several emails, collecting a result per message instead of raising."""
        results = []
        for message in messages:
            try:
                results.append(await self.send(message))
            except EmailDeliveryError as e:
                results.append(EmailResult(sent=False, reason=str(e)))
        return results

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _layout(title: str, body_html: str) -> str:
    return (
        "<div style=\"font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;\">"
        f"<h2>{html.escape(title)}</h2>{body_html}"
        "<p style=\"color: #888; font-size: 12px;\">PropLinka</p></div>"
    )


def property_approved_email(to: str, property_title: str, property_url: str) -> EmailMessage:
    title = html.escape(property_title)
    return EmailMessage(
        to=[to],
        subject="Your listing is live",
        html=_layout(
            "Listing approved",
            f"<p>Your property <strong>{title}</strong> has been approved and is now visible "
            f"to buyers.</p><p><a href=\"{html.escape(property_url)}\">View listing</a></p>",
        ),
        template="property_approved",
    )


def property_rejected_email(to: str, property_title: str, reason: str) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject="Your listing needs changes",
        html=_layout(
            "Listing not approved",
            f"<p>Your property <strong>{html.escape(property_title)}</strong> was not approved."
            f"</p><p>Reason: {html.escape(reason)}</p><p>Edit the listing to resubmit it.</p>",
        ),
        template="property_rejected",
    )


def inquiry_received_email(
    to: str, property_title: str, sender_name: str, message: str, conversation_url: str
) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject=f"New inquiry about {property_title}",
        html=_layout(
            "New inquiry",
            f"<p>{html.escape(sender_name)} asked about "
            f"<strong>{html.escape(property_title)}</strong>:</p>"
            f"<blockquote>{html.escape(message)}</blockquote>"
            f"<p><a href=\"{html.escape(conversation_url)}\">Reply</a></p>",
        ),
        template="inquiry_received",
    )


def featured_expired_email(to: str, property_title: str) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject="Your featured listing has ended",
        html=_layout(
            "Featured listing ended",
            f"<p>The featured period for <strong>{html.escape(property_title)}</strong> has "
            "ended. You can feature it again from your dashboard.</p>",
        ),
        template="featured_expired",
    )


def remittance_reminder_email(
    to: str, firm_name: str, outstanding: str, days_overdue: int
) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject="Referral fee remittance reminder",
        html=_layout(
            "Remittance reminder",
            f"<p>{html.escape(firm_name)} has {html.escape(outstanding)} in outstanding "
            f"referral fees, {days_overdue} days past due.</p>"
            "<p>Accounts 60 days past due are suspended from the lawyer directory.</p>",
        ),
        template="remittance_reminder",
    )


def lawyer_suspended_email(to: str, firm_name: str, outstanding: str) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject="Your directory listing has been suspended",
        html=_layout(
            "Directory listing suspended",
            f"<p>{html.escape(firm_name)} is hidden from the lawyer directory because "
            f"{html.escape(outstanding)} in referral fees is more than 60 days past due.</p>"
            "<p>Your listing is restored as soon as the outstanding fees are paid.</p>",
        ),
        template="lawyer_suspended",
    )


def account_suspended_email(to: str, reason: str) -> EmailMessage:
    return EmailMessage(
        to=[to],
        subject="Your account has been suspended",
        html=_layout(
            "Account suspended",
            f"<p>Your account has been suspended.</p><p>Reason: {html.escape(reason)}</p>",
        ),
        template="account_suspended",
    )


async def send_best_effort(client: "EmailClient", message: EmailMessage) -> EmailResult:
    """Send an email, logging instead of raising on delivery failure."""
    try:
        return await client.send(message)
    except EmailDeliveryError as e:
        logger.warning("email_best_effort_failed", template=message.template, error=str(e))
        return EmailResult(sent=False, reason=str(e))
