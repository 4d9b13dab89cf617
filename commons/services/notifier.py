# commons/services/notifier.py
import enum
import html
import logging
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from commons.config import settings
from commons.errors import NotificationError

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    EXPENSE_SUBMITTED = "expense_submitted"
    EXPENSE_APPROVED = "expense_approved"
    EXPENSE_REJECTED = "expense_rejected"
    EXPENSE_PAID = "expense_paid"


def format_amount(amount_cents: Optional[int], currency: Optional[str]) -> str:
    if amount_cents is None:
        return "an unspecified amount"
    return f"{amount_cents / 100:,.2f} {currency or 'USD'}"


def _wrap(body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f"{body}"
        '<p style="color: #666; font-size: 12px;">Detroit Commons</p>'
        "</div>"
    )


def _submitted(data: Dict[str, Any]) -> Tuple[str, str]:
    title = html.escape(data.get("expense_title", ""))
    submitter = html.escape(f"{data.get('submitter_name') or 'Someone'} <{data.get('submitter_email') or 'unknown'}>")
    subject = f"New expense awaiting approval: {data.get('expense_title', '')}"
    body = (
        "<h2>New expense submitted</h2>"
        f"<p><strong>{title}</strong> for {format_amount(data.get('amount_cents'), data.get('currency'))}</p>"
        f"<p>Submitted by {submitter}.</p>"
        "<p>Review it in the admin expenses dashboard.</p>"
    )
    return subject, _wrap(body)


def _approved(data: Dict[str, Any]) -> Tuple[str, str]:
    title = html.escape(data.get("expense_title", ""))
    subject = f"Your expense \"{data.get('expense_title', '')}\" was approved"
    body = (
        f"<h2>Hi {html.escape(data.get('submitter_name') or 'there')},</h2>"
        f"<p>Your expense <strong>{title}</strong> for "
        f"{format_amount(data.get('amount_cents'), data.get('currency'))} was approved "
        "and is queued for payout.</p>"
    )
    return subject, _wrap(body)


def _rejected(data: Dict[str, Any]) -> Tuple[str, str]:
    title = html.escape(data.get("expense_title", ""))
    reason = data.get("rejection_reason")
    subject = f"Your expense \"{data.get('expense_title', '')}\" was not approved"
    body = (
        f"<h2>Hi {html.escape(data.get('submitter_name') or 'there')},</h2>"
        f"<p>Your expense <strong>{title}</strong> for "
        f"{format_amount(data.get('amount_cents'), data.get('currency'))} was not approved.</p>"
    )
    if reason:
        body += f"<p>Reason: {html.escape(reason)}</p>"
    return subject, _wrap(body)


def _paid(data: Dict[str, Any]) -> Tuple[str, str]:
    title = html.escape(data.get("expense_title", ""))
    tx_hash = data.get("tx_hash")
    subject = f"Reimbursement sent for \"{data.get('expense_title', '')}\""
    body = (
        f"<h2>Hi {html.escape(data.get('submitter_name') or 'there')},</h2>"
        f"<p>We sent {format_amount(data.get('amount_cents'), data.get('currency'))} "
        f"for <strong>{title}</strong>.</p>"
    )
    if tx_hash:
        body += f"<p>Transaction: <code>{html.escape(tx_hash)}</code></p>"
    return subject, _wrap(body)


TEMPLATES: Dict[NotificationKind, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    NotificationKind.EXPENSE_SUBMITTED: _submitted,
    NotificationKind.EXPENSE_APPROVED: _approved,
    NotificationKind.EXPENSE_REJECTED: _rejected,
    NotificationKind.EXPENSE_PAID: _paid,
}


def render(kind: NotificationKind, data: Dict[str, Any]) -> Tuple[str, str]:
    """Subject and HTML body for a notification"""
    return TEMPLATES[NotificationKind(kind)](data)


class EmailNotifier:
    """Transactional email through the Resend HTTP API.

    ``send`` never raises: delivery problems are logged and reported as False
    so callers can carry on.
    """

    def __init__(
            self,
            api_key: Optional[str] = None,
            api_url: Optional[str] = None,
            sender: Optional[str] = None,
            timeout: Optional[float] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = (api_url or settings.resend_api_url).rstrip("/")
        self.sender = sender or settings.email_from
        self.timeout = timeout if timeout is not None else settings.email_timeout
        self.transport = transport

    async def _deliver(self, recipient: str, subject: str, body: str) -> Dict[str, Any]:
        if not self.api_key:
            raise NotificationError("RESEND_API_KEY is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.api_url}/emails",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.sender, "to": [recipient], "subject": subject, "html": body},
                )
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NotificationError(f"Failed to send email: {e}", recipient=recipient) from e

    async def send(self, kind: NotificationKind, recipient: str, data: Dict[str, Any]) -> bool:
        try:
            subject, body = render(kind, data)
            await self._deliver(recipient, subject, body)
        except NotificationError as e:
            logger.error(f"Notification {NotificationKind(kind).value} to {recipient} failed: {e.message}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error sending {kind} notification to {recipient}: {e}")
            return False

        logger.info(f"Notification {NotificationKind(kind).value} sent to {recipient}")
        return True
