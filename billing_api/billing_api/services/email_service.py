"""Invoice email delivery through Resend."""

from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass
from decimal import Decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt.

    ``retryable`` is ``False`` for failures another attempt cannot fix,
    such as a missing API key or recipient.
    """

    success: bool
    error: str | None = None
    retryable: bool = True


class InvoiceEmailSender:
    """Send invoice emails with the PDF attached.

    Parameters
    ----------
    api_key:
        Resend API key.  Empty means email is not configured.
    sender:
        ``From`` address.
    """

    def __init__(self, api_key: str, sender: str) -> None:
        self._api_key = api_key
        self._sender = sender

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def send_invoice(
        self,
        *,
        to_email: str | None,
        customer_name: str | None,
        invoice_number: str,
        amount: Decimal,
        currency: str,
        pdf_bytes: bytes,
    ) -> DeliveryResult:
        """Deliver one invoice.  Never raises; failures are reported in the result."""
        if not self.configured:
            logger.warning("Invoice %s not emailed: email service not configured", invoice_number)
            return DeliveryResult(success=False, error="Email service not configured", retryable=False)
        if not to_email:
            logger.warning("Invoice %s not emailed: no recipient address", invoice_number)
            return DeliveryResult(success=False, error="No recipient email address", retryable=False)

        import resend

        resend.api_key = self._api_key
        params = {
            "from": self._sender,
            "to": [to_email],
            "subject": f"Your invoice {invoice_number}",
            "html": self._render_html(customer_name, invoice_number, amount, currency),
            "attachments": [{"filename": f"{invoice_number}.pdf", "content": list(pdf_bytes)}],
        }
        try:
            await asyncio.to_thread(resend.Emails.send, params)
        except Exception as exc:
            logger.error("Failed to email invoice %s to %s: %s", invoice_number, to_email, exc)
            return DeliveryResult(success=False, error=str(exc) or exc.__class__.__name__)

        logger.info("Emailed invoice %s to %s", invoice_number, to_email)
        return DeliveryResult(success=True)

    @staticmethod
    def _render_html(customer_name: str | None, invoice_number: str, amount: Decimal, currency: str) -> str:
        greeting = f"Hi {html.escape(customer_name)}," if customer_name else "Hello,"
        return (
            f"<p>{greeting}</p>"
            f"<p>Thank you for your payment of <strong>{amount:.2f} {currency.upper()}</strong>.</p>"
            f"<p>Your invoice <strong>{invoice_number}</strong> is attached to this email.</p>"
        )
