"""Invoice retrieval, PDF rendering, and storage.

Invoice rows are created by the side-effect trigger when a payment
succeeds.  This module renders their PDF with reportlab, stores it under
the configured storage root, and serves the caller-facing invoice views.
"""

from __future__ import annotations

import io
import logging
import re
from decimal import Decimal
from pathlib import Path
from typing import Any

from billing_core.state.repository import InvoiceRepository
from billing_core.state.tables import InvoiceTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Path traversal prevention
# ---------------------------------------------------------------------------

_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_path_component(value: str, name: str) -> None:
    """Reject identifiers that contain path-separator or other unsafe chars.

    Raises
    ------
    ValueError
        If *value* contains characters outside ``[a-zA-Z0-9_-]``.
    """
    if not _SAFE_ID_RE.match(value):
        raise ValueError(f"Invalid {name}: contains unsafe characters")


def _resolve_safe_path(storage_base: Path, user_id: str, invoice_id: str) -> Path:
    """Build the PDF path and check that it stays within *storage_base*.

    Raises
    ------
    ValueError
        If the resolved path escapes the storage root.
    """
    _validate_path_component(user_id, "user_id")
    _validate_path_component(invoice_id, "invoice_id")

    base_resolved = storage_base.resolve()
    full_path = (base_resolved / user_id / f"{invoice_id}.pdf").resolve()
    if not full_path.is_relative_to(base_resolved):
        raise ValueError("Path traversal detected")
    return full_path


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _format_amount(amount: Decimal, currency: str) -> str:
    return f"{amount:.2f} {currency.upper()}"


def invoice_to_dict(row: InvoiceTable) -> dict[str, Any]:
    """Public view of an invoice row."""
    return {
        "invoice_id": row.invoice_id,
        "invoice_number": row.invoice_number,
        "subscription_id": row.subscription_id,
        "payment_reference": row.payment_reference,
        "amount": row.amount,
        "currency": row.currency,
        "status": row.status,
        "customer_name": row.customer_name,
        "customer_email": row.customer_email,
        "email_sent": row.email_sent,
        "email_sent_at": row.email_sent_at,
        "delivery_error": row.delivery_error,
        "created_at": row.created_at,
    }


# ---------------------------------------------------------------------------
# PDF rendering and storage
# ---------------------------------------------------------------------------


def render_invoice_pdf(row: InvoiceTable) -> bytes:
    """Render *row* as a one-page PDF using reportlab."""
    from reportlab.lib import colors
    from reportlab.lib.pagesizes import letter
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.lib.units import inch
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter, topMargin=0.75 * inch, bottomMargin=0.75 * inch)
    styles = getSampleStyleSheet()
    elements: list[Any] = []

    header_style = ParagraphStyle("Header", parent=styles["Heading1"], fontSize=20, textColor=colors.HexColor("#1a1a2e"))
    elements.append(Paragraph("Invoice", header_style))
    elements.append(Spacer(1, 12))

    meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=10, textColor=colors.grey)
    elements.append(Paragraph(f"Invoice number: {row.invoice_number}", styles["Heading3"]))
    if row.customer_name:
        elements.append(Paragraph(f"Billed to: {row.customer_name}", meta_style))
    if row.customer_email:
        elements.append(Paragraph(f"Email: {row.customer_email}", meta_style))
    elements.append(Paragraph(f"Date: {row.created_at:%Y-%m-%d}", meta_style))
    elements.append(Paragraph(f"Payment reference: {row.payment_reference}", meta_style))
    elements.append(Spacer(1, 24))

    amount = _format_amount(row.amount, row.currency)
    table_data = [
        ["Description", "Amount"],
        ["Subscription payment", amount],
        ["Total paid:", amount],
    ]
    table = Table(table_data, colWidths=[4.75 * inch, 2.25 * inch])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1a1a2e")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("BOTTOMPADDING", (0, 0), (-1, 0), 12),
                ("GRID", (0, 0), (-1, -2), 0.5, colors.grey),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
                ("LINEABOVE", (0, -1), (-1, -1), 2, colors.black),
            ]
        )
    )
    elements.append(table)
    elements.append(Spacer(1, 36))

    footer_style = ParagraphStyle("Footer", parent=styles["Normal"], fontSize=8, textColor=colors.grey)
    elements.append(Paragraph(f"Status: {row.status}", footer_style))

    doc.build(elements)
    return buf.getvalue()


def store_invoice_pdf(storage_path: str, row: InvoiceTable, pdf_bytes: bytes) -> str:
    """Write *pdf_bytes* under *storage_path* and return the storage key."""
    pdf_path = _resolve_safe_path(Path(storage_path), row.user_id, row.invoice_id)
    pdf_path.parent.mkdir(parents=True, exist_ok=True)
    pdf_path.write_bytes(pdf_bytes)
    logger.info("Stored invoice PDF: %s (%d bytes)", pdf_path, len(pdf_bytes))
    return str(pdf_path)


def read_invoice_pdf(storage_path: str, storage_key: str) -> bytes | None:
    """Read a stored PDF, refusing keys that resolve outside *storage_path*."""
    storage_base = Path(storage_path).resolve()
    pdf_path = Path(storage_key).resolve()
    if not pdf_path.is_relative_to(storage_base):
        logger.error("Path traversal attempt detected for PDF key %s", storage_key)
        raise ValueError("Path traversal detected")
    try:
        return pdf_path.read_bytes()
    except FileNotFoundError:
        logger.warning("PDF not found at %s", pdf_path)
        return None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class InvoiceService:
    """Invoice views scoped to one user, or unscoped for admins.

    Parameters
    ----------
    session:
        Active database session.
    storage_path:
        Root directory for stored PDFs.
    user_id:
        Owner to restrict lookups to; ``None`` for admin access.
    """

    def __init__(
        self,
        session: AsyncSession,
        storage_path: str,
        *,
        user_id: str | None = None,
    ) -> None:
        self._session = session
        self._repo = InvoiceRepository(session)
        self._storage_path = storage_path
        self._user_id = user_id

    async def list_invoices(self, limit: int = 20, offset: int = 0) -> dict[str, Any]:
        """List the caller's invoices with pagination."""
        if self._user_id is None:
            raise ValueError("list_invoices requires a user scope")
        rows, total = await self._repo.list_for_user(self._user_id, limit, offset)
        return {"invoices": [invoice_to_dict(row) for row in rows], "total": total}

    async def list_all(self, limit: int = 100) -> list[dict[str, Any]]:
        """Newest invoices across all users."""
        rows = await self._repo.list_recent(limit)
        return [invoice_to_dict(row) for row in rows]

    async def get_row(self, invoice_id: str) -> InvoiceTable | None:
        _validate_path_component(invoice_id, "invoice_id")
        return await self._repo.get(invoice_id, user_id=self._user_id)

    async def get_invoice(self, invoice_id: str) -> dict[str, Any] | None:
        """Return one invoice, or ``None`` if it is missing or not visible."""
        row = await self.get_row(invoice_id)
        return invoice_to_dict(row) if row is not None else None

    async def get_pdf(self, invoice_id: str) -> tuple[bytes, str] | None:
        """Return ``(pdf_bytes, filename)`` for an invoice.

        A PDF that was never stored, or has gone missing from storage, is
        rendered again and stored.
        """
        row = await self.get_row(invoice_id)
        if row is None:
            return None

        pdf_bytes: bytes | None = None
        if row.pdf_storage_key:
            pdf_bytes = read_invoice_pdf(self._storage_path, row.pdf_storage_key)
        if pdf_bytes is None:
            pdf_bytes = render_invoice_pdf(row)
            key = store_invoice_pdf(self._storage_path, row, pdf_bytes)
            await self._repo.update_pdf_key(row.invoice_id, key)
        return pdf_bytes, f"{row.invoice_number}.pdf"
