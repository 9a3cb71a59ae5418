"""Invoice endpoints: the caller's invoices, PDFs, and admin views."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from billing_api.dependencies import AdminDep, CallerDep, QueueDep, SessionDep, SettingsDep
from billing_api.schemas import InvoiceListResponse, InvoiceResendResponse, InvoiceResponse
from billing_api.services.invoice_service import InvoiceService
from billing_api.services.side_effects import InvoiceDeliveryJob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    session: SessionDep,
    settings: SettingsDep,
    caller: CallerDep,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """Return the caller's invoices, newest first."""
    service = InvoiceService(session, settings.invoice_storage_path, user_id=caller.user_id)
    return await service.list_invoices(limit, offset)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@router.get("/admin/all", response_model=list[InvoiceResponse])
async def list_all_invoices(session: SessionDep, settings: SettingsDep, admin: AdminDep) -> list[dict[str, Any]]:
    """Newest 100 invoices across all users."""
    service = InvoiceService(session, settings.invoice_storage_path)
    return await service.list_all(100)


@router.post("/{invoice_id}/resend", response_model=InvoiceResendResponse)
async def resend_invoice(
    invoice_id: str,
    session: SessionDep,
    settings: SettingsDep,
    queue: QueueDep,
    admin: AdminDep,
) -> InvoiceResendResponse:
    """Deliver an invoice again and report the outcome."""
    service = InvoiceService(session, settings.invoice_storage_path)
    if await service.get_row(invoice_id) is None:
        raise HTTPException(status_code=404, detail=f"Invoice '{invoice_id}' not found")
    logger.info("Invoice %s resend requested by admin=%s", invoice_id, admin.user_id)
    result = await queue.deliver(InvoiceDeliveryJob(invoice_id))
    return InvoiceResendResponse(invoice_id=invoice_id, success=result.success, error=result.error)


# ---------------------------------------------------------------------------
# Caller
# ---------------------------------------------------------------------------


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: str,
    session: SessionDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> dict[str, Any]:
    """Return one of the caller's invoices."""
    service = InvoiceService(session, settings.invoice_storage_path, user_id=caller.user_id)
    invoice = await service.get_invoice(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail=f"Invoice '{invoice_id}' not found")
    return invoice


@router.get("/{invoice_id}/pdf")
async def download_invoice_pdf(
    invoice_id: str,
    session: SessionDep,
    settings: SettingsDep,
    caller: CallerDep,
) -> Response:
    """Download the PDF for one of the caller's invoices."""
    service = InvoiceService(session, settings.invoice_storage_path, user_id=caller.user_id)
    pdf = await service.get_pdf(invoice_id)
    if pdf is None:
        raise HTTPException(status_code=404, detail=f"Invoice '{invoice_id}' not found")
    pdf_bytes, filename = pdf
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
