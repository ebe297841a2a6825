"""Agent invoice endpoints."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from ... import availability, crud, models, schemas, utils
from ..deps import get_context, get_db

router = APIRouter(prefix="/invoices", tags=["invoices"])


def _get_invoice_or_404(db: Session, ctx: schemas.OperatorContext, invoice_id: int) -> models.Invoice:
    invoice = crud.get_invoice(db, ctx.company_id, invoice_id)
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice


def _ensure_document_kind(invoice: models.Invoice, kind: str) -> None:
    if kind == "receipt" and invoice.status != "paid":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Receipts are only available for paid invoices",
        )


@router.post(
    "/preview",
    response_model=List[schemas.InvoicePlan],
    summary="Group selected bookings into per-agent invoices without saving",
)
def preview_invoices(
    selection: schemas.InvoiceSelection,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[schemas.InvoicePlan]:
    return crud.preview_invoices(db, ctx.company_id, selection)


@router.post(
    "/bulk",
    response_model=schemas.InvoiceBatchResult,
    status_code=status.HTTP_201_CREATED,
    summary="Create one draft invoice per agent",
)
def create_invoices(
    payload: schemas.BulkInvoiceCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> schemas.InvoiceBatchResult:
    try:
        return crud.create_invoices(db, ctx, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("", response_model=List[schemas.Invoice])
def list_invoices(
    status_filter: Optional[schemas.InvoiceDisplayStatus] = Query(None, alias="status"),
    agent_id: Optional[int] = Query(None),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[schemas.Invoice]:
    return crud.list_invoices(
        db,
        ctx.company_id,
        today=availability.local_today(),
        status=status_filter,
        agent_id=agent_id,
    )


@router.get("/{invoice_id}", response_model=schemas.Invoice)
def get_invoice(
    invoice_id: int = Path(..., gt=0),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> schemas.Invoice:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    return crud.invoice_view(invoice, availability.local_today())


@router.put("/{invoice_id}", response_model=schemas.Invoice)
def update_invoice(
    invoice_id: int,
    invoice_in: schemas.InvoiceUpdate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> schemas.Invoice:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    invoice = crud.update_invoice(db, ctx, invoice, invoice_in)
    db.refresh(invoice)
    return crud.invoice_view(invoice, availability.local_today())


@router.post("/{invoice_id}/mark-paid", response_model=schemas.Invoice)
def mark_invoice_paid(
    invoice_id: int,
    payload: schemas.InvoiceMarkPaid,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> schemas.Invoice:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    invoice = crud.mark_invoice_paid(db, ctx, invoice, payload)
    db.refresh(invoice)
    return crud.invoice_view(invoice, availability.local_today())


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(
    invoice_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Response:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    crud.delete_invoice(db, invoice)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{invoice_id}/document", response_class=HTMLResponse)
def invoice_document(
    invoice_id: int,
    kind: schemas.DocumentKind = Query("invoice"),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> HTMLResponse:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    _ensure_document_kind(invoice, kind)
    html = utils.render_invoice_document(invoice, kind, availability.local_today())
    return HTMLResponse(content=html)


@router.get("/{invoice_id}/pdf")
def invoice_pdf(
    invoice_id: int,
    kind: schemas.DocumentKind = Query("invoice"),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Response:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    _ensure_document_kind(invoice, kind)
    content = utils.build_invoice_pdf(invoice, kind, availability.local_today())
    number = invoice.invoice_number if kind == "invoice" else f"receipt-{invoice.invoice_number}"
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{number}.pdf"'},
    )


@router.post("/{invoice_id}/send-email", response_model=schemas.NotificationLog)
def send_invoice_email(
    invoice_id: int,
    kind: schemas.DocumentKind = Query("invoice"),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.NotificationLog:
    invoice = _get_invoice_or_404(db, ctx, invoice_id)
    try:
        notification = crud.send_invoice_email(
            db, ctx, invoice, kind, availability.local_today()
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(notification)
    return notification
