"""Utility helpers for documents, guest emails, exports, and payments."""
from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from jinja2 import Environment, PackageLoader, select_autoescape
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from . import invoicing, models, schemas
from .config import BASE_DIR, MEDIA_ROOT
from .constants import APP_NAME, BOOKING_EXPORT_COLUMNS, DEFAULT_MEETING_TIME, PICKUP_WINDOW_MINUTES

logger = logging.getLogger(__name__)

THUMBNAIL_DIR = MEDIA_ROOT / "thumbnails"

# Currencies without a minor unit are charged in whole units.
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "UGX", "RWF", "XAF", "XOF"})

DOCUMENT_TEMPLATES: Dict[str, str] = {
    "invoice": "invoice.html",
    "receipt": "invoice.html",
}
PICKUP_EMAIL_TEMPLATE = "pickup_email.html"
COME_DIRECT_EMAIL_TEMPLATE = "come_direct_email.html"
INVOICE_EMAIL_TEMPLATE = "invoice_email.html"

_ENV = Environment(
    loader=PackageLoader("tourdesk", "templates"),
    autoescape=select_autoescape(["html", "xml"]),
    enable_async=False,
)


def format_money(value: Optional[Decimal]) -> str:
    return f"{Decimal(value or 0):,.2f}"


_ENV.filters["money"] = format_money


# Pickup time formatting


def format_pickup_time(value: Optional[str]) -> str:
    """Trim a stored time such as ``09:30:00`` down to ``09:30``."""

    if not value:
        return ""
    parts = value.split(":")
    if len(parts) >= 2:
        return f"{parts[0]}:{parts[1]}"
    return value


def to_12_hour(hours: int, minutes: int) -> str:
    hours %= 24
    period = "PM" if hours >= 12 else "AM"
    hour12 = hours - 12 if hours > 12 else (12 if hours == 0 else hours)
    return f"{hour12:02d}:{minutes:02d} {period}"


def pickup_time_range(value: str) -> str:
    """Fifteen-minute pickup window, e.g. ``09:00 AM - 09:15 AM``."""

    hours, minutes = (int(part) for part in format_pickup_time(value).split(":"))
    end_minutes = minutes + PICKUP_WINDOW_MINUTES
    end_hours = hours + end_minutes // 60
    return f"{to_12_hour(hours, minutes)} - {to_12_hour(end_hours, end_minutes % 60)}"


def format_activity_date(value: date) -> str:
    """Long form such as ``Saturday, December 27, 2025``."""

    return f"{value.strftime('%A, %B')} {value.day}, {value.year}"


def format_document_date(value: date | datetime) -> str:
    return f"{value.day} {value.strftime('%B %Y')}"


def sender_for(company: models.Company, default_address: str) -> str:
    if company.email_from_name:
        return f"{company.email_from_name} <{default_address}>"
    return f"{company.name} <{default_address}>"


# Guest emails


def render_pickup_email(booking: models.Booking) -> tuple[str, str]:
    """Return ``(subject, html)`` for a booking's pickup or meeting point email."""

    company = booking.company
    program = booking.program
    context = {
        "booking": booking,
        "company": company,
        "program_name": program.name if program else "Tour",
        "activity_date": format_activity_date(booking.activity_date),
        "contact_info": company.pickup_contact_info or "",
        "app_name": APP_NAME,
    }

    if booking.is_come_direct:
        meeting_time = DEFAULT_MEETING_TIME
        if program and program.default_pickup_time:
            hours, minutes = (
                int(part) for part in format_pickup_time(program.default_pickup_time).split(":")
            )
            meeting_time = to_12_hour(hours, minutes)
        template = _ENV.get_template(COME_DIRECT_EMAIL_TEMPLATE)
        html = template.render(
            meeting_time=meeting_time,
            meeting_point_name=company.meeting_point_name or "Meeting Point",
            meeting_point_address=company.meeting_point_address or "",
            meeting_point_maps_url=company.meeting_point_maps_url or "",
            **context,
        )
        return f"Meeting Point Confirmed - {booking.booking_number}", html

    if not booking.pickup_time:
        raise ValueError("Pickup time not set")

    pickup_location = (
        booking.hotel.name if booking.hotel else booking.custom_pickup_location
    ) or "Your hotel"
    template = _ENV.get_template(PICKUP_EMAIL_TEMPLATE)
    html = template.render(
        pickup_window=pickup_time_range(booking.pickup_time),
        pickup_location=pickup_location,
        pickup_notes=booking.hotel.pickup_notes if booking.hotel else None,
        **context,
    )
    return f"Pickup Time Confirmed - {booking.booking_number}", html


# Invoice documents


def _invoice_context(
    invoice: models.Invoice, kind: str, today: date
) -> dict[str, object]:
    company = invoice.company
    agent = invoice.agent
    tax_applied = agent.tax_applied if agent else True
    totals = invoicing.compute_tax(invoice.total_amount, company.tax_percentage, tax_applied)
    items = sorted(invoice.items, key=lambda item: (item.booking.activity_date, item.booking_id))
    lines = [
        {
            "booking_number": item.booking.booking_number,
            "activity_date": item.booking.activity_date,
            "program": item.booking.program.name if item.booking.program else "",
            "customer_name": item.booking.customer_name,
            "adults": item.booking.adults,
            "children": item.booking.children,
            "infants": item.booking.infants,
            "pax": invoicing.weighted_pax(item.booking.adults, item.booking.children),
            "amount": item.amount,
        }
        for item in items
    ]
    is_receipt = kind == "receipt"
    return {
        "kind": kind,
        "is_receipt": is_receipt,
        "document_number": (
            invoicing.receipt_number(invoice.invoice_number) if is_receipt else invoice.invoice_number
        ),
        "invoice": invoice,
        "company": company,
        "agent": agent,
        "company_tax_id": company.tax_id if tax_applied else "",
        "agent_tax_id": agent.tax_id if agent and tax_applied else "",
        "lines": lines,
        "totals": totals,
        "currency": company.currency,
        "issue_date": format_document_date(today),
        "due_date": format_document_date(invoice.due_date) if invoice.due_date else None,
        "paid_date": format_document_date(invoice.paid_at or today),
        "period": f"{format_document_date(invoice.date_from)} - {format_document_date(invoice.date_to)}",
        "payment_footer": company.invoice_payment_footer or "",
        "app_name": APP_NAME,
    }


def render_invoice_document(invoice: models.Invoice, kind: str = "invoice", today: date | None = None) -> str:
    """Render an invoice or payment receipt as printable HTML."""

    template = _ENV.get_template(DOCUMENT_TEMPLATES.get(kind, DOCUMENT_TEMPLATES["invoice"]))
    return template.render(**_invoice_context(invoice, kind, today or date.today()))


def render_invoice_email(invoice: models.Invoice, kind: str = "invoice", today: date | None = None) -> tuple[str, str]:
    context = _invoice_context(invoice, kind, today or date.today())
    label = "Payment Receipt" if context["is_receipt"] else "Invoice"
    subject = f"{label} {context['document_number']} from {invoice.company.name}"
    html = _ENV.get_template(INVOICE_EMAIL_TEMPLATE).render(**context)
    return subject, html


def build_invoice_pdf(invoice: models.Invoice, kind: str = "invoice", today: date | None = None) -> bytes:
    """Lay the invoice or receipt out on A4 pages."""

    context = _invoice_context(invoice, kind, today or date.today())
    totals: schemas.InvoiceTotals = context["totals"]  # type: ignore[assignment]
    currency = context["currency"]

    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    width, height = A4
    margin = 50
    y = height - margin

    def new_page() -> float:
        pdf.showPage()
        pdf.setFont("Helvetica", 10)
        return height - margin

    title = "RECEIPT" if context["is_receipt"] else "INVOICE"
    pdf.setFont("Helvetica-Bold", 18)
    pdf.drawString(margin, y, f"{title}: {context['document_number']}")
    y -= 24
    pdf.setFont("Helvetica", 10)
    company = invoice.company
    header_lines = [company.name, company.address or "", company.phone or ""]
    if context["company_tax_id"]:
        header_lines.append(f"Tax ID: {context['company_tax_id']}")
    for text in filter(None, header_lines):
        pdf.drawString(margin, y, text)
        y -= 14

    y -= 10
    agent = invoice.agent
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(margin, y, f"Bill to: {agent.name if agent else 'Agent'}")
    pdf.setFont("Helvetica", 10)
    y -= 14
    for text in filter(None, [agent.address if agent else "", agent.phone if agent else ""]):
        pdf.drawString(margin, y, text)
        y -= 14
    if context["agent_tax_id"]:
        pdf.drawString(margin, y, f"Tax ID: {context['agent_tax_id']}")
        y -= 14

    pdf.drawString(margin, y, f"Period: {context['period']}")
    y -= 14
    if context["is_receipt"]:
        pdf.drawString(margin, y, f"Payment date: {context['paid_date']}")
    elif context["due_date"]:
        pdf.drawString(margin, y, f"Due date: {context['due_date']}")
    y -= 24

    columns = (margin, margin + 90, margin + 170, margin + 330, margin + 400)
    pdf.setFont("Helvetica-Bold", 10)
    for x, label in zip(columns, ("Booking", "Date", "Program / Guest", "Pax", "Amount")):
        pdf.drawString(x, y, label)
    y -= 16
    pdf.setFont("Helvetica", 10)
    for line in context["lines"]:  # type: ignore[union-attr]
        if y < margin + 80:
            y = new_page()
        pdf.drawString(columns[0], y, str(line["booking_number"]))
        pdf.drawString(columns[1], y, line["activity_date"].isoformat())
        pdf.drawString(columns[2], y, f"{line['program']} / {line['customer_name']}"[:32])
        pdf.drawString(columns[3], y, f"{line['pax']:g}")
        pdf.drawRightString(width - margin, y, format_money(line["amount"]))
        y -= 14

    if y < margin + 80:
        y = new_page()
    y -= 10
    summary = [("Subtotal", totals.subtotal)]
    if totals.tax_percentage > 0:
        summary.append((f"Tax ({totals.tax_percentage:g}%)", totals.tax_amount))
    summary.append((f"Total ({currency})", totals.grand_total))
    for label, amount in summary:
        pdf.drawString(columns[3], y, label)
        pdf.drawRightString(width - margin, y, format_money(amount))
        y -= 14

    if context["payment_footer"]:
        y -= 10
        for text in str(context["payment_footer"]).splitlines():
            if y < margin:
                y = new_page()
            pdf.drawString(margin, y, text)
            y -= 12

    pdf.showPage()
    pdf.save()
    buffer.seek(0)
    return buffer.read()


# Spreadsheet export


def export_bookings_csv(bookings: Iterable[models.Booking]) -> str:
    """Flatten the booking table for spreadsheet tools."""

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=BOOKING_EXPORT_COLUMNS)
    writer.writeheader()
    for booking in bookings:
        if booking.is_come_direct:
            pickup = "Come direct"
        else:
            pickup = (booking.hotel.name if booking.hotel else booking.custom_pickup_location) or ""
        writer.writerow(
            {
                "booking_number": booking.booking_number,
                "activity_date": booking.activity_date.isoformat(),
                "status": booking.status,
                "program": booking.program.name if booking.program else "",
                "source": "Direct Website"
                if booking.is_direct_booking
                else (booking.agent.name if booking.agent else ""),
                "customer_name": booking.customer_name,
                "customer_email": booking.customer_email or "",
                "adults": booking.adults,
                "children": booking.children,
                "infants": booking.infants,
                "pickup": pickup,
                "pickup_time": format_pickup_time(booking.pickup_time),
                "collect_money": f"{Decimal(booking.collect_money or 0):.2f}",
                "invoice_number": booking.invoice.invoice_number if booking.invoice else "",
            }
        )
    return output.getvalue()


# Program thumbnails


def optimize_thumbnail_upload(data: bytes, filename: str) -> dict[str, int | str]:
    """Store a program thumbnail as a resized JPEG."""

    if not data:
        raise ValueError("Uploaded file is empty")

    try:
        image = Image.open(io.BytesIO(data))
        image = image.convert("RGB")
    except Exception as exc:
        raise ValueError("Uploaded file is not a valid image") from exc

    THUMBNAIL_DIR.mkdir(parents=True, exist_ok=True)
    target = THUMBNAIL_DIR / f"{uuid4().hex}.jpg"

    image.thumbnail((800, 800), Image.LANCZOS)
    image.save(target, format="JPEG", optimize=True, quality=85)
    width, height = image.size
    logger.info("Stored thumbnail %s from %s (%sx%s)", target.name, filename, width, height)

    try:
        stored_path = str(target.relative_to(BASE_DIR.parent))
    except ValueError:
        stored_path = str(target)
    return {"path": stored_path, "width": width, "height": height}


def remove_thumbnail(path: Optional[str]) -> None:
    if not path:
        return
    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = BASE_DIR.parent / file_path
    if file_path.exists():
        file_path.unlink()


# Card payments


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert an amount to the processor's smallest unit (satang for THB)."""

    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def create_payment_intent(
    secret_key: str,
    amount: Decimal,
    currency: str,
    metadata: Dict[str, str],
) -> Dict[str, object]:
    """Simulate creating a card payment intent with the company's processor keys."""

    if not secret_key:
        raise ValueError("Payment processor secret key is not configured")
    if amount <= 0:
        raise ValueError("Invalid booking amount")

    intent_id = f"pi_{uuid4().hex[:24]}"
    minor_units = to_minor_units(amount, currency)
    logger.info("Created payment intent %s for %s %s", intent_id, minor_units, currency.lower())
    return {
        "id": intent_id,
        "client_secret": f"{intent_id}_secret_{uuid4().hex[:16]}",
        "amount": minor_units,
        "currency": currency.lower(),
        # Processor metadata values are capped at 500 characters.
        "metadata": {key: value[:500] for key, value in metadata.items()},
        "status": "requires_payment_method",
    }


def confirm_payment_intent(secret_key: str, intent_id: str) -> Dict[str, object]:
    """Simulate the processor capturing the card payment of an intent."""

    if not secret_key:
        raise ValueError("Payment processor secret key is not configured")
    logger.info("Payment intent %s succeeded", intent_id)
    return {"id": intent_id, "status": "succeeded"}


def payment_intent_metadata(company: models.Company, program: models.Program, payload: schemas.PaymentIntentRequest) -> Dict[str, str]:
    metadata: Dict[str, str] = {
        "company_id": str(company.id),
        "company_slug": company.slug,
        "program_id": str(program.id),
        "program_name": program.name,
        "activity_date": payload.activity_date.isoformat(),
        "adults": str(payload.adults),
        "children": str(payload.children),
        "infants": str(payload.infants),
        "customer_name": payload.customer_name,
        "customer_email": str(payload.customer_email),
        "is_come_direct": str(payload.is_come_direct).lower(),
    }
    optional: List[tuple[str, Optional[object]]] = [
        ("customer_whatsapp", payload.customer_whatsapp),
        ("hotel_id", payload.hotel_id),
        ("custom_pickup_location", payload.custom_pickup_location),
        ("room_number", payload.room_number),
        ("notes", payload.notes),
    ]
    for key, value in optional:
        if value:
            metadata[key] = str(value)
    return metadata
