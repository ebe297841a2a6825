"""Agent invoice aggregation, numbering and tax helpers.

The functions in this module never touch the database. ``crud.create_invoices``
feeds them bookings and agent prices and persists the resulting plans.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from . import schemas
from .constants import (
    CHILD_PAX_WEIGHT,
    INVOICE_DUE_DAY_OPTIONS,
    INVOICE_NUMBER_PREFIX,
    INVOICE_SEQUENCE_WIDTH,
    NON_INVOICEABLE_STATUSES,
    RECEIPT_NUMBER_PREFIX,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
UNIT = Decimal("1")


def is_invoiceable(booking: schemas.InvoiceableBooking) -> bool:
    """Agent bookings that are live and not yet attached to an invoice."""

    return (
        booking.agent_id is not None
        and not booking.is_direct_booking
        and booking.invoice_id is None
        and booking.status not in NON_INVOICEABLE_STATUSES
    )


def weighted_pax(adults: int, children: int) -> Decimal:
    """Adults count fully, children half, infants not at all."""

    return Decimal(adults or 0) + Decimal(children or 0) * CHILD_PAX_WEIGHT


def line_amount(agent_price: Decimal, adults: int, children: int) -> Decimal:
    return (Decimal(agent_price or 0) * weighted_pax(adults, children)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def plan_invoices(
    bookings: Iterable[schemas.InvoiceableBooking],
    agent_prices: Mapping[Tuple[int, int], Decimal],
    agent_names: Optional[Mapping[int, str]] = None,
) -> List[schemas.InvoicePlan]:
    """Group invoiceable bookings into one plan per agent.

    ``agent_prices`` maps ``(agent_id, program_id)`` to the agent price. A
    missing entry prices the line at zero; there is no fallback to the
    program's selling price here.
    """

    names = agent_names or {}
    grouped: Dict[int, List[schemas.InvoicePlanLine]] = {}
    for booking in bookings:
        if not is_invoiceable(booking):
            logger.debug("Skipping booking %s: not invoiceable", booking.id)
            continue
        price = Decimal(agent_prices.get((booking.agent_id, booking.program_id)) or 0)
        grouped.setdefault(booking.agent_id, []).append(
            schemas.InvoicePlanLine(
                booking_id=booking.id,
                program_id=booking.program_id,
                activity_date=booking.activity_date,
                adults=booking.adults,
                children=booking.children,
                pax=weighted_pax(booking.adults, booking.children),
                agent_price=price,
                amount=line_amount(price, booking.adults, booking.children),
            )
        )

    plans: List[schemas.InvoicePlan] = []
    for agent_id, lines in grouped.items():
        activity_dates = sorted(line.activity_date for line in lines)
        plans.append(
            schemas.InvoicePlan(
                agent_id=agent_id,
                agent_name=names.get(agent_id, "Unknown Agent"),
                lines=lines,
                total_amount=sum((line.amount for line in lines), Decimal("0")),
                date_from=activity_dates[0],
                date_to=activity_dates[-1],
            )
        )
    return plans


def compute_tax(
    subtotal: Decimal, tax_percentage: Decimal, tax_applied: bool = True
) -> schemas.InvoiceTotals:
    """Tax is rounded to a whole currency unit and skipped for tax-exempt agents."""

    percentage = Decimal(tax_percentage or 0) if tax_applied else Decimal("0")
    subtotal = Decimal(subtotal or 0)
    tax_amount = Decimal("0")
    if percentage > 0:
        tax_amount = (subtotal * percentage / Decimal("100")).quantize(UNIT, rounding=ROUND_HALF_UP)
    return schemas.InvoiceTotals(
        subtotal=subtotal,
        tax_percentage=percentage,
        tax_amount=tax_amount,
        grand_total=subtotal + tax_amount,
    )


def invoice_period(on: date) -> str:
    return f"{on.year}{on.month:02d}"


def invoice_prefix(on: date) -> str:
    return f"{INVOICE_NUMBER_PREFIX}-{invoice_period(on)}-"


def format_invoice_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:0{INVOICE_SEQUENCE_WIDTH}d}"


def parse_invoice_sequence(invoice_number: str, prefix: str) -> Optional[int]:
    if not invoice_number or not invoice_number.startswith(prefix):
        return None
    suffix = invoice_number[len(prefix):]
    return int(suffix) if suffix.isdigit() else None


def highest_sequence(invoice_numbers: Iterable[str], prefix: str) -> int:
    """Largest numeric suffix among numbers carrying ``prefix``; 0 when none."""

    sequences = [parse_invoice_sequence(number, prefix) for number in invoice_numbers]
    return max((value for value in sequences if value is not None), default=0)


def receipt_number(invoice_number: str) -> str:
    return invoice_number.replace(f"{INVOICE_NUMBER_PREFIX}-", f"{RECEIPT_NUMBER_PREFIX}-", 1)


def due_date_for(today: date, due_days: int) -> date:
    if due_days not in INVOICE_DUE_DAY_OPTIONS:
        raise ValueError(f"Unsupported due period of {due_days} days")
    return today + timedelta(days=due_days)


def is_overdue(status: str, due_date: Optional[date], today: date) -> bool:
    if status == "paid" or due_date is None:
        return False
    return due_date < today


def display_status(status: str, due_date: Optional[date], today: date) -> str:
    return "overdue" if is_overdue(status, due_date, today) else status
