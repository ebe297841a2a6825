"""Application-wide constants and defaults."""
from __future__ import annotations

from decimal import Decimal

APP_NAME = "TourDesk"

# Bookings in these states never reach an invoice.
NON_INVOICEABLE_STATUSES: frozenset[str] = frozenset({"void", "cancelled"})

# Only cancelled bookings release their seats on the calendar.
SEAT_RELEASING_STATUSES: frozenset[str] = frozenset({"cancelled"})

BOOKING_STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "pending": ("confirmed", "cancelled", "void"),
    "confirmed": ("completed", "cancelled", "void"),
    "completed": ("void",),
    "cancelled": (),
    "void": (),
}

INVOICE_NUMBER_PREFIX = "INV"
RECEIPT_NUMBER_PREFIX = "RCP"
INVOICE_SEQUENCE_WIDTH = 4
INVOICE_DUE_DAY_OPTIONS: tuple[int, ...] = (1, 3, 7, 14, 21, 30, 45, 60)
DEFAULT_INVOICE_DUE_DAYS = 30

CHILD_PAX_WEIGHT = Decimal("0.5")
DEFAULT_CHILD_PRICE_RATIO = Decimal("0.5")

# Remaining capacity reported for dates without an explicit slot row.
UNLIMITED_SLOTS = 999
LOW_AVAILABILITY_THRESHOLD = 10

PICKUP_WINDOW_MINUTES = 15
DEFAULT_MEETING_TIME = "08:00 AM"

# Same-day public booking closes at this local time unless the program overrides it.
DEFAULT_BOOKING_CUTOFF_TIME = "18:00"

AVAILABILITY_UPSERT_CHUNK = 100

BOOKING_EXPORT_COLUMNS: tuple[str, ...] = (
    "booking_number",
    "activity_date",
    "status",
    "program",
    "source",
    "customer_name",
    "customer_email",
    "adults",
    "children",
    "infants",
    "pickup",
    "pickup_time",
    "collect_money",
    "invoice_number",
)
