"""Calendar availability for programs.

Results are advisory only: nothing here reserves a seat, so a booking can
still be written for a date that was reported full.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from . import schemas
from .config import OPERATOR_TIMEZONE
from .constants import (
    DEFAULT_BOOKING_CUTOFF_TIME,
    LOW_AVAILABILITY_THRESHOLD,
    SEAT_RELEASING_STATUSES,
    UNLIMITED_SLOTS,
)


def local_now(timezone: Optional[str] = None) -> datetime:
    """Current wall-clock time in the operator's time zone."""

    return datetime.now(ZoneInfo(timezone or OPERATOR_TIMEZONE))


def local_today(timezone: Optional[str] = None) -> date:
    """Today's date in the operator's time zone."""

    return local_now(timezone).date()


def is_past_cutoff(now: datetime, cutoff: Optional[str]) -> bool:
    """Whether same-day booking has closed for a program with ``cutoff`` (HH:MM)."""

    hours, minutes = (int(part) for part in (cutoff or DEFAULT_BOOKING_CUTOFF_TIME).split(":")[:2])
    return now.time() > time(hours, minutes)


def booked_pax_by_date(bookings: Iterable[schemas.SlotBooking]) -> Dict[date, int]:
    """Seats taken per activity date; infants do not occupy a seat."""

    counts: Dict[date, int] = {}
    for booking in bookings:
        if booking.status in SEAT_RELEASING_STATUSES:
            continue
        seats = (booking.adults or 0) + (booking.children or 0)
        counts[booking.activity_date] = counts.get(booking.activity_date, 0) + seats
    return counts


def evaluate_date(
    day: date,
    row: Optional[schemas.SlotConfig],
    booked: int,
    today: date,
    past_cutoff: bool = False,
) -> schemas.DateAvailability:
    """Classify one calendar day.

    Past days, and today once ``past_cutoff`` is set, keep their capacity
    figures but are never reported as available.
    """

    is_past = day < today
    cutoff_reached = past_cutoff and day == today
    bookable = not (is_past or cutoff_reached)

    if row is None:
        return schemas.DateAvailability(
            date=day,
            status="available",
            remaining=UNLIMITED_SLOTS,
            booked=booked,
            is_available=bookable,
            is_full=False,
            is_closed=False,
            is_past=is_past,
            is_past_cutoff=cutoff_reached,
        )

    if not row.is_open:
        return schemas.DateAvailability(
            date=day,
            status="closed",
            remaining=0,
            booked=booked,
            total_slots=row.total_slots,
            is_available=False,
            is_full=False,
            is_closed=True,
            is_past=is_past,
            is_past_cutoff=cutoff_reached,
        )

    remaining = row.total_slots - booked
    is_full = remaining <= 0
    remaining = max(0, remaining)
    return schemas.DateAvailability(
        date=day,
        status="full" if is_full else "available",
        remaining=remaining,
        booked=booked,
        total_slots=row.total_slots,
        is_available=bookable and not is_full,
        is_full=is_full,
        is_closed=False,
        is_past=is_past,
        is_past_cutoff=cutoff_reached,
        low_availability=0 < remaining < LOW_AVAILABILITY_THRESHOLD,
    )


def evaluate_range(
    start: date,
    end: date,
    rows: Iterable[schemas.SlotConfig],
    bookings: Iterable[schemas.SlotBooking],
    today: date,
    past_cutoff: bool = False,
) -> List[schemas.DateAvailability]:
    if end < start:
        raise ValueError("end must be on or after start")
    by_date: Mapping[date, schemas.SlotConfig] = {row.date: row for row in rows}
    booked = booked_pax_by_date(bookings)
    days: List[schemas.DateAvailability] = []
    day = start
    while day <= end:
        days.append(evaluate_date(day, by_date.get(day), booked.get(day, 0), today, past_cutoff))
        day += timedelta(days=1)
    return days


def dates_for_weekdays(start: date, end: date, weekdays: Iterable[int]) -> List[date]:
    """Every date in ``[start, end]`` whose weekday is selected."""

    selected = set(weekdays)
    span = (end - start).days
    return [
        start + timedelta(days=offset)
        for offset in range(span + 1)
        if (start + timedelta(days=offset)).weekday() in selected
    ]
