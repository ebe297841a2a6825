"""CRUD helper functions used by the API routers."""
from __future__ import annotations

import json
import logging
import re
import secrets
import string
from collections.abc import Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from passlib.context import CryptContext
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import availability, invoicing, models, pricing, schemas, utils
from .config import DEFAULT_TAX_PERCENTAGE, EMAIL_FROM_ADDRESS
from .constants import AVAILABILITY_UPSERT_CHUNK, BOOKING_STATUS_TRANSITIONS, DEFAULT_BOOKING_CUTOFF_TIME

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Longest calendar window served in one request.
MAX_CALENDAR_DAYS = 366


def _slugify(value: str) -> str:
    value = value.lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-") or secrets.token_hex(4)


def _ensure_unique_slug(session: Session, slug: str) -> str:
    base = slug
    counter = 1
    while session.scalar(select(models.Company).where(models.Company.slug == slug)):
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def _ensure_program_slug(session: Session, company_id: int, slug: str, exclude_id: int | None = None) -> str:
    base = slug
    counter = 1
    while True:
        statement = select(models.Program.id).where(
            models.Program.company_id == company_id, models.Program.slug == slug
        )
        if exclude_id is not None:
            statement = statement.where(models.Program.id != exclude_id)
        if not session.scalar(statement):
            return slug
        slug = f"{base}-{counter}"
        counter += 1


def _generate_booking_number(session: Session, on: date) -> str:
    alphabet = "".join(
        ch for ch in string.ascii_uppercase + string.digits if ch not in {"O", "I", "0", "1"}
    )
    prefix = f"BK{on.strftime('%y%m%d')}"
    while True:
        candidate = prefix + "".join(secrets.choice(alphabet) for _ in range(4))
        exists = session.scalar(
            select(models.Booking.id).where(models.Booking.booking_number == candidate)
        )
        if not exists:
            return candidate


def _normalize_name(value: str) -> str:
    return " ".join((value or "").lower().split())


def log_notification(
    session: Session,
    *,
    company_id: int | None,
    event_type: str,
    recipient: str,
    subject: str,
    message: str,
    channel: str = "email",
    sender: str | None = None,
    status: str = "queued",
    metadata: Optional[Dict[str, Any]] = None,
) -> models.NotificationLog:
    notification = models.NotificationLog(
        company_id=company_id,
        event_type=event_type,
        channel=channel,
        recipient=recipient,
        sender=sender,
        subject=subject,
        message=message,
        status=status,
        context=json.dumps(metadata or {}),
    )
    session.add(notification)
    session.flush()
    logger.info("Queued %s %s to %s", channel, event_type, recipient)
    return notification


def list_notifications(
    session: Session, company_id: int, limit: int = 100
) -> Sequence[models.NotificationLog]:
    statement = (
        select(models.NotificationLog)
        .where(models.NotificationLog.company_id == company_id)
        .order_by(models.NotificationLog.created_at.desc(), models.NotificationLog.id.desc())
        .limit(limit)
    )
    return session.scalars(statement).all()


# Company helpers


def create_company(session: Session, company_in: schemas.CompanyCreate) -> models.Company:
    data = company_in.model_dump()
    slug = data.pop("slug") or _slugify(data["name"])
    data["slug"] = _ensure_unique_slug(session, _slugify(slug))
    data["email"] = str(data["email"]) if data.get("email") else None
    data["currency"] = data["currency"].upper()
    company = models.Company(tax_percentage=DEFAULT_TAX_PERCENTAGE, **data)
    session.add(company)
    session.flush()
    logger.info("Created company %s (%s)", company.id, company.slug)
    return company


def get_company(session: Session, company_id: int) -> models.Company | None:
    return session.get(models.Company, company_id)


def get_company_by_slug(session: Session, slug: str) -> models.Company | None:
    return session.scalar(select(models.Company).where(models.Company.slug == slug.lower()))


def update_company_settings(
    session: Session, company: models.Company, settings_in: schemas.CompanySettingsUpdate
) -> models.Company:
    data = settings_in.model_dump(exclude_unset=True)
    if "pricing_pin" in data:
        pin = data.pop("pricing_pin")
        company.pricing_pin_hash = pwd_context.hash(pin) if pin else None
    for field in ("email", "reply_to_email"):
        if data.get(field) is not None:
            data[field] = str(data[field])
    for field, value in data.items():
        setattr(company, field, value)
    session.add(company)
    session.flush()
    return company


def verify_pricing_pin(company: models.Company, pin: str | None) -> bool:
    if not company.pricing_pin_hash:
        return True
    if not pin:
        return False
    return pwd_context.verify(pin, company.pricing_pin_hash)


def card_payments_available(company: models.Company) -> bool:
    return bool(
        company.stripe_payments_enabled and company.stripe_public_key and company.stripe_secret_key
    )


def public_company(company: models.Company) -> schemas.PublicCompany:
    stripe_enabled = card_payments_available(company)
    return schemas.PublicCompany(
        id=company.id,
        name=company.name,
        slug=company.slug,
        logo_url=company.logo_url,
        currency=company.currency,
        allow_cash_on_tour=company.allow_cash_on_tour,
        stripe_enabled=stripe_enabled,
        stripe_public_key=company.stripe_public_key if stripe_enabled else None,
    )


# Agent helpers


def _ensure_unique_agent_code(
    session: Session, company_id: int, code: str, exclude_id: int | None = None
) -> None:
    statement = select(models.Agent.id).where(
        models.Agent.company_id == company_id,
        func.lower(models.Agent.unique_code) == code.lower(),
        models.Agent.status != "deleted",
    )
    if exclude_id is not None:
        statement = statement.where(models.Agent.id != exclude_id)
    if session.scalar(statement):
        raise ValueError(f"Agent ID '{code}' is already in use")


def create_agent(
    session: Session, ctx: schemas.OperatorContext, agent_in: schemas.AgentCreate
) -> models.Agent:
    _ensure_unique_agent_code(session, ctx.company_id, agent_in.unique_code)
    data = agent_in.model_dump()
    data["email"] = str(data["email"]) if data.get("email") else None
    agent = models.Agent(company_id=ctx.company_id, **data)
    session.add(agent)
    session.flush()
    return agent


def list_agents(
    session: Session,
    company_id: int,
    *,
    status: str | None = None,
    search: str | None = None,
) -> Sequence[models.Agent]:
    statement = select(models.Agent).where(
        models.Agent.company_id == company_id, models.Agent.status != "deleted"
    )
    if status:
        statement = statement.where(models.Agent.status == status)
    if search:
        pattern = f"%{search.lower()}%"
        statement = statement.where(
            or_(
                func.lower(models.Agent.name).like(pattern),
                func.lower(models.Agent.unique_code).like(pattern),
            )
        )
    return session.scalars(statement.order_by(models.Agent.name)).all()


def get_agent(session: Session, company_id: int, agent_id: int) -> models.Agent | None:
    statement = select(models.Agent).where(
        models.Agent.id == agent_id,
        models.Agent.company_id == company_id,
        models.Agent.status != "deleted",
    )
    return session.scalar(statement)


def update_agent(
    session: Session, ctx: schemas.OperatorContext, agent: models.Agent, agent_in: schemas.AgentUpdate
) -> models.Agent:
    data = agent_in.model_dump(exclude_unset=True)
    if data.get("unique_code") is not None:
        data["unique_code"] = data["unique_code"].strip()
        if not data["unique_code"]:
            raise ValueError("Agent ID must not be blank")
        _ensure_unique_agent_code(session, ctx.company_id, data["unique_code"], exclude_id=agent.id)
    if "name" in data and not (data["name"] or "").strip():
        raise ValueError("Agent name must not be blank")
    if data.get("email") is not None:
        data["email"] = str(data["email"])
    for field, value in data.items():
        setattr(agent, field, value)
    session.add(agent)
    session.flush()
    return agent


def delete_agent(session: Session, agent: models.Agent) -> None:
    # Bookings and invoices keep pointing at the agent; it just disappears from lists.
    agent.status = "deleted"
    session.add(agent)
    session.flush()


def _booking_counts(session: Session, agent_ids: Sequence[int]) -> Dict[int, int]:
    rows = session.execute(
        select(models.Booking.agent_id, func.count(models.Booking.id))
        .where(models.Booking.agent_id.in_(agent_ids))
        .group_by(models.Booking.agent_id)
    ).all()
    return {agent_id: count for agent_id, count in rows}


def _merge_agent_into(session: Session, keep: models.Agent, duplicate: models.Agent) -> None:
    for booking in session.scalars(
        select(models.Booking).where(models.Booking.agent_id == duplicate.id)
    ):
        booking.agent_id = keep.id
    for invoice in session.scalars(
        select(models.Invoice).where(models.Invoice.agent_id == duplicate.id)
    ):
        invoice.agent_id = keep.id

    priced_programs = set(
        session.scalars(
            select(models.AgentPricing.program_id).where(models.AgentPricing.agent_id == keep.id)
        )
    )
    for row in session.scalars(
        select(models.AgentPricing).where(models.AgentPricing.agent_id == duplicate.id)
    ).all():
        if row.program_id in priced_programs:
            session.delete(row)
        else:
            row.agent_id = keep.id

    for member in session.scalars(
        select(models.AgentStaff).where(models.AgentStaff.agent_id == duplicate.id)
    ):
        member.agent_id = keep.id

    duplicate.status = "deleted"
    session.flush()


def merge_duplicate_agents(session: Session, ctx: schemas.OperatorContext) -> schemas.AgentMergeResult:
    """Fold agents sharing a name (ignoring case and spacing) into one record.

    The agent with the most bookings survives, ties going to the oldest. Each
    duplicate is merged in its own savepoint so one failure does not undo the
    others.
    """

    agents = list_agents(session, ctx.company_id)
    groups: Dict[str, List[models.Agent]] = {}
    for agent in agents:
        groups.setdefault(_normalize_name(agent.name), []).append(agent)

    counts = _booking_counts(session, [agent.id for agent in agents])
    outcomes: List[schemas.AgentMergeOutcome] = []
    for members in groups.values():
        if len(members) < 2:
            continue
        members.sort(key=lambda agent: (-counts.get(agent.id, 0), agent.created_at, agent.id))
        keep, duplicates = members[0], members[1:]
        for duplicate in duplicates:
            try:
                with session.begin_nested():
                    _merge_agent_into(session, keep, duplicate)
            except SQLAlchemyError as exc:
                logger.exception("Failed to merge agent %s into %s", duplicate.id, keep.id)
                outcomes.append(
                    schemas.AgentMergeOutcome(
                        kept_agent_id=keep.id,
                        merged_agent_id=duplicate.id,
                        outcome="failed",
                        error=str(exc),
                    )
                )
                continue
            logger.info("Merged agent %s into %s", duplicate.id, keep.id)
            outcomes.append(
                schemas.AgentMergeOutcome(
                    kept_agent_id=keep.id, merged_agent_id=duplicate.id, outcome="merged"
                )
            )

    merged = sum(1 for outcome in outcomes if outcome.outcome == "merged")
    return schemas.AgentMergeResult(
        merged_count=merged, failed_count=len(outcomes) - merged, outcomes=outcomes
    )


def create_agent_staff(
    session: Session, agent: models.Agent, staff_in: schemas.AgentStaffCreate
) -> models.AgentStaff:
    member = models.AgentStaff(agent_id=agent.id, **staff_in.model_dump())
    session.add(member)
    session.flush()
    return member


def list_agent_staff(session: Session, agent: models.Agent) -> Sequence[models.AgentStaff]:
    statement = (
        select(models.AgentStaff)
        .where(models.AgentStaff.agent_id == agent.id)
        .order_by(models.AgentStaff.full_name)
    )
    return session.scalars(statement).all()


# Program helpers


def create_program(
    session: Session, ctx: schemas.OperatorContext, program_in: schemas.ProgramCreate
) -> models.Program:
    data = program_in.model_dump()
    slug = data.pop("slug") or data["name"]
    data["slug"] = _ensure_program_slug(session, ctx.company_id, _slugify(slug))
    program = models.Program(company_id=ctx.company_id, **data)
    session.add(program)
    session.flush()
    return program


def list_programs(
    session: Session, company_id: int, *, active_only: bool = False
) -> Sequence[models.Program]:
    statement = select(models.Program).where(models.Program.company_id == company_id)
    if active_only:
        statement = statement.where(models.Program.status == "active")
    return session.scalars(statement.order_by(models.Program.name)).all()


def get_program(session: Session, company_id: int, program_id: int) -> models.Program | None:
    statement = select(models.Program).where(
        models.Program.id == program_id, models.Program.company_id == company_id
    )
    return session.scalar(statement)


def update_program(
    session: Session, program: models.Program, program_in: schemas.ProgramUpdate
) -> models.Program:
    data = program_in.model_dump(exclude_unset=True)
    if "name" in data and not (data["name"] or "").strip():
        raise ValueError("Program name must not be blank")
    for field, value in data.items():
        setattr(program, field, value)
    session.add(program)
    session.flush()
    return program


def deactivate_program(session: Session, program: models.Program) -> models.Program:
    program.status = "inactive"
    program.direct_booking_enabled = False
    session.add(program)
    session.flush()
    return program


def set_program_thumbnail(
    session: Session, program: models.Program, data: bytes, filename: str
) -> models.Program:
    stored = utils.optimize_thumbnail_upload(data, filename)
    utils.remove_thumbnail(program.thumbnail_path)
    program.thumbnail_path = str(stored["path"])
    session.add(program)
    session.flush()
    return program


# Agent pricing helpers


def _pricing_overrides(session: Session, agent_id: int) -> Dict[int, models.AgentPricing]:
    rows = session.scalars(
        select(models.AgentPricing).where(models.AgentPricing.agent_id == agent_id)
    ).all()
    return {row.program_id: row for row in rows}


def get_agent_pricing_sheet(
    session: Session, company_id: int, agent: models.Agent
) -> List[schemas.ResolvedPricing]:
    overrides = _pricing_overrides(session, agent.id)
    sheet: List[schemas.ResolvedPricing] = []
    for program in list_programs(session, company_id, active_only=True):
        row = overrides.get(program.id)
        existing = schemas.AgentPricingOverride.model_validate(row) if row else None
        sheet.append(
            pricing.resolve_agent_pricing(schemas.ProgramPricing.model_validate(program), existing)
        )
    return sheet


def get_bulk_pricing_template(session: Session, company_id: int) -> List[schemas.ResolvedPricing]:
    return [
        pricing.resolve_bulk_pricing(schemas.ProgramPricing.model_validate(program))
        for program in list_programs(session, company_id, active_only=True)
    ]


def upsert_agent_pricing(
    session: Session,
    agent: models.Agent,
    program: models.Program,
    entry: schemas.AgentPricingEntry,
) -> models.AgentPricing:
    values = pricing.pricing_upsert_values(
        agent.id, schemas.ProgramPricing.model_validate(program), entry
    )
    row = session.scalar(
        select(models.AgentPricing).where(
            models.AgentPricing.agent_id == agent.id,
            models.AgentPricing.program_id == program.id,
        )
    )
    if row is None:
        row = models.AgentPricing(**values)
    else:
        for field, value in values.items():
            setattr(row, field, value)
    session.add(row)
    session.flush()
    return row


def save_agent_pricing(
    session: Session,
    ctx: schemas.OperatorContext,
    agent: models.Agent,
    payload: schemas.AgentPricingSave,
) -> List[models.AgentPricing]:
    rows: List[models.AgentPricing] = []
    for entry in payload.entries:
        program = get_program(session, ctx.company_id, entry.program_id)
        if program is None:
            raise LookupError(f"Program {entry.program_id} not found")
        rows.append(upsert_agent_pricing(session, agent, program, entry))
    logger.info("Saved %s price(s) for agent %s", len(rows), agent.id)
    return rows


def bulk_save_agent_pricing(
    session: Session, ctx: schemas.OperatorContext, payload: schemas.BulkAgentPricingSave
) -> List[models.AgentPricing]:
    """Apply the same entries to every selected agent, overwriting their prices."""

    rows: List[models.AgentPricing] = []
    for agent_id in dict.fromkeys(payload.agent_ids):
        agent = get_agent(session, ctx.company_id, agent_id)
        if agent is None:
            raise LookupError(f"Agent {agent_id} not found")
        rows.extend(save_agent_pricing(session, ctx, agent, payload))
    return rows


# Availability helpers


def upsert_availability(
    session: Session, program: models.Program, entries: Sequence[schemas.AvailabilityUpsert]
) -> List[models.ProgramAvailability]:
    latest: Dict[date, schemas.AvailabilityUpsert] = {entry.date: entry for entry in entries}
    days = sorted(latest)
    rows: List[models.ProgramAvailability] = []
    for start in range(0, len(days), AVAILABILITY_UPSERT_CHUNK):
        chunk = days[start : start + AVAILABILITY_UPSERT_CHUNK]
        existing = {
            row.date: row
            for row in session.scalars(
                select(models.ProgramAvailability).where(
                    models.ProgramAvailability.program_id == program.id,
                    models.ProgramAvailability.date.in_(chunk),
                )
            )
        }
        for day in chunk:
            entry = latest[day]
            row = existing.get(day)
            if row is None:
                row = models.ProgramAvailability(program_id=program.id, date=day)
                session.add(row)
            row.total_slots = entry.total_slots
            row.is_open = entry.is_open
            rows.append(row)
        session.flush()
    return rows


def bulk_setup_availability(
    session: Session, program: models.Program, payload: schemas.AvailabilityBulkSetup
) -> List[models.ProgramAvailability]:
    days = availability.dates_for_weekdays(payload.start_date, payload.end_date, payload.weekdays)
    entries = [
        schemas.AvailabilityUpsert(date=day, total_slots=payload.total_slots, is_open=payload.is_open)
        for day in days
    ]
    rows = upsert_availability(session, program, entries)
    logger.info("Configured %s date(s) for program %s", len(rows), program.id)
    return rows


def list_availability(
    session: Session, program: models.Program, start: date, end: date
) -> Sequence[models.ProgramAvailability]:
    statement = (
        select(models.ProgramAvailability)
        .where(
            models.ProgramAvailability.program_id == program.id,
            models.ProgramAvailability.date >= start,
            models.ProgramAvailability.date <= end,
        )
        .order_by(models.ProgramAvailability.date)
    )
    return session.scalars(statement).all()


def program_calendar(
    session: Session,
    program: models.Program,
    start: date,
    end: date,
    today: date,
    now: datetime | None = None,
) -> schemas.AvailabilityCalendar:
    """Evaluate every day in ``[start, end]``.

    ``now`` applies the program's same-day booking cutoff; the public booking
    page passes it, the back office does not.
    """

    if end < start:
        raise ValueError("end must be on or after start")
    if (end - start).days >= MAX_CALENDAR_DAYS:
        raise ValueError(f"Calendar range is limited to {MAX_CALENDAR_DAYS} days")
    rows = [schemas.SlotConfig.model_validate(row) for row in list_availability(session, program, start, end)]
    bookings = [
        schemas.SlotBooking.model_validate(booking)
        for booking in session.scalars(
            select(models.Booking).where(
                models.Booking.program_id == program.id,
                models.Booking.activity_date >= start,
                models.Booking.activity_date <= end,
            )
        )
    ]
    past_cutoff = now is not None and availability.is_past_cutoff(now, program.booking_cutoff_time)
    days = availability.evaluate_range(start, end, rows, bookings, today, past_cutoff)
    return schemas.AvailabilityCalendar(program_id=program.id, today=today, days=days)


# Hotel helpers


def create_hotel(
    session: Session, ctx: schemas.OperatorContext, hotel_in: schemas.HotelCreate
) -> models.Hotel:
    hotel = models.Hotel(company_id=ctx.company_id, **hotel_in.model_dump())
    session.add(hotel)
    session.flush()
    return hotel


def list_hotels(session: Session, company_id: int) -> Sequence[models.Hotel]:
    statement = (
        select(models.Hotel).where(models.Hotel.company_id == company_id).order_by(models.Hotel.name)
    )
    return session.scalars(statement).all()


def get_hotel(session: Session, company_id: int, hotel_id: int) -> models.Hotel | None:
    statement = select(models.Hotel).where(
        models.Hotel.id == hotel_id, models.Hotel.company_id == company_id
    )
    return session.scalar(statement)


# Booking helpers


def _check_booking_references(
    session: Session,
    company_id: int,
    *,
    program_id: int | None = None,
    agent_id: int | None = None,
    hotel_id: int | None = None,
) -> None:
    if program_id is not None and get_program(session, company_id, program_id) is None:
        raise LookupError("Program not found")
    if agent_id is not None and get_agent(session, company_id, agent_id) is None:
        raise LookupError("Agent not found")
    if hotel_id is not None and get_hotel(session, company_id, hotel_id) is None:
        raise LookupError("Hotel not found")


def create_booking(
    session: Session,
    ctx: schemas.OperatorContext,
    booking_in: schemas.BookingCreate,
    *,
    source: str = "backoffice",
    today: date | None = None,
) -> models.Booking:
    if booking_in.is_direct_booking and booking_in.agent_id is not None:
        raise ValueError("Direct bookings cannot be assigned to an agent")
    _check_booking_references(
        session,
        ctx.company_id,
        program_id=booking_in.program_id,
        agent_id=booking_in.agent_id,
        hotel_id=booking_in.hotel_id,
    )
    data = booking_in.model_dump()
    data["customer_email"] = str(data["customer_email"]) if data.get("customer_email") else None
    booking = models.Booking(
        company_id=ctx.company_id,
        booking_number=_generate_booking_number(session, today or availability.local_today()),
        source=source,
        last_modified_by_name=ctx.user_name,
        **data,
    )
    session.add(booking)
    session.flush()
    logger.info("Created booking %s for program %s", booking.booking_number, booking.program_id)
    return booking


def list_bookings(
    session: Session,
    company_id: int,
    *,
    status: str | None = None,
    agent_id: int | None = None,
    program_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    invoiced: bool | None = None,
) -> Sequence[models.Booking]:
    statement = (
        select(models.Booking)
        .where(models.Booking.company_id == company_id)
        .options(
            selectinload(models.Booking.program),
            selectinload(models.Booking.agent),
            selectinload(models.Booking.hotel),
            selectinload(models.Booking.invoice),
        )
    )
    if status:
        statement = statement.where(models.Booking.status == status)
    if agent_id is not None:
        statement = statement.where(models.Booking.agent_id == agent_id)
    if program_id is not None:
        statement = statement.where(models.Booking.program_id == program_id)
    if date_from is not None:
        statement = statement.where(models.Booking.activity_date >= date_from)
    if date_to is not None:
        statement = statement.where(models.Booking.activity_date <= date_to)
    if search:
        pattern = f"%{search.lower()}%"
        statement = statement.where(
            or_(
                func.lower(models.Booking.customer_name).like(pattern),
                func.lower(models.Booking.booking_number).like(pattern),
                func.lower(models.Booking.customer_email).like(pattern),
            )
        )
    if invoiced is True:
        statement = statement.where(models.Booking.invoice_id.is_not(None))
    elif invoiced is False:
        statement = statement.where(models.Booking.invoice_id.is_(None))
    statement = statement.order_by(models.Booking.activity_date.desc(), models.Booking.id.desc())
    return session.scalars(statement).all()


def get_booking(session: Session, company_id: int, booking_id: int) -> models.Booking | None:
    statement = select(models.Booking).where(
        models.Booking.id == booking_id, models.Booking.company_id == company_id
    )
    return session.scalar(statement)


# Changing these on an invoiced booking would desynchronise its invoice line.
_INVOICED_LOCKED_FIELDS = ("program_id", "agent_id", "adults", "children")


def update_booking(
    session: Session,
    ctx: schemas.OperatorContext,
    booking: models.Booking,
    booking_in: schemas.BookingUpdate,
) -> models.Booking:
    data = booking_in.model_dump(exclude_unset=True)
    if booking.invoice_id is not None:
        locked = [
            field for field in _INVOICED_LOCKED_FIELDS
            if field in data and data[field] != getattr(booking, field)
        ]
        if locked:
            raise ValueError(f"Booking is already invoiced; cannot change {', '.join(locked)}")
    if data.get("agent_id") is not None and booking.is_direct_booking:
        raise ValueError("Direct bookings cannot be assigned to an agent")
    _check_booking_references(
        session,
        ctx.company_id,
        program_id=data.get("program_id"),
        agent_id=data.get("agent_id"),
        hotel_id=data.get("hotel_id"),
    )
    if data.get("customer_email") is not None:
        data["customer_email"] = str(data["customer_email"])
    if "pickup_time" in data and data["pickup_time"] != booking.pickup_time:
        booking.pickup_email_sent = False
    for field, value in data.items():
        setattr(booking, field, value)

    if booking.is_come_direct:
        booking.hotel_id = None
        booking.custom_pickup_location = None
    if (booking.adults or 0) + (booking.children or 0) + (booking.infants or 0) == 0:
        raise ValueError("A booking needs at least one guest")

    booking.last_modified_by_name = ctx.user_name
    session.add(booking)
    session.flush()
    return booking


def change_booking_status(
    session: Session, ctx: schemas.OperatorContext, booking: models.Booking, new_status: str
) -> models.Booking:
    if booking.status == new_status:
        return booking
    allowed = BOOKING_STATUS_TRANSITIONS.get(booking.status, ())
    if new_status not in allowed:
        raise ValueError(f"Cannot change booking from {booking.status} to {new_status}")
    logger.info("Booking %s: %s -> %s", booking.booking_number, booking.status, new_status)
    booking.status = new_status
    booking.last_modified_by_name = ctx.user_name
    session.add(booking)
    session.flush()
    return booking


def delete_booking(session: Session, booking: models.Booking) -> None:
    if booking.invoice_id is not None:
        raise ValueError("Invoiced bookings cannot be deleted; void them instead")
    session.delete(booking)
    session.flush()


def send_pickup_email(
    session: Session, ctx: schemas.OperatorContext, booking: models.Booking
) -> models.NotificationLog:
    if not booking.customer_email:
        raise ValueError("Customer email is required")
    subject, html = utils.render_pickup_email(booking)
    company = booking.company
    notification = log_notification(
        session,
        company_id=company.id,
        event_type="booking.meeting_point" if booking.is_come_direct else "booking.pickup_time",
        recipient=booking.customer_email,
        sender=utils.sender_for(company, EMAIL_FROM_ADDRESS),
        subject=subject,
        message=html,
        metadata={
            "booking_id": booking.id,
            "booking_number": booking.booking_number,
            "reply_to": company.reply_to_email or company.email,
        },
    )
    booking.pickup_email_sent = True
    booking.last_modified_by_name = ctx.user_name
    session.add(booking)
    session.flush()
    return notification


# Invoice helpers


def _invoiceable_selection(
    session: Session, company_id: int, booking_ids: Sequence[int]
) -> tuple[List[models.Booking], List[schemas.InvoicePlan]]:
    found = {
        booking.id: booking
        for booking in session.scalars(
            select(models.Booking).where(
                models.Booking.company_id == company_id,
                models.Booking.id.in_(booking_ids),
            )
        )
    }
    bookings = [found[booking_id] for booking_id in dict.fromkeys(booking_ids) if booking_id in found]
    agent_ids = {booking.agent_id for booking in bookings if booking.agent_id is not None}
    agent_prices: Dict[tuple[int, int], Decimal] = {}
    agent_names: Dict[int, str] = {}
    if agent_ids:
        for row in session.scalars(
            select(models.AgentPricing).where(models.AgentPricing.agent_id.in_(agent_ids))
        ):
            agent_prices[(row.agent_id, row.program_id)] = row.agent_price
        for agent in session.scalars(select(models.Agent).where(models.Agent.id.in_(agent_ids))):
            agent_names[agent.id] = agent.name

    plans = invoicing.plan_invoices(
        [schemas.InvoiceableBooking.model_validate(booking) for booking in bookings],
        agent_prices,
        agent_names,
    )
    return bookings, plans


def preview_invoices(
    session: Session, company_id: int, selection: schemas.InvoiceSelection
) -> List[schemas.InvoicePlan]:
    _, plans = _invoiceable_selection(session, company_id, selection.booking_ids)
    return plans


def allocate_invoice_number(session: Session, company_id: int, on: date) -> str:
    """Next ``INV-YYYYMM-NNNN`` for the company, serialised on a counter row."""

    period = invoicing.invoice_period(on)
    prefix = invoicing.invoice_prefix(on)
    counter = session.scalar(
        select(models.InvoiceSequence)
        .where(
            models.InvoiceSequence.company_id == company_id,
            models.InvoiceSequence.period == period,
        )
        .with_for_update()
    )
    existing = session.scalars(
        select(models.Invoice.invoice_number).where(
            models.Invoice.company_id == company_id,
            models.Invoice.invoice_number.like(f"{prefix}%"),
        )
    ).all()
    highest = invoicing.highest_sequence(existing, prefix)
    if counter is None:
        counter = models.InvoiceSequence(company_id=company_id, period=period, current_value=0)
        session.add(counter)
    counter.current_value = max(counter.current_value or 0, highest) + 1
    session.flush()
    return invoicing.format_invoice_number(prefix, counter.current_value)


def create_invoices(
    session: Session,
    ctx: schemas.OperatorContext,
    payload: schemas.BulkInvoiceCreate,
    today: date | None = None,
) -> schemas.InvoiceBatchResult:
    """Create one draft invoice per agent among the selected bookings.

    Each agent group is written inside its own savepoint. A group that fails
    is rolled back, logged and reported; the remaining groups still commit.
    """

    today = today or availability.local_today()
    due_date = invoicing.due_date_for(today, payload.due_days)
    bookings, plans = _invoiceable_selection(session, ctx.company_id, payload.booking_ids)
    if not plans:
        raise ValueError("No invoiceable bookings in the selection")
    by_id = {booking.id: booking for booking in bookings}

    outcomes: List[schemas.InvoiceBatchOutcome] = []
    for plan in plans:
        try:
            with session.begin_nested():
                invoice = models.Invoice(
                    company_id=ctx.company_id,
                    agent_id=plan.agent_id,
                    invoice_number=allocate_invoice_number(session, ctx.company_id, today),
                    date_from=plan.date_from,
                    date_to=plan.date_to,
                    total_amount=plan.total_amount,
                    status="draft",
                    due_date=due_date,
                    due_days=payload.due_days,
                    last_modified_by_name=ctx.user_name,
                )
                session.add(invoice)
                session.flush()
                for line in plan.lines:
                    session.add(
                        models.InvoiceItem(
                            invoice_id=invoice.id, booking_id=line.booking_id, amount=line.amount
                        )
                    )
                    by_id[line.booking_id].invoice_id = invoice.id
                session.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to create invoice for agent %s", plan.agent_id)
            outcomes.append(
                schemas.InvoiceBatchOutcome(
                    agent_id=plan.agent_id,
                    agent_name=plan.agent_name,
                    booking_ids=plan.booking_ids,
                    outcome="failed",
                    total_amount=plan.total_amount,
                    error=str(exc),
                )
            )
            continue

        logger.info(
            "Created invoice %s for agent %s (%s booking(s))",
            invoice.invoice_number,
            plan.agent_id,
            len(plan.lines),
        )
        outcomes.append(
            schemas.InvoiceBatchOutcome(
                agent_id=plan.agent_id,
                agent_name=plan.agent_name,
                booking_ids=plan.booking_ids,
                outcome="created",
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                total_amount=plan.total_amount,
            )
        )

    created = sum(1 for outcome in outcomes if outcome.outcome == "created")
    return schemas.InvoiceBatchResult(
        created_count=created, failed_count=len(outcomes) - created, outcomes=outcomes
    )


def invoice_view(invoice: models.Invoice, today: date) -> schemas.Invoice:
    view = schemas.Invoice.model_validate(invoice)
    return view.model_copy(
        update={"display_status": invoicing.display_status(invoice.status, invoice.due_date, today)}
    )


def list_invoices(
    session: Session,
    company_id: int,
    *,
    today: date,
    status: str | None = None,
    agent_id: int | None = None,
) -> List[schemas.Invoice]:
    """Invoices newest first; ``status`` filters on the displayed status."""

    statement = (
        select(models.Invoice)
        .where(models.Invoice.company_id == company_id)
        .options(selectinload(models.Invoice.items))
        .order_by(models.Invoice.created_at.desc(), models.Invoice.id.desc())
    )
    if agent_id is not None:
        statement = statement.where(models.Invoice.agent_id == agent_id)
    views = [invoice_view(invoice, today) for invoice in session.scalars(statement).unique().all()]
    if status:
        views = [view for view in views if view.display_status == status]
    return views


def get_invoice(session: Session, company_id: int, invoice_id: int) -> models.Invoice | None:
    statement = (
        select(models.Invoice)
        .where(models.Invoice.id == invoice_id, models.Invoice.company_id == company_id)
        .options(selectinload(models.Invoice.items))
    )
    return session.scalars(statement).unique().first()


def update_invoice(
    session: Session,
    ctx: schemas.OperatorContext,
    invoice: models.Invoice,
    invoice_in: schemas.InvoiceUpdate,
) -> models.Invoice:
    data = invoice_in.model_dump(exclude_unset=True)
    new_status = data.get("status")
    if new_status == "paid" and invoice.paid_at is None:
        invoice.paid_at = datetime.utcnow()
    elif new_status is not None and new_status != "paid":
        invoice.paid_at = None
    for field, value in data.items():
        setattr(invoice, field, value)
    invoice.last_modified_by_name = ctx.user_name
    session.add(invoice)
    session.flush()
    return invoice


def mark_invoice_paid(
    session: Session,
    ctx: schemas.OperatorContext,
    invoice: models.Invoice,
    payload: schemas.InvoiceMarkPaid,
) -> models.Invoice:
    invoice.status = "paid"
    invoice.paid_at = datetime.utcnow()
    invoice.payment_method = payload.payment_method
    if payload.internal_notes is not None:
        invoice.internal_notes = payload.internal_notes
    invoice.last_modified_by_name = ctx.user_name
    session.add(invoice)
    session.flush()
    logger.info("Invoice %s marked paid via %s", invoice.invoice_number, payload.payment_method)
    return invoice


def delete_invoice(session: Session, invoice: models.Invoice) -> None:
    # Released bookings become invoiceable again.
    for booking in session.scalars(
        select(models.Booking).where(models.Booking.invoice_id == invoice.id)
    ):
        booking.invoice_id = None
    session.flush()
    session.delete(invoice)
    session.flush()


def send_invoice_email(
    session: Session,
    ctx: schemas.OperatorContext,
    invoice: models.Invoice,
    kind: str = "invoice",
    today: date | None = None,
) -> models.NotificationLog:
    agent = invoice.agent
    if not agent or not agent.email:
        raise ValueError("Agent has no email address")
    if kind == "receipt" and invoice.status != "paid":
        raise ValueError("Receipts can only be sent for paid invoices")
    subject, html = utils.render_invoice_email(invoice, kind, today)
    company = invoice.company
    notification = log_notification(
        session,
        company_id=company.id,
        event_type=f"invoice.{kind}",
        recipient=agent.email,
        sender=utils.sender_for(company, EMAIL_FROM_ADDRESS),
        subject=subject,
        message=html,
        metadata={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
    )
    if kind == "invoice" and invoice.status == "draft":
        invoice.status = "sent"
    invoice.last_modified_by_name = ctx.user_name
    session.add(invoice)
    session.flush()
    return notification


# Public booking helpers


def list_public_programs(session: Session, company: models.Company) -> List[models.Program]:
    return [
        program
        for program in list_programs(session, company.id, active_only=True)
        if program.direct_booking_enabled
    ]


def _bookable_program(
    session: Session, company: models.Company, payload: schemas.PaymentIntentRequest, now: datetime
) -> models.Program:
    program = get_program(session, company.id, payload.program_id)
    if program is None or program.status != "active" or not program.direct_booking_enabled:
        raise LookupError("Program is not available for online booking")
    calendar = program_calendar(
        session, program, payload.activity_date, payload.activity_date, now.date(), now
    )
    day = calendar.days[0]
    if day.is_past_cutoff:
        cutoff = program.booking_cutoff_time or DEFAULT_BOOKING_CUTOFF_TIME
        raise ValueError(f"Online booking for today closed at {cutoff}")
    if not day.is_available:
        raise ValueError("Selected date is not available")
    if payload.hotel_id is not None and get_hotel(session, company.id, payload.hotel_id) is None:
        raise LookupError("Hotel not found")
    return program


def create_payment_intent(
    session: Session,
    company: models.Company,
    payload: schemas.PaymentIntentRequest,
    now: datetime | None = None,
) -> schemas.PaymentIntentResponse:
    if not card_payments_available(company):
        raise ValueError("Online card payments are not available")
    program = _bookable_program(session, company, payload, now or availability.local_now())
    quote = pricing.quote_direct_booking(
        schemas.ProgramPricing.model_validate(program),
        payload.adults,
        payload.children,
        payload.infants,
    )
    metadata = utils.payment_intent_metadata(company, program, payload)
    intent = utils.create_payment_intent(
        company.stripe_secret_key, quote.total_amount, company.currency, metadata
    )
    session.add(
        models.PaymentIntent(
            company_id=company.id,
            program_id=program.id,
            intent_id=str(intent["id"]),
            client_secret=str(intent["client_secret"]),
            activity_date=payload.activity_date,
            amount=quote.total_amount,
            amount_minor_units=int(intent["amount"]),
            currency=company.currency,
            status=str(intent["status"]),
            context=json.dumps(intent["metadata"]),
        )
    )
    session.flush()
    return schemas.PaymentIntentResponse(
        client_secret=str(intent["client_secret"]),
        payment_intent_id=str(intent["id"]),
        publishable_key=company.stripe_public_key,
        amount=quote.total_amount,
        amount_minor_units=int(intent["amount"]),
        currency=company.currency,
        breakdown=quote,
    )


def get_payment_intent(
    session: Session, company: models.Company, intent_id: str, *, lock: bool = False
) -> models.PaymentIntent | None:
    statement = select(models.PaymentIntent).where(
        models.PaymentIntent.intent_id == intent_id,
        models.PaymentIntent.company_id == company.id,
    )
    if lock:
        statement = statement.with_for_update()
    return session.scalar(statement)


def confirm_payment_intent(
    session: Session,
    company: models.Company,
    intent_id: str,
    payload: schemas.PaymentIntentConfirm,
) -> models.PaymentIntent:
    """Complete the card payment of an issued intent."""

    intent = get_payment_intent(session, company, intent_id, lock=True)
    if intent is None:
        raise LookupError("Payment intent not found")
    if not secrets.compare_digest(intent.client_secret, payload.client_secret):
        raise ValueError("Client secret does not match the payment intent")
    if intent.status != "succeeded":
        result = utils.confirm_payment_intent(company.stripe_secret_key, intent.intent_id)
        intent.status = str(result["status"])
        session.add(intent)
        session.flush()
    return intent


def _claim_payment_intent(
    session: Session,
    company: models.Company,
    program: models.Program,
    payload: schemas.DirectBookingCreate,
    quote: schemas.DirectBookingQuote,
) -> models.PaymentIntent:
    intent = get_payment_intent(session, company, payload.payment_intent_id or "", lock=True)
    if intent is None:
        raise ValueError("Unknown payment intent")
    if intent.booking_id is not None:
        raise ValueError("Payment intent has already been used")
    if intent.status != "succeeded":
        raise ValueError(f"Payment not completed (status: {intent.status})")
    if intent.program_id != program.id or intent.activity_date != payload.activity_date:
        raise ValueError("Payment intent does not match this booking")
    expected = utils.to_minor_units(quote.total_amount, company.currency)
    if intent.amount_minor_units != expected or intent.currency != company.currency:
        raise ValueError("Payment amount does not match the booking total")
    return intent


def create_direct_booking(
    session: Session,
    company: models.Company,
    payload: schemas.DirectBookingCreate,
    now: datetime | None = None,
) -> models.Booking:
    now = now or availability.local_now()
    if payload.payment_method == "cash" and not company.allow_cash_on_tour:
        raise ValueError("Cash on tour is not accepted")
    if payload.payment_method == "stripe" and not card_payments_available(company):
        raise ValueError("Online card payments are not available")
    program = _bookable_program(session, company, payload, now)
    quote = pricing.quote_direct_booking(
        schemas.ProgramPricing.model_validate(program),
        payload.adults,
        payload.children,
        payload.infants,
    )
    paid_by_card = payload.payment_method == "stripe"
    intent = _claim_payment_intent(session, company, program, payload, quote) if paid_by_card else None
    booking_in = schemas.BookingCreate(
        program_id=program.id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_whatsapp=payload.customer_whatsapp,
        activity_date=payload.activity_date,
        adults=payload.adults,
        children=payload.children,
        infants=payload.infants,
        total_amount=quote.total_amount,
        collect_money=Decimal("0") if paid_by_card else quote.total_amount,
        payment_method=payload.payment_method,
        is_come_direct=payload.is_come_direct,
        hotel_id=payload.hotel_id,
        custom_pickup_location=payload.custom_pickup_location,
        room_number=payload.room_number,
        notes=payload.notes,
        status="confirmed" if paid_by_card else "pending",
        is_direct_booking=True,
    )
    ctx = schemas.OperatorContext(company_id=company.id, user_name=payload.customer_name)
    booking = create_booking(session, ctx, booking_in, source="website", today=now.date())
    booking.payment_status = "paid" if paid_by_card else "pending"
    if intent is not None:
        booking.payment_intent_id = intent.intent_id
        intent.booking_id = booking.id
        session.add(intent)
    session.flush()

    log_notification(
        session,
        company_id=company.id,
        event_type="booking.confirmation",
        recipient=booking.customer_email,
        sender=utils.sender_for(company, EMAIL_FROM_ADDRESS),
        subject=f"Booking received - {booking.booking_number}",
        message=(
            f"Thank you {booking.customer_name}, your booking for {program.name} on "
            f"{utils.format_activity_date(booking.activity_date)} has been received."
        ),
        metadata={"booking_id": booking.id, "payment_method": payload.payment_method},
    )
    return booking
