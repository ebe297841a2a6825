"""SQLAlchemy models for the TourDesk back office."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .config import DEFAULT_CURRENCY, DEFAULT_TAX_PERCENTAGE
from .constants import DEFAULT_BOOKING_CUTOFF_TIME
from .database import Base


class TimestampMixin:
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class Company(Base, TimestampMixin):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    slug = Column(String(160), nullable=False, unique=True)
    email = Column(String(120), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(String(255), nullable=True)
    tax_id = Column(String(50), nullable=True)
    logo_url = Column(String(255), nullable=True)
    currency = Column(String(10), nullable=False, default=DEFAULT_CURRENCY)
    tax_percentage = Column(Numeric(5, 2), nullable=False, default=DEFAULT_TAX_PERCENTAGE)
    invoice_payment_footer = Column(Text, nullable=True)
    pricing_pin_hash = Column(String(255), nullable=True)
    pickup_contact_info = Column(Text, nullable=True)
    reply_to_email = Column(String(120), nullable=True)
    email_from_name = Column(String(120), nullable=True)
    meeting_point_name = Column(String(150), nullable=True)
    meeting_point_address = Column(String(255), nullable=True)
    meeting_point_maps_url = Column(String(255), nullable=True)
    allow_cash_on_tour = Column(Boolean, nullable=False, default=True)
    stripe_payments_enabled = Column(Boolean, nullable=False, default=True)
    stripe_public_key = Column(String(255), nullable=True)
    stripe_secret_key = Column(String(255), nullable=True)

    agents = relationship("Agent", back_populates="company", cascade="all, delete-orphan")
    programs = relationship("Program", back_populates="company", cascade="all, delete-orphan")
    hotels = relationship("Hotel", back_populates="company", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="company")
    invoices = relationship("Invoice", back_populates="company")


class Agent(Base, TimestampMixin):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    unique_code = Column(String(50), nullable=True)
    agent_type = Column(String(20), nullable=False, default="partner")
    contact_person = Column(String(120), nullable=True)
    email = Column(String(120), nullable=True)
    phone = Column(String(50), nullable=True)
    whatsapp = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="active")
    notes = Column(Text, nullable=True)
    tax_id = Column(String(50), nullable=True)
    address = Column(String(255), nullable=True)
    tax_applied = Column(Boolean, nullable=False, default=True)

    company = relationship("Company", back_populates="agents")
    staff = relationship("AgentStaff", back_populates="agent")
    pricing = relationship("AgentPricing", back_populates="agent")
    bookings = relationship("Booking", back_populates="agent")
    invoices = relationship("Invoice", back_populates="agent")


class AgentStaff(Base, TimestampMixin):
    __tablename__ = "agent_staff"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    full_name = Column(String(120), nullable=False)
    nickname = Column(String(60), nullable=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="active")

    agent = relationship("Agent", back_populates="staff")


class Program(Base, TimestampMixin):
    __tablename__ = "programs"

    __table_args__ = (UniqueConstraint("company_id", "slug", name="uq_program_company_slug"),)

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    slug = Column(String(160), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    pricing_type = Column(
        String(20), nullable=False, default="single", doc="single or adult_child"
    )
    base_price = Column(Numeric(10, 2), nullable=True)
    selling_price = Column(Numeric(10, 2), nullable=True)
    adult_selling_price = Column(Numeric(10, 2), nullable=True)
    child_selling_price = Column(Numeric(10, 2), nullable=True)
    default_slots = Column(Integer, nullable=True)
    default_pickup_time = Column(String(8), nullable=True)
    booking_cutoff_time = Column(String(8), nullable=True, default=DEFAULT_BOOKING_CUTOFF_TIME)
    direct_booking_enabled = Column(Boolean, nullable=False, default=False)
    thumbnail_path = Column(String(255), nullable=True)

    company = relationship("Company", back_populates="programs")
    availability = relationship(
        "ProgramAvailability", back_populates="program", cascade="all, delete-orphan"
    )
    agent_pricing = relationship(
        "AgentPricing", back_populates="program", cascade="all, delete-orphan"
    )
    bookings = relationship("Booking", back_populates="program")


class AgentPricing(Base, TimestampMixin):
    __tablename__ = "agent_pricing"

    __table_args__ = (UniqueConstraint("agent_id", "program_id", name="uq_agent_program_pricing"),)

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id", ondelete="CASCADE"), nullable=False)
    program_id = Column(Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    selling_price = Column(Numeric(10, 2), nullable=False, default=0)
    agent_price = Column(Numeric(10, 2), nullable=False, default=0)
    adult_agent_price = Column(Numeric(10, 2), nullable=True)
    child_agent_price = Column(Numeric(10, 2), nullable=True)

    agent = relationship("Agent", back_populates="pricing")
    program = relationship("Program", back_populates="agent_pricing")


class ProgramAvailability(Base, TimestampMixin):
    __tablename__ = "program_availability"

    __table_args__ = (
        UniqueConstraint("program_id", "date", name="uq_program_availability_date"),
        CheckConstraint("total_slots >= 0", name="ck_program_availability_slots"),
    )

    id = Column(Integer, primary_key=True, index=True)
    program_id = Column(Integer, ForeignKey("programs.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    total_slots = Column(Integer, nullable=False, default=0)
    is_open = Column(Boolean, nullable=False, default=True)

    program = relationship("Program", back_populates="availability")


class Hotel(Base, TimestampMixin):
    __tablename__ = "hotels"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(150), nullable=False)
    area = Column(String(120), nullable=True)
    pickup_notes = Column(Text, nullable=True)

    company = relationship("Company", back_populates="hotels")


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    __table_args__ = (
        CheckConstraint("adults >= 0 AND children >= 0 AND infants >= 0", name="ck_booking_guests"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True)
    hotel_id = Column(Integer, ForeignKey("hotels.id"), nullable=True)
    booking_number = Column(String(20), nullable=False, unique=True)
    customer_name = Column(String(150), nullable=False)
    customer_email = Column(String(120), nullable=True)
    customer_whatsapp = Column(String(50), nullable=True)
    activity_date = Column(Date, nullable=False, index=True)
    adults = Column(Integer, nullable=False, default=1)
    children = Column(Integer, nullable=False, default=0)
    infants = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")
    is_direct_booking = Column(Boolean, nullable=False, default=False)
    source = Column(String(50), nullable=True)
    collect_money = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=True)
    payment_method = Column(String(20), nullable=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_intent_id = Column(String(120), nullable=True)
    is_come_direct = Column(Boolean, nullable=False, default=False)
    custom_pickup_location = Column(String(255), nullable=True)
    room_number = Column(String(20), nullable=True)
    pickup_time = Column(String(8), nullable=True)
    pickup_email_sent = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    last_modified_by_name = Column(String(120), nullable=True)

    company = relationship("Company", back_populates="bookings")
    program = relationship("Program", back_populates="bookings")
    agent = relationship("Agent", back_populates="bookings")
    hotel = relationship("Hotel")
    invoice = relationship("Invoice", back_populates="bookings")


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_company_invoice_number"),
        CheckConstraint("date_to >= date_from", name="ck_invoice_dates"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    agent_id = Column(Integer, ForeignKey("agents.id"), nullable=False)
    invoice_number = Column(String(30), nullable=False)
    date_from = Column(Date, nullable=False)
    date_to = Column(Date, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="draft")
    due_date = Column(Date, nullable=True)
    due_days = Column(Integer, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(50), nullable=True)
    internal_notes = Column(Text, nullable=True)
    last_modified_by_name = Column(String(120), nullable=True)

    company = relationship("Company", back_populates="invoices")
    agent = relationship("Agent", back_populates="invoices")
    items = relationship("InvoiceItem", back_populates="invoice", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="invoice")


class InvoiceItem(Base, TimestampMixin):
    __tablename__ = "invoice_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False, default=0)

    invoice = relationship("Invoice", back_populates="items")
    booking = relationship("Booking")


class InvoiceSequence(Base, TimestampMixin):
    """Per-company, per-month counter behind invoice numbers."""

    __tablename__ = "invoice_sequences"

    __table_args__ = (UniqueConstraint("company_id", "period", name="uq_invoice_sequence_period"),)

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    period = Column(String(6), nullable=False, doc="YYYYMM")
    current_value = Column(Integer, nullable=False, default=0)


class NotificationLog(Base, TimestampMixin):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True, index=True)
    event_type = Column(String(120), nullable=False)
    channel = Column(String(50), nullable=False, default="email")
    recipient = Column(String(150), nullable=False)
    sender = Column(String(200), nullable=True)
    subject = Column(String(200), nullable=True)
    message = Column(Text, nullable=False)
    status = Column(String(50), nullable=False, default="queued")
    context = Column(Text, nullable=True)


class PaymentIntent(Base, TimestampMixin):
    """Card payment intent issued for a public booking.

    A booking claims its intent by setting ``booking_id``; a claimed intent
    cannot pay for a second booking.
    """

    __tablename__ = "payment_intents"

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    program_id = Column(Integer, ForeignKey("programs.id"), nullable=False)
    intent_id = Column(String(64), nullable=False, unique=True, index=True)
    client_secret = Column(String(120), nullable=False)
    activity_date = Column(Date, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    amount_minor_units = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(40), nullable=False, default="requires_payment_method")
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    context = Column(Text, nullable=True)

    company = relationship("Company")
    booking = relationship("Booking")
