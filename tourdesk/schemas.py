"""Pydantic schemas powering the TourDesk API."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .constants import DEFAULT_BOOKING_CUTOFF_TIME, DEFAULT_INVOICE_DUE_DAYS, INVOICE_DUE_DAY_OPTIONS

PricingType = Literal["single", "adult_child"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled", "void"]
InvoiceStatus = Literal["draft", "sent", "paid"]
InvoiceDisplayStatus = Literal["draft", "sent", "paid", "overdue"]
DateStatus = Literal["available", "full", "closed"]
DocumentKind = Literal["invoice", "receipt"]


class TimestampMixin(BaseModel):
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OperatorContext(BaseModel):
    """Who is acting and for which tenant; passed explicitly to every write."""

    company_id: int
    user_name: Optional[str] = None


def _validate_hhmm(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    parts = value.split(":")
    if len(parts) < 2 or not all(part.isdigit() for part in parts[:2]):
        raise ValueError("time must be formatted as HH:MM")
    hours, minutes = int(parts[0]), int(parts[1])
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError("time must be a valid 24h clock time")
    return f"{hours:02d}:{minutes:02d}"


# Companies


class CompanyBase(BaseModel):
    name: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    logo_url: Optional[str] = None
    currency: str = Field("THB", min_length=3, max_length=3)


class CompanyCreate(CompanyBase):
    slug: Optional[str] = Field(None, description="Subdomain slug; derived from name when omitted")


class CompanySettingsUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    logo_url: Optional[str] = None
    tax_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    invoice_payment_footer: Optional[str] = None
    pricing_pin: Optional[str] = Field(
        None, description="4-6 digit PIN guarding agent pricing; empty string clears it"
    )
    pickup_contact_info: Optional[str] = None
    reply_to_email: Optional[EmailStr] = None
    email_from_name: Optional[str] = None
    meeting_point_name: Optional[str] = None
    meeting_point_address: Optional[str] = None
    meeting_point_maps_url: Optional[str] = None
    allow_cash_on_tour: Optional[bool] = None
    stripe_payments_enabled: Optional[bool] = None
    stripe_public_key: Optional[str] = None
    stripe_secret_key: Optional[str] = None

    @field_validator("pricing_pin")
    @classmethod
    def validate_pin(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return value
        if not value.isdigit() or not 4 <= len(value) <= 6:
            raise ValueError("pricing_pin must be 4 to 6 digits")
        return value


class Company(CompanyBase, TimestampMixin):
    id: int
    slug: str
    tax_percentage: Decimal
    invoice_payment_footer: Optional[str] = None
    pickup_contact_info: Optional[str] = None
    reply_to_email: Optional[str] = None
    email_from_name: Optional[str] = None
    meeting_point_name: Optional[str] = None
    meeting_point_address: Optional[str] = None
    meeting_point_maps_url: Optional[str] = None
    allow_cash_on_tour: bool
    stripe_payments_enabled: bool
    stripe_public_key: Optional[str] = None
    has_pricing_pin: bool = False
    stripe_configured: bool = False

    @model_validator(mode="before")
    @classmethod
    def derive_flags(cls, data):
        # Secrets never leave the server; only whether they are set.
        if isinstance(data, dict):
            return data
        values = {name: getattr(data, name, None) for name in cls.model_fields}
        values["has_pricing_pin"] = bool(getattr(data, "pricing_pin_hash", None))
        values["stripe_configured"] = bool(
            getattr(data, "stripe_public_key", None) and getattr(data, "stripe_secret_key", None)
        )
        return values


class PublicCompany(BaseModel):
    id: int
    name: str
    slug: str
    logo_url: Optional[str] = None
    currency: str
    allow_cash_on_tour: bool
    stripe_enabled: bool
    stripe_public_key: Optional[str] = None


# Agents


class AgentBase(BaseModel):
    name: str = Field(..., min_length=1)
    unique_code: str = Field(..., min_length=1, description="Agent ID, unique within the company")
    agent_type: Literal["partner", "direct"] = "partner"
    contact_person: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    status: Literal["active", "inactive"] = "active"
    notes: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None
    tax_applied: bool = True

    @field_validator("name", "unique_code")
    @classmethod
    def strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class AgentCreate(AgentBase):
    pass


class AgentUpdate(BaseModel):
    name: Optional[str] = None
    unique_code: Optional[str] = None
    agent_type: Optional[Literal["partner", "direct"]] = None
    contact_person: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None
    notes: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None
    tax_applied: Optional[bool] = None


class Agent(TimestampMixin):
    id: int
    company_id: int
    name: str
    unique_code: Optional[str] = None
    agent_type: str
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    status: str
    notes: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None
    tax_applied: bool


class AgentStaffCreate(BaseModel):
    full_name: str = Field(..., min_length=1)
    nickname: Optional[str] = None
    phone: Optional[str] = None
    status: Literal["active", "inactive"] = "active"


class AgentStaff(AgentStaffCreate, TimestampMixin):
    id: int
    agent_id: int


class AgentMergeOutcome(BaseModel):
    kept_agent_id: int
    merged_agent_id: int
    outcome: Literal["merged", "failed"]
    error: Optional[str] = None


class AgentMergeResult(BaseModel):
    merged_count: int
    failed_count: int
    outcomes: List[AgentMergeOutcome]


# Programs


class ProgramBase(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: Literal["active", "inactive"] = "active"
    pricing_type: PricingType = "single"
    base_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    adult_selling_price: Optional[Decimal] = Field(None, ge=0)
    child_selling_price: Optional[Decimal] = Field(None, ge=0)
    default_slots: Optional[int] = Field(None, ge=0)
    default_pickup_time: Optional[str] = None
    booking_cutoff_time: Optional[str] = DEFAULT_BOOKING_CUTOFF_TIME
    direct_booking_enabled: bool = False

    @field_validator("default_pickup_time", "booking_cutoff_time")
    @classmethod
    def validate_clock_times(cls, value: Optional[str]) -> Optional[str]:
        return _validate_hhmm(value)


class ProgramCreate(ProgramBase):
    slug: Optional[str] = None


class ProgramUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["active", "inactive"]] = None
    pricing_type: Optional[PricingType] = None
    base_price: Optional[Decimal] = Field(None, ge=0)
    selling_price: Optional[Decimal] = Field(None, ge=0)
    adult_selling_price: Optional[Decimal] = Field(None, ge=0)
    child_selling_price: Optional[Decimal] = Field(None, ge=0)
    default_slots: Optional[int] = Field(None, ge=0)
    default_pickup_time: Optional[str] = None
    booking_cutoff_time: Optional[str] = None
    direct_booking_enabled: Optional[bool] = None

    @field_validator("default_pickup_time", "booking_cutoff_time")
    @classmethod
    def validate_clock_times(cls, value: Optional[str]) -> Optional[str]:
        return _validate_hhmm(value)


class Program(ProgramBase, TimestampMixin):
    id: int
    company_id: int
    slug: str
    thumbnail_path: Optional[str] = None


class ProgramPricing(BaseModel):
    """Price fields of a program as seen by the pricing resolver."""

    id: int
    name: str = ""
    pricing_type: PricingType = "single"
    base_price: Optional[Decimal] = None
    selling_price: Optional[Decimal] = None
    adult_selling_price: Optional[Decimal] = None
    child_selling_price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


# Agent pricing


class AgentPricingOverride(BaseModel):
    agent_id: int
    program_id: int
    agent_price: Optional[Decimal] = None
    adult_agent_price: Optional[Decimal] = None
    child_agent_price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ResolvedPricing(BaseModel):
    program_id: int
    program_name: str
    pricing_type: PricingType
    selling_price: Decimal
    agent_price: Decimal
    commission: Decimal
    adult_selling_price: Optional[Decimal] = None
    adult_agent_price: Optional[Decimal] = None
    adult_commission: Optional[Decimal] = None
    child_selling_price: Optional[Decimal] = None
    child_agent_price: Optional[Decimal] = None
    child_commission: Optional[Decimal] = None
    is_negative_commission: bool = False


class AgentPricingEntry(BaseModel):
    program_id: int
    agent_price: Decimal
    adult_agent_price: Optional[Decimal] = None
    child_agent_price: Optional[Decimal] = None


class AgentPricingSave(BaseModel):
    entries: List[AgentPricingEntry] = Field(..., min_length=1)


class BulkAgentPricingSave(AgentPricingSave):
    agent_ids: List[int] = Field(..., min_length=1)


class AgentPricingRow(BaseModel):
    agent_id: int
    program_id: int
    selling_price: Decimal
    agent_price: Decimal
    adult_agent_price: Optional[Decimal] = None
    child_agent_price: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class DirectBookingQuote(BaseModel):
    adult_price: Decimal
    child_price: Decimal
    adults: int
    children: int
    infants: int
    adults_total: Decimal
    children_total: Decimal
    total_amount: Decimal


# Availability


class AvailabilityUpsert(BaseModel):
    date: date
    total_slots: int = Field(..., ge=0)
    is_open: bool = True


class AvailabilityBulkSetup(BaseModel):
    start_date: date
    end_date: date
    weekdays: List[int] = Field(
        default_factory=lambda: list(range(7)),
        description="Weekdays to include, Monday is 0 and Sunday is 6",
    )
    total_slots: int = Field(..., ge=0)
    is_open: bool = True

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("at least one weekday is required")
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("weekdays must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def validate_range(self) -> "AvailabilityBulkSetup":
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class SlotConfig(BaseModel):
    """Slot settings of one program date as seen by the availability evaluator."""

    date: date
    total_slots: int = 0
    is_open: bool = True

    model_config = ConfigDict(from_attributes=True)


class ProgramAvailability(TimestampMixin):
    id: int
    program_id: int
    date: date
    total_slots: int
    is_open: bool


class DateAvailability(BaseModel):
    date: date
    status: DateStatus
    remaining: int
    booked: int = 0
    total_slots: Optional[int] = None
    is_available: bool
    is_full: bool
    is_closed: bool
    is_past: bool = False
    is_past_cutoff: bool = False
    low_availability: bool = False


class AvailabilityCalendar(BaseModel):
    program_id: int
    today: date
    days: List[DateAvailability]


# Hotels


class HotelCreate(BaseModel):
    name: str = Field(..., min_length=1)
    area: Optional[str] = None
    pickup_notes: Optional[str] = None


class Hotel(HotelCreate, TimestampMixin):
    id: int
    company_id: int


# Bookings


class BookingBase(BaseModel):
    program_id: int
    agent_id: Optional[int] = None
    customer_name: str = Field(..., min_length=1)
    customer_email: Optional[EmailStr] = None
    customer_whatsapp: Optional[str] = None
    activity_date: date
    adults: int = Field(1, ge=0)
    children: int = Field(0, ge=0)
    infants: int = Field(0, ge=0)
    collect_money: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    payment_method: Optional[Literal["cash", "stripe", "transfer"]] = None
    is_come_direct: bool = False
    hotel_id: Optional[int] = None
    custom_pickup_location: Optional[str] = None
    room_number: Optional[str] = None
    pickup_time: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("pickup_time")
    @classmethod
    def validate_pickup_time(cls, value: Optional[str]) -> Optional[str]:
        return _validate_hhmm(value)

    @model_validator(mode="after")
    def validate_transport(self):
        if self.is_come_direct and (self.hotel_id or self.custom_pickup_location):
            raise ValueError("come-direct bookings cannot also carry a pickup location")
        if self.adults + self.children + self.infants == 0:
            raise ValueError("a booking needs at least one guest")
        return self


class BookingCreate(BookingBase):
    status: Literal["pending", "confirmed"] = "pending"
    is_direct_booking: bool = False


class BookingUpdate(BaseModel):
    program_id: Optional[int] = None
    agent_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    customer_whatsapp: Optional[str] = None
    activity_date: Optional[date] = None
    adults: Optional[int] = Field(None, ge=0)
    children: Optional[int] = Field(None, ge=0)
    infants: Optional[int] = Field(None, ge=0)
    collect_money: Optional[Decimal] = Field(None, ge=0)
    total_amount: Optional[Decimal] = Field(None, ge=0)
    is_come_direct: Optional[bool] = None
    hotel_id: Optional[int] = None
    custom_pickup_location: Optional[str] = None
    room_number: Optional[str] = None
    pickup_time: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("pickup_time")
    @classmethod
    def validate_pickup_time(cls, value: Optional[str]) -> Optional[str]:
        return _validate_hhmm(value)


class BookingStatusChange(BaseModel):
    status: BookingStatus


class Booking(TimestampMixin):
    id: int
    company_id: int
    program_id: int
    agent_id: Optional[int] = None
    invoice_id: Optional[int] = None
    hotel_id: Optional[int] = None
    booking_number: str
    customer_name: str
    customer_email: Optional[str] = None
    customer_whatsapp: Optional[str] = None
    activity_date: date
    adults: int
    children: int
    infants: int
    status: str
    is_direct_booking: bool
    source: Optional[str] = None
    collect_money: Decimal
    total_amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    payment_status: str
    payment_intent_id: Optional[str] = None
    is_come_direct: bool
    custom_pickup_location: Optional[str] = None
    room_number: Optional[str] = None
    pickup_time: Optional[str] = None
    pickup_email_sent: bool
    notes: Optional[str] = None
    last_modified_by_name: Optional[str] = None


class InvoiceableBooking(BaseModel):
    """Fields of a booking the invoice aggregator reads."""

    id: int
    agent_id: Optional[int] = None
    program_id: int
    is_direct_booking: bool = False
    invoice_id: Optional[int] = None
    status: str = "confirmed"
    activity_date: date
    adults: int = 0
    children: int = 0
    infants: int = 0

    model_config = ConfigDict(from_attributes=True)


class SlotBooking(BaseModel):
    """Fields of a booking the availability evaluator reads."""

    activity_date: date
    status: str = "confirmed"
    adults: int = 0
    children: int = 0

    model_config = ConfigDict(from_attributes=True)


# Invoices


class InvoiceSelection(BaseModel):
    booking_ids: List[int] = Field(..., min_length=1)


class BulkInvoiceCreate(InvoiceSelection):
    due_days: int = Field(DEFAULT_INVOICE_DUE_DAYS, description="Days until the invoice is due")

    @field_validator("due_days")
    @classmethod
    def validate_due_days(cls, value: int) -> int:
        if value not in INVOICE_DUE_DAY_OPTIONS:
            options = ", ".join(str(option) for option in INVOICE_DUE_DAY_OPTIONS)
            raise ValueError(f"due_days must be one of {options}")
        return value


class InvoicePlanLine(BaseModel):
    booking_id: int
    program_id: int
    activity_date: date
    adults: int
    children: int
    pax: Decimal
    agent_price: Decimal
    amount: Decimal


class InvoicePlan(BaseModel):
    agent_id: int
    agent_name: str
    lines: List[InvoicePlanLine]
    total_amount: Decimal
    date_from: date
    date_to: date

    @property
    def booking_ids(self) -> List[int]:
        return [line.booking_id for line in self.lines]


class InvoiceTotals(BaseModel):
    subtotal: Decimal
    tax_percentage: Decimal
    tax_amount: Decimal
    grand_total: Decimal


class InvoiceItem(BaseModel):
    id: int
    booking_id: int
    amount: Decimal

    model_config = ConfigDict(from_attributes=True)


class InvoiceUpdate(BaseModel):
    status: Optional[InvoiceStatus] = None
    due_date: Optional[date] = None
    internal_notes: Optional[str] = None


class InvoiceMarkPaid(BaseModel):
    payment_method: str = Field(..., min_length=1)
    internal_notes: Optional[str] = None


class Invoice(TimestampMixin):
    id: int
    company_id: int
    agent_id: int
    invoice_number: str
    date_from: date
    date_to: date
    total_amount: Decimal
    status: str
    display_status: InvoiceDisplayStatus = "draft"
    due_date: Optional[date] = None
    due_days: Optional[int] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[InvoiceItem] = Field(default_factory=list)


class InvoiceBatchOutcome(BaseModel):
    agent_id: int
    agent_name: str
    booking_ids: List[int]
    outcome: Literal["created", "failed"]
    invoice_id: Optional[int] = None
    invoice_number: Optional[str] = None
    total_amount: Decimal
    error: Optional[str] = None


class InvoiceBatchResult(BaseModel):
    created_count: int
    failed_count: int
    outcomes: List[InvoiceBatchOutcome]


# Public booking


class PaymentIntentRequest(BaseModel):
    program_id: int
    activity_date: date
    adults: int = Field(1, ge=1)
    children: int = Field(0, ge=0)
    infants: int = Field(0, ge=0)
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr
    customer_whatsapp: Optional[str] = None
    is_come_direct: bool = False
    hotel_id: Optional[int] = None
    custom_pickup_location: Optional[str] = None
    room_number: Optional[str] = None
    notes: Optional[str] = None


class PaymentIntentResponse(BaseModel):
    client_secret: str
    payment_intent_id: str
    publishable_key: str
    amount: Decimal
    amount_minor_units: int
    currency: str
    breakdown: DirectBookingQuote


class PaymentIntentConfirm(BaseModel):
    client_secret: str = Field(..., min_length=1)


class PaymentIntentStatus(BaseModel):
    payment_intent_id: str
    status: str
    amount: Decimal
    amount_minor_units: int
    currency: str
    booking_id: Optional[int] = None


class DirectBookingCreate(PaymentIntentRequest):
    payment_method: Literal["cash", "stripe"] = "cash"
    payment_intent_id: Optional[str] = None

    @model_validator(mode="after")
    def require_intent_for_card(self):
        if self.payment_method == "stripe" and not self.payment_intent_id:
            raise ValueError("payment_intent_id is required for card payments")
        return self


class PublicProgramListing(BaseModel):
    company: PublicCompany
    programs: List[Program]


# Notifications


class NotificationLog(TimestampMixin):
    id: int
    company_id: Optional[int] = None
    event_type: str
    channel: str
    recipient: str
    sender: Optional[str] = None
    subject: Optional[str] = None
    message: str
    status: str
