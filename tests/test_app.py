from __future__ import annotations

import io
import re
import shutil
import sys
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Generator
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tourdesk import availability, crud, invoicing, models, schemas  # noqa: E402
from tourdesk.database import Base  # noqa: E402
from tourdesk.main import app, get_db  # noqa: E402
from tourdesk.utils import THUMBNAIL_DIR  # noqa: E402

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

FUTURE_DAY = date.today() + timedelta(days=30)


def reset_media_storage() -> None:
    if THUMBNAIL_DIR.exists():
        shutil.rmtree(THUMBNAIL_DIR)


def reset_database() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_media_storage()


reset_database()


def override_get_db() -> Generator[Session, None, None]:
    db = TestingSessionLocal()
    try:
        yield db
        db.commit()
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
def api_client() -> Generator[TestClient, None, None]:
    reset_database()
    with TestClient(app) as client:
        yield client


def headers(company_id: int, **extra: str) -> dict[str, str]:
    values = {"X-Company-Id": str(company_id), "X-User-Name": "Nok"}
    values.update(extra)
    return values


def create_company(client: TestClient, name: str = "Andaman Sea Tours", **overrides) -> int:
    payload = {"name": name, "email": "ops@andaman.example.com", "phone": "+66 76 000 000"}
    payload.update(overrides)
    response = client.post("/companies", json=payload)
    assert response.status_code == 201
    return response.json()["id"]


def create_program(client: TestClient, company_id: int, **overrides) -> int:
    payload = {"name": "Island Tour", "pricing_type": "single", "selling_price": "1500"}
    payload.update(overrides)
    response = client.post("/programs", json=payload, headers=headers(company_id))
    assert response.status_code == 201
    return response.json()["id"]


def create_agent(
    client: TestClient, company_id: int, name: str = "ABC Travel", code: str = "ABC", **overrides
) -> int:
    payload = {"name": name, "unique_code": code, "email": "billing@abc.example.com"}
    payload.update(overrides)
    response = client.post("/agents", json=payload, headers=headers(company_id))
    assert response.status_code == 201
    return response.json()["id"]


def create_booking(
    client: TestClient,
    company_id: int,
    program_id: int,
    agent_id: int | None = None,
    **overrides,
) -> dict:
    payload = {
        "program_id": program_id,
        "agent_id": agent_id,
        "customer_name": "Somchai Guest",
        "customer_email": "guest@example.com",
        "activity_date": str(FUTURE_DAY),
        "adults": 2,
        "children": 0,
        "status": "confirmed",
    }
    payload.update(overrides)
    response = client.post("/bookings", json=payload, headers=headers(company_id))
    assert response.status_code == 201, response.text
    return response.json()


def set_agent_price(client: TestClient, company_id: int, agent_id: int, program_id: int, price: str) -> None:
    response = client.put(
        f"/agents/{agent_id}/pricing",
        json={"entries": [{"program_id": program_id, "agent_price": price}]},
        headers=headers(company_id),
    )
    assert response.status_code == 200


def test_healthcheck(api_client: TestClient) -> None:
    response = api_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_company_header_is_required_and_scopes_data(api_client: TestClient) -> None:
    first = create_company(api_client)
    second = create_company(api_client, name="Krabi Explorer")
    agent_id = create_agent(api_client, first)

    assert api_client.get("/agents").status_code == 422
    assert api_client.get("/agents", headers=headers(999)).status_code == 404
    assert api_client.get(f"/agents/{agent_id}", headers=headers(second)).status_code == 404
    assert api_client.get(f"/agents/{agent_id}", headers=headers(first)).status_code == 200


def test_company_settings_never_expose_secrets(api_client: TestClient) -> None:
    company_id = create_company(api_client)

    response = api_client.put(
        "/companies/current/settings",
        json={
            "pricing_pin": "2468",
            "tax_percentage": "7",
            "stripe_public_key": "pk_test_123",
            "stripe_secret_key": "sk_test_456",
            "meeting_point_name": "Chalong Pier",
        },
        headers=headers(company_id),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["has_pricing_pin"] is True
    assert body["stripe_configured"] is True
    assert "stripe_secret_key" not in body
    assert "pricing_pin_hash" not in body
    assert body["slug"] == "andaman-sea-tours"

    invalid = api_client.put(
        "/companies/current/settings",
        json={"pricing_pin": "12ab"},
        headers=headers(company_id, **{"X-Pricing-Pin": "2468"}),
    )
    assert invalid.status_code == 422


def test_pricing_dialog_defaults_to_selling_price(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    agent_id = create_agent(api_client, company_id)

    response = api_client.get(f"/agents/{agent_id}/pricing", headers=headers(company_id))
    assert response.status_code == 200
    (entry,) = response.json()
    assert entry["program_id"] == program_id
    assert Decimal(entry["agent_price"]) == Decimal("1500")
    assert Decimal(entry["commission"]) == Decimal("0")


def test_pricing_pin_guards_agent_pricing(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    create_program(api_client, company_id)
    agent_id = create_agent(api_client, company_id)
    response = api_client.put(
        "/companies/current/settings", json={"pricing_pin": "1234"}, headers=headers(company_id)
    )
    assert response.status_code == 200

    url = f"/agents/{agent_id}/pricing"
    assert api_client.get(url, headers=headers(company_id)).status_code == 403
    assert api_client.get(url, headers=headers(company_id, **{"X-Pricing-Pin": "9999"})).status_code == 403
    assert api_client.get(url, headers=headers(company_id, **{"X-Pricing-Pin": "1234"})).status_code == 200

    change = api_client.put(
        "/companies/current/settings", json={"pricing_pin": "5678"}, headers=headers(company_id)
    )
    assert change.status_code == 403
    cleared = api_client.put(
        "/companies/current/settings",
        json={"pricing_pin": ""},
        headers=headers(company_id, **{"X-Pricing-Pin": "1234"}),
    )
    assert cleared.status_code == 200
    assert cleared.json()["has_pricing_pin"] is False
    assert api_client.get(url, headers=headers(company_id)).status_code == 200


def test_saved_and_bulk_pricing(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    first = create_agent(api_client, company_id)
    second = create_agent(api_client, company_id, name="Beach Holidays", code="BCH")

    set_agent_price(api_client, company_id, first, program_id, "1200")
    sheet = api_client.get(f"/agents/{first}/pricing", headers=headers(company_id)).json()
    assert Decimal(sheet[0]["agent_price"]) == Decimal("1200")
    assert Decimal(sheet[0]["commission"]) == Decimal("300")

    template = api_client.get("/agents/pricing/bulk", headers=headers(company_id)).json()
    assert Decimal(template[0]["agent_price"]) == Decimal("1500")

    response = api_client.put(
        "/agents/pricing/bulk",
        json={"agent_ids": [first, second], "entries": [{"program_id": program_id, "agent_price": "1000"}]},
        headers=headers(company_id),
    )
    assert response.status_code == 200
    rows = response.json()
    assert {row["agent_id"] for row in rows} == {first, second}
    assert all(Decimal(row["agent_price"]) == Decimal("1000") for row in rows)

    with TestingSessionLocal() as session:
        assert session.query(models.AgentPricing).count() == 2

    missing = api_client.put(
        f"/agents/{first}/pricing",
        json={"entries": [{"program_id": 999, "agent_price": "10"}]},
        headers=headers(company_id),
    )
    assert missing.status_code == 404


def test_duplicate_agent_code_is_rejected(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    create_agent(api_client, company_id, code="ABC")

    response = api_client.post(
        "/agents",
        json={"name": "Another", "unique_code": "abc"},
        headers=headers(company_id),
    )
    assert response.status_code == 400
    assert "already in use" in response.json()["detail"]


def test_merge_duplicate_agents_keeps_the_busiest(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    older = create_agent(api_client, company_id, name="ABC Travel", code="A1")
    busier = create_agent(api_client, company_id, name=" abc  travel", code="A2")
    create_agent(api_client, company_id, name="Solo Agency", code="S1")
    booking = create_booking(api_client, company_id, program_id, older)
    create_booking(api_client, company_id, program_id, busier)
    create_booking(api_client, company_id, program_id, busier)
    set_agent_price(api_client, company_id, older, program_id, "1100")

    response = api_client.post("/agents/merge-duplicates", headers=headers(company_id))
    assert response.status_code == 200
    result = response.json()
    assert result["merged_count"] == 1
    assert result["failed_count"] == 0
    assert result["outcomes"][0]["kept_agent_id"] == busier
    assert result["outcomes"][0]["merged_agent_id"] == older

    agents = api_client.get("/agents", headers=headers(company_id)).json()
    assert sorted(agent["unique_code"] for agent in agents) == ["A2", "S1"]
    moved = api_client.get(f"/bookings/{booking['id']}", headers=headers(company_id)).json()
    assert moved["agent_id"] == busier
    sheet = api_client.get(f"/agents/{busier}/pricing", headers=headers(company_id)).json()
    assert Decimal(sheet[0]["agent_price"]) == Decimal("1100")


def test_bulk_invoicing_groups_bookings_per_agent(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    agent_a = create_agent(api_client, company_id, name="Agent A", code="AA")
    agent_b = create_agent(api_client, company_id, name="Agent B", code="BB")
    set_agent_price(api_client, company_id, agent_a, program_id, "1000")
    set_agent_price(api_client, company_id, agent_b, program_id, "800")

    first = create_booking(api_client, company_id, program_id, agent_a, adults=2, children=2, infants=1)
    second = create_booking(api_client, company_id, program_id, agent_b, adults=1)
    third = create_booking(api_client, company_id, program_id, agent_a, adults=2, children=2)
    direct = create_booking(api_client, company_id, program_id, None, is_direct_booking=True)
    booking_ids = [first["id"], second["id"], third["id"], direct["id"]]

    preview = api_client.post(
        "/invoices/preview", json={"booking_ids": booking_ids}, headers=headers(company_id)
    ).json()
    assert [plan["agent_id"] for plan in preview] == [agent_a, agent_b]
    assert Decimal(preview[0]["total_amount"]) == Decimal("6000")
    assert Decimal(preview[1]["total_amount"]) == Decimal("800")

    response = api_client.post(
        "/invoices/bulk",
        json={"booking_ids": booking_ids, "due_days": 30},
        headers=headers(company_id),
    )
    assert response.status_code == 201
    result = response.json()
    assert result["created_count"] == 2
    assert result["failed_count"] == 0
    prefix = invoicing.invoice_prefix(availability.local_today())
    assert [outcome["invoice_number"] for outcome in result["outcomes"]] == [
        f"{prefix}0001",
        f"{prefix}0002",
    ]

    invoiced = api_client.get(
        "/bookings", params={"invoiced": True}, headers=headers(company_id)
    ).json()
    assert {booking["id"] for booking in invoiced} == {first["id"], second["id"], third["id"]}

    again = api_client.post(
        "/invoices/bulk",
        json={"booking_ids": booking_ids, "due_days": 30},
        headers=headers(company_id),
    )
    assert again.status_code == 400

    fourth = create_booking(api_client, company_id, program_id, agent_b, adults=3)
    later = api_client.post(
        "/invoices/bulk",
        json={"booking_ids": [fourth["id"]], "due_days": 7},
        headers=headers(company_id),
    ).json()
    assert later["outcomes"][0]["invoice_number"] == f"{prefix}0003"

    bad_due = api_client.post(
        "/invoices/bulk",
        json={"booking_ids": [fourth["id"]], "due_days": 10},
        headers=headers(company_id),
    )
    assert bad_due.status_code == 422


def test_bulk_invoicing_continues_after_a_failed_group(monkeypatch: pytest.MonkeyPatch) -> None:
    reset_database()
    with TestingSessionLocal() as session:
        company = crud.create_company(session, schemas.CompanyCreate(name="Phi Phi Boats"))
        ctx = schemas.OperatorContext(company_id=company.id, user_name="Ploy")
        program = crud.create_program(
            session, ctx, schemas.ProgramCreate(name="Sunset Cruise", selling_price=Decimal("900"))
        )
        agent_a = crud.create_agent(session, ctx, schemas.AgentCreate(name="Agent A", unique_code="A"))
        agent_b = crud.create_agent(session, ctx, schemas.AgentCreate(name="Agent B", unique_code="B"))
        bookings = [
            crud.create_booking(
                session,
                ctx,
                schemas.BookingCreate(
                    program_id=program.id,
                    agent_id=agent.id,
                    customer_name="Guest",
                    activity_date=FUTURE_DAY,
                    adults=2,
                ),
            )
            for agent in (agent_a, agent_b)
        ]
        session.commit()

        real_allocate = crud.allocate_invoice_number
        calls: list[int] = []

        def flaky_allocate(db: Session, company_id: int, on: date) -> str:
            calls.append(company_id)
            if len(calls) == 2:
                raise SQLAlchemyError("sequence unavailable")
            return real_allocate(db, company_id, on)

        monkeypatch.setattr(crud, "allocate_invoice_number", flaky_allocate)
        result = crud.create_invoices(
            session,
            ctx,
            schemas.BulkInvoiceCreate(booking_ids=[booking.id for booking in bookings], due_days=14),
            today=date(2025, 4, 2),
        )
        session.commit()

        assert result.created_count == 1
        assert result.failed_count == 1
        created, failed = result.outcomes
        assert created.outcome == "created"
        assert created.invoice_number == "INV-202504-0001"
        assert failed.agent_id == agent_b.id
        assert "sequence unavailable" in failed.error

        session.expire_all()
        assert session.get(models.Booking, bookings[0].id).invoice_id == created.invoice_id
        assert session.get(models.Booking, bookings[1].id).invoice_id is None


def test_invoice_lifecycle(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    api_client.put(
        "/companies/current/settings",
        json={"invoice_payment_footer": "Bank transfer to Kasikorn 123-4-56789"},
        headers=headers(company_id),
    )
    program_id = create_program(api_client, company_id)
    agent_id = create_agent(api_client, company_id, tax_id="0105551234567")
    set_agent_price(api_client, company_id, agent_id, program_id, "1000")
    bookings = [
        create_booking(api_client, company_id, program_id, agent_id, adults=2, children=2),
        create_booking(api_client, company_id, program_id, agent_id, adults=2, children=2),
    ]
    result = api_client.post(
        "/invoices/bulk",
        json={"booking_ids": [booking["id"] for booking in bookings], "due_days": 30},
        headers=headers(company_id),
    ).json()
    invoice_id = result["outcomes"][0]["invoice_id"]
    invoice_number = result["outcomes"][0]["invoice_number"]

    invoice = api_client.get(f"/invoices/{invoice_id}", headers=headers(company_id)).json()
    assert invoice["status"] == "draft"
    assert invoice["display_status"] == "draft"
    assert len(invoice["items"]) == 2
    assert Decimal(invoice["total_amount"]) == Decimal("6000")

    document = api_client.get(f"/invoices/{invoice_id}/document", headers=headers(company_id))
    assert document.status_code == 200
    assert invoice_number in document.text
    assert "6,420.00" in document.text
    assert "Kasikorn" in document.text
    assert "0105551234567" in document.text

    receipt_too_early = api_client.get(
        f"/invoices/{invoice_id}/document", params={"kind": "receipt"}, headers=headers(company_id)
    )
    assert receipt_too_early.status_code == 400

    sent = api_client.post(f"/invoices/{invoice_id}/send-email", headers=headers(company_id))
    assert sent.status_code == 200
    assert sent.json()["recipient"] == "billing@abc.example.com"
    assert invoice_number in sent.json()["subject"]

    overdue = api_client.put(
        f"/invoices/{invoice_id}",
        json={"due_date": "2020-01-01"},
        headers=headers(company_id),
    ).json()
    assert overdue["status"] == "sent"
    assert overdue["display_status"] == "overdue"
    listed = api_client.get("/invoices", params={"status": "overdue"}, headers=headers(company_id)).json()
    assert [item["id"] for item in listed] == [invoice_id]
    assert api_client.get("/invoices", params={"status": "draft"}, headers=headers(company_id)).json() == []

    paid = api_client.post(
        f"/invoices/{invoice_id}/mark-paid",
        json={"payment_method": "bank_transfer", "internal_notes": "Paid in full"},
        headers=headers(company_id),
    ).json()
    assert paid["status"] == "paid"
    assert paid["display_status"] == "paid"
    assert paid["paid_at"] is not None

    receipt = api_client.get(
        f"/invoices/{invoice_id}/document", params={"kind": "receipt"}, headers=headers(company_id)
    )
    assert receipt.status_code == 200
    assert invoice_number.replace("INV-", "RCP-") in receipt.text

    pdf = api_client.get(f"/invoices/{invoice_id}/pdf", headers=headers(company_id))
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.content.startswith(b"%PDF")

    notifications = api_client.get("/notifications", headers=headers(company_id)).json()
    assert notifications[0]["event_type"] == "invoice.invoice"

    deleted = api_client.delete(f"/invoices/{invoice_id}", headers=headers(company_id))
    assert deleted.status_code == 204
    released = api_client.get(
        "/bookings", params={"invoiced": False}, headers=headers(company_id)
    ).json()
    assert {booking["id"] for booking in released} == {booking["id"] for booking in bookings}


def test_calendar_marks_full_and_closed_dates(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    full_day, closed_day, open_day = date(2031, 1, 10), date(2031, 1, 11), date(2031, 1, 12)

    response = api_client.put(
        f"/programs/{program_id}/availability",
        json=[
            {"date": str(full_day), "total_slots": 20},
            {"date": str(closed_day), "total_slots": 20, "is_open": False},
        ],
        headers=headers(company_id),
    )
    assert response.status_code == 200
    assert len(response.json()) == 2

    create_booking(api_client, company_id, program_id, activity_date=str(full_day), adults=15, children=5)
    create_booking(
        api_client, company_id, program_id, activity_date=str(full_day), adults=4, status="pending"
    )
    cancelled = create_booking(api_client, company_id, program_id, activity_date=str(open_day), adults=3)
    api_client.post(
        f"/bookings/{cancelled['id']}/status", json={"status": "cancelled"}, headers=headers(company_id)
    )

    calendar = api_client.get(
        f"/programs/{program_id}/calendar",
        params={"start": str(full_day), "end": str(open_day), "today": "2031-01-11"},
        headers=headers(company_id),
    )
    assert calendar.status_code == 200
    days = {day["date"]: day for day in calendar.json()["days"]}

    assert days[str(full_day)]["status"] == "full"
    assert days[str(full_day)]["remaining"] == 0
    assert days[str(full_day)]["booked"] == 24
    assert days[str(full_day)]["is_past"] is True
    assert days[str(closed_day)]["status"] == "closed"
    assert days[str(open_day)]["status"] == "available"
    assert days[str(open_day)]["booked"] == 0
    assert days[str(open_day)]["is_available"] is True

    later = api_client.get(
        f"/programs/{program_id}/calendar",
        params={"start": str(open_day), "end": str(open_day), "today": "2031-01-13"},
        headers=headers(company_id),
    ).json()
    assert later["days"][0]["is_past"] is True
    assert later["days"][0]["is_available"] is False

    bad_zone = api_client.get(
        f"/programs/{program_id}/calendar", params={"tz": "Mars/Olympus"}, headers=headers(company_id)
    )
    assert bad_zone.status_code == 400


def test_bulk_availability_setup_upserts_selected_weekdays(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    payload = {
        "start_date": "2031-03-03",
        "end_date": "2031-03-16",
        "weekdays": [0, 3],
        "total_slots": 30,
    }

    created = api_client.post(
        f"/programs/{program_id}/availability/bulk", json=payload, headers=headers(company_id)
    )
    assert created.status_code == 200
    assert [row["date"] for row in created.json()] == [
        "2031-03-03",
        "2031-03-06",
        "2031-03-10",
        "2031-03-13",
    ]

    payload.update({"weekdays": [0], "total_slots": 12, "is_open": False})
    api_client.post(f"/programs/{program_id}/availability/bulk", json=payload, headers=headers(company_id))

    rows = api_client.get(
        f"/programs/{program_id}/availability",
        params={"start": "2031-03-01", "end": "2031-03-31"},
        headers=headers(company_id),
    ).json()
    assert len(rows) == 4
    mondays = [row for row in rows if row["date"] in {"2031-03-03", "2031-03-10"}]
    assert all(row["total_slots"] == 12 and row["is_open"] is False for row in mondays)

    reversed_range = api_client.post(
        f"/programs/{program_id}/availability/bulk",
        json={"start_date": "2031-03-16", "end_date": "2031-03-03", "total_slots": 5},
        headers=headers(company_id),
    )
    assert reversed_range.status_code == 422


def test_booking_status_transitions(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    booking = create_booking(api_client, company_id, program_id, status="pending")
    assert re.fullmatch(r"BK\d{6}[A-Z2-9]{4}", booking["booking_number"])

    url = f"/bookings/{booking['id']}/status"
    confirmed = api_client.post(url, json={"status": "confirmed"}, headers=headers(company_id))
    assert confirmed.status_code == 200
    assert confirmed.json()["last_modified_by_name"] == "Nok"

    backwards = api_client.post(url, json={"status": "pending"}, headers=headers(company_id))
    assert backwards.status_code == 400

    assert api_client.post(url, json={"status": "cancelled"}, headers=headers(company_id)).status_code == 200
    reopened = api_client.post(url, json={"status": "confirmed"}, headers=headers(company_id))
    assert reopened.status_code == 400


def test_booking_validation_and_updates(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    hotel = api_client.post(
        "/hotels", json={"name": "Kata Beach Resort", "area": "Kata"}, headers=headers(company_id)
    ).json()

    conflicting = api_client.post(
        "/bookings",
        json={
            "program_id": program_id,
            "customer_name": "Guest",
            "activity_date": str(FUTURE_DAY),
            "is_come_direct": True,
            "hotel_id": hotel["id"],
        },
        headers=headers(company_id),
    )
    assert conflicting.status_code == 422

    unknown_program = api_client.post(
        "/bookings",
        json={"program_id": 999, "customer_name": "Guest", "activity_date": str(FUTURE_DAY)},
        headers=headers(company_id),
    )
    assert unknown_program.status_code == 404

    booking = create_booking(api_client, company_id, program_id, hotel_id=hotel["id"])
    updated = api_client.put(
        f"/bookings/{booking['id']}",
        json={"is_come_direct": True, "children": 1},
        headers=headers(company_id),
    ).json()
    assert updated["is_come_direct"] is True
    assert updated["hotel_id"] is None
    assert updated["children"] == 1

    emptied = api_client.put(
        f"/bookings/{booking['id']}",
        json={"adults": 0, "children": 0},
        headers=headers(company_id),
    )
    assert emptied.status_code == 400

    assert api_client.delete(f"/bookings/{booking['id']}", headers=headers(company_id)).status_code == 204
    assert api_client.get(f"/bookings/{booking['id']}", headers=headers(company_id)).status_code == 404


def test_booking_filters_and_export(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    agent_id = create_agent(api_client, company_id)
    create_booking(api_client, company_id, program_id, agent_id, customer_name="Anna Schmidt")
    create_booking(api_client, company_id, program_id, None, customer_name="Lars Berg", status="pending")

    found = api_client.get("/bookings", params={"search": "schmidt"}, headers=headers(company_id)).json()
    assert [booking["customer_name"] for booking in found] == ["Anna Schmidt"]
    by_agent = api_client.get("/bookings", params={"agent_id": agent_id}, headers=headers(company_id)).json()
    assert len(by_agent) == 1
    pending = api_client.get("/bookings", params={"status": "pending"}, headers=headers(company_id)).json()
    assert [booking["customer_name"] for booking in pending] == ["Lars Berg"]

    export = api_client.get("/bookings/export", headers=headers(company_id))
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    lines = export.text.strip().splitlines()
    assert lines[0].startswith("booking_number,activity_date,status,program")
    assert len(lines) == 3
    assert "ABC Travel" in export.text


def test_pickup_and_meeting_point_emails(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    api_client.put(
        "/companies/current/settings",
        json={
            "meeting_point_name": "Rassada Pier",
            "pickup_contact_info": "Call +66 81 234 5678",
            "email_from_name": "Andaman Bookings",
        },
        headers=headers(company_id),
    )
    program_id = create_program(api_client, company_id, default_pickup_time="07:30")
    hotel = api_client.post(
        "/hotels", json={"name": "Kata Beach Resort"}, headers=headers(company_id)
    ).json()

    pickup = create_booking(api_client, company_id, program_id, hotel_id=hotel["id"], pickup_time="09:00")
    response = api_client.post(f"/bookings/{pickup['id']}/pickup-email", headers=headers(company_id))
    assert response.status_code == 200
    email = response.json()
    assert email["subject"] == f"Pickup Time Confirmed - {pickup['booking_number']}"
    assert "09:00 AM - 09:15 AM" in email["message"]
    assert "Kata Beach Resort" in email["message"]
    assert email["sender"].startswith("Andaman Bookings <")
    refreshed = api_client.get(f"/bookings/{pickup['id']}", headers=headers(company_id)).json()
    assert refreshed["pickup_email_sent"] is True

    come_direct = create_booking(api_client, company_id, program_id, is_come_direct=True)
    meeting = api_client.post(f"/bookings/{come_direct['id']}/pickup-email", headers=headers(company_id))
    assert meeting.status_code == 200
    assert "07:30 AM" in meeting.json()["message"]
    assert "Rassada Pier" in meeting.json()["message"]

    no_time = create_booking(api_client, company_id, program_id, hotel_id=hotel["id"])
    missing_time = api_client.post(f"/bookings/{no_time['id']}/pickup-email", headers=headers(company_id))
    assert missing_time.status_code == 400

    no_email = create_booking(api_client, company_id, program_id, customer_email=None, pickup_time="08:00")
    missing_email = api_client.post(f"/bookings/{no_email['id']}/pickup-email", headers=headers(company_id))
    assert missing_email.status_code == 400


def test_public_direct_booking_flow(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    api_client.put(
        "/companies/current/settings",
        json={"stripe_public_key": "pk_test_abc", "stripe_secret_key": "sk_test_xyz"},
        headers=headers(company_id),
    )
    program_id = create_program(api_client, company_id, direct_booking_enabled=True)
    create_program(api_client, company_id, name="Private Charter")

    listing = api_client.get("/public/andaman-sea-tours")
    assert listing.status_code == 200
    body = listing.json()
    assert body["company"]["stripe_enabled"] is True
    assert body["company"]["stripe_public_key"] == "pk_test_abc"
    assert "stripe_secret_key" not in body["company"]
    assert [program["id"] for program in body["programs"]] == [program_id]
    assert api_client.get("/public/unknown-company").status_code == 404

    guest = {
        "program_id": program_id,
        "activity_date": str(FUTURE_DAY),
        "adults": 2,
        "children": 1,
        "infants": 1,
        "customer_name": "Emma Wilson",
        "customer_email": "emma@example.com",
    }
    intent = api_client.post("/public/andaman-sea-tours/payment-intent", json=guest)
    assert intent.status_code == 200
    intent_body = intent.json()
    assert Decimal(intent_body["amount"]) == Decimal("3750")
    assert intent_body["amount_minor_units"] == 375000
    assert intent_body["publishable_key"] == "pk_test_abc"
    assert intent_body["client_secret"].startswith(intent_body["payment_intent_id"])

    card_without_intent = api_client.post(
        "/public/andaman-sea-tours/bookings", json={**guest, "payment_method": "stripe"}
    )
    assert card_without_intent.status_code == 422

    made_up = api_client.post(
        "/public/andaman-sea-tours/bookings",
        json={**guest, "payment_method": "stripe", "payment_intent_id": "pi_never_issued"},
    )
    assert made_up.status_code == 400

    card_booking = {**guest, "payment_method": "stripe", "payment_intent_id": intent_body["payment_intent_id"]}
    unpaid = api_client.post("/public/andaman-sea-tours/bookings", json=card_booking)
    assert unpaid.status_code == 400

    confirm_url = f"/public/andaman-sea-tours/payment-intents/{intent_body['payment_intent_id']}/confirm"
    assert api_client.post(confirm_url, json={"client_secret": "wrong"}).status_code == 400
    assert (
        api_client.post(
            "/public/andaman-sea-tours/payment-intents/pi_never_issued/confirm",
            json={"client_secret": intent_body["client_secret"]},
        ).status_code
        == 404
    )
    confirmed = api_client.post(confirm_url, json={"client_secret": intent_body["client_secret"]})
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "succeeded"

    larger_party = api_client.post(
        "/public/andaman-sea-tours/bookings", json={**card_booking, "adults": 9}
    )
    assert larger_party.status_code == 400

    card = api_client.post("/public/andaman-sea-tours/bookings", json=card_booking)
    assert card.status_code == 201
    assert card.json()["status"] == "confirmed"
    assert card.json()["payment_status"] == "paid"
    assert Decimal(card.json()["collect_money"]) == Decimal("0")
    assert card.json()["is_direct_booking"] is True
    assert card.json()["source"] == "website"

    reused = api_client.post("/public/andaman-sea-tours/bookings", json=card_booking)
    assert reused.status_code == 400

    other_id = create_company(api_client, name="Phi Phi Cruises")
    api_client.put(
        "/companies/current/settings",
        json={"stripe_public_key": "pk_test_other", "stripe_secret_key": "sk_test_other"},
        headers=headers(other_id),
    )
    other_program = create_program(api_client, other_id, direct_booking_enabled=True)
    second_intent = api_client.post(
        "/public/andaman-sea-tours/payment-intent", json=guest
    ).json()
    api_client.post(
        f"/public/andaman-sea-tours/payment-intents/{second_intent['payment_intent_id']}/confirm",
        json={"client_secret": second_intent["client_secret"]},
    )
    foreign = api_client.post(
        "/public/phi-phi-cruises/bookings",
        json={
            **guest,
            "program_id": other_program,
            "payment_method": "stripe",
            "payment_intent_id": second_intent["payment_intent_id"],
        },
    )
    assert foreign.status_code == 400

    cash = api_client.post("/public/andaman-sea-tours/bookings", json={**guest, "payment_method": "cash"})
    assert cash.status_code == 201
    assert cash.json()["status"] == "pending"
    assert Decimal(cash.json()["collect_money"]) == Decimal("3750")

    api_client.put(
        "/companies/current/settings", json={"allow_cash_on_tour": False}, headers=headers(company_id)
    )
    refused = api_client.post("/public/andaman-sea-tours/bookings", json={**guest, "payment_method": "cash"})
    assert refused.status_code == 400

    api_client.put(
        f"/programs/{program_id}/availability",
        json=[{"date": str(FUTURE_DAY), "total_slots": 5}],
        headers=headers(company_id),
    )
    sold_out = api_client.post("/public/andaman-sea-tours/payment-intent", json=guest)
    assert sold_out.status_code == 400


def test_same_day_booking_closes_at_program_cutoff(
    api_client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    company_id = create_company(api_client)
    evening_tour = create_program(api_client, company_id, direct_booking_enabled=True)
    night_market = create_program(
        api_client,
        company_id,
        name="Night Market Walk",
        direct_booking_enabled=True,
        booking_cutoff_time="20:00",
    )
    programs = api_client.get("/programs", headers=headers(company_id)).json()
    cutoffs = {program["id"]: program["booking_cutoff_time"] for program in programs}
    assert cutoffs == {evening_tour: "18:00", night_market: "20:00"}

    zone = ZoneInfo("Asia/Bangkok")
    monkeypatch.setattr(
        availability, "local_now", lambda timezone=None: datetime.combine(FUTURE_DAY, time(19, 0), zone)
    )
    guest = {
        "activity_date": str(FUTURE_DAY),
        "adults": 2,
        "customer_name": "Noah Brown",
        "customer_email": "noah@example.com",
        "payment_method": "cash",
    }

    calendar = api_client.get(
        f"/public/andaman-sea-tours/programs/{evening_tour}/calendar",
        params={"start": str(FUTURE_DAY), "end": str(FUTURE_DAY + timedelta(days=1))},
    ).json()
    today, tomorrow = calendar["days"]
    assert today["is_past_cutoff"] is True
    assert today["is_available"] is False
    assert tomorrow["is_available"] is True

    closed = api_client.post(
        "/public/andaman-sea-tours/bookings", json={**guest, "program_id": evening_tour}
    )
    assert closed.status_code == 400
    assert "18:00" in closed.json()["detail"]

    next_day = api_client.post(
        "/public/andaman-sea-tours/bookings",
        json={**guest, "program_id": evening_tour, "activity_date": str(FUTURE_DAY + timedelta(days=1))},
    )
    assert next_day.status_code == 201

    later_cutoff = api_client.post(
        "/public/andaman-sea-tours/bookings", json={**guest, "program_id": night_market}
    )
    assert later_cutoff.status_code == 201

    backoffice = api_client.get(
        f"/programs/{evening_tour}/calendar",
        params={"start": str(FUTURE_DAY), "end": str(FUTURE_DAY), "today": str(FUTURE_DAY)},
        headers=headers(company_id),
    ).json()
    assert backoffice["days"][0]["is_past_cutoff"] is False
    assert backoffice["days"][0]["is_available"] is True


def test_program_thumbnail_upload(api_client: TestClient) -> None:
    company_id = create_company(api_client)
    program_id = create_program(api_client, company_id)
    image = Image.new("RGB", (1200, 900), color=(0, 120, 200))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    buffer.seek(0)

    response = api_client.post(
        f"/programs/{program_id}/thumbnail",
        files={"file": ("bay.png", buffer, "image/png")},
        headers=headers(company_id),
    )
    buffer.close()
    assert response.status_code == 200
    path = response.json()["thumbnail_path"]
    assert path.endswith(".jpg")
    stored = ROOT / path
    assert stored.exists()
    with Image.open(stored) as thumbnail:
        assert max(thumbnail.size) == 800

    invalid = api_client.post(
        f"/programs/{program_id}/thumbnail",
        files={"file": ("notes.txt", io.BytesIO(b"not an image"), "text/plain")},
        headers=headers(company_id),
    )
    assert invalid.status_code == 400
    reset_media_storage()
