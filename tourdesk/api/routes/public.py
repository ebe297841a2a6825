"""Public booking endpoints addressed by company slug."""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from ... import availability, crud, models, schemas
from ..deps import get_db, get_public_company
from .programs import calendar_window

router = APIRouter(prefix="/public/{slug}", tags=["public"])


@router.get("", response_model=schemas.PublicProgramListing)
def public_listing(
    company: models.Company = Depends(get_public_company), db: Session = Depends(get_db)
) -> schemas.PublicProgramListing:
    programs = [
        schemas.Program.model_validate(program)
        for program in crud.list_public_programs(db, company)
    ]
    return schemas.PublicProgramListing(company=crud.public_company(company), programs=programs)


@router.get("/hotels", response_model=List[schemas.Hotel])
def public_hotels(
    company: models.Company = Depends(get_public_company), db: Session = Depends(get_db)
) -> List[models.Hotel]:
    return list(crud.list_hotels(db, company.id))


@router.get("/programs/{program_id}/calendar", response_model=schemas.AvailabilityCalendar)
def public_calendar(
    program_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    company: models.Company = Depends(get_public_company),
    db: Session = Depends(get_db),
) -> schemas.AvailabilityCalendar:
    program = crud.get_program(db, company.id, program_id)
    if not program or program.status != "active" or not program.direct_booking_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Program not found")
    now = availability.local_now()
    start, end = calendar_window(start, end, now.date())
    try:
        return crud.program_calendar(db, program, start, end, now.date(), now)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/payment-intent", response_model=schemas.PaymentIntentResponse)
def create_payment_intent(
    payload: schemas.PaymentIntentRequest,
    company: models.Company = Depends(get_public_company),
    db: Session = Depends(get_db),
) -> schemas.PaymentIntentResponse:
    try:
        return crud.create_payment_intent(db, company, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post(
    "/payment-intents/{payment_intent_id}/confirm", response_model=schemas.PaymentIntentStatus
)
def confirm_payment_intent(
    payment_intent_id: str,
    payload: schemas.PaymentIntentConfirm,
    company: models.Company = Depends(get_public_company),
    db: Session = Depends(get_db),
) -> schemas.PaymentIntentStatus:
    try:
        intent = crud.confirm_payment_intent(db, company, payment_intent_id, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return schemas.PaymentIntentStatus(
        payment_intent_id=intent.intent_id,
        status=intent.status,
        amount=intent.amount,
        amount_minor_units=intent.amount_minor_units,
        currency=intent.currency,
        booking_id=intent.booking_id,
    )


@router.post("/bookings", response_model=schemas.Booking, status_code=status.HTTP_201_CREATED)
def create_direct_booking(
    payload: schemas.DirectBookingCreate,
    company: models.Company = Depends(get_public_company),
    db: Session = Depends(get_db),
) -> models.Booking:
    try:
        booking = crud.create_direct_booking(db, company, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(booking)
    return booking
