"""Booking endpoints: CRUD, status changes, pickup emails and export."""
from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status
from sqlalchemy.orm import Session

from ... import crud, models, schemas, utils
from ..deps import get_context, get_db

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _get_booking_or_404(db: Session, ctx: schemas.OperatorContext, booking_id: int) -> models.Booking:
    booking = crud.get_booking(db, ctx.company_id, booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


def _filtered_bookings(
    db: Session,
    ctx: schemas.OperatorContext,
    status_filter: Optional[schemas.BookingStatus],
    agent_id: Optional[int],
    program_id: Optional[int],
    date_from: Optional[date],
    date_to: Optional[date],
    search: Optional[str],
    invoiced: Optional[bool],
) -> List[models.Booking]:
    return list(
        crud.list_bookings(
            db,
            ctx.company_id,
            status=status_filter,
            agent_id=agent_id,
            program_id=program_id,
            date_from=date_from,
            date_to=date_to,
            search=search,
            invoiced=invoiced,
        )
    )


@router.post("", response_model=schemas.Booking, status_code=status.HTTP_201_CREATED)
def create_booking(
    booking_in: schemas.BookingCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Booking:
    try:
        booking = crud.create_booking(db, ctx, booking_in)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(booking)
    return booking


@router.get("", response_model=List[schemas.Booking])
def list_bookings(
    status_filter: Optional[schemas.BookingStatus] = Query(None, alias="status"),
    agent_id: Optional[int] = Query(None),
    program_id: Optional[int] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    search: Optional[str] = Query(None, description="Guest name, email or booking number"),
    invoiced: Optional[bool] = Query(None),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.Booking]:
    return _filtered_bookings(
        db, ctx, status_filter, agent_id, program_id, date_from, date_to, search, invoiced
    )


@router.get("/export", summary="Download the booking table as CSV")
def export_bookings(
    status_filter: Optional[schemas.BookingStatus] = Query(None, alias="status"),
    agent_id: Optional[int] = Query(None),
    program_id: Optional[int] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    search: Optional[str] = Query(None),
    invoiced: Optional[bool] = Query(None),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Response:
    bookings = _filtered_bookings(
        db, ctx, status_filter, agent_id, program_id, date_from, date_to, search, invoiced
    )
    return Response(
        content=utils.export_bookings_csv(bookings),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="bookings.csv"'},
    )


@router.get("/{booking_id}", response_model=schemas.Booking)
def get_booking(
    booking_id: int = Path(..., gt=0),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Booking:
    return _get_booking_or_404(db, ctx, booking_id)


@router.put("/{booking_id}", response_model=schemas.Booking)
def update_booking(
    booking_id: int,
    booking_in: schemas.BookingUpdate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Booking:
    booking = _get_booking_or_404(db, ctx, booking_id)
    try:
        booking = crud.update_booking(db, ctx, booking, booking_in)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(booking)
    return booking


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
    booking_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Response:
    booking = _get_booking_or_404(db, ctx, booking_id)
    try:
        crud.delete_booking(db, booking)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{booking_id}/status", response_model=schemas.Booking)
def change_booking_status(
    booking_id: int,
    payload: schemas.BookingStatusChange,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Booking:
    booking = _get_booking_or_404(db, ctx, booking_id)
    try:
        booking = crud.change_booking_status(db, ctx, booking, payload.status)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(booking)
    return booking


@router.post(
    "/{booking_id}/pickup-email",
    response_model=schemas.NotificationLog,
    summary="Email the guest their pickup window or meeting point",
)
def send_pickup_email(
    booking_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.NotificationLog:
    booking = _get_booking_or_404(db, ctx, booking_id)
    try:
        notification = crud.send_pickup_email(db, ctx, booking)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(notification)
    return notification
