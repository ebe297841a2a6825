"""Program, thumbnail and availability endpoints."""
from __future__ import annotations

from datetime import date, timedelta
from typing import List, Optional
from zoneinfo import ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, File, HTTPException, Path, Query, UploadFile, status
from sqlalchemy.orm import Session

from ... import availability, crud, models, schemas
from ..deps import get_context, get_db

router = APIRouter(prefix="/programs", tags=["programs"])


def _get_program_or_404(db: Session, ctx: schemas.OperatorContext, program_id: int) -> models.Program:
    program = crud.get_program(db, ctx.company_id, program_id)
    if not program:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Program not found")
    return program


def resolve_today(today: Optional[date], tz: Optional[str]) -> date:
    """An explicit ``today`` wins; otherwise today in ``tz`` or the operator zone."""

    if today is not None:
        return today
    try:
        return availability.local_today(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown time zone: {tz}"
        ) from exc


def calendar_window(start: Optional[date], end: Optional[date], today: date) -> tuple[date, date]:
    start = start or today.replace(day=1)
    end = end or (start + timedelta(days=41))
    return start, end


@router.post("", response_model=schemas.Program, status_code=status.HTTP_201_CREATED)
def create_program(
    program_in: schemas.ProgramCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Program:
    program = crud.create_program(db, ctx, program_in)
    db.refresh(program)
    return program


@router.get("", response_model=List[schemas.Program])
def list_programs(
    active_only: bool = Query(False),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.Program]:
    return list(crud.list_programs(db, ctx.company_id, active_only=active_only))


@router.get("/{program_id}", response_model=schemas.Program)
def get_program(
    program_id: int = Path(..., gt=0),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Program:
    return _get_program_or_404(db, ctx, program_id)


@router.put("/{program_id}", response_model=schemas.Program)
def update_program(
    program_id: int,
    program_in: schemas.ProgramUpdate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Program:
    program = _get_program_or_404(db, ctx, program_id)
    try:
        program = crud.update_program(db, program, program_in)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(program)
    return program


@router.delete("/{program_id}", response_model=schemas.Program, summary="Deactivate a program")
def deactivate_program(
    program_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Program:
    program = _get_program_or_404(db, ctx, program_id)
    program = crud.deactivate_program(db, program)
    db.refresh(program)
    return program


@router.post("/{program_id}/thumbnail", response_model=schemas.Program)
async def upload_program_thumbnail(
    program_id: int,
    file: UploadFile = File(...),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Program:
    program = _get_program_or_404(db, ctx, program_id)
    raw_bytes = await file.read()
    try:
        program = crud.set_program_thumbnail(db, program, raw_bytes, file.filename or "thumbnail.jpg")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(program)
    return program


@router.put("/{program_id}/availability", response_model=List[schemas.ProgramAvailability])
def upsert_availability(
    program_id: int,
    entries: List[schemas.AvailabilityUpsert],
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.ProgramAvailability]:
    program = _get_program_or_404(db, ctx, program_id)
    rows = crud.upsert_availability(db, program, entries)
    for row in rows:
        db.refresh(row)
    return rows


@router.post(
    "/{program_id}/availability/bulk",
    response_model=List[schemas.ProgramAvailability],
    summary="Set slots for selected weekdays across a date range",
)
def bulk_setup_availability(
    program_id: int,
    payload: schemas.AvailabilityBulkSetup,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.ProgramAvailability]:
    program = _get_program_or_404(db, ctx, program_id)
    rows = crud.bulk_setup_availability(db, program, payload)
    for row in rows:
        db.refresh(row)
    return rows


@router.get("/{program_id}/availability", response_model=List[schemas.ProgramAvailability])
def list_availability(
    program_id: int,
    start: date = Query(...),
    end: date = Query(...),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.ProgramAvailability]:
    program = _get_program_or_404(db, ctx, program_id)
    return list(crud.list_availability(db, program, start, end))


@router.get("/{program_id}/calendar", response_model=schemas.AvailabilityCalendar)
def program_calendar(
    program_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    today: Optional[date] = Query(None, description="Override the operator's current date"),
    tz: Optional[str] = Query(None, description="IANA time zone used to determine today"),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> schemas.AvailabilityCalendar:
    program = _get_program_or_404(db, ctx, program_id)
    current = resolve_today(today, tz)
    start, end = calendar_window(start, end, current)
    try:
        return crud.program_calendar(db, program, start, end, current)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
