"""Pickup hotel endpoints."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ... import crud, models, schemas
from ..deps import get_context, get_db

router = APIRouter(prefix="/hotels", tags=["hotels"])


@router.post("", response_model=schemas.Hotel, status_code=status.HTTP_201_CREATED)
def create_hotel(
    hotel_in: schemas.HotelCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Hotel:
    hotel = crud.create_hotel(db, ctx, hotel_in)
    db.refresh(hotel)
    return hotel


@router.get("", response_model=List[schemas.Hotel])
def list_hotels(
    ctx: schemas.OperatorContext = Depends(get_context), db: Session = Depends(get_db)
) -> List[models.Hotel]:
    return list(crud.list_hotels(db, ctx.company_id))
