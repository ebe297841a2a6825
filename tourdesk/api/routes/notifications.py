"""Outbound notification log."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ... import crud, models, schemas
from ..deps import get_context, get_db

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=List[schemas.NotificationLog])
def list_notifications(
    limit: int = Query(100, ge=1, le=500),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.NotificationLog]:
    return list(crud.list_notifications(db, ctx.company_id, limit=limit))
