"""Company (tenant) registration and settings endpoints."""
from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ... import crud, models, schemas
from ..deps import get_company, get_db

router = APIRouter(prefix="/companies", tags=["companies"])


@router.post("", response_model=schemas.Company, status_code=status.HTTP_201_CREATED)
def create_company(company_in: schemas.CompanyCreate, db: Session = Depends(get_db)) -> models.Company:
    company = crud.create_company(db, company_in)
    db.refresh(company)
    return company


@router.get("/current", response_model=schemas.Company)
def get_current_company(company: models.Company = Depends(get_company)) -> models.Company:
    return company


@router.put("/current/settings", response_model=schemas.Company)
def update_company_settings(
    settings_in: schemas.CompanySettingsUpdate,
    company: models.Company = Depends(get_company),
    pricing_pin: Annotated[str | None, Header(alias="X-Pricing-Pin")] = None,
    db: Session = Depends(get_db),
) -> models.Company:
    # Replacing or clearing an existing PIN needs the current one.
    if "pricing_pin" in settings_in.model_fields_set and not crud.verify_pricing_pin(
        company, pricing_pin
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Valid pricing PIN required")
    company = crud.update_company_settings(db, company, settings_in)
    db.refresh(company)
    return company
