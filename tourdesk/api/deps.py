"""Shared FastAPI dependencies."""
from __future__ import annotations

from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..database import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """Provide a scoped database session to request handlers."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:  # pragma: no cover - safety rollback
        db.rollback()
        raise
    finally:
        db.close()


def get_company(
    company_id: Annotated[int, Header(alias="X-Company-Id", gt=0)],
    db: Session = Depends(get_db),
) -> models.Company:
    """Resolve the tenant named by the ``X-Company-Id`` header."""

    company = crud.get_company(db, company_id)
    if not company:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
    return company


def get_context(
    company: models.Company = Depends(get_company),
    user_name: Annotated[str | None, Header(alias="X-User-Name")] = None,
) -> schemas.OperatorContext:
    return schemas.OperatorContext(company_id=company.id, user_name=user_name)


def require_pricing_pin(
    company: models.Company = Depends(get_company),
    pricing_pin: Annotated[str | None, Header(alias="X-Pricing-Pin")] = None,
) -> None:
    """Guard agent pricing behind the company PIN when one is configured."""

    if not crud.verify_pricing_pin(company, pricing_pin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Valid pricing PIN required",
        )


def get_public_company(slug: str, db: Session = Depends(get_db)) -> models.Company:
    company = crud.get_company_by_slug(db, slug)
    if not company:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Company not found")
    return company
