"""Agent management and agent pricing endpoints."""
from __future__ import annotations

from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status
from sqlalchemy.orm import Session

from ... import crud, models, schemas
from ..deps import get_context, get_db, require_pricing_pin

router = APIRouter(prefix="/agents", tags=["agents"])


def _get_agent_or_404(db: Session, ctx: schemas.OperatorContext, agent_id: int) -> models.Agent:
    agent = crud.get_agent(db, ctx.company_id, agent_id)
    if not agent:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
    return agent


@router.post("", response_model=schemas.Agent, status_code=status.HTTP_201_CREATED)
def create_agent(
    agent_in: schemas.AgentCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Agent:
    try:
        agent = crud.create_agent(db, ctx, agent_in)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(agent)
    return agent


@router.get("", response_model=List[schemas.Agent])
def list_agents(
    status_filter: Optional[Literal["active", "inactive"]] = Query(None, alias="status"),
    search: str | None = Query(None, description="Filter by name or agent ID substring"),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.Agent]:
    return list(crud.list_agents(db, ctx.company_id, status=status_filter, search=search))


@router.post(
    "/merge-duplicates",
    response_model=schemas.AgentMergeResult,
    summary="Merge agents that share a name",
)
def merge_duplicate_agents(
    ctx: schemas.OperatorContext = Depends(get_context), db: Session = Depends(get_db)
) -> schemas.AgentMergeResult:
    return crud.merge_duplicate_agents(db, ctx)


@router.get(
    "/pricing/bulk",
    response_model=List[schemas.ResolvedPricing],
    dependencies=[Depends(require_pricing_pin)],
    summary="Program defaults for editing several agents at once",
)
def bulk_pricing_template(
    ctx: schemas.OperatorContext = Depends(get_context), db: Session = Depends(get_db)
) -> List[schemas.ResolvedPricing]:
    return crud.get_bulk_pricing_template(db, ctx.company_id)


@router.put(
    "/pricing/bulk",
    response_model=List[schemas.AgentPricingRow],
    dependencies=[Depends(require_pricing_pin)],
    summary="Apply the same prices to several agents",
)
def bulk_save_pricing(
    payload: schemas.BulkAgentPricingSave,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.AgentPricing]:
    try:
        return crud.bulk_save_agent_pricing(db, ctx, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{agent_id}", response_model=schemas.Agent)
def get_agent(
    agent_id: int = Path(..., gt=0),
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Agent:
    return _get_agent_or_404(db, ctx, agent_id)


@router.put("/{agent_id}", response_model=schemas.Agent)
def update_agent(
    agent_id: int,
    agent_in: schemas.AgentUpdate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.Agent:
    agent = _get_agent_or_404(db, ctx, agent_id)
    try:
        agent = crud.update_agent(db, ctx, agent, agent_in)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.refresh(agent)
    return agent


@router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_agent(
    agent_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Response:
    agent = _get_agent_or_404(db, ctx, agent_id)
    crud.delete_agent(db, agent)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{agent_id}/staff", response_model=List[schemas.AgentStaff])
def list_agent_staff(
    agent_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.AgentStaff]:
    agent = _get_agent_or_404(db, ctx, agent_id)
    return list(crud.list_agent_staff(db, agent))


@router.post(
    "/{agent_id}/staff", response_model=schemas.AgentStaff, status_code=status.HTTP_201_CREATED
)
def create_agent_staff(
    agent_id: int,
    staff_in: schemas.AgentStaffCreate,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> models.AgentStaff:
    agent = _get_agent_or_404(db, ctx, agent_id)
    member = crud.create_agent_staff(db, agent, staff_in)
    db.refresh(member)
    return member


@router.get(
    "/{agent_id}/pricing",
    response_model=List[schemas.ResolvedPricing],
    dependencies=[Depends(require_pricing_pin)],
)
def get_agent_pricing(
    agent_id: int,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[schemas.ResolvedPricing]:
    agent = _get_agent_or_404(db, ctx, agent_id)
    return crud.get_agent_pricing_sheet(db, ctx.company_id, agent)


@router.put(
    "/{agent_id}/pricing",
    response_model=List[schemas.AgentPricingRow],
    dependencies=[Depends(require_pricing_pin)],
)
def save_agent_pricing(
    agent_id: int,
    payload: schemas.AgentPricingSave,
    ctx: schemas.OperatorContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> List[models.AgentPricing]:
    agent = _get_agent_or_404(db, ctx, agent_id)
    try:
        return crud.save_agent_pricing(db, ctx, agent, payload)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
