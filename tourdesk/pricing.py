"""Agent pricing and commission resolution.

Everything here is a pure function over :class:`schemas.ProgramPricing` and
:class:`schemas.AgentPricingOverride`; persistence lives in ``crud``.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from . import schemas
from .constants import DEFAULT_CHILD_PRICE_RATIO

ZERO = Decimal("0")
CENT = Decimal("0.01")


def _money(value: Optional[Decimal]) -> Decimal:
    return Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP)


def _first_set(*values: Optional[Decimal]) -> Decimal:
    # Unset and zero prices both fall through to the next candidate.
    for value in values:
        if value:
            return _money(value)
    return _money(ZERO)


def selling_price_of(program: schemas.ProgramPricing) -> Decimal:
    """Single-mode selling price, falling back to the program's base price."""

    return _first_set(program.selling_price, program.base_price)


def commission(selling_price: Decimal, agent_price: Decimal) -> Decimal:
    """Selling minus agent price; negative values are kept as-is."""

    return _money(selling_price) - _money(agent_price)


def _build(
    program: schemas.ProgramPricing,
    agent_price: Decimal,
    adult_agent_price: Optional[Decimal],
    child_agent_price: Optional[Decimal],
) -> schemas.ResolvedPricing:
    selling = selling_price_of(program)
    resolved = schemas.ResolvedPricing(
        program_id=program.id,
        program_name=program.name,
        pricing_type=program.pricing_type,
        selling_price=selling,
        agent_price=agent_price,
        commission=commission(selling, agent_price),
    )
    negative = resolved.commission < 0

    if program.pricing_type == "adult_child":
        adult_selling = _money(program.adult_selling_price)
        child_selling = _money(program.child_selling_price)
        resolved.adult_selling_price = adult_selling
        resolved.adult_agent_price = adult_agent_price
        resolved.adult_commission = commission(adult_selling, adult_agent_price)
        resolved.child_selling_price = child_selling
        resolved.child_agent_price = child_agent_price
        resolved.child_commission = commission(child_selling, child_agent_price)
        negative = resolved.adult_commission < 0 or resolved.child_commission < 0

    resolved.is_negative_commission = negative
    return resolved


def resolve_agent_pricing(
    program: schemas.ProgramPricing,
    existing: Optional[schemas.AgentPricingOverride] = None,
) -> schemas.ResolvedPricing:
    """Resolve the agent price for one program, preloading any saved override.

    Without an override each tier defaults to the program's selling price, so
    a fresh agent starts at zero commission rather than a zero price.
    """

    selling = selling_price_of(program)
    adult_selling = _money(program.adult_selling_price)
    child_selling = _money(program.child_selling_price)
    if existing is None:
        return _build(program, selling, adult_selling, child_selling)
    return _build(
        program,
        _first_set(existing.agent_price, selling),
        _first_set(existing.adult_agent_price, adult_selling),
        _first_set(existing.child_agent_price, child_selling),
    )


def resolve_bulk_pricing(program: schemas.ProgramPricing) -> schemas.ResolvedPricing:
    """Program defaults used when editing several agents at once.

    Saved overrides are deliberately ignored: a bulk save overwrites them.
    """

    return resolve_agent_pricing(program, None)


def pricing_upsert_values(
    agent_id: int,
    program: schemas.ProgramPricing,
    entry: schemas.AgentPricingEntry,
) -> Dict[str, Any]:
    """Row values for the (agent_id, program_id) upsert."""

    split = program.pricing_type == "adult_child"
    return {
        "agent_id": agent_id,
        "program_id": program.id,
        "selling_price": selling_price_of(program),
        "agent_price": _money(entry.agent_price),
        "adult_agent_price": _money(entry.adult_agent_price) if split else None,
        "child_agent_price": _money(entry.child_agent_price) if split else None,
    }


def quote_direct_booking(
    program: schemas.ProgramPricing, adults: int, children: int, infants: int = 0
) -> schemas.DirectBookingQuote:
    """Public booking price: full adult rate, child rate or half of it, infants free."""

    adult_price = _first_set(
        program.adult_selling_price, program.selling_price, program.base_price
    )
    child_price = _first_set(program.child_selling_price, adult_price * DEFAULT_CHILD_PRICE_RATIO)
    adults_total = _money(adult_price * adults)
    children_total = _money(child_price * children)
    return schemas.DirectBookingQuote(
        adult_price=adult_price,
        child_price=child_price,
        adults=adults,
        children=children,
        infants=infants,
        adults_total=adults_total,
        children_total=children_total,
        total_amount=adults_total + children_total,
    )
