"""Allocation model: how an endowment's balance splits across causes and types.

All functions here are pure with respect to their inputs except
``apply_hybrid_type_amounts``, which writes a per-cause dollar breakdown
back onto an endowment that the caller already owns (a working copy).
"""

from __future__ import annotations

import copy
from collections import defaultdict
from collections.abc import Iterable, Mapping

from loguru import logger

from ..core.config_schema import EngineSettings
from ..core.exceptions import InvalidAllocation
from .models import (
    COMPONENT_TYPES,
    AllocationEntry,
    AllocationSplit,
    Endowment,
    HybridSplit,
    TypeAmounts,
    WaqfType,
)

# Float noise below this is treated as zero when writing dollars back.
_EPSILON = 1e-9


def validate_hybrid_allocations(
    allocations: Mapping[str, HybridSplit],
    selected_causes: Iterable[str] | None = None,
    tolerance: float = 0.01,
) -> None:
    """Raise InvalidAllocation unless every cause's blend totals 100%.

    When *selected_causes* is given, each of them must also have a blend.
    """
    for cause_id, split in allocations.items():
        if min(split.permanent_pct, split.consumable_pct, split.revolving_pct) < 0:
            raise InvalidAllocation(f"allocation for cause '{cause_id}' has a negative percentage")
        if abs(split.total - 100.0) > tolerance:
            raise InvalidAllocation(f"allocation for cause '{cause_id}' must total 100% (got {split.total:.2f}%)")
    if selected_causes is not None:
        missing = [c for c in selected_causes if c not in allocations]
        if missing:
            raise InvalidAllocation(f"hybrid allocation missing for causes: {', '.join(missing)}")


def equal_split(amount: float, cause_ids: list[str]) -> dict[str, float]:
    """Split *amount* evenly; the last cause absorbs the rounding remainder."""
    if not cause_ids:
        return {}
    share = amount / len(cause_ids)
    result = {cause_id: share for cause_id in cause_ids[:-1]}
    result[cause_ids[-1]] = amount - share * (len(cause_ids) - 1)
    return result


def _weighted_split(amount: float, weights: Mapping[str, float]) -> dict[str, float]:
    total = sum(weights.values())
    cause_ids = list(weights)
    result: dict[str, float] = {}
    allocated = 0.0
    for cause_id in cause_ids[:-1]:
        share = amount * weights[cause_id] / total
        result[cause_id] = share
        allocated += share
    result[cause_ids[-1]] = amount - allocated
    return result


def cause_amounts(endowment: Endowment) -> dict[str, float]:
    """Dollar amount per cause.

    Hybrid endowments carry authoritative per-cause dollars; other types
    apply ``cause_allocation`` percentages to the balance, or split it
    evenly across selected causes when no percentages are set.
    """
    balance = endowment.financial.current_balance
    if endowment.is_hybrid:
        return {c: endowment.financial.cause_allocations.get(c, 0.0) for c in endowment.selected_causes}

    weights = {c: pct for c, pct in endowment.cause_allocation.items() if pct > 0}
    if weights:
        return {c: balance * pct / 100.0 for c, pct in weights.items()}
    return equal_split(balance, list(endowment.selected_causes))


def hybrid_type_amounts(endowment: Endowment) -> dict[str, TypeAmounts]:
    """Apply each cause's stored blend to that cause's dollars."""
    result: dict[str, TypeAmounts] = {}
    for cause_id, amount in cause_amounts(endowment).items():
        split = endowment.hybrid_allocations.get(cause_id, HybridSplit())
        result[cause_id] = TypeAmounts(
            permanent=amount * split.permanent_pct / 100.0,
            consumable=amount * split.consumable_pct / 100.0,
            revolving=amount * split.revolving_pct / 100.0,
        )
    return result


def contribution_blends(endowment: Endowment) -> dict[str, HybridSplit]:
    """Donor-chosen split for new money, per cause that has one."""
    known = {*endowment.hybrid_allocations, *endowment.contribution_blend}
    causes = dict.fromkeys([*endowment.selected_causes, *endowment.hybrid_allocations, *endowment.contribution_blend])
    return {c: endowment.blend_for(c) for c in causes if c in known}


def add_hybrid_contribution(endowment: Endowment, shares: Mapping[str, float]) -> dict[str, float]:
    """Add new money to each cause under its contribution blend.

    Returns the revolving dollars per cause, the part that must be locked.
    """
    amounts = hybrid_type_amounts(endowment)
    touched: dict[str, TypeAmounts] = {}
    revolving: dict[str, float] = {}
    for cause_id, share in shares.items():
        split = endowment.blend_for(cause_id)
        parts = amounts.get(cause_id) or TypeAmounts()
        parts.permanent += share * split.permanent_pct / 100.0
        parts.consumable += share * split.consumable_pct / 100.0
        parts.revolving += share * split.revolving_pct / 100.0
        touched[cause_id] = parts
        revolving[cause_id] = share * split.revolving_pct / 100.0
    apply_hybrid_type_amounts(endowment, touched)
    return revolving


def apply_hybrid_type_amounts(endowment: Endowment, amounts: Mapping[str, TypeAmounts]) -> None:
    """Write per-cause, per-type dollars back as cause dollars plus holdings percentages.

    The blend a cause had before its first rewrite is kept as its
    ``contribution_blend``, so new money is still split the way the donor
    chose. A cause whose dollars drop to zero keeps its previous holdings blend.
    """
    for cause_id, parts in amounts.items():
        for waqf_type in COMPONENT_TYPES:
            if abs(parts.get(waqf_type)) < _EPSILON:
                parts.set(waqf_type, 0.0)
        total = parts.total
        endowment.financial.cause_allocations[cause_id] = total
        if total <= _EPSILON:
            continue
        previous = endowment.hybrid_allocations.get(cause_id)
        if previous is not None:
            endowment.contribution_blend.setdefault(cause_id, copy.copy(previous))
        endowment.hybrid_allocations[cause_id] = HybridSplit(
            permanent_pct=parts.permanent / total * 100.0,
            consumable_pct=parts.consumable / total * 100.0,
            revolving_pct=parts.revolving / total * 100.0,
        )


def _held_tranche_principal(endowment: Endowment) -> float:
    return sum(t.outstanding for t in endowment.tranches)


def _needs_legacy_estimate(endowment: Endowment) -> bool:
    return (
        endowment.is_hybrid
        and endowment.financial.current_balance > 0
        and _held_tranche_principal(endowment) > 0
        and all(split.revolving_pct == 0 for split in endowment.hybrid_allocations.values())
    )


def _apply_legacy_estimate(endowment: Endowment, by_cause: dict[str, TypeAmounts]) -> None:
    """Estimate the revolving share for hybrids stored with zero revolving percentages.

    The revolving share is taken as the held tranche principal's fraction of
    the endowment principal, capped at the whole balance; permanent and
    consumable shares are scaled down proportionally to make room.
    """
    balance = endowment.financial.current_balance
    base = endowment.principal if endowment.principal > 0 else endowment.financial.total_donations
    fraction = min(1.0, _held_tranche_principal(endowment) / base) if base > 0 else 1.0
    revolving_total = fraction * balance
    remainder = balance - revolving_total
    non_revolving = sum(p.permanent + p.consumable for p in by_cause.values())

    for cause_id, parts in by_cause.items():
        cause_total = parts.total
        if non_revolving > 0:
            scale = remainder / non_revolving
            parts.permanent *= scale
            parts.consumable *= scale
        parts.revolving = revolving_total * cause_total / balance
    logger.warning(
        f"Endowment {endowment.id}: hybrid allocations carry no revolving share but "
        f"tranches exist; estimated revolving share {revolving_total:.2f} of {balance:.2f}"
    )


def split_balance(endowment: Endowment, settings: EngineSettings | None = None) -> AllocationSplit:
    """Split the current balance per cause and per waqf type.

    Raises:
        InvalidAllocation: if a hybrid blend does not total 100%.
    """
    settings = settings or EngineSettings()
    balance = endowment.financial.current_balance

    if not endowment.is_hybrid:
        by_cause = {}
        for cause_id, amount in cause_amounts(endowment).items():
            parts = TypeAmounts()
            parts.set(endowment.waqf_type, amount)
            by_cause[cause_id] = parts
        return AllocationSplit(waqf_type=endowment.waqf_type, balance=balance, by_cause=by_cause)

    validate_hybrid_allocations(
        endowment.hybrid_allocations,
        endowment.selected_causes,
        tolerance=settings.ledger.hybrid_sum_tolerance,
    )
    by_cause = hybrid_type_amounts(endowment)
    split = AllocationSplit(waqf_type=WaqfType.HYBRID, balance=balance, by_cause=by_cause)
    if _needs_legacy_estimate(endowment):
        _apply_legacy_estimate(endowment, by_cause)
        split.estimated = True
    logger.debug(f"Endowment {endowment.id}: split {balance:.2f} across {len(by_cause)} causes")
    return split


def route_contribution(
    endowment: Endowment,
    amount: float,
    routing: Mapping[str, float] | None = None,
) -> dict[str, float]:
    """Divide a contribution over causes.

    *routing* maps cause id to a relative weight. Without one, the
    endowment's current cause percentages are used, or an even split when
    nothing has been allocated yet.

    Raises:
        InvalidAllocation: unknown cause, negative weight, or nothing to route to.
    """
    if routing:
        unknown = [c for c in routing if c not in endowment.selected_causes]
        if unknown:
            raise InvalidAllocation(f"routing names causes not selected for this endowment: {', '.join(unknown)}")
        if any(weight < 0 for weight in routing.values()):
            raise InvalidAllocation("routing weights must not be negative")
        weights = {c: w for c, w in routing.items() if w > 0}
        if not weights:
            raise InvalidAllocation("routing weights must total more than zero")
        return _weighted_split(amount, weights)

    if not endowment.selected_causes:
        raise InvalidAllocation(f"endowment {endowment.id} has no selected causes to route funds to")
    weights = {
        c: pct for c, pct in endowment.cause_allocation.items() if pct > 0 and c in endowment.selected_causes
    }
    if weights:
        return _weighted_split(amount, weights)
    return equal_split(amount, list(endowment.selected_causes))


def diversification_score(entries: Iterable[AllocationEntry]) -> float:
    """Score 0-100 for how evenly dollars spread across cause categories.

    The penalty grows with the largest single category's share: an even
    spread over the categories present scores 100, a single category 0.
    """
    by_category: dict[str, float] = defaultdict(float)
    for entry in entries:
        if entry.amount > 0:
            by_category[entry.category_id] += entry.amount

    total = sum(by_category.values())
    if total <= 0 or len(by_category) < 2:
        return 0.0

    largest_share = max(by_category.values()) / total
    even_share = 1.0 / len(by_category)
    score = (1.0 - largest_share) / (1.0 - even_share) * 100.0
    return round(max(0.0, min(100.0, score)), 1)
