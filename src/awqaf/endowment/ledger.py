"""Ledger reconciler.

Every mutating engine operation ends with ``reconcile`` on its working
copy. Reconciliation refreshes derived fields (cause percentages, growth
rate) and then checks the ledger identities; on any violation the whole
operation fails with ``LedgerInconsistency`` and the caller's endowment is
left untouched.

Identities checked:
    current_balance == total_donations - total_distributed
                       - total_returned + total_investment_return
    hybrid: sum(cause_allocations) == current_balance
    hybrid: each cause's blend totals 100% and its type split
            reconstructs the cause's dollars
    no negative balances; principal unchanged
"""

from __future__ import annotations

import copy

from loguru import logger

from ..core.config_schema import EngineSettings
from ..core.exceptions import InvalidAllocation, LedgerInconsistency, PrincipalMutationError
from .allocation import hybrid_type_amounts, validate_hybrid_allocations
from .models import Endowment

_EPSILON = 1e-9


def working_copy(endowment: Endowment) -> Endowment:
    """Deep copy an endowment so an operation can fail without side effects."""
    return copy.deepcopy(endowment)


def refresh_derived(endowment: Endowment) -> None:
    """Recompute cause percentages and growth rate from the dollar figures."""
    fin = endowment.financial
    for cause_id, amount in list(fin.cause_allocations.items()):
        if abs(amount) < _EPSILON:
            fin.cause_allocations[cause_id] = 0.0

    balance = fin.current_balance
    causes = list(dict.fromkeys([*endowment.selected_causes, *fin.cause_allocations]))
    if fin.cause_allocations:
        endowment.cause_allocation = {
            c: (fin.cause_allocations.get(c, 0.0) / balance * 100.0 if balance > _EPSILON else 0.0) for c in causes
        }

    if fin.total_donations > 0:
        fin.growth_rate = fin.total_investment_return / fin.total_donations * 100.0
    else:
        fin.growth_rate = 0.0


def find_violations(endowment: Endowment, settings: EngineSettings | None = None) -> list[str]:
    """Return a description of every ledger identity *endowment* breaks."""
    settings = settings or EngineSettings()
    amount_tol = settings.ledger.amount_tolerance
    pct_tol = settings.ledger.percentage_tolerance
    fin = endowment.financial
    violations: list[str] = []

    if fin.current_balance < -amount_tol:
        violations.append(f"current balance is negative ({fin.current_balance:.2f})")
    for cause_id, amount in fin.cause_allocations.items():
        if amount < -amount_tol:
            violations.append(f"cause '{cause_id}' holds a negative amount ({amount:.2f})")

    expected = fin.expected_balance
    if abs(fin.current_balance - expected) > amount_tol:
        violations.append(
            f"balance {fin.current_balance:.2f} does not match donations - distributions - returns "
            f"+ investment return ({expected:.2f})"
        )

    if endowment.is_hybrid:
        cause_total = sum(fin.cause_allocations.get(c, 0.0) for c in endowment.selected_causes)
        if abs(cause_total - fin.current_balance) > amount_tol:
            violations.append(f"cause amounts total {cause_total:.2f} but balance is {fin.current_balance:.2f}")

        try:
            validate_hybrid_allocations(
                endowment.hybrid_allocations,
                endowment.selected_causes,
                tolerance=settings.ledger.hybrid_sum_tolerance,
            )
        except InvalidAllocation as e:
            violations.append(str(e))
        else:
            for cause_id, parts in hybrid_type_amounts(endowment).items():
                amount = fin.cause_allocations.get(cause_id, 0.0)
                if abs(parts.total - amount) > amount_tol:
                    violations.append(
                        f"type split of cause '{cause_id}' totals {parts.total:.2f}, expected {amount:.2f}"
                    )
        try:
            validate_hybrid_allocations(endowment.contribution_blend, tolerance=settings.ledger.hybrid_sum_tolerance)
        except InvalidAllocation as e:
            violations.append(f"contribution blend: {e}")

        if fin.current_balance > amount_tol:
            pct_total = sum(endowment.cause_allocation.get(c, 0.0) for c in endowment.selected_causes)
            if abs(pct_total - 100.0) > pct_tol:
                violations.append(f"cause percentages total {pct_total:.2f}%, expected 100%")

    return violations


def reconcile(
    endowment: Endowment,
    settings: EngineSettings | None = None,
    original_principal: float | None = None,
) -> Endowment:
    """Refresh derived fields on *endowment* and enforce the ledger identities.

    Args:
        endowment: The operation's working copy; modified in place.
        settings: Tolerances. Defaults to ``EngineSettings()``.
        original_principal: Principal before the operation. Any change is a
            programming error and raises ``PrincipalMutationError``.

    Returns:
        The same endowment, reconciled.
    """
    if original_principal is not None and abs(endowment.principal - original_principal) > _EPSILON:
        logger.error(
            f"Endowment {endowment.id}: principal changed from {original_principal:.2f} to {endowment.principal:.2f}"
        )
        raise PrincipalMutationError(f"principal of endowment {endowment.id} is immutable")

    refresh_derived(endowment)
    violations = find_violations(endowment, settings)
    if violations:
        for violation in violations:
            logger.error(f"Endowment {endowment.id}: ledger inconsistency: {violation}")
        raise LedgerInconsistency(f"endowment {endowment.id}: " + "; ".join(violations))
    return endowment
