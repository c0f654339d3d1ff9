"""Money-in and money-out commands: contributions, payments, distributions, returns.

Each command takes an endowment, works on a deep copy, and returns the
reconciled copy. The input endowment is never modified.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime

from loguru import logger

from ..core.config_schema import EngineSettings
from ..core.exceptions import (
    DuplicateTransaction,
    InsufficientBalance,
    InvalidAllocation,
    InvalidAmount,
    ScheduleClosed,
    UnsupportedOperation,
)
from .acceptor import can_accept, validate_amount
from .allocation import (
    add_hybrid_contribution,
    apply_hybrid_type_amounts,
    cause_amounts,
    contribution_blends,
    equal_split,
    hybrid_type_amounts,
    route_contribution,
    validate_hybrid_allocations,
)
from .clock import resolve_now, to_utc
from .ledger import reconcile, working_copy
from .models import (
    DonationRecord,
    Endowment,
    ExpirationPreference,
    PaymentConfirmation,
    TrancheState,
    WaqfType,
)
from .tranches import create_tranche, tranche_state, validate_expiration_preference

# Shares smaller than this are rounding noise, not money.
_DUST = 1e-9


def seed_cause_dollars(endowment: Endowment) -> dict[str, float]:
    """Make sure per-cause dollars exist, deriving them from percentages if needed."""
    fin = endowment.financial
    if not fin.cause_allocations and fin.current_balance > 0:
        fin.cause_allocations = cause_amounts(endowment)
    return fin.cause_allocations


def record_contribution(
    endowment: Endowment,
    amount: float,
    routing: Mapping[str, float] | None = None,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
    expiration_preference: ExpirationPreference | None = None,
) -> Endowment:
    """Add *amount* to the endowment, routed over causes by *routing* weights.

    Revolving endowments lock the whole amount in a new tranche; hybrid
    endowments lock the revolving share of each cause's portion. Consumable
    endowments must pass ``can_accept`` first and may have their end date
    extended.

    Raises:
        InvalidAmount: amount is not positive.
        InvalidAllocation: routing is invalid or a hybrid blend is broken.
        ScheduleClosed: the endowment cannot take more funds.
        LedgerInconsistency: the resulting ledger does not balance.
    """
    validate_amount(amount)
    settings = settings or EngineSettings()
    now = resolve_now(now)

    decision = can_accept(endowment, amount, now)
    if not decision.accepted:
        raise ScheduleClosed(decision.reason)

    working = working_copy(endowment)
    if decision.updated_details is not None:
        old_end = working.consumable_details.end_date if working.consumable_details else None
        working.consumable_details = decision.updated_details
        logger.info(f"Endowment {working.id}: end date extended from {old_end} to {decision.updated_details.end_date}")

    if working.is_hybrid:
        validate_hybrid_allocations(
            contribution_blends(working),
            working.selected_causes,
            tolerance=settings.ledger.hybrid_sum_tolerance,
        )

    shares = route_contribution(working, amount, routing)
    dollars = seed_cause_dollars(working)

    locked: dict[str, float] = {}
    if working.is_hybrid:
        revolving = add_hybrid_contribution(working, shares)
        locked = {c: v for c, v in revolving.items() if v > _DUST}
    else:
        for cause_id, share in shares.items():
            dollars[cause_id] = dollars.get(cause_id, 0.0) + share
        if working.waqf_type == WaqfType.REVOLVING:
            locked = dict(shares)

    tranche = None
    if locked:
        tranche = create_tranche(working, sum(locked.values()), locked, now, settings)
    if expiration_preference is not None:
        if tranche is None:
            raise UnsupportedOperation(
                f"endowment {working.id} does not lock this contribution, so it takes no maturity preference"
            )
        validate_expiration_preference(expiration_preference, working, settings)
        tranche.expiration_preference = expiration_preference

    working.financial.total_donations += amount
    working.financial.current_balance += amount
    reconcile(working, settings, original_principal=endowment.principal)
    logger.info(
        f"Endowment {working.id}: contribution of {amount:.2f} recorded"
        + (f", tranche {tranche.id} locked {tranche.amount:.2f}" if tranche else "")
    )
    return working


def apply_payment(
    endowment: Endowment,
    payment: PaymentConfirmation,
    routing: Mapping[str, float] | None = None,
    settings: EngineSettings | None = None,
) -> Endowment:
    """Record a verified payment as a contribution, once per transaction id.

    Raises:
        DuplicateTransaction: the transaction was already applied.
        UnsupportedOperation: payment currency differs from the endowment's.
    """
    if any(d.transaction_id == payment.transaction_id for d in endowment.donations):
        raise DuplicateTransaction(f"transaction '{payment.transaction_id}' was already applied to {endowment.id}")
    validate_amount(payment.amount, "payment")
    if payment.currency.upper() != endowment.currency.upper():
        raise UnsupportedOperation(
            f"payment currency {payment.currency} does not match endowment currency {endowment.currency}"
        )

    received_at = to_utc(payment.timestamp)
    updated = record_contribution(endowment, payment.amount, routing, now=received_at, settings=settings)
    updated.donations.append(
        DonationRecord(
            transaction_id=payment.transaction_id,
            amount=payment.amount,
            currency=payment.currency.upper(),
            received_at=received_at,
        )
    )
    logger.info(f"Endowment {updated.id}: payment {payment.transaction_id} applied")
    return updated


def _held_principal(endowment: Endowment, cause_id: str, now: datetime) -> float:
    """Tranche principal for *cause_id* that is still owed back to donors."""
    held = (TrancheState.LOCKED, TrancheState.MATURED, TrancheState.RETURN_SCHEDULED)
    return sum(
        t.cause_amounts.get(cause_id, 0.0) * t.outstanding / t.amount
        for t in endowment.tranches
        if tranche_state(t, now) in held
    )


def record_distribution(
    endowment: Endowment,
    cause_id: str,
    amount: float,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
    beneficiaries: int = 0,
) -> Endowment:
    """Pay *amount* out to *cause_id*.

    Hybrid endowments draw on the cause's consumable dollars first, then
    its permanent dollars; revolving dollars are owed back to donors and
    are never distributed. For a revolving endowment only what exceeds the
    held tranche principal is distributable.

    Raises:
        InvalidAllocation: the cause is not selected.
        InsufficientBalance: the cause cannot cover *amount*.
    """
    validate_amount(amount, "distribution")
    settings = settings or EngineSettings()
    now = resolve_now(now)
    if cause_id not in endowment.selected_causes:
        raise InvalidAllocation(f"cause '{cause_id}' is not selected for endowment {endowment.id}")

    working = working_copy(endowment)
    dollars = seed_cause_dollars(working)
    tolerance = settings.ledger.amount_tolerance

    if working.is_hybrid:
        parts = hybrid_type_amounts(working)[cause_id]
        available = parts.consumable + parts.permanent
        if amount > available + tolerance:
            raise InsufficientBalance(
                f"cause '{cause_id}' has {available:.2f} distributable, cannot distribute {amount:.2f}"
            )
        from_consumable = min(parts.consumable, amount)
        parts.consumable -= from_consumable
        parts.permanent = max(0.0, parts.permanent - (amount - from_consumable))
        apply_hybrid_type_amounts(working, {cause_id: parts})
    else:
        available = dollars.get(cause_id, 0.0)
        if working.waqf_type == WaqfType.REVOLVING:
            available -= _held_principal(working, cause_id, now)
        if amount > available + tolerance:
            raise InsufficientBalance(
                f"cause '{cause_id}' has {max(0.0, available):.2f} distributable, cannot distribute {amount:.2f}"
            )
        dollars[cause_id] = dollars.get(cause_id, 0.0) - amount

    fin = working.financial
    fin.total_distributed += amount
    fin.current_balance -= amount
    fin.beneficiaries_supported += beneficiaries
    reconcile(working, settings, original_principal=endowment.principal)
    logger.info(f"Endowment {working.id}: distributed {amount:.2f} to cause {cause_id}")
    return working


def record_investment_return(
    endowment: Endowment,
    amount: float,
    settings: EngineSettings | None = None,
) -> Endowment:
    """Book an investment gain (or loss, if negative) across causes pro rata.

    Hybrid blends are unchanged, so every component type of a cause grows
    or shrinks by the same factor.

    Raises:
        InvalidAmount: amount is zero or not finite.
        InsufficientBalance: a loss larger than the balance.
    """
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount == 0:
        raise InvalidAmount(f"investment return must be a non-zero number (got {amount!r})")
    settings = settings or EngineSettings()
    if amount < 0 and -amount > endowment.financial.current_balance:
        raise InsufficientBalance(
            f"loss of {-amount:.2f} exceeds balance {endowment.financial.current_balance:.2f} of {endowment.id}"
        )

    working = working_copy(endowment)
    dollars = seed_cause_dollars(working)
    weights = {c: v for c, v in dollars.items() if v > 0}
    if weights:
        total = sum(weights.values())
        shares = {c: amount * v / total for c, v in weights.items()}
    elif working.selected_causes:
        shares = equal_split(amount, list(working.selected_causes))
    else:
        raise InvalidAllocation(f"endowment {working.id} has no causes to credit the return to")
    for cause_id, share in shares.items():
        dollars[cause_id] = dollars.get(cause_id, 0.0) + share

    working.financial.total_investment_return += amount
    working.financial.current_balance += amount
    reconcile(working, settings, original_principal=endowment.principal)
    logger.info(f"Endowment {working.id}: investment return of {amount:.2f} recorded")
    return working
