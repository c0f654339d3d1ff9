"""Tranche store: creation, lookup, and time-based classification of tranches.

Maturity is never stored. It is derived from the tranche record and the
instant being asked about, so classification is correct at read time
without any scheduler.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from loguru import logger

from ..core.config_schema import EngineSettings
from ..core.exceptions import InvalidAllocation, InvalidDuration, TrancheNotFound
from .clock import add_months, to_utc
from .models import (
    Endowment,
    ExpirationPreference,
    MaturityAction,
    MaturityParams,
    RevolvingBalance,
    RevolvingDetails,
    Tranche,
    TrancheClassification,
    TrancheState,
    TrancheStatus,
)


def new_tranche_id() -> str:
    return f"tranche-{uuid.uuid4().hex[:12]}"


def tranche_state(tranche: Tranche, now: datetime) -> TrancheState:
    """Observed state of *tranche* at *now*; terminal markers win over dates."""
    if tranche.conversion_details is not None:
        return TrancheState.CONVERTED
    if tranche.status == TrancheStatus.ROLLED_OVER:
        return TrancheState.ROLLED_OVER
    if tranche.is_returned or tranche.status == TrancheStatus.RETURNED:
        return TrancheState.RETURNED
    if tranche.status == TrancheStatus.RETURN_SCHEDULED:
        return TrancheState.RETURN_SCHEDULED
    if to_utc(now) >= tranche.maturity_date:
        return TrancheState.MATURED
    return TrancheState.LOCKED


def ensure_revolving_details(endowment: Endowment, settings: EngineSettings) -> RevolvingDetails:
    if endowment.revolving_details is None:
        endowment.revolving_details = RevolvingDetails(lock_period_months=settings.maturity.default_lock_months)
    return endowment.revolving_details


def queue_notification(endowment: Endowment, message: str, settings: EngineSettings) -> None:
    """Queue a donor-facing message; only the newest ``max_pending_notifications`` are kept."""
    pending = ensure_revolving_details(endowment, settings).pending_notifications
    pending.append(message)
    overflow = len(pending) - settings.maturity.max_pending_notifications
    if overflow > 0:
        logger.warning(f"Endowment {endowment.id}: dropping {overflow} undelivered notifications")
        del pending[:overflow]


def validate_lock_months(months: int, settings: EngineSettings) -> None:
    """Raise InvalidDuration unless *months* lies within the configured lock bounds."""
    low = settings.maturity.min_duration_months
    high = settings.maturity.max_duration_months
    if isinstance(months, bool) or not isinstance(months, int) or not low <= months <= high:
        raise InvalidDuration(f"lock period must be a whole number of months in [{low}, {high}] (got {months!r})")


def create_tranche(
    endowment: Endowment,
    amount: float,
    cause_amounts: dict[str, float],
    now: datetime,
    settings: EngineSettings,
    lock_months: int | None = None,
    expiration_preference: ExpirationPreference | None = None,
) -> Tranche:
    """Append a new LOCKED tranche to *endowment* and return it."""
    now = to_utc(now)
    details = ensure_revolving_details(endowment, settings)
    months = lock_months if lock_months is not None else details.lock_period_months
    validate_lock_months(months, settings)
    tranche = Tranche(
        id=new_tranche_id(),
        amount=amount,
        contribution_date=now,
        maturity_date=add_months(now, months),
        cause_amounts=dict(cause_amounts),
        expiration_preference=expiration_preference,
    )
    endowment.tranches.append(tranche)
    logger.debug(f"Endowment {endowment.id}: tranche {tranche.id} of {amount:.2f} locked until {tranche.maturity_date}")
    return tranche


def find_tranche(endowment: Endowment, tranche_id: str) -> Tranche:
    for tranche in endowment.tranches:
        if tranche.id == tranche_id:
            return tranche
    raise TrancheNotFound(f"tranche '{tranche_id}' not found on endowment {endowment.id}")


def classify_tranches(endowment: Endowment, now: datetime) -> TrancheClassification:
    """Bucket every tranche by its observed state at *now*."""
    result = TrancheClassification()
    buckets = {
        TrancheState.LOCKED: result.locked,
        TrancheState.MATURED: result.matured,
        TrancheState.RETURN_SCHEDULED: result.return_scheduled,
        TrancheState.RETURNED: result.returned,
        TrancheState.ROLLED_OVER: result.rolled_over,
        TrancheState.CONVERTED: result.converted,
    }
    for tranche in endowment.tranches:
        buckets[tranche_state(tranche, now)].append(tranche)
    return result


def revolving_balance(endowment: Endowment, now: datetime) -> RevolvingBalance:
    """Money view of the tranche set: what is locked, matured, being paid back, and already resolved.

    Rolled-over records are skipped since their principal lives on in the
    tranche that continues them.
    """
    summary = RevolvingBalance()
    upcoming: list[Tranche] = []
    for tranche in endowment.tranches:
        state = tranche_state(tranche, now)
        if tranche.rollover_origin_id is None:
            summary.total_contributed += tranche.amount
        if state == TrancheState.ROLLED_OVER:
            continue
        if state == TrancheState.LOCKED:
            summary.locked += tranche.amount
            summary.active_tranches += 1
            upcoming.append(tranche)
        elif state == TrancheState.MATURED:
            summary.matured += tranche.amount
            summary.active_tranches += 1
        elif state == TrancheState.RETURN_SCHEDULED:
            summary.scheduled += tranche.outstanding
            summary.returned += tranche.amount - tranche.outstanding
            summary.active_tranches += 1
        elif state == TrancheState.RETURNED:
            summary.returned += tranche.amount
        elif state == TrancheState.CONVERTED:
            summary.converted += tranche.amount

    if upcoming:
        next_date = min(t.maturity_date for t in upcoming)
        summary.next_maturity_date = next_date
        summary.next_maturity_amount = sum(t.amount for t in upcoming if t.maturity_date == next_date)
    return summary


def maturing_soon(endowment: Endowment, now: datetime, days: int = 30) -> list[Tranche]:
    """Locked tranches that mature within *days*, soonest first."""
    now = to_utc(now)
    horizon = now + timedelta(days=days)
    soon = [
        t
        for t in endowment.tranches
        if tranche_state(t, now) == TrancheState.LOCKED and t.maturity_date <= horizon
    ]
    return sorted(soon, key=lambda t: t.maturity_date)


def maturity_progress(tranche: Tranche, now: datetime) -> float:
    """Percent of the lock period elapsed, 0-100."""
    now = to_utc(now)
    total = (tranche.maturity_date - tranche.contribution_date).total_seconds()
    if total <= 0:
        return 100.0
    elapsed = (now - tranche.contribution_date).total_seconds()
    return round(max(0.0, min(100.0, elapsed / total * 100.0)), 1)


def validate_params(
    action: MaturityAction,
    params: MaturityParams,
    endowment: Endowment,
    settings: EngineSettings,
) -> None:
    """Check action-specific parameters for a maturity action.

    Raises:
        InvalidDuration: rollover months or consumable schedule out of bounds.
        InvalidAllocation: rollover target cause is not selected.
    """
    if action == MaturityAction.ROLLOVER:
        if params.months is not None:
            validate_lock_months(params.months, settings)
        if params.target_cause_id is not None and params.target_cause_id not in endowment.selected_causes:
            raise InvalidAllocation(f"rollover target cause '{params.target_cause_id}' is not selected")
        unknown = [c for c in params.cause_routing or {} if c not in endowment.selected_causes]
        if unknown:
            raise InvalidAllocation(f"rollover routing names causes not selected: {', '.join(unknown)}")
    elif action == MaturityAction.CONVERT_CONSUMABLE:
        low = settings.maturity.min_consumable_months
        high = settings.maturity.max_consumable_months
        if params.duration_months is not None and not low <= params.duration_months <= high:
            raise InvalidDuration(
                f"spend-down duration must be in [{low}, {high}] months (got {params.duration_months})"
            )
        if params.start_date and params.end_date and params.end_date <= params.start_date:
            raise InvalidDuration("spend-down end date must be after its start date")


def validate_expiration_preference(
    preference: ExpirationPreference,
    endowment: Endowment,
    settings: EngineSettings,
) -> None:
    """Check a pre-selected maturity action before it is stored on a tranche.

    Unlike an operator decision, a stored preference must be complete:
    rollovers name their period and conversions to consumable name a
    schedule and how long it runs.
    """
    params = preference.params
    if preference.action == MaturityAction.ROLLOVER and params.months is None:
        raise InvalidDuration("rollover preference needs a lock period in months")
    if preference.action == MaturityAction.CONVERT_CONSUMABLE:
        if params.spending_schedule is None:
            raise InvalidDuration("consumable conversion preference needs a spending schedule")
        if params.duration_months is None and params.end_date is None:
            raise InvalidDuration("consumable conversion preference needs a duration or an end date")
    validate_params(preference.action, params, endowment, settings)
