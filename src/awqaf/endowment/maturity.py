"""Maturity resolver: the four actions on a matured tranche, plus installment payback.

Every action is only valid from the MATURED state. A LOCKED tranche
fails with ``TrancheNotMatured`` and a terminal one with
``AlreadyResolved``; in both cases nothing changes.

A refund under an installment return method only schedules the payments;
``pay_due_installments`` pays them back as they fall due.

Money moves in per-cause, per-type dollar space and the hybrid blend
percentages are recomputed from the result, so a cause's blend always
describes what the cause actually holds.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from datetime import datetime

from loguru import logger

from ..core.config_schema import EngineSettings
from ..core.exceptions import (
    AlreadyResolved,
    EngineError,
    InsufficientBalance,
    InvalidDuration,
    LedgerInconsistency,
    TrancheNotMatured,
    UnsupportedOperation,
)
from .allocation import apply_hybrid_type_amounts, equal_split, hybrid_type_amounts, route_contribution
from .clock import add_months, resolve_now
from .ledger import reconcile, working_copy
from .models import (
    AutoRolloverPreference,
    ConsumableDetails,
    ConversionDetails,
    DistributionFrequency,
    Endowment,
    HybridSplit,
    Installment,
    InstallmentSchedule,
    InstallmentStatus,
    InvestmentStrategy,
    MaturityAction,
    MaturityParams,
    PrincipalReturnMethod,
    SpendingSchedule,
    Tranche,
    TrancheState,
    TrancheStatus,
    TypeAmounts,
    WaqfType,
)
from .tranches import (
    create_tranche,
    ensure_revolving_details,
    find_tranche,
    queue_notification,
    tranche_state,
    validate_params,
)

# Withdrawal order when a tranche's principal leaves a cause. Revolving
# first; the others only matter for legacy hybrids whose blend lost its
# revolving share.
_RELEASE_ORDER = (WaqfType.REVOLVING, WaqfType.CONSUMABLE, WaqfType.PERMANENT)

DEFAULT_CONSUMABLE_SCHEDULE = SpendingSchedule.PHASED
DEFAULT_CONSUMABLE_MONTHS = 12

_INSTALLMENT_MONTHS = {
    DistributionFrequency.MONTHLY: 1,
    DistributionFrequency.QUARTERLY: 3,
    DistributionFrequency.ANNUALLY: 12,
}


def require_matured(tranche: Tranche, now: datetime) -> None:
    """Raise unless *tranche* is MATURED at *now*."""
    state = tranche_state(tranche, now)
    if state == TrancheState.LOCKED:
        raise TrancheNotMatured(f"tranche '{tranche.id}' is locked until {tranche.maturity_date.isoformat()}")
    if state != TrancheState.MATURED:
        raise AlreadyResolved(f"tranche '{tranche.id}' was already resolved ({state.value})")


def _type_amounts(endowment: Endowment) -> dict[str, TypeAmounts]:
    if endowment.is_hybrid:
        return hybrid_type_amounts(endowment)
    dollars = endowment.financial.cause_allocations
    causes = dict.fromkeys([*endowment.selected_causes, *dollars])
    return {c: TypeAmounts(revolving=dollars.get(c, 0.0)) for c in causes}


def _write_back(endowment: Endowment, amounts: Mapping[str, TypeAmounts]) -> None:
    if endowment.is_hybrid:
        apply_hybrid_type_amounts(endowment, amounts)
    else:
        for cause_id, parts in amounts.items():
            endowment.financial.cause_allocations[cause_id] = parts.total


def _tranche_causes(endowment: Endowment, tranche: Tranche) -> dict[str, float]:
    """Per-cause principal of *tranche*; older records without one are spread by current revolving dollars."""
    if tranche.cause_amounts:
        return dict(tranche.cause_amounts)
    weights = {c: parts.revolving for c, parts in _type_amounts(endowment).items() if parts.revolving > 0}
    if weights:
        total = sum(weights.values())
        return {c: tranche.amount * w / total for c, w in weights.items()}
    return equal_split(tranche.amount, list(endowment.selected_causes))


def _withdraw(
    parts: TypeAmounts,
    amount: float,
    order: tuple[WaqfType, ...],
    cause_id: str,
    tolerance: float,
) -> None:
    remaining = amount
    for waqf_type in order:
        take = min(parts.get(waqf_type), remaining)
        if take > 0:
            parts.set(waqf_type, parts.get(waqf_type) - take)
            remaining -= take
    if remaining > tolerance:
        raise InsufficientBalance(f"cause '{cause_id}' is short {remaining:.2f} to release tranche principal")


def _release(
    amounts: dict[str, TypeAmounts],
    causes: Mapping[str, float],
    order: tuple[WaqfType, ...],
    settings: EngineSettings,
) -> None:
    for cause_id, share in causes.items():
        parts = amounts.setdefault(cause_id, TypeAmounts())
        _withdraw(parts, share, order, cause_id, settings.ledger.amount_tolerance)


def _pay_back(
    endowment: Endowment,
    tranche: Tranche,
    amount: float,
    settings: EngineSettings,
) -> None:
    """Release *amount* of the tranche's principal from its causes and book it as returned."""
    fraction = amount / tranche.amount
    causes = {c: share * fraction for c, share in _tranche_causes(endowment, tranche).items()}
    amounts = _type_amounts(endowment)
    _release(amounts, causes, _RELEASE_ORDER, settings)
    _write_back(endowment, amounts)
    endowment.financial.current_balance -= amount
    endowment.financial.total_returned += amount


def _mark_returned(tranche: Tranche, now: datetime) -> None:
    tranche.is_returned = True
    tranche.status = TrancheStatus.RETURNED
    tranche.returned_at = now


def schedule_installments(tranche: Tranche, schedule: InstallmentSchedule, now: datetime) -> list[Installment]:
    """Equal installments one period apart, the first one period after *now*.

    The last installment absorbs the float remainder so the schedule sums
    to the tranche amount exactly.
    """
    count = schedule.number_of_installments
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise InvalidDuration(f"installment count must be a positive whole number (got {count!r})")
    step = _INSTALLMENT_MONTHS[schedule.frequency]
    share = tranche.amount / count
    installments = [
        Installment(id=f"{tranche.id}-i{n}", amount=share, due_date=add_months(now, step * n))
        for n in range(1, count + 1)
    ]
    installments[-1].amount = tranche.amount - share * (count - 1)
    return installments


def _refund(
    endowment: Endowment,
    tranche: Tranche,
    params: MaturityParams,
    now: datetime,
    settings: EngineSettings,
) -> str:
    details = ensure_revolving_details(endowment, settings)
    schedule = details.installment_schedule
    if details.principal_return_method == PrincipalReturnMethod.INSTALLMENTS and schedule is not None:
        tranche.installments = schedule_installments(tranche, schedule, now)
        tranche.status = TrancheStatus.RETURN_SCHEDULED
        first_due = tranche.installments[0].due_date.date().isoformat()
        return (
            f"Tranche {tranche.id}: {tranche.amount:.2f} to be returned in {len(tranche.installments)} "
            f"{schedule.frequency.value} installments, first due {first_due}"
        )

    _pay_back(endowment, tranche, tranche.amount, settings)
    _mark_returned(tranche, now)
    return f"Tranche {tranche.id}: {tranche.amount:.2f} returned to the donor"


def _rollover(
    endowment: Endowment,
    tranche: Tranche,
    params: MaturityParams,
    now: datetime,
    settings: EngineSettings,
) -> str:
    details = ensure_revolving_details(endowment, settings)
    months = params.months if params.months is not None else details.lock_period_months
    old_causes = _tranche_causes(endowment, tranche)

    if params.target_cause_id is not None:
        new_causes = {params.target_cause_id: tranche.amount}
    elif params.cause_routing:
        new_causes = route_contribution(endowment, tranche.amount, params.cause_routing)
    else:
        new_causes = old_causes

    if new_causes != old_causes:
        amounts = _type_amounts(endowment)
        _release(amounts, old_causes, _RELEASE_ORDER, settings)
        for cause_id, share in new_causes.items():
            amounts.setdefault(cause_id, TypeAmounts()).revolving += share
        _write_back(endowment, amounts)

    successor = create_tranche(
        endowment,
        tranche.amount,
        new_causes,
        now,
        settings,
        lock_months=months,
        expiration_preference=copy.deepcopy(tranche.expiration_preference),
    )
    successor.rollover_origin_id = tranche.id
    tranche.status = TrancheStatus.ROLLED_OVER
    tranche.is_returned = True
    tranche.rollover_target_id = successor.id
    return (
        f"Tranche {tranche.id}: {tranche.amount:.2f} rolled over for {months} months "
        f"as {successor.id}, maturing {successor.maturity_date.date().isoformat()}"
    )


def _promote_to_hybrid(endowment: Endowment) -> None:
    """A revolving endowment becomes a hybrid once part of it is converted."""
    for cause_id in endowment.selected_causes:
        endowment.hybrid_allocations.setdefault(cause_id, HybridSplit(revolving_pct=100.0))
    for cause_id in endowment.financial.cause_allocations:
        endowment.hybrid_allocations.setdefault(cause_id, HybridSplit(revolving_pct=100.0))
    endowment.waqf_type = WaqfType.HYBRID
    logger.info(f"Endowment {endowment.id}: promoted from revolving to hybrid")


def _convert(endowment: Endowment, tranche: Tranche, target: WaqfType, settings: EngineSettings) -> None:
    amounts = _type_amounts(endowment)
    if endowment.waqf_type == WaqfType.REVOLVING:
        _promote_to_hybrid(endowment)
    other = WaqfType.CONSUMABLE if target == WaqfType.PERMANENT else WaqfType.PERMANENT
    causes = _tranche_causes(endowment, tranche)
    _release(amounts, causes, (WaqfType.REVOLVING, other), settings)
    for cause_id, share in causes.items():
        parts = amounts[cause_id]
        parts.set(target, parts.get(target) + share)
    _write_back(endowment, amounts)
    tranche.is_returned = True
    tranche.status = TrancheStatus.MATURED


def default_investment_strategy(settings: EngineSettings) -> InvestmentStrategy:
    defaults = settings.investment_strategy
    return InvestmentStrategy(
        asset_allocation=defaults.asset_allocation,
        expected_annual_return=defaults.expected_annual_return,
        distribution_frequency=DistributionFrequency(defaults.distribution_frequency),
    )


def _convert_permanent(
    endowment: Endowment,
    tranche: Tranche,
    params: MaturityParams,
    now: datetime,
    settings: EngineSettings,
) -> str:
    strategy = params.investment_strategy or default_investment_strategy(settings)
    _convert(endowment, tranche, WaqfType.PERMANENT, settings)
    tranche.conversion_details = ConversionDetails(
        target_type=WaqfType.PERMANENT,
        converted_at=now,
        investment_strategy=strategy,
    )
    return (
        f"Tranche {tranche.id}: {tranche.amount:.2f} converted to a permanent endowment "
        f"({strategy.asset_allocation})"
    )


def _convert_consumable(
    endowment: Endowment,
    tranche: Tranche,
    params: MaturityParams,
    now: datetime,
    settings: EngineSettings,
) -> str:
    start = params.start_date or now
    end = params.end_date or add_months(start, params.duration_months or DEFAULT_CONSUMABLE_MONTHS)
    if end <= start:
        raise InvalidDuration("spend-down end date must be after its start date")
    schedule = ConsumableDetails(
        spending_schedule=params.spending_schedule or DEFAULT_CONSUMABLE_SCHEDULE,
        start_date=start,
        end_date=end,
    )
    _convert(endowment, tranche, WaqfType.CONSUMABLE, settings)
    if endowment.consumable_details is None:
        endowment.consumable_details = copy.deepcopy(schedule)
    tranche.conversion_details = ConversionDetails(
        target_type=WaqfType.CONSUMABLE,
        converted_at=now,
        consumable_schedule=schedule,
    )
    return (
        f"Tranche {tranche.id}: {tranche.amount:.2f} converted to a consumable endowment, "
        f"{schedule.spending_schedule.value} spending until {end.date().isoformat()}"
    )


_Handler = Callable[[Endowment, Tranche, MaturityParams, datetime, EngineSettings], str]

_HANDLERS: dict[MaturityAction, _Handler] = {
    MaturityAction.REFUND: _refund,
    MaturityAction.ROLLOVER: _rollover,
    MaturityAction.CONVERT_PERMANENT: _convert_permanent,
    MaturityAction.CONVERT_CONSUMABLE: _convert_consumable,
}


def resolve_maturity(
    endowment: Endowment,
    tranche_id: str,
    action: MaturityAction | str,
    params: MaturityParams | None = None,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> Endowment:
    """Execute *action* on a matured tranche and return the reconciled endowment.

    Raises:
        UnsupportedOperation: the endowment type holds no tranches.
        TrancheNotFound: no such tranche.
        TrancheNotMatured: the tranche is still locked.
        AlreadyResolved: the tranche is already terminal.
        InvalidDuration / InvalidAllocation: bad action parameters.
        LedgerInconsistency: the result does not balance.
    """
    settings = settings or EngineSettings()
    now = resolve_now(now)
    action = MaturityAction(action)
    params = params or MaturityParams()
    if endowment.waqf_type not in (WaqfType.REVOLVING, WaqfType.HYBRID):
        raise UnsupportedOperation(f"{endowment.waqf_type.value} endowments have no tranches to resolve")

    working = working_copy(endowment)
    tranche = find_tranche(working, tranche_id)
    require_matured(tranche, now)
    validate_params(action, params, working, settings)

    message = _HANDLERS[action](working, tranche, params, now, settings)
    queue_notification(working, message, settings)
    reconcile(working, settings, original_principal=endowment.principal)
    logger.info(f"Endowment {working.id}: {message}")
    return working


def _auto_preference(endowment: Endowment) -> tuple[MaturityAction, MaturityParams] | None:
    details = endowment.revolving_details
    if details is None or details.auto_rollover_preference == AutoRolloverPreference.NONE:
        return None
    if details.auto_rollover_preference == AutoRolloverPreference.CAUSE_POOL:
        pool = {c: pct for c, pct in endowment.cause_allocation.items() if pct > 0} or None
        return MaturityAction.ROLLOVER, MaturityParams(cause_routing=pool)
    return MaturityAction.ROLLOVER, MaturityParams()


def apply_expiration_preferences(
    endowment: Endowment,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> tuple[Endowment, list[str]]:
    """Resolve every matured tranche that carries a pre-selected action.

    Tranches without their own preference fall back to the endowment's
    auto-rollover setting. A tranche whose action fails with an expected
    error is logged and left matured for an operator; ledger
    inconsistencies propagate.

    Returns:
        The updated endowment and the ids of the tranches resolved.
    """
    settings = settings or EngineSettings()
    now = resolve_now(now)
    current = endowment
    resolved: list[str] = []

    matured = [t for t in endowment.tranches if tranche_state(t, now) == TrancheState.MATURED]
    for tranche in matured:
        if tranche.expiration_preference is not None:
            action, params = tranche.expiration_preference.action, tranche.expiration_preference.params
        else:
            fallback = _auto_preference(current)
            if fallback is None:
                continue
            action, params = fallback
        try:
            current = resolve_maturity(current, tranche.id, action, params, now, settings)
        except LedgerInconsistency:
            raise
        except EngineError as e:
            logger.warning(f"Endowment {endowment.id}: preference {action.value} on tranche {tranche.id} skipped: {e}")
            continue
        resolved.append(tranche.id)

    if resolved:
        logger.info(f"Endowment {endowment.id}: applied {len(resolved)} expiration preferences")
    return current, resolved


def pay_due_installments(
    endowment: Endowment,
    now: datetime | None = None,
    settings: EngineSettings | None = None,
) -> tuple[Endowment, list[str]]:
    """Pay every scheduled installment that has fallen due by *now*.

    Each payment releases its share of the tranche's principal from the
    tranche's causes. A tranche whose last installment is paid becomes
    RETURNED. The endowment is returned unchanged when nothing is due.

    Returns:
        The updated endowment and the ids of the installments paid.
    """
    settings = settings or EngineSettings()
    now = resolve_now(now)
    if not any(
        i.status == InstallmentStatus.SCHEDULED and i.due_date <= now
        for t in endowment.tranches
        if t.status == TrancheStatus.RETURN_SCHEDULED
        for i in t.installments
    ):
        return endowment, []

    working = working_copy(endowment)
    paid: list[str] = []
    for tranche in working.tranches:
        if tranche.status != TrancheStatus.RETURN_SCHEDULED:
            continue
        due = [i for i in tranche.installments if i.status == InstallmentStatus.SCHEDULED and i.due_date <= now]
        for installment in due:
            _pay_back(working, tranche, installment.amount, settings)
            installment.status = InstallmentStatus.PAID
            installment.paid_at = now
            paid.append(installment.id)
        if due:
            queue_notification(
                working,
                f"Tranche {tranche.id}: {sum(i.amount for i in due):.2f} paid back "
                f"({tranche.outstanding:.2f} outstanding)",
                settings,
            )
        if tranche.installments and all(i.status == InstallmentStatus.PAID for i in tranche.installments):
            _mark_returned(tranche, now)

    reconcile(working, settings, original_principal=endowment.principal)
    logger.info(f"Endowment {working.id}: paid {len(paid)} principal installments")
    return working, paid


def drain_notifications(endowment: Endowment) -> tuple[Endowment, list[str]]:
    """Hand over queued donor notifications and clear the queue."""
    details = endowment.revolving_details
    if details is None or not details.pending_notifications:
        return endowment, []
    working = working_copy(endowment)
    messages = list(working.revolving_details.pending_notifications)
    working.revolving_details.pending_notifications.clear()
    return working, messages
