"""Contribution acceptor for consumable endowments.

Decides whether more money may flow into an endowment and, for
spend-down schedules, how the schedule stretches to absorb it.

Schedule rules:
    immediate / milestone-based: closed once the end date has passed, the
        target amount or beneficiary count is reached, or (milestone-based)
        every milestone date is behind us.
    phased / ongoing: always open. With a start and end date, the end date
        moves out to keep the spend-down rate where the donor set it.
"""

from __future__ import annotations

import copy
import math
from datetime import datetime

from ..core.exceptions import InvalidAmount, InvalidDuration, ScheduleClosed
from .clock import add_fractional_months, months_between, resolve_now
from .models import (
    CompletionStatus,
    ConsumableDetails,
    ContributionDecision,
    Endowment,
    EndowmentStatus,
    FinancialMetrics,
    SpendingSchedule,
    WaqfType,
)


def validate_amount(amount: float, what: str = "contribution") -> None:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
        raise InvalidAmount(f"{what} amount must be a positive number (got {amount!r})")


def projected_financial(endowment: Endowment, amount: float) -> FinancialMetrics:
    """Financial snapshot with *amount* added to donations and balance."""
    updated = copy.deepcopy(endowment.financial)
    updated.total_donations += amount
    updated.current_balance += amount
    return updated


def _closed_reason(endowment: Endowment, details: ConsumableDetails, now: datetime) -> str | None:
    fin = endowment.financial
    if details.end_date is not None and details.end_date < now:
        return "the spending period has ended"
    if details.target_amount is not None and fin.total_donations >= details.target_amount:
        return f"the target amount of {details.target_amount:.2f} has been reached"
    if details.target_beneficiaries is not None and fin.beneficiaries_supported >= details.target_beneficiaries:
        return f"the target of {details.target_beneficiaries} beneficiaries has been reached"
    if details.spending_schedule == SpendingSchedule.MILESTONE_BASED and details.milestones:
        if all(m.target_date < now for m in details.milestones):
            return "all milestones have been completed"
    return None


def extended_end_date(
    endowment: Endowment,
    details: ConsumableDetails,
    amount: float,
    now: datetime,
) -> datetime | None:
    """New end date after adding *amount*, or None when the schedule has no dates.

    With a minimum monthly distribution the schedule grows by the months
    that distribution needs to pay *amount* out. Otherwise it grows in
    proportion to the contribution's size against the principal.
    """
    if details.start_date is None or details.end_date is None:
        return None
    base = max(details.end_date, now)
    try:
        if details.minimum_monthly_distribution:
            return add_fractional_months(base, amount / details.minimum_monthly_distribution)

        principal = endowment.principal if endowment.principal > 0 else endowment.financial.total_donations
        if principal <= 0:
            return None
        return base + (details.end_date - details.start_date) * (amount / principal)
    except (OverflowError, ValueError) as e:
        raise InvalidDuration(
            f"contribution of {amount:.2f} would extend the spend-down schedule past the last representable date"
        ) from e


def can_accept(
    endowment: Endowment,
    amount: float,
    now: datetime | None = None,
) -> ContributionDecision:
    """Decide whether *endowment* may take *amount* more.

    Rejections are returned, not raised, so the caller can show the reason;
    ``error_kind`` names the matching engine error. A non-positive amount is
    a caller error and raises ``InvalidAmount``.
    An amount that would push a schedule past the last representable date
    raises ``InvalidDuration``.
    """
    validate_amount(amount)
    now = resolve_now(now)

    if endowment.status != EndowmentStatus.ACTIVE:
        return ContributionDecision(
            accepted=False,
            reason=f"endowment is {endowment.status.value} and not accepting contributions",
            error_kind=ScheduleClosed.__name__,
        )

    updated_financial = projected_financial(endowment, amount)
    details = endowment.consumable_details
    if endowment.waqf_type != WaqfType.CONSUMABLE or details is None:
        return ContributionDecision(accepted=True, updated_financial=updated_financial)

    if details.spending_schedule in (SpendingSchedule.IMMEDIATE, SpendingSchedule.MILESTONE_BASED):
        reason = _closed_reason(endowment, details, now)
        if reason is not None:
            return ContributionDecision(
                accepted=False,
                reason=f"{details.spending_schedule.value} schedule is closed: {reason}",
                error_kind=ScheduleClosed.__name__,
            )
        return ContributionDecision(accepted=True, updated_financial=updated_financial)

    updated_details = None
    new_end = extended_end_date(endowment, details, amount, now)
    if new_end is not None:
        updated_details = copy.deepcopy(details)
        updated_details.end_date = new_end
    return ContributionDecision(
        accepted=True,
        updated_financial=updated_financial,
        updated_details=updated_details,
    )


def calculate_updated_distribution(
    endowment: Endowment,
    additional_amount: float,
    now: datetime | None = None,
) -> float | None:
    """Recommended monthly payout once *additional_amount* lands, if one applies."""
    details = endowment.consumable_details
    if details is None:
        return None
    now = resolve_now(now)
    new_balance = endowment.financial.current_balance + additional_amount

    if details.spending_schedule == SpendingSchedule.PHASED and details.start_date and details.end_date:
        remaining_months = max(1.0, months_between(now, details.end_date))
        return new_balance / remaining_months
    if details.minimum_monthly_distribution:
        return details.minimum_monthly_distribution
    return None


def completion_status(endowment: Endowment, now: datetime | None = None) -> CompletionStatus:
    """How far a consumable endowment is through its spend-down."""
    details = endowment.consumable_details
    if details is None:
        return CompletionStatus(is_completed=False, progress=0.0)
    now = resolve_now(now)
    fin = endowment.financial

    if fin.current_balance <= 0 and fin.total_donations > 0:
        return CompletionStatus(is_completed=True, progress=100.0, reason="all funds distributed")
    if details.end_date is not None and details.end_date < now:
        return CompletionStatus(is_completed=True, progress=100.0, reason="end date reached")
    if details.target_amount:
        progress = fin.total_distributed / details.target_amount * 100.0
        if progress >= 100.0:
            return CompletionStatus(is_completed=True, progress=100.0, reason="target amount distributed")
        return CompletionStatus(is_completed=False, progress=round(progress, 1))
    if details.target_beneficiaries:
        progress = fin.beneficiaries_supported / details.target_beneficiaries * 100.0
        if progress >= 100.0:
            return CompletionStatus(is_completed=True, progress=100.0, reason="target beneficiaries reached")
        return CompletionStatus(is_completed=False, progress=round(progress, 1))
    if details.start_date is not None and details.end_date is not None and details.end_date > details.start_date:
        span = (details.end_date - details.start_date).total_seconds()
        elapsed = (now - details.start_date).total_seconds()
        return CompletionStatus(is_completed=False, progress=round(max(0.0, min(100.0, elapsed / span * 100.0)), 1))
    return CompletionStatus(is_completed=False, progress=0.0)
