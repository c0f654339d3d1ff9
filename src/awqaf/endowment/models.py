"""Data models for endowments, contribution tranches, and engine results.

Pure data, no I/O. Raw documents are turned into these dataclasses by
``awqaf.endowment.normalize``; everything past that boundary works with
closed enums and timezone-aware UTC datetimes only.

Tranche lifecycle::

    LOCKED --(now >= maturity_date)--> MATURED (derived, never stored)
    MATURED -> RETURNED     refund (lump sum)
    MATURED -> RETURN_SCHEDULED -> RETURNED
                            refund in installments, paid as they fall due
    MATURED -> ROLLED_OVER  rollover (a new LOCKED tranche continues it)
    MATURED -> CONVERTED    convert to permanent / consumable

Terminal states are absorbing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _money(value: float) -> float:
    return round(value, 2)


class WaqfType(StrEnum):
    PERMANENT = "permanent"
    CONSUMABLE = "consumable"
    REVOLVING = "revolving"
    HYBRID = "hybrid"


# The three building blocks a hybrid endowment blends per cause.
COMPONENT_TYPES = (WaqfType.PERMANENT, WaqfType.CONSUMABLE, WaqfType.REVOLVING)


class EndowmentStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    INACTIVE = "inactive"


class TrancheStatus(StrEnum):
    """Status as stored on the tranche record."""

    LOCKED = "locked"
    MATURED = "matured"
    RETURN_SCHEDULED = "return_scheduled"
    RETURNED = "returned"
    ROLLED_OVER = "rolled_over"


class TrancheState(StrEnum):
    """Status as observed at a given instant (see ``tranche_state``)."""

    LOCKED = "locked"
    MATURED = "matured"
    RETURN_SCHEDULED = "return_scheduled"
    RETURNED = "returned"
    ROLLED_OVER = "rolled_over"
    CONVERTED = "converted"


class MaturityAction(StrEnum):
    REFUND = "refund"
    ROLLOVER = "rollover"
    CONVERT_PERMANENT = "convert_permanent"
    CONVERT_CONSUMABLE = "convert_consumable"


class SpendingSchedule(StrEnum):
    IMMEDIATE = "immediate"
    PHASED = "phased"
    MILESTONE_BASED = "milestone-based"
    ONGOING = "ongoing"


class PrincipalReturnMethod(StrEnum):
    LUMP_SUM = "lump_sum"
    INSTALLMENTS = "installments"


class InstallmentStatus(StrEnum):
    SCHEDULED = "scheduled"
    PAID = "paid"


class AutoRolloverPreference(StrEnum):
    NONE = "none"
    SAME_CAUSE = "same_cause"
    CAUSE_POOL = "cause_pool"


class DistributionFrequency(StrEnum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUALLY = "annually"


# ---------------------------------------------------------------------------
# Endowment building blocks
# ---------------------------------------------------------------------------


@dataclass
class HybridSplit:
    """Per-cause percentage blend of the three component types."""

    permanent_pct: float = 0.0
    consumable_pct: float = 0.0
    revolving_pct: float = 0.0

    @property
    def total(self) -> float:
        return self.permanent_pct + self.consumable_pct + self.revolving_pct

    def pct_for(self, waqf_type: WaqfType) -> float:
        if waqf_type == WaqfType.PERMANENT:
            return self.permanent_pct
        if waqf_type == WaqfType.CONSUMABLE:
            return self.consumable_pct
        if waqf_type == WaqfType.REVOLVING:
            return self.revolving_pct
        raise ValueError(f"{waqf_type.value} is not a hybrid component type")

    def to_dict(self) -> dict[str, float]:
        return {
            "permanent_pct": round(self.permanent_pct, 4),
            "consumable_pct": round(self.consumable_pct, 4),
            "revolving_pct": round(self.revolving_pct, 4),
        }


@dataclass
class FinancialMetrics:
    """Aggregate money figures for one endowment.

    ``total_returned`` holds principal refunded to donors at tranche
    maturity, so the balance identity stays exact after refunds.
    """

    total_donations: float = 0.0
    total_distributed: float = 0.0
    current_balance: float = 0.0
    cause_allocations: dict[str, float] = field(default_factory=dict)
    total_investment_return: float = 0.0
    growth_rate: float = 0.0
    total_returned: float = 0.0
    beneficiaries_supported: int = 0

    @property
    def expected_balance(self) -> float:
        return self.total_donations - self.total_distributed - self.total_returned + self.total_investment_return

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_donations": _money(self.total_donations),
            "total_distributed": _money(self.total_distributed),
            "current_balance": _money(self.current_balance),
            "cause_allocations": {k: _money(v) for k, v in self.cause_allocations.items()},
            "total_investment_return": _money(self.total_investment_return),
            "growth_rate": round(self.growth_rate, 4),
            "total_returned": _money(self.total_returned),
            "beneficiaries_supported": self.beneficiaries_supported,
        }


@dataclass
class Milestone:
    description: str
    target_date: datetime
    target_amount: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "target_date": _iso(self.target_date),
            "target_amount": self.target_amount,
        }


@dataclass
class ConsumableDetails:
    """Spend-down parameters of a consumable endowment (or converted share)."""

    spending_schedule: SpendingSchedule = SpendingSchedule.ONGOING
    start_date: datetime | None = None
    end_date: datetime | None = None
    target_amount: float | None = None
    target_beneficiaries: int | None = None
    minimum_monthly_distribution: float | None = None
    milestones: list[Milestone] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "spending_schedule": self.spending_schedule.value,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "target_amount": self.target_amount,
            "target_beneficiaries": self.target_beneficiaries,
            "minimum_monthly_distribution": self.minimum_monthly_distribution,
            "milestones": [m.to_dict() for m in self.milestones],
        }


@dataclass
class InvestmentStrategy:
    asset_allocation: str
    expected_annual_return: float
    distribution_frequency: DistributionFrequency

    def to_dict(self) -> dict[str, Any]:
        return {
            "asset_allocation": self.asset_allocation,
            "expected_annual_return": self.expected_annual_return,
            "distribution_frequency": self.distribution_frequency.value,
        }


@dataclass
class MaturityParams:
    """Action-specific parameters for resolving a matured tranche.

    Only the fields relevant to the chosen action are read:
    rollover uses ``months`` plus either ``target_cause_id`` or
    ``cause_routing`` (weights) to re-route the principal; convert-to-permanent
    uses ``investment_strategy``; convert-to-consumable uses the schedule
    fields, with ``duration_months`` standing in for an explicit end date.
    """

    months: int | None = None
    target_cause_id: str | None = None
    cause_routing: dict[str, float] | None = None
    investment_strategy: InvestmentStrategy | None = None
    spending_schedule: SpendingSchedule | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    duration_months: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "months": self.months,
            "target_cause_id": self.target_cause_id,
            "cause_routing": dict(self.cause_routing) if self.cause_routing else None,
            "investment_strategy": self.investment_strategy.to_dict() if self.investment_strategy else None,
            "spending_schedule": self.spending_schedule.value if self.spending_schedule else None,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "duration_months": self.duration_months,
        }


@dataclass
class ExpirationPreference:
    """Action the donor chose in advance for when the tranche matures."""

    action: MaturityAction
    params: MaturityParams = field(default_factory=MaturityParams)
    set_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action.value, "params": self.params.to_dict(), "set_at": _iso(self.set_at)}


@dataclass
class ConversionDetails:
    target_type: WaqfType
    converted_at: datetime
    investment_strategy: InvestmentStrategy | None = None
    consumable_schedule: ConsumableDetails | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_type": self.target_type.value,
            "converted_at": _iso(self.converted_at),
            "investment_strategy": self.investment_strategy.to_dict() if self.investment_strategy else None,
            "consumable_schedule": self.consumable_schedule.to_dict() if self.consumable_schedule else None,
        }


@dataclass
class Installment:
    """One scheduled payment of a tranche's principal back to the donor."""

    id: str
    amount: float
    due_date: datetime
    status: InstallmentStatus = InstallmentStatus.SCHEDULED
    paid_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "amount": _money(self.amount),
            "due_date": _iso(self.due_date),
            "status": self.status.value,
            "paid_at": _iso(self.paid_at),
        }


@dataclass
class InstallmentSchedule:
    frequency: DistributionFrequency = DistributionFrequency.MONTHLY
    number_of_installments: int = 12

    def to_dict(self) -> dict[str, Any]:
        return {"frequency": self.frequency.value, "number_of_installments": self.number_of_installments}


@dataclass
class Tranche:
    """One contribution to a revolving (or revolving share of a hybrid) endowment.

    ``amount`` is immutable. ``cause_amounts`` records how the locked
    principal is spread over causes and always sums to ``amount``.
    ``installments`` is filled when the principal is returned in parts.
    """

    id: str
    amount: float
    contribution_date: datetime
    maturity_date: datetime
    status: TrancheStatus = TrancheStatus.LOCKED
    cause_amounts: dict[str, float] = field(default_factory=dict)
    is_returned: bool = False
    returned_at: datetime | None = None
    expiration_preference: ExpirationPreference | None = None
    conversion_details: ConversionDetails | None = None
    rollover_origin_id: str | None = None
    rollover_target_id: str | None = None
    installments: list[Installment] = field(default_factory=list)

    @property
    def outstanding(self) -> float:
        """Principal not yet paid back; all of it unless installments are under way."""
        if self.is_returned:
            return 0.0
        paid = sum(i.amount for i in self.installments if i.status == InstallmentStatus.PAID)
        return self.amount - paid

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "amount": _money(self.amount),
            "contribution_date": _iso(self.contribution_date),
            "maturity_date": _iso(self.maturity_date),
            "status": self.status.value,
            "cause_amounts": {k: _money(v) for k, v in self.cause_amounts.items()},
            "is_returned": self.is_returned,
            "returned_at": _iso(self.returned_at),
            "expiration_preference": self.expiration_preference.to_dict() if self.expiration_preference else None,
            "conversion_details": self.conversion_details.to_dict() if self.conversion_details else None,
            "rollover_origin_id": self.rollover_origin_id,
            "rollover_target_id": self.rollover_target_id,
            "installments": [i.to_dict() for i in self.installments],
        }


@dataclass
class RevolvingDetails:
    lock_period_months: int = 12
    principal_return_method: PrincipalReturnMethod = PrincipalReturnMethod.LUMP_SUM
    installment_schedule: InstallmentSchedule | None = None
    auto_rollover_preference: AutoRolloverPreference = AutoRolloverPreference.NONE
    pending_notifications: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lock_period_months": self.lock_period_months,
            "principal_return_method": self.principal_return_method.value,
            "installment_schedule": self.installment_schedule.to_dict() if self.installment_schedule else None,
            "auto_rollover_preference": self.auto_rollover_preference.value,
            "pending_notifications": list(self.pending_notifications),
        }


@dataclass
class DonationRecord:
    """A confirmed payment applied to the endowment."""

    transaction_id: str
    amount: float
    currency: str
    received_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount": _money(self.amount),
            "currency": self.currency,
            "received_at": _iso(self.received_at),
        }


@dataclass
class Endowment:
    """The aggregate the engine reads and returns.

    ``hybrid_allocations`` describes what each cause currently holds and
    moves with refunds, distributions, and conversions. ``contribution_blend``
    is the split the donor chose for new money; a cause without one uses
    its holdings blend.

    ``version`` is owned by the store and used for optimistic concurrency.
    """

    id: str
    waqf_type: WaqfType
    principal: float
    name: str = ""
    selected_causes: list[str] = field(default_factory=list)
    cause_allocation: dict[str, float] = field(default_factory=dict)
    hybrid_allocations: dict[str, HybridSplit] = field(default_factory=dict)
    contribution_blend: dict[str, HybridSplit] = field(default_factory=dict)
    financial: FinancialMetrics = field(default_factory=FinancialMetrics)
    consumable_details: ConsumableDetails | None = None
    revolving_details: RevolvingDetails | None = None
    tranches: list[Tranche] = field(default_factory=list)
    donations: list[DonationRecord] = field(default_factory=list)
    status: EndowmentStatus = EndowmentStatus.ACTIVE
    currency: str = "USD"
    version: int = 0

    @property
    def is_hybrid(self) -> bool:
        return self.waqf_type == WaqfType.HYBRID

    @property
    def tracks_tranches(self) -> bool:
        """True if contributions to this endowment may produce tranches."""
        if self.waqf_type == WaqfType.REVOLVING:
            return True
        if self.waqf_type == WaqfType.HYBRID:
            causes = {*self.hybrid_allocations, *self.contribution_blend}
            return any(self.blend_for(c).revolving_pct > 0 for c in causes) or bool(self.tranches)
        return False

    def blend_for(self, cause_id: str) -> HybridSplit:
        """Split applied to new money for *cause_id*."""
        split = self.contribution_blend.get(cause_id) or self.hybrid_allocations.get(cause_id)
        return split if split is not None else HybridSplit()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "waqf_type": self.waqf_type.value,
            "principal": _money(self.principal),
            "selected_causes": list(self.selected_causes),
            "cause_allocation": {k: round(v, 4) for k, v in self.cause_allocation.items()},
            "hybrid_allocations": {k: v.to_dict() for k, v in self.hybrid_allocations.items()},
            "contribution_blend": {k: v.to_dict() for k, v in self.contribution_blend.items()},
            "financial": self.financial.to_dict(),
            "consumable_details": self.consumable_details.to_dict() if self.consumable_details else None,
            "revolving_details": self.revolving_details.to_dict() if self.revolving_details else None,
            "tranches": [t.to_dict() for t in self.tranches],
            "donations": [d.to_dict() for d in self.donations],
            "status": self.status.value,
            "currency": self.currency,
            "version": self.version,
        }


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


@dataclass
class TypeAmounts:
    """Dollars of one cause broken down by component type."""

    permanent: float = 0.0
    consumable: float = 0.0
    revolving: float = 0.0

    @property
    def total(self) -> float:
        return self.permanent + self.consumable + self.revolving

    def get(self, waqf_type: WaqfType) -> float:
        return getattr(self, waqf_type.value)

    def set(self, waqf_type: WaqfType, value: float) -> None:
        setattr(self, waqf_type.value, value)

    def to_dict(self) -> dict[str, float]:
        return {
            "permanent": _money(self.permanent),
            "consumable": _money(self.consumable),
            "revolving": _money(self.revolving),
        }


@dataclass
class AllocationSplit:
    """Per-cause, per-type dollar split of an endowment's balance.

    ``estimated`` is set when the legacy revolving-share heuristic was
    used instead of stored hybrid percentages.
    """

    waqf_type: WaqfType
    balance: float
    by_cause: dict[str, TypeAmounts] = field(default_factory=dict)
    estimated: bool = False

    @property
    def totals(self) -> TypeAmounts:
        result = TypeAmounts()
        for amounts in self.by_cause.values():
            result.permanent += amounts.permanent
            result.consumable += amounts.consumable
            result.revolving += amounts.revolving
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "waqf_type": self.waqf_type.value,
            "balance": _money(self.balance),
            "by_cause": {k: v.to_dict() for k, v in self.by_cause.items()},
            "totals": self.totals.to_dict(),
            "estimated": self.estimated,
        }


@dataclass
class TrancheClassification:
    locked: list[Tranche] = field(default_factory=list)
    matured: list[Tranche] = field(default_factory=list)
    return_scheduled: list[Tranche] = field(default_factory=list)
    returned: list[Tranche] = field(default_factory=list)
    rolled_over: list[Tranche] = field(default_factory=list)
    converted: list[Tranche] = field(default_factory=list)


@dataclass
class RevolvingBalance:
    """Money view of an endowment's tranche set at one instant."""

    total_contributed: float = 0.0
    locked: float = 0.0
    matured: float = 0.0
    scheduled: float = 0.0
    returned: float = 0.0
    converted: float = 0.0
    active_tranches: int = 0
    next_maturity_date: datetime | None = None
    next_maturity_amount: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_contributed": _money(self.total_contributed),
            "locked": _money(self.locked),
            "matured": _money(self.matured),
            "scheduled": _money(self.scheduled),
            "returned": _money(self.returned),
            "converted": _money(self.converted),
            "active_tranches": self.active_tranches,
            "next_maturity_date": _iso(self.next_maturity_date),
            "next_maturity_amount": _money(self.next_maturity_amount),
        }


@dataclass
class ContributionDecision:
    """Outcome of asking whether an endowment can take more money.

    ``error_kind`` names the engine error a rejection corresponds to so the
    caller can raise or render it.
    """

    accepted: bool
    reason: str | None = None
    error_kind: str | None = None
    updated_financial: FinancialMetrics | None = None
    updated_details: ConsumableDetails | None = None


@dataclass
class CompletionStatus:
    is_completed: bool
    progress: float
    reason: str | None = None


@dataclass
class AllocationEntry:
    """Input row for the diversification score."""

    cause_id: str
    category_id: str
    amount: float


@dataclass
class Cause:
    """Read-only cause catalog entry."""

    id: str
    name: str
    category: str
    supported_types: list[WaqfType] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentConfirmation:
    """A verified payment event from the payment collaborator."""

    transaction_id: str
    amount: float
    currency: str
    timestamp: datetime
