"""Normalization boundary: raw endowment documents in, strict models out.

Stored documents have been written by several generations of clients, so
the same field shows up as ``totalDonations``, ``TotalDonations`` or
``total_donations`` and a waqf type as ``Permanent``, ``permanent``,
``TemporaryConsumable`` or ``temporary_consumable``. Timestamps arrive as
ISO strings or as integer epochs in seconds, milliseconds, or nanoseconds.

All of that is absorbed here, once, by pydantic models that mirror the
document. ``load_endowment`` converts the validated document into the
engine's dataclasses; ``endowment_to_document`` writes the canonical
snake_case form back out.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.exceptions import NormalizationError
from .clock import to_utc
from .models import (
    AutoRolloverPreference,
    ConsumableDetails,
    ConversionDetails,
    DistributionFrequency,
    DonationRecord,
    Endowment,
    EndowmentStatus,
    ExpirationPreference,
    FinancialMetrics,
    HybridSplit,
    Installment,
    InstallmentSchedule,
    InstallmentStatus,
    InvestmentStrategy,
    MaturityAction,
    MaturityParams,
    Milestone,
    PrincipalReturnMethod,
    RevolvingDetails,
    SpendingSchedule,
    Tranche,
    TrancheStatus,
    WaqfType,
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def snake_case(key: str) -> str:
    """``totalDonations`` / ``TotalDonations`` / ``total-donations`` -> ``total_donations``."""
    return _CAMEL_BOUNDARY.sub("_", key.strip()).replace("-", "_").replace(" ", "_").lower()


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {snake_case(k) if isinstance(k, str) else k: v for k, v in value.items()}
    return value


def normalize_waqf_type(value: Any) -> WaqfType:
    """Map every known spelling of a waqf type onto ``WaqfType``."""
    if isinstance(value, WaqfType):
        return value
    if not isinstance(value, str):
        raise NormalizationError(f"waqf type must be a string (got {value!r})")
    key = snake_case(value)
    for prefix in ("temporary_", "waqf_"):
        if key.startswith(prefix):
            key = key[len(prefix) :]
    key = key.removesuffix("_pct").removesuffix("_waqf")
    aliases = {"temporaryconsumable": "consumable", "temporaryrevolving": "revolving"}
    key = aliases.get(key, key)
    try:
        return WaqfType(key)
    except ValueError as e:
        raise NormalizationError(f"unknown waqf type {value!r}") from e


def _enum_value(value: Any, snake: bool = True) -> Any:
    if isinstance(value, str):
        return snake_case(value) if snake else value.strip().lower()
    return value


def _utc_or_none(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return to_utc(value)


class _Document(BaseModel):
    """Base for document models: any key spelling, unknown keys ignored."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        return _snake_keys(data)


class InvestmentStrategyDoc(_Document):
    asset_allocation: str
    expected_annual_return: float
    distribution_frequency: DistributionFrequency = DistributionFrequency.QUARTERLY

    @field_validator("distribution_frequency", mode="before")
    @classmethod
    def _frequency(cls, v: Any) -> Any:
        return _enum_value(v)

    def to_model(self) -> InvestmentStrategy:
        return InvestmentStrategy(self.asset_allocation, self.expected_annual_return, self.distribution_frequency)


def _schedule_value(v: Any) -> Any:
    if isinstance(v, str):
        return snake_case(v).replace("_", "-")
    return v


class MaturityParamsDoc(_Document):
    months: int | None = None
    target_cause_id: str | None = None
    cause_routing: dict[str, float] | None = None
    investment_strategy: InvestmentStrategyDoc | None = None
    spending_schedule: SpendingSchedule | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    duration_months: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flat_preference_fields(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict):
            renames = {
                "rollover_months": "months",
                "rollover_cause_id": "target_cause_id",
                "target_cause": "target_cause_id",
                "consumable_schedule": "spending_schedule",
                "consumable_duration": "duration_months",
            }
            data = {renames.get(k, k): v for k, v in data.items()}
        return data

    @field_validator("spending_schedule", mode="before")
    @classmethod
    def _schedule(cls, v: Any) -> Any:
        return _schedule_value(v)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _dates(cls, v: Any) -> Any:
        return _utc_or_none(v)

    def to_model(self) -> MaturityParams:
        return MaturityParams(
            months=self.months,
            target_cause_id=self.target_cause_id,
            cause_routing=dict(self.cause_routing) if self.cause_routing else None,
            investment_strategy=self.investment_strategy.to_model() if self.investment_strategy else None,
            spending_schedule=self.spending_schedule,
            start_date=self.start_date,
            end_date=self.end_date,
            duration_months=self.duration_months,
        )


class ExpirationPreferenceDoc(_Document):
    action: MaturityAction
    params: MaturityParamsDoc = MaturityParamsDoc()
    set_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _collect_params(cls, data: Any) -> Any:
        """Older documents keep action parameters next to ``action``."""
        data = _snake_keys(data)
        if isinstance(data, dict) and "params" not in data:
            params = {k: v for k, v in data.items() if k not in ("action", "set_at")}
            data = {"action": data.get("action"), "set_at": data.get("set_at"), "params": params}
        return data

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v: Any) -> Any:
        return _enum_value(v)

    @field_validator("set_at", mode="before")
    @classmethod
    def _set_at(cls, v: Any) -> Any:
        return _utc_or_none(v)

    def to_model(self) -> ExpirationPreference:
        return ExpirationPreference(action=self.action, params=self.params.to_model(), set_at=self.set_at)


class MilestoneDoc(_Document):
    description: str
    target_date: datetime
    target_amount: float = 0.0

    @field_validator("target_date", mode="before")
    @classmethod
    def _date(cls, v: Any) -> Any:
        return to_utc(v)


class ConsumableDetailsDoc(_Document):
    spending_schedule: SpendingSchedule = SpendingSchedule.ONGOING
    start_date: datetime | None = None
    end_date: datetime | None = None
    target_amount: float | None = None
    target_beneficiaries: int | None = None
    minimum_monthly_distribution: float | None = None
    milestones: list[MilestoneDoc] = []

    @field_validator("spending_schedule", mode="before")
    @classmethod
    def _schedule(cls, v: Any) -> Any:
        return _schedule_value(v)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _dates(cls, v: Any) -> Any:
        return _utc_or_none(v)

    def to_model(self) -> ConsumableDetails:
        return ConsumableDetails(
            spending_schedule=self.spending_schedule,
            start_date=self.start_date,
            end_date=self.end_date,
            target_amount=self.target_amount,
            target_beneficiaries=self.target_beneficiaries,
            minimum_monthly_distribution=self.minimum_monthly_distribution,
            milestones=[Milestone(m.description, m.target_date, m.target_amount) for m in self.milestones],
        )


class ConversionDetailsDoc(_Document):
    target_type: WaqfType
    converted_at: datetime
    investment_strategy: InvestmentStrategyDoc | None = None
    consumable_schedule: ConsumableDetailsDoc | None = None

    @model_validator(mode="before")
    @classmethod
    def _flat_schedule(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and "consumable_schedule" not in data and "spending_schedule" in data:
            schedule_keys = ("spending_schedule", "start_date", "end_date")
            data = dict(data)
            data["consumable_schedule"] = {k: data.pop(k) for k in schedule_keys if k in data}
        return data

    @field_validator("target_type", mode="before")
    @classmethod
    def _target_type(cls, v: Any) -> Any:
        return normalize_waqf_type(v)

    @field_validator("converted_at", mode="before")
    @classmethod
    def _converted_at(cls, v: Any) -> Any:
        return to_utc(v)

    def to_model(self) -> ConversionDetails:
        return ConversionDetails(
            target_type=self.target_type,
            converted_at=self.converted_at,
            investment_strategy=self.investment_strategy.to_model() if self.investment_strategy else None,
            consumable_schedule=self.consumable_schedule.to_model() if self.consumable_schedule else None,
        )


class InstallmentDoc(_Document):
    id: str
    amount: float
    due_date: datetime
    status: InstallmentStatus = InstallmentStatus.SCHEDULED
    paid_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and "paid_at" not in data and "paid_date" in data:
            data = {**data, "paid_at": data["paid_date"]}
        return data

    @field_validator("due_date", mode="before")
    @classmethod
    def _due_date(cls, v: Any) -> Any:
        return to_utc(v)

    @field_validator("paid_at", mode="before")
    @classmethod
    def _paid_at(cls, v: Any) -> Any:
        return _utc_or_none(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Any:
        # A missed installment is still owed.
        if isinstance(v, str) and snake_case(v) == "missed":
            return InstallmentStatus.SCHEDULED
        return _enum_value(v)

    @field_validator("amount")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("installment amount must be positive")
        return v

    def to_model(self) -> Installment:
        return Installment(self.id, self.amount, self.due_date, self.status, self.paid_at)


class InstallmentScheduleDoc(_Document):
    frequency: DistributionFrequency = DistributionFrequency.MONTHLY
    number_of_installments: int = Field(default=12, ge=1)

    @field_validator("frequency", mode="before")
    @classmethod
    def _frequency(cls, v: Any) -> Any:
        return _enum_value(v)

    def to_model(self) -> InstallmentSchedule:
        return InstallmentSchedule(self.frequency, self.number_of_installments)


class TrancheDoc(_Document):
    id: str
    amount: float
    contribution_date: datetime
    maturity_date: datetime
    status: TrancheStatus = TrancheStatus.LOCKED
    cause_amounts: dict[str, float] = {}
    is_returned: bool = False
    returned_at: datetime | None = None
    expiration_preference: ExpirationPreferenceDoc | None = None
    conversion_details: ConversionDetailsDoc | None = None
    rollover_origin_id: str | None = None
    rollover_target_id: str | None = None
    installments: list[InstallmentDoc] = []

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and "returned_at" not in data and "returned_date" in data:
            data = {**data, "returned_at": data["returned_date"]}
        if isinstance(data, dict) and "installments" not in data and "installment_payments" in data:
            data = {**data, "installments": data["installment_payments"] or []}
        return data

    @field_validator("contribution_date", "maturity_date", mode="before")
    @classmethod
    def _required_dates(cls, v: Any) -> Any:
        return to_utc(v)

    @field_validator("returned_at", mode="before")
    @classmethod
    def _returned_at(cls, v: Any) -> Any:
        return _utc_or_none(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Any:
        return _enum_value(v)

    @field_validator("amount")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("tranche amount must be positive")
        return v

    @model_validator(mode="after")
    def _scheduled_needs_installments(self) -> TrancheDoc:
        if self.status == TrancheStatus.RETURN_SCHEDULED and not self.installments:
            raise ValueError(f"tranche {self.id} is scheduled for return but has no installments")
        return self

    def to_model(self) -> Tranche:
        return Tranche(
            id=self.id,
            amount=self.amount,
            contribution_date=self.contribution_date,
            maturity_date=self.maturity_date,
            status=self.status,
            cause_amounts=dict(self.cause_amounts),
            is_returned=self.is_returned,
            returned_at=self.returned_at,
            expiration_preference=self.expiration_preference.to_model() if self.expiration_preference else None,
            conversion_details=self.conversion_details.to_model() if self.conversion_details else None,
            rollover_origin_id=self.rollover_origin_id,
            rollover_target_id=self.rollover_target_id,
            installments=[i.to_model() for i in self.installments],
        )


class RevolvingDetailsDoc(_Document):
    lock_period_months: int = 12
    principal_return_method: PrincipalReturnMethod = PrincipalReturnMethod.LUMP_SUM
    installment_schedule: InstallmentScheduleDoc | None = None
    auto_rollover_preference: AutoRolloverPreference = AutoRolloverPreference.NONE
    pending_notifications: list[str] = []
    contribution_tranches: list[TrancheDoc] = []

    @field_validator("principal_return_method", "auto_rollover_preference", mode="before")
    @classmethod
    def _enums(cls, v: Any) -> Any:
        return _enum_value(v)

    def to_model(self) -> RevolvingDetails:
        return RevolvingDetails(
            lock_period_months=self.lock_period_months,
            principal_return_method=self.principal_return_method,
            installment_schedule=self.installment_schedule.to_model() if self.installment_schedule else None,
            auto_rollover_preference=self.auto_rollover_preference,
            pending_notifications=list(self.pending_notifications),
        )


class FinancialDoc(_Document):
    total_donations: float = 0.0
    total_distributed: float = 0.0
    current_balance: float = 0.0
    cause_allocations: dict[str, float] = {}
    total_investment_return: float = 0.0
    growth_rate: float = 0.0
    total_returned: float = 0.0
    beneficiaries_supported: int = 0

    @model_validator(mode="before")
    @classmethod
    def _impact_metrics(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if isinstance(data, dict) and "beneficiaries_supported" not in data:
            impact = _snake_keys(data.get("impact_metrics") or {})
            if isinstance(impact, dict) and "beneficiaries_supported" in impact:
                data = {**data, "beneficiaries_supported": impact["beneficiaries_supported"]}
        return data

    def to_model(self) -> FinancialMetrics:
        return FinancialMetrics(
            total_donations=self.total_donations,
            total_distributed=self.total_distributed,
            current_balance=self.current_balance,
            cause_allocations=dict(self.cause_allocations),
            total_investment_return=self.total_investment_return,
            growth_rate=self.growth_rate,
            total_returned=self.total_returned,
            beneficiaries_supported=self.beneficiaries_supported,
        )


class DonationDoc(_Document):
    transaction_id: str
    amount: float
    currency: str = "USD"
    received_at: datetime

    @field_validator("received_at", mode="before")
    @classmethod
    def _received_at(cls, v: Any) -> Any:
        return to_utc(v)


def _split_from_mapping(raw: Any) -> HybridSplit:
    if isinstance(raw, HybridSplit):
        return raw
    if not isinstance(raw, dict):
        raise NormalizationError(f"hybrid allocation must be a mapping (got {raw!r})")
    split = HybridSplit()
    for key, value in raw.items():
        waqf_type = normalize_waqf_type(key)
        pct = float(value or 0.0)
        if waqf_type == WaqfType.PERMANENT:
            split.permanent_pct = pct
        elif waqf_type == WaqfType.CONSUMABLE:
            split.consumable_pct = pct
        elif waqf_type == WaqfType.REVOLVING:
            split.revolving_pct = pct
        else:
            raise NormalizationError(f"hybrid allocation cannot contain type {key!r}")
    return split


def normalize_hybrid_allocations(raw: Any) -> dict[str, HybridSplit]:
    """Accept either ``[{causeId, allocations: {...}}]`` or ``{cause_id: {...}}``."""
    if not raw:
        return {}
    if isinstance(raw, list):
        result = {}
        for item in raw:
            item = _snake_keys(item)
            if not isinstance(item, dict) or "cause_id" not in item:
                raise NormalizationError(f"hybrid allocation entry needs a cause id (got {item!r})")
            result[str(item["cause_id"])] = _split_from_mapping(item.get("allocations", {}))
        return result
    if isinstance(raw, dict):
        return {str(cause_id): _split_from_mapping(split) for cause_id, split in raw.items()}
    raise NormalizationError(f"unsupported hybrid allocation shape: {type(raw).__name__}")


class EndowmentDoc(_Document):
    id: str
    name: str = ""
    waqf_type: WaqfType
    principal: float = 0.0
    selected_causes: list[str] = []
    cause_allocation: dict[str, float] = {}
    hybrid_allocations: dict[str, HybridSplit] = {}
    contribution_blend: dict[str, HybridSplit] = {}
    financial: FinancialDoc = FinancialDoc()
    consumable_details: ConsumableDetailsDoc | None = None
    revolving_details: RevolvingDetailsDoc | None = None
    tranches: list[TrancheDoc] = []
    donations: list[DonationDoc] = []
    status: EndowmentStatus = EndowmentStatus.ACTIVE
    currency: str = "USD"
    version: int = 0

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    @model_validator(mode="before")
    @classmethod
    def _legacy_names(cls, data: Any) -> Any:
        data = _snake_keys(data)
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "waqf_type" not in data and "type" in data:
            data["waqf_type"] = data.pop("type")
        if "principal" not in data and "waqf_asset" in data:
            data["principal"] = data.pop("waqf_asset")
        if "financial" not in data and "financial_metrics" in data:
            data["financial"] = data.pop("financial_metrics")
        return data

    @field_validator("waqf_type", mode="before")
    @classmethod
    def _waqf_type(cls, v: Any) -> Any:
        return normalize_waqf_type(v)

    @field_validator("hybrid_allocations", "contribution_blend", mode="before")
    @classmethod
    def _hybrid(cls, v: Any) -> Any:
        return normalize_hybrid_allocations(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v: Any) -> Any:
        return _enum_value(v)

    @field_validator("principal")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("principal must not be negative")
        return v

    @model_validator(mode="after")
    def _hybrid_only_when_hybrid(self) -> EndowmentDoc:
        if (self.hybrid_allocations or self.contribution_blend) and self.waqf_type != WaqfType.HYBRID:
            raise ValueError(f"hybrid allocations given for a {self.waqf_type.value} endowment")
        return self

    def to_model(self) -> Endowment:
        tranches = [t.to_model() for t in self.tranches]
        revolving = None
        if self.revolving_details is not None:
            revolving = self.revolving_details.to_model()
            # Tranches nested under the revolving details are the older layout.
            known = {t.id for t in tranches}
            tranches.extend(t.to_model() for t in self.revolving_details.contribution_tranches if t.id not in known)
        return Endowment(
            id=self.id,
            name=self.name,
            waqf_type=self.waqf_type,
            principal=self.principal,
            selected_causes=list(self.selected_causes),
            cause_allocation=dict(self.cause_allocation),
            hybrid_allocations=dict(self.hybrid_allocations),
            contribution_blend=dict(self.contribution_blend),
            financial=self.financial.to_model(),
            consumable_details=self.consumable_details.to_model() if self.consumable_details else None,
            revolving_details=revolving,
            tranches=tranches,
            donations=[DonationRecord(d.transaction_id, d.amount, d.currency, d.received_at) for d in self.donations],
            status=self.status,
            currency=self.currency,
            version=self.version,
        )


def load_endowment(document: dict[str, Any]) -> Endowment:
    """Validate a raw document and return the engine's ``Endowment``.

    Raises:
        NormalizationError: the document cannot be interpreted.
    """
    try:
        return EndowmentDoc.model_validate(document).to_model()
    except ValidationError as e:
        raise NormalizationError(f"invalid endowment document: {e}") from e


def endowment_to_document(endowment: Endowment) -> dict[str, Any]:
    """Canonical snake_case document for *endowment*, readable by ``load_endowment``."""
    return endowment.to_dict()
