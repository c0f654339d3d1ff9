"""EndowmentEngine — the engine's public face for the UI and collaborators.

Binds settings and a clock to the pure operations in this package. All
methods are synchronous value-in/value-out transformations; persistence
is the caller's job (see ``EndowmentService`` for the stored variant).

Usage::

    engine = EndowmentEngine()
    updated = engine.record_contribution(endowment, 500.0, {"water": 1, "school": 1})
    split = engine.compute_allocation_split(updated)
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime

from ..core.config_schema import EngineSettings
from ..core.exceptions import AlreadyResolved
from . import acceptor, allocation, contributions, maturity, tranches
from .clock import to_utc, utc_now
from .ledger import find_violations, working_copy
from .models import (
    AllocationEntry,
    AllocationSplit,
    Cause,
    CompletionStatus,
    ContributionDecision,
    Endowment,
    ExpirationPreference,
    MaturityAction,
    MaturityParams,
    PaymentConfirmation,
    RevolvingBalance,
    Tranche,
    TrancheClassification,
    TrancheState,
)


class EndowmentEngine:
    """Allocation and tranche lifecycle operations with shared settings."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or EngineSettings()
        self.clock = clock

    def _now(self, now: datetime | None) -> datetime:
        return to_utc(now if now is not None else self.clock())

    # -- Reads --------------------------------------------------------------

    def compute_allocation_split(self, endowment: Endowment) -> AllocationSplit:
        return allocation.split_balance(endowment, self.settings)

    def classify_tranches(self, endowment: Endowment, now: datetime | None = None) -> TrancheClassification:
        return tranches.classify_tranches(endowment, self._now(now))

    def can_accept_contribution(
        self, endowment: Endowment, amount: float, now: datetime | None = None
    ) -> ContributionDecision:
        return acceptor.can_accept(endowment, amount, self._now(now))

    def revolving_balance(self, endowment: Endowment, now: datetime | None = None) -> RevolvingBalance:
        return tranches.revolving_balance(endowment, self._now(now))

    def maturing_soon(
        self, endowment: Endowment, now: datetime | None = None, days: int | None = None
    ) -> list[Tranche]:
        window = days if days is not None else self.settings.maturity.maturing_soon_days
        return tranches.maturing_soon(endowment, self._now(now), window)

    def maturity_progress(self, tranche: Tranche, now: datetime | None = None) -> float:
        return tranches.maturity_progress(tranche, self._now(now))

    def completion_status(self, endowment: Endowment, now: datetime | None = None) -> CompletionStatus:
        return acceptor.completion_status(endowment, self._now(now))

    def calculate_updated_distribution(
        self, endowment: Endowment, additional_amount: float, now: datetime | None = None
    ) -> float | None:
        return acceptor.calculate_updated_distribution(endowment, additional_amount, self._now(now))

    def diversification_score(
        self, endowment: Endowment, catalog: Mapping[str, Cause] | Callable[[str], Cause | None]
    ) -> float:
        """Score the endowment's spread across cause categories.

        *catalog* is a mapping or a ``get_cause(id)`` lookup. Causes the
        catalog does not know are scored as their own category.
        """
        lookup = catalog.get if isinstance(catalog, Mapping) else catalog
        entries: list[AllocationEntry] = []
        for cause_id, amount in allocation.cause_amounts(endowment).items():
            cause = lookup(cause_id)
            category = cause.category if cause is not None else cause_id
            entries.append(AllocationEntry(cause_id=cause_id, category_id=category, amount=amount))
        return allocation.diversification_score(entries)

    # -- Commands -----------------------------------------------------------

    def record_contribution(
        self,
        endowment: Endowment,
        amount: float,
        routing: Mapping[str, float] | None = None,
        now: datetime | None = None,
        expiration_preference: ExpirationPreference | None = None,
    ) -> Endowment:
        return contributions.record_contribution(
            endowment,
            amount,
            routing,
            now=self._now(now),
            settings=self.settings,
            expiration_preference=expiration_preference,
        )

    def apply_payment(
        self,
        endowment: Endowment,
        payment: PaymentConfirmation,
        routing: Mapping[str, float] | None = None,
    ) -> Endowment:
        return contributions.apply_payment(endowment, payment, routing, settings=self.settings)

    def resolve_maturity(
        self,
        endowment: Endowment,
        tranche_id: str,
        action: MaturityAction | str,
        params: MaturityParams | None = None,
        now: datetime | None = None,
    ) -> Endowment:
        return maturity.resolve_maturity(endowment, tranche_id, action, params, self._now(now), self.settings)

    def apply_expiration_preferences(
        self, endowment: Endowment, now: datetime | None = None
    ) -> tuple[Endowment, list[str]]:
        return maturity.apply_expiration_preferences(endowment, self._now(now), self.settings)

    def pay_due_installments(self, endowment: Endowment, now: datetime | None = None) -> tuple[Endowment, list[str]]:
        return maturity.pay_due_installments(endowment, self._now(now), self.settings)

    def drain_notifications(self, endowment: Endowment) -> tuple[Endowment, list[str]]:
        return maturity.drain_notifications(endowment)

    def set_expiration_preference(
        self,
        endowment: Endowment,
        tranche_id: str,
        preference: ExpirationPreference | None,
        now: datetime | None = None,
    ) -> Endowment:
        """Store (or clear, with None) the donor's pre-selected maturity action."""
        now = self._now(now)
        working = working_copy(endowment)
        tranche = tranches.find_tranche(working, tranche_id)
        state = tranches.tranche_state(tranche, now)
        if state not in (TrancheState.LOCKED, TrancheState.MATURED):
            raise AlreadyResolved(f"tranche '{tranche_id}' was already resolved ({state.value})")
        if preference is not None:
            preference = copy.deepcopy(preference)
            tranches.validate_expiration_preference(preference, working, self.settings)
            if preference.set_at is None:
                preference.set_at = now
        tranche.expiration_preference = preference
        return working

    def record_distribution(
        self,
        endowment: Endowment,
        cause_id: str,
        amount: float,
        beneficiaries: int = 0,
        now: datetime | None = None,
    ) -> Endowment:
        return contributions.record_distribution(
            endowment, cause_id, amount, now=self._now(now), settings=self.settings, beneficiaries=beneficiaries
        )

    def record_investment_return(self, endowment: Endowment, amount: float) -> Endowment:
        return contributions.record_investment_return(endowment, amount, settings=self.settings)

    def audit(self, endowments: Iterable[Endowment]) -> dict[str, list[str]]:
        """Ledger violations per endowment id, for audits of stored data."""
        return {e.id: v for e in endowments if (v := find_violations(e, self.settings))}
