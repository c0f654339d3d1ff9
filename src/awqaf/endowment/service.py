"""EndowmentService — stored, atomic commands on top of the engine.

Each command is one read-modify-write against the store: load the
aggregate, run the engine, save with the version that was read. A
``ConcurrentModification`` from the store means another writer won; the
command is retried from a fresh read up to ``max_retries`` times, since
the engine recomputes everything from the state it is given. Engine
errors are never retried.

Committed commands publish an event on the bus for the notification and
payment collaborators.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime

from loguru import logger

from ..core.events import (
    CONTRIBUTION_RECORDED,
    DISTRIBUTION_RECORDED,
    DONOR_NOTIFICATION,
    INSTALLMENT_PAID,
    INVESTMENT_RETURN_RECORDED,
    LEDGER_INCONSISTENCY,
    PAYMENT_APPLIED,
    SCHEDULE_EXTENDED,
    TRANCHE_PREFERENCE_FAILED,
    TRANCHE_RESOLVED,
    Event,
    EventBus,
)
from ..core.exceptions import ConcurrentModification, EngineError, LedgerInconsistency
from .clock import to_utc
from .engine import EndowmentEngine
from .ledger import reconcile, working_copy
from .models import Endowment, MaturityAction, MaturityParams, PaymentConfirmation, TrancheState
from .store import EndowmentStore
from .tranches import tranche_state


class EndowmentService:
    """Atomic commands against stored endowments."""

    def __init__(
        self,
        store: EndowmentStore,
        engine: EndowmentEngine | None = None,
        bus: EventBus | None = None,
        max_retries: int = 3,
    ):
        self.store = store
        self.engine = engine or EndowmentEngine()
        self.bus = bus or EventBus()
        self.max_retries = max_retries

    def _emit(self, name: str, payload: dict) -> None:
        self.bus.emit_sync(Event(name=name, payload=payload, source="endowment_service"))

    def _commit(self, endowment_id: str, change: Callable[[Endowment], Endowment]) -> tuple[Endowment, Endowment]:
        """Apply *change* to the stored endowment and save it atomically.

        Returns:
            (before, after) as stored.
        """
        attempt = 0
        while True:
            attempt += 1
            before = self.store.get(endowment_id)
            try:
                after = change(before)
            except LedgerInconsistency as e:
                self._emit(LEDGER_INCONSISTENCY, {"endowment_id": endowment_id, "error": str(e)})
                raise
            try:
                saved = self.store.save(after, expected_version=before.version)
            except ConcurrentModification:
                if attempt > self.max_retries:
                    raise
                logger.debug(f"Endowment {endowment_id}: concurrent write, retrying ({attempt}/{self.max_retries})")
                continue
            return before, saved

    def create(self, endowment: Endowment) -> Endowment:
        """Store a new endowment. The ledger must already balance."""
        working = reconcile(working_copy(endowment), self.engine.settings)
        saved = self.store.save(working, expected_version=None)
        logger.info(f"Endowment {saved.id} created ({saved.waqf_type.value})")
        return saved

    def get(self, endowment_id: str) -> Endowment:
        return self.store.get(endowment_id)

    def add_funds(
        self,
        endowment_id: str,
        amount: float,
        routing: Mapping[str, float] | None = None,
        now: datetime | None = None,
    ) -> Endowment:
        before, after = self._commit(
            endowment_id, lambda e: self.engine.record_contribution(e, amount, routing, now=now)
        )
        new_tranches = [t.id for t in after.tranches if t.id not in {b.id for b in before.tranches}]
        self._emit(
            CONTRIBUTION_RECORDED,
            {"endowment_id": endowment_id, "amount": amount, "tranche_ids": new_tranches},
        )
        self._emit_extension(before, after)
        return after

    def apply_payment(
        self,
        endowment_id: str,
        payment: PaymentConfirmation,
        routing: Mapping[str, float] | None = None,
    ) -> Endowment:
        before, after = self._commit(endowment_id, lambda e: self.engine.apply_payment(e, payment, routing))
        self._emit(
            PAYMENT_APPLIED,
            {
                "endowment_id": endowment_id,
                "transaction_id": payment.transaction_id,
                "amount": payment.amount,
                "currency": payment.currency,
            },
        )
        self._emit_extension(before, after)
        return after

    def _emit_extension(self, before: Endowment, after: Endowment) -> None:
        old_end = before.consumable_details.end_date if before.consumable_details else None
        new_end = after.consumable_details.end_date if after.consumable_details else None
        if new_end is not None and new_end != old_end:
            self._emit(
                SCHEDULE_EXTENDED,
                {
                    "endowment_id": after.id,
                    "previous_end_date": old_end.isoformat() if old_end else None,
                    "end_date": new_end.isoformat(),
                },
            )

    def resolve_maturity(
        self,
        endowment_id: str,
        tranche_id: str,
        action: MaturityAction | str,
        params: MaturityParams | None = None,
        now: datetime | None = None,
    ) -> Endowment:
        _, after = self._commit(
            endowment_id, lambda e: self.engine.resolve_maturity(e, tranche_id, action, params, now=now)
        )
        self._emit(
            TRANCHE_RESOLVED,
            {"endowment_id": endowment_id, "tranche_id": tranche_id, "action": MaturityAction(action).value},
        )
        return after

    def distribute(
        self,
        endowment_id: str,
        cause_id: str,
        amount: float,
        beneficiaries: int = 0,
        now: datetime | None = None,
    ) -> Endowment:
        _, after = self._commit(
            endowment_id,
            lambda e: self.engine.record_distribution(e, cause_id, amount, beneficiaries=beneficiaries, now=now),
        )
        self._emit(DISTRIBUTION_RECORDED, {"endowment_id": endowment_id, "cause_id": cause_id, "amount": amount})
        return after

    def record_investment_return(self, endowment_id: str, amount: float) -> Endowment:
        _, after = self._commit(endowment_id, lambda e: self.engine.record_investment_return(e, amount))
        self._emit(INVESTMENT_RETURN_RECORDED, {"endowment_id": endowment_id, "amount": amount})
        return after

    def process_matured(self, now: datetime | None = None) -> dict[str, list[str]]:
        """Apply stored expiration preferences across every endowment.

        Intended for a periodic external poller. Endowments that fail with
        an expected engine error are reported on the bus and skipped.

        Returns:
            Resolved tranche ids per endowment id (only non-empty entries).
        """
        moment = to_utc(now if now is not None else self.engine.clock())
        results: dict[str, list[str]] = {}
        for endowment_id in self.store.list_ids():
            _, preview = self.engine.apply_expiration_preferences(self.store.get(endowment_id), now=moment)
            if not preview:
                continue

            resolved: list[str] = []

            def change(endowment: Endowment) -> Endowment:
                updated, ids = self.engine.apply_expiration_preferences(endowment, now=moment)
                resolved[:] = ids
                return updated

            try:
                _, after = self._commit(endowment_id, change)
            except LedgerInconsistency:
                raise
            except EngineError as e:
                logger.warning(f"Endowment {endowment_id}: maturity processing skipped: {e}")
                self._emit(TRANCHE_PREFERENCE_FAILED, {"endowment_id": endowment_id, "error": str(e)})
                continue

            outcomes = {t.id: tranche_state(t, moment).value for t in after.tranches}
            for tranche_id in resolved:
                self._emit(
                    TRANCHE_RESOLVED,
                    {"endowment_id": endowment_id, "tranche_id": tranche_id, "outcome": outcomes[tranche_id]},
                )
            for tranche in after.tranches:
                if tranche.expiration_preference is not None and outcomes[tranche.id] == TrancheState.MATURED:
                    self._emit(TRANCHE_PREFERENCE_FAILED, {"endowment_id": endowment_id, "tranche_id": tranche.id})
            if resolved:
                results[endowment_id] = list(resolved)
        return results

    def pay_due_installments(self, now: datetime | None = None) -> dict[str, list[str]]:
        """Pay every installment that has fallen due, across every endowment.

        Returns:
            Paid installment ids per endowment id (only non-empty entries).
        """
        moment = to_utc(now if now is not None else self.engine.clock())
        results: dict[str, list[str]] = {}
        for endowment_id in self.store.list_ids():
            _, preview = self.engine.pay_due_installments(self.store.get(endowment_id), now=moment)
            if not preview:
                continue

            paid: list[str] = []

            def change(endowment: Endowment) -> Endowment:
                updated, ids = self.engine.pay_due_installments(endowment, now=moment)
                paid[:] = ids
                return updated

            self._commit(endowment_id, change)
            for installment_id in paid:
                self._emit(INSTALLMENT_PAID, {"endowment_id": endowment_id, "installment_id": installment_id})
            if paid:
                results[endowment_id] = list(paid)
        return results

    def drain_notifications(self, endowment_id: str) -> list[str]:
        """Publish and clear the donor notifications queued on *endowment_id*."""
        messages: list[str] = []

        def change(endowment: Endowment) -> Endowment:
            updated, drained = self.engine.drain_notifications(endowment)
            messages[:] = drained
            return updated

        before = self.store.get(endowment_id)
        if before.revolving_details is None or not before.revolving_details.pending_notifications:
            return []
        self._commit(endowment_id, change)
        for message in messages:
            self._emit(DONOR_NOTIFICATION, {"endowment_id": endowment_id, "message": message})
        return messages
