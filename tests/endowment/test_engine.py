"""Tests for awqaf.endowment.engine — the settings- and clock-bound facade."""

from datetime import UTC, datetime

import pytest

from awqaf.core.config_schema import EngineSettings, MaturitySettings
from awqaf.core.exceptions import AlreadyResolved, InvalidDuration
from awqaf.endowment import EndowmentEngine
from awqaf.endowment.clock import add_months
from awqaf.endowment.models import Cause, ExpirationPreference, MaturityAction, MaturityParams, WaqfType

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def engine(clock):
    return EndowmentEngine(clock=clock)


class TestEngineClock:
    def test_uses_injected_clock(self, engine, clock, revolving):
        funded = engine.record_contribution(revolving, 1_000.0)
        assert funded.tranches[0].contribution_date == T0

        clock.now = add_months(T0, 12)
        assert [t.id for t in engine.classify_tranches(funded).matured] == [funded.tranches[0].id]

    def test_explicit_now_wins(self, engine, revolving):
        funded = engine.record_contribution(revolving, 1_000.0, now=add_months(T0, 1))
        assert funded.tranches[0].contribution_date == add_months(T0, 1)

    def test_naive_now_is_read_as_utc(self, engine, revolving):
        funded = engine.record_contribution(revolving, 1_000.0, now=datetime(2024, 1, 15, 9, 0))
        assert funded.tranches[0].contribution_date == T0

        naive_maturity = datetime(2025, 1, 15, 9, 0)
        assert len(engine.classify_tranches(funded, naive_maturity).matured) == 1
        assert engine.maturity_progress(funded.tranches[0], datetime(2024, 7, 15)) > 0
        refunded = engine.resolve_maturity(funded, funded.tranches[0].id, MaturityAction.REFUND, now=naive_maturity)
        assert refunded.tranches[0].returned_at == add_months(T0, 12)

    def test_naive_clock_is_read_as_utc(self, revolving):
        engine = EndowmentEngine(clock=lambda: datetime(2024, 1, 15, 9, 0))
        funded = engine.record_contribution(revolving, 1_000.0)
        assert funded.tranches[0].contribution_date == T0

    def test_settings_drive_lock_period(self, clock, hybrid):
        settings = EngineSettings(maturity=MaturitySettings(default_lock_months=3))
        engine = EndowmentEngine(settings=settings, clock=clock)
        funded = engine.record_contribution(hybrid, 1_000.0)
        assert funded.tranches[0].maturity_date == add_months(T0, 3)

    def test_maturing_soon_window_from_settings(self, clock, revolving):
        settings = EngineSettings(maturity=MaturitySettings(maturing_soon_days=400))
        engine = EndowmentEngine(settings=settings, clock=clock)
        funded = engine.record_contribution(revolving, 1_000.0)
        assert len(engine.maturing_soon(funded)) == 1
        assert engine.maturing_soon(funded, days=30) == []


@pytest.mark.smoke
class TestEngineLifecycle:
    def test_contribute_mature_refund(self, engine, clock, revolving):
        funded = engine.record_contribution(revolving, 10_000.0)
        tranche_id = funded.tranches[0].id

        clock.now = add_months(T0, 11)
        assert engine.revolving_balance(funded).locked == pytest.approx(10_000.0)

        clock.now = add_months(T0, 12)
        assert engine.maturity_progress(funded.tranches[0]) == 100.0
        refunded = engine.resolve_maturity(funded, tranche_id, MaturityAction.REFUND)

        assert refunded.financial.current_balance == pytest.approx(0.0)
        assert engine.revolving_balance(refunded).returned == pytest.approx(10_000.0)

    def test_split_and_acceptance(self, engine, hybrid):
        funded = engine.record_contribution(hybrid, 1_000.0)
        split = engine.compute_allocation_split(funded)
        assert split.totals.permanent == pytest.approx(500.0)
        assert engine.can_accept_contribution(funded, 50.0).accepted is True

    def test_distribution_and_return(self, engine, permanent):
        grown = engine.record_investment_return(permanent, 250.0)
        paid = engine.record_distribution(grown, "school", 100.0, beneficiaries=2)
        assert paid.financial.current_balance == pytest.approx(5_150.0)
        assert paid.financial.beneficiaries_supported == 2


class TestExpirationPreference:
    def test_set_and_apply(self, engine, clock, revolving):
        funded = engine.record_contribution(revolving, 1_000.0)
        tranche_id = funded.tranches[0].id
        preference = ExpirationPreference(MaturityAction.ROLLOVER, MaturityParams(months=6))

        updated = engine.set_expiration_preference(funded, tranche_id, preference)
        stored = updated.tranches[0].expiration_preference
        assert stored.set_at == T0
        assert preference.set_at is None
        assert funded.tranches[0].expiration_preference is None

        clock.now = add_months(T0, 12)
        result, resolved = engine.apply_expiration_preferences(updated)
        assert resolved == [tranche_id]
        assert result.tranches[-1].maturity_date == add_months(clock.now, 6)

    def test_clear_preference(self, engine, revolving):
        funded = engine.record_contribution(
            revolving, 1_000.0, expiration_preference=ExpirationPreference(MaturityAction.REFUND)
        )
        cleared = engine.set_expiration_preference(funded, funded.tranches[0].id, None)
        assert cleared.tranches[0].expiration_preference is None

    def test_incomplete_preference_rejected(self, engine, revolving):
        funded = engine.record_contribution(revolving, 1_000.0)
        with pytest.raises(InvalidDuration):
            engine.set_expiration_preference(
                funded, funded.tranches[0].id, ExpirationPreference(MaturityAction.ROLLOVER)
            )

    def test_terminal_tranche_rejected(self, engine, clock, revolving):
        funded = engine.record_contribution(revolving, 1_000.0)
        clock.now = add_months(T0, 12)
        refunded = engine.resolve_maturity(funded, funded.tranches[0].id, MaturityAction.REFUND)
        with pytest.raises(AlreadyResolved):
            engine.set_expiration_preference(
                refunded, refunded.tranches[0].id, ExpirationPreference(MaturityAction.REFUND)
            )


class TestDiversificationAndAudit:
    CATALOG = {
        "school": Cause("school", "School", "education", [WaqfType.PERMANENT]),
        "clinic": Cause("clinic", "Clinic", "health", [WaqfType.PERMANENT]),
    }

    def test_score_with_mapping(self, engine, permanent):
        # 60/40 across two categories
        assert engine.diversification_score(permanent, self.CATALOG) == 80.0

    def test_score_with_lookup_callable(self, engine, permanent):
        assert engine.diversification_score(permanent, lambda cause_id: None) == 80.0

    def test_same_category_scores_zero(self, engine, permanent):
        catalog = {k: Cause(k, k, "education") for k in ("school", "clinic")}
        assert engine.diversification_score(permanent, catalog) == 0.0

    def test_audit_reports_only_broken(self, engine, permanent, revolving):
        permanent.financial.current_balance = 10.0
        report = engine.audit([permanent, revolving])
        assert list(report) == ["perm-1"]
        assert report["perm-1"]
