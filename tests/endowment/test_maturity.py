"""Tests for awqaf.endowment.maturity — the four maturity actions and stored preferences."""

from datetime import UTC, datetime, timedelta

import pytest

from awqaf.core.config_schema import EngineSettings
from awqaf.core.exceptions import (
    AlreadyResolved,
    InvalidDuration,
    TrancheNotFound,
    TrancheNotMatured,
    UnsupportedOperation,
)
from awqaf.endowment.allocation import split_balance
from awqaf.endowment.clock import add_months
from awqaf.endowment.contributions import record_contribution, record_distribution
from awqaf.endowment.maturity import (
    apply_expiration_preferences,
    drain_notifications,
    pay_due_installments,
    resolve_maturity,
    schedule_installments,
)
from awqaf.endowment.models import (
    AutoRolloverPreference,
    DistributionFrequency,
    ExpirationPreference,
    InstallmentSchedule,
    InvestmentStrategy,
    MaturityAction,
    MaturityParams,
    PrincipalReturnMethod,
    SpendingSchedule,
    TrancheState,
    TrancheStatus,
    WaqfType,
)
from awqaf.endowment.tranches import queue_notification, revolving_balance, tranche_state

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
MATURITY = add_months(T0, 12)
SETTINGS = EngineSettings()


@pytest.fixture
def funded_revolving(revolving):
    return record_contribution(revolving, 10_000.0, now=T0, settings=SETTINGS)


@pytest.fixture
def funded_hybrid(hybrid):
    return record_contribution(hybrid, 1_000.0, now=T0, settings=SETTINGS)


@pytest.mark.smoke
class TestRevolvingLifecycle:
    def test_locked_then_matured(self, funded_revolving):
        (tranche,) = funded_revolving.tranches
        assert tranche.amount == pytest.approx(10_000.0)
        assert tranche_state(tranche, add_months(T0, 11)) is TrancheState.LOCKED
        assert tranche_state(tranche, MATURITY) is TrancheState.MATURED

    def test_refund_returns_principal(self, funded_revolving):
        tranche_id = funded_revolving.tranches[0].id
        result = resolve_maturity(funded_revolving, tranche_id, MaturityAction.REFUND, now=MATURITY)

        fin = result.financial
        assert fin.current_balance == pytest.approx(0.0)
        assert fin.total_returned == pytest.approx(10_000.0)
        assert fin.total_donations == pytest.approx(10_000.0)
        tranche = result.tranches[0]
        assert tranche.is_returned is True
        assert tranche.status is TrancheStatus.RETURNED
        assert tranche.returned_at == MATURITY
        assert tranche_state(tranche, MATURITY) is TrancheState.RETURNED
        assert "returned to the donor" in result.revolving_details.pending_notifications[-1]

    def test_input_endowment_is_untouched(self, funded_revolving):
        tranche_id = funded_revolving.tranches[0].id
        resolve_maturity(funded_revolving, tranche_id, "refund", now=MATURITY)
        assert funded_revolving.financial.current_balance == pytest.approx(10_000.0)
        assert funded_revolving.tranches[0].is_returned is False

    def test_rollover_creates_successor(self, funded_revolving):
        old_id = funded_revolving.tranches[0].id
        result = resolve_maturity(funded_revolving, old_id, MaturityAction.ROLLOVER, now=MATURITY)

        old, new = result.tranches
        assert old.status is TrancheStatus.ROLLED_OVER
        assert old.rollover_target_id == new.id
        assert new.rollover_origin_id == old_id
        assert new.amount == pytest.approx(old.amount)
        assert new.contribution_date == MATURITY
        assert new.maturity_date == add_months(MATURITY, 12)
        assert result.financial.current_balance == pytest.approx(10_000.0)
        assert tranche_state(new, MATURITY) is TrancheState.LOCKED

    def test_rollover_with_new_period_and_cause(self, revolving):
        revolving.selected_causes = ["water", "school"]
        funded = record_contribution(revolving, 10_000.0, {"water": 1}, now=T0, settings=SETTINGS)
        params = MaturityParams(months=6, target_cause_id="school")

        result = resolve_maturity(funded, funded.tranches[0].id, MaturityAction.ROLLOVER, params, now=MATURITY)

        successor = result.tranches[-1]
        assert successor.maturity_date == add_months(MATURITY, 6)
        assert successor.cause_amounts == {"school": pytest.approx(10_000.0)}
        assert result.financial.cause_allocations["water"] == pytest.approx(0.0)
        assert result.financial.cause_allocations["school"] == pytest.approx(10_000.0)

    def test_rollover_period_out_of_bounds(self, funded_revolving):
        with pytest.raises(InvalidDuration):
            resolve_maturity(
                funded_revolving,
                funded_revolving.tranches[0].id,
                MaturityAction.ROLLOVER,
                MaturityParams(months=0),
                now=MATURITY,
            )

    def test_convert_permanent_promotes_to_hybrid(self, funded_revolving):
        result = resolve_maturity(
            funded_revolving, funded_revolving.tranches[0].id, MaturityAction.CONVERT_PERMANENT, now=MATURITY
        )

        assert result.waqf_type is WaqfType.HYBRID
        assert result.hybrid_allocations["water"].permanent_pct == pytest.approx(100.0)
        split = split_balance(result)
        assert split.totals.permanent == pytest.approx(10_000.0)
        assert split.totals.revolving == pytest.approx(0.0)
        assert result.financial.current_balance == pytest.approx(10_000.0)

        tranche = result.tranches[0]
        assert tranche_state(tranche, MATURITY) is TrancheState.CONVERTED
        strategy = tranche.conversion_details.investment_strategy
        assert strategy.asset_allocation == "60% Sukuk, 40% Equity"
        assert strategy.distribution_frequency is DistributionFrequency.QUARTERLY

    def test_convert_permanent_with_own_strategy(self, funded_revolving):
        strategy = InvestmentStrategy("100% Sukuk", 5.0, DistributionFrequency.ANNUALLY)
        result = resolve_maturity(
            funded_revolving,
            funded_revolving.tranches[0].id,
            MaturityAction.CONVERT_PERMANENT,
            MaturityParams(investment_strategy=strategy),
            now=MATURITY,
        )
        assert result.tranches[0].conversion_details.investment_strategy == strategy


class TestResolutionGuards:
    def test_locked_tranche_cannot_convert(self, funded_revolving):
        with pytest.raises(TrancheNotMatured):
            resolve_maturity(
                funded_revolving,
                funded_revolving.tranches[0].id,
                MaturityAction.CONVERT_PERMANENT,
                now=MATURITY - timedelta(seconds=1),
            )
        assert funded_revolving.waqf_type is WaqfType.REVOLVING

    def test_resolving_twice_fails_without_change(self, funded_revolving):
        tranche_id = funded_revolving.tranches[0].id
        once = resolve_maturity(funded_revolving, tranche_id, MaturityAction.REFUND, now=MATURITY)
        before = once.financial.to_dict()

        with pytest.raises(AlreadyResolved):
            resolve_maturity(once, tranche_id, MaturityAction.REFUND, now=MATURITY)
        with pytest.raises(AlreadyResolved):
            resolve_maturity(once, tranche_id, MaturityAction.ROLLOVER, now=MATURITY)

        assert once.financial.to_dict() == before

    def test_unknown_tranche(self, funded_revolving):
        with pytest.raises(TrancheNotFound):
            resolve_maturity(funded_revolving, "missing", MaturityAction.REFUND, now=MATURITY)

    def test_endowment_without_tranches(self, permanent):
        with pytest.raises(UnsupportedOperation):
            resolve_maturity(permanent, "any", MaturityAction.REFUND, now=MATURITY)

    def test_unknown_action(self, funded_revolving):
        with pytest.raises(ValueError):
            resolve_maturity(funded_revolving, funded_revolving.tranches[0].id, "donate", now=MATURITY)


class TestHybridMaturity:
    def test_contribution_locks_revolving_share(self, funded_hybrid):
        (tranche,) = funded_hybrid.tranches
        assert tranche.amount == pytest.approx(250.0)
        assert tranche.cause_amounts == {"b": pytest.approx(250.0)}

    def test_refund_moves_holdings_blend_only(self, funded_hybrid):
        result = resolve_maturity(funded_hybrid, funded_hybrid.tranches[0].id, MaturityAction.REFUND, now=MATURITY)

        assert result.financial.current_balance == pytest.approx(750.0)
        assert result.financial.cause_allocations["a"] == pytest.approx(500.0)
        assert result.financial.cause_allocations["b"] == pytest.approx(250.0)
        assert result.hybrid_allocations["b"].consumable_pct == pytest.approx(100.0)
        assert result.hybrid_allocations["b"].revolving_pct == pytest.approx(0.0)
        assert result.contribution_blend["b"].consumable_pct == pytest.approx(50.0)
        assert result.contribution_blend["b"].revolving_pct == pytest.approx(50.0)

    def test_contribution_after_refund_uses_donor_blend(self, funded_hybrid):
        refunded = resolve_maturity(
            funded_hybrid, funded_hybrid.tranches[0].id, MaturityAction.REFUND, now=MATURITY
        )
        result = record_contribution(refunded, 1_000.0, routing={"b": 1.0}, now=MATURITY, settings=SETTINGS)

        new_tranche = result.tranches[-1]
        assert len(result.tranches) == 2
        assert new_tranche.amount == pytest.approx(500.0)
        split = split_balance(result)
        assert split.by_cause["b"].consumable == pytest.approx(750.0)
        assert split.by_cause["b"].revolving == pytest.approx(500.0)
        assert split.by_cause["a"].permanent == pytest.approx(500.0)

    def test_contribution_after_distribution_uses_donor_blend(self, funded_hybrid):
        drained = record_distribution(funded_hybrid, "b", 250.0, now=T0, settings=SETTINGS)
        assert drained.hybrid_allocations["b"].revolving_pct == pytest.approx(100.0)

        result = record_contribution(drained, 1_000.0, routing={"b": 1.0}, now=T0, settings=SETTINGS)

        assert result.tranches[-1].amount == pytest.approx(500.0)
        split = split_balance(result)
        assert split.by_cause["b"].consumable == pytest.approx(500.0)
        assert split.by_cause["b"].revolving == pytest.approx(750.0)

    def test_convert_consumable_sets_schedule(self, funded_hybrid):
        params = MaturityParams(spending_schedule=SpendingSchedule.ONGOING, duration_months=6)
        result = resolve_maturity(
            funded_hybrid, funded_hybrid.tranches[0].id, MaturityAction.CONVERT_CONSUMABLE, params, now=MATURITY
        )

        split = split_balance(result)
        assert split.by_cause["b"].consumable == pytest.approx(500.0)
        assert split.by_cause["b"].revolving == pytest.approx(0.0)
        assert split.by_cause["a"].permanent == pytest.approx(500.0)

        details = result.tranches[0].conversion_details
        assert details.target_type is WaqfType.CONSUMABLE
        assert details.consumable_schedule.spending_schedule is SpendingSchedule.ONGOING
        assert details.consumable_schedule.end_date == add_months(MATURITY, 6)
        assert result.consumable_details is not None

    def test_convert_consumable_defaults(self, funded_hybrid):
        result = resolve_maturity(
            funded_hybrid, funded_hybrid.tranches[0].id, MaturityAction.CONVERT_CONSUMABLE, now=MATURITY
        )
        schedule = result.tranches[0].conversion_details.consumable_schedule
        assert schedule.spending_schedule is SpendingSchedule.PHASED
        assert schedule.end_date == add_months(MATURITY, 12)

    def test_convert_consumable_end_before_start(self, funded_hybrid):
        params = MaturityParams(start_date=MATURITY, end_date=MATURITY - timedelta(days=1))
        with pytest.raises(InvalidDuration):
            resolve_maturity(
                funded_hybrid, funded_hybrid.tranches[0].id, MaturityAction.CONVERT_CONSUMABLE, params, now=MATURITY
            )


class TestInstallmentReturns:
    @pytest.fixture
    def scheduled(self, revolving):
        revolving.revolving_details.principal_return_method = PrincipalReturnMethod.INSTALLMENTS
        revolving.revolving_details.installment_schedule = InstallmentSchedule(DistributionFrequency.QUARTERLY, 4)
        funded = record_contribution(revolving, 12_000.0, now=T0, settings=SETTINGS)
        return resolve_maturity(funded, funded.tranches[0].id, MaturityAction.REFUND, now=MATURITY)

    def test_refund_schedules_payments(self, scheduled):
        (tranche,) = scheduled.tranches
        assert tranche.status is TrancheStatus.RETURN_SCHEDULED
        assert tranche_state(tranche, MATURITY) is TrancheState.RETURN_SCHEDULED
        assert [i.amount for i in tranche.installments] == pytest.approx([3_000.0] * 4)
        assert [i.due_date for i in tranche.installments] == [add_months(MATURITY, 3 * n) for n in range(1, 5)]
        assert scheduled.financial.current_balance == pytest.approx(12_000.0)
        assert scheduled.financial.total_returned == 0.0
        assert "4 quarterly installments" in scheduled.revolving_details.pending_notifications[-1]

    def test_due_installments_paid(self, scheduled):
        result, paid = pay_due_installments(scheduled, now=add_months(MATURITY, 6), settings=SETTINGS)

        assert len(paid) == 2
        tranche = result.tranches[0]
        assert tranche.status is TrancheStatus.RETURN_SCHEDULED
        assert tranche.outstanding == pytest.approx(6_000.0)
        assert result.financial.current_balance == pytest.approx(6_000.0)
        assert result.financial.total_returned == pytest.approx(6_000.0)
        assert result.financial.cause_allocations["water"] == pytest.approx(6_000.0)
        summary = revolving_balance(result, add_months(MATURITY, 6))
        assert summary.scheduled == pytest.approx(6_000.0)
        assert summary.returned == pytest.approx(6_000.0)

    def test_last_payment_marks_returned(self, scheduled):
        result, paid = pay_due_installments(scheduled, now=add_months(MATURITY, 12), settings=SETTINGS)

        assert len(paid) == 4
        tranche = result.tranches[0]
        assert tranche.status is TrancheStatus.RETURNED
        assert tranche.is_returned is True
        assert tranche.returned_at == add_months(MATURITY, 12)
        assert result.financial.current_balance == pytest.approx(0.0)
        assert result.financial.total_returned == pytest.approx(12_000.0)

    def test_nothing_due_leaves_endowment_alone(self, scheduled):
        result, paid = pay_due_installments(scheduled, now=add_months(MATURITY, 1), settings=SETTINGS)
        assert result is scheduled
        assert paid == []

    def test_scheduled_tranche_cannot_be_resolved_again(self, scheduled):
        with pytest.raises(AlreadyResolved, match="return_scheduled"):
            resolve_maturity(scheduled, scheduled.tranches[0].id, MaturityAction.REFUND, now=MATURITY)

    def test_installment_method_without_schedule_pays_at_once(self, funded_revolving):
        funded_revolving.revolving_details.principal_return_method = PrincipalReturnMethod.INSTALLMENTS
        tranche_id = funded_revolving.tranches[0].id
        result = resolve_maturity(funded_revolving, tranche_id, MaturityAction.REFUND, now=MATURITY)
        assert result.tranches[0].status is TrancheStatus.RETURNED
        assert result.financial.total_returned == pytest.approx(10_000.0)

    def test_schedule_sums_to_tranche_amount(self, funded_revolving):
        tranche = funded_revolving.tranches[0]
        tranche.amount = 1_000.0
        installments = schedule_installments(tranche, InstallmentSchedule(DistributionFrequency.MONTHLY, 3), MATURITY)
        assert sum(i.amount for i in installments) == 1_000.0
        assert installments[0].id == f"{tranche.id}-i1"

    def test_schedule_needs_positive_count(self, funded_revolving):
        with pytest.raises(InvalidDuration, match="installment count"):
            schedule_installments(funded_revolving.tranches[0], InstallmentSchedule(number_of_installments=0), MATURITY)


class TestNotificationQueue:
    def test_queue_keeps_newest(self, revolving):
        settings = EngineSettings.model_validate({"maturity": {"max_pending_notifications": 2}})
        for message in ("one", "two", "three"):
            queue_notification(revolving, message, settings)
        assert revolving.revolving_details.pending_notifications == ["two", "three"]

    def test_resolutions_respect_cap(self, revolving):
        settings = EngineSettings.model_validate({"maturity": {"max_pending_notifications": 2}})
        current = revolving
        for month in range(3):
            current = record_contribution(current, 100.0, now=add_months(T0, month), settings=settings)
        for tranche in list(current.tranches):
            current = resolve_maturity(current, tranche.id, "refund", now=add_months(T0, 15), settings=settings)
        notes = current.revolving_details.pending_notifications
        assert len(notes) == 2
        assert current.tranches[-1].id in notes[-1]

    def test_drain_clears_queue(self, funded_revolving):
        tranche_id = funded_revolving.tranches[0].id
        resolved = resolve_maturity(funded_revolving, tranche_id, MaturityAction.REFUND, now=MATURITY)

        drained, messages = drain_notifications(resolved)

        assert len(messages) == 1
        assert tranche_id in messages[0]
        assert drained.revolving_details.pending_notifications == []
        assert resolved.revolving_details.pending_notifications == messages

    def test_drain_empty_queue(self, funded_revolving):
        drained, messages = drain_notifications(funded_revolving)
        assert drained is funded_revolving
        assert messages == []


class TestExpirationPreferences:
    def test_preference_applied_at_maturity(self, revolving):
        funded = record_contribution(
            revolving,
            500.0,
            now=T0,
            settings=SETTINGS,
            expiration_preference=ExpirationPreference(MaturityAction.REFUND),
        )
        tranche_id = funded.tranches[0].id

        early, resolved = apply_expiration_preferences(funded, add_months(T0, 6), SETTINGS)
        assert resolved == []
        assert early is funded

        result, resolved = apply_expiration_preferences(funded, MATURITY, SETTINGS)
        assert resolved == [tranche_id]
        assert result.tranches[0].status is TrancheStatus.RETURNED

    def test_no_preference_no_auto_rollover(self, funded_revolving):
        result, resolved = apply_expiration_preferences(funded_revolving, MATURITY, SETTINGS)
        assert resolved == []
        assert tranche_state(result.tranches[0], MATURITY) is TrancheState.MATURED

    def test_auto_rollover_same_cause(self, funded_revolving):
        funded_revolving.revolving_details.auto_rollover_preference = AutoRolloverPreference.SAME_CAUSE
        result, resolved = apply_expiration_preferences(funded_revolving, MATURITY, SETTINGS)
        assert len(resolved) == 1
        assert result.tranches[0].status is TrancheStatus.ROLLED_OVER
        assert result.tranches[1].rollover_origin_id == resolved[0]

    def test_failing_preference_left_matured(self, revolving):
        revolving.selected_causes = ["water", "school"]
        preference = ExpirationPreference(MaturityAction.ROLLOVER, MaturityParams(months=12, target_cause_id="school"))
        funded = record_contribution(
            revolving, 500.0, {"water": 1}, now=T0, settings=SETTINGS, expiration_preference=preference
        )
        funded.selected_causes = ["water"]

        result, resolved = apply_expiration_preferences(funded, MATURITY, SETTINGS)

        assert resolved == []
        assert tranche_state(result.tranches[0], MATURITY) is TrancheState.MATURED
