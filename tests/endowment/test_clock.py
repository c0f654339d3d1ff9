"""Tests for awqaf.endowment.clock."""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest

from awqaf.core.exceptions import NormalizationError
from awqaf.endowment.clock import (
    AVERAGE_DAYS_PER_MONTH,
    add_fractional_months,
    add_months,
    from_epoch,
    months_between,
    to_utc,
)

EXPECTED = datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)


class TestToUtc:
    def test_iso_with_z_suffix(self):
        assert to_utc("2023-11-14T22:13:20Z") == EXPECTED

    def test_iso_with_offset_is_converted(self):
        result = to_utc("2023-11-15T00:13:20+02:00")
        assert result == EXPECTED
        assert result.tzinfo == UTC

    def test_naive_datetime_assumed_utc(self):
        result = to_utc(datetime(2023, 11, 14, 22, 13, 20))
        assert result == EXPECTED
        assert result.tzinfo is not None

    def test_aware_datetime_normalized(self):
        eastern = timezone(timedelta(hours=-5))
        assert to_utc(datetime(2023, 11, 14, 17, 13, 20, tzinfo=eastern)) == EXPECTED

    def test_date(self):
        assert to_utc(date(2024, 3, 1)) == datetime(2024, 3, 1, tzinfo=UTC)

    @pytest.mark.parametrize(
        "epoch",
        [1_700_000_000, 1_700_000_000_000, 1_700_000_000_000_000, 1_700_000_000_000_000_000],
        ids=["seconds", "milliseconds", "microseconds", "nanoseconds"],
    )
    def test_epoch_units_detected(self, epoch):
        assert to_utc(epoch) == EXPECTED

    def test_numeric_string_is_epoch(self):
        assert to_utc("1700000000000") == EXPECTED

    def test_unparseable_string(self):
        with pytest.raises(NormalizationError, match="Unparseable"):
            to_utc("next tuesday")

    def test_bool_rejected(self):
        with pytest.raises(NormalizationError):
            to_utc(True)

    def test_unsupported_type(self):
        with pytest.raises(NormalizationError, match="Unsupported"):
            to_utc([2024, 1, 1])


class TestMonthArithmetic:
    def test_add_months_simple(self):
        start = datetime(2024, 1, 15, tzinfo=UTC)
        assert add_months(start, 12) == datetime(2025, 1, 15, tzinfo=UTC)

    def test_add_months_clamps_to_month_end(self):
        assert add_months(datetime(2024, 1, 31, tzinfo=UTC), 1) == datetime(2024, 2, 29, tzinfo=UTC)
        assert add_months(datetime(2023, 1, 31, tzinfo=UTC), 1) == datetime(2023, 2, 28, tzinfo=UTC)

    def test_add_months_crosses_years(self):
        assert add_months(datetime(2024, 11, 10, tzinfo=UTC), 3) == datetime(2025, 2, 10, tzinfo=UTC)

    def test_add_fractional_months(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        result = add_fractional_months(start, 2.5)
        assert result == datetime(2024, 3, 1, tzinfo=UTC) + timedelta(days=0.5 * AVERAGE_DAYS_PER_MONTH)

    def test_add_fractional_months_whole(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        assert add_fractional_months(start, 3.0) == datetime(2024, 4, 1, tzinfo=UTC)

    def test_months_between(self):
        start = datetime(2024, 1, 1, tzinfo=UTC)
        end = start + timedelta(days=AVERAGE_DAYS_PER_MONTH * 6)
        assert months_between(start, end) == pytest.approx(6.0)
        assert months_between(end, start) == pytest.approx(-6.0)


def test_from_epoch_float_seconds():
    assert from_epoch(1_700_000_000.5) == EXPECTED + timedelta(milliseconds=500)
