"""Shared test fixtures for awqaf."""

import os
import tempfile
from datetime import UTC, datetime

import pytest

from awqaf.endowment.clock import add_months
from awqaf.endowment.models import (
    ConsumableDetails,
    Endowment,
    FinancialMetrics,
    HybridSplit,
    RevolvingDetails,
    SpendingSchedule,
    WaqfType,
)

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def tmp_config_file(tmp_dir):
    """Create a temporary YAML config file."""
    import yaml

    config_data = {
        "paths": {
            "data_dir": os.path.join(tmp_dir, "data"),
            "store_dir": os.path.join(tmp_dir, "data", "endowments"),
        },
        "engine": {
            "maturity": {"default_lock_months": 6, "maturing_soon_days": 14},
            "ledger": {"amount_tolerance": 0.25},
        },
    }
    config_path = os.path.join(tmp_dir, "config.yaml")
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def revolving():
    """Empty revolving endowment with a 12-month lock, one cause."""
    return Endowment(
        id="rev-1",
        name="Well fund",
        waqf_type=WaqfType.REVOLVING,
        principal=10_000.0,
        selected_causes=["water"],
        revolving_details=RevolvingDetails(lock_period_months=12),
    )


@pytest.fixture
def hybrid():
    """Empty hybrid: cause a is all permanent, cause b half consumable, half revolving."""
    return Endowment(
        id="hyb-1",
        waqf_type=WaqfType.HYBRID,
        principal=1_000.0,
        selected_causes=["a", "b"],
        hybrid_allocations={
            "a": HybridSplit(permanent_pct=100.0),
            "b": HybridSplit(consumable_pct=50.0, revolving_pct=50.0),
        },
    )


@pytest.fixture
def phased():
    """Funded consumable endowment spending 24k over 24 months."""
    return Endowment(
        id="cons-1",
        waqf_type=WaqfType.CONSUMABLE,
        principal=24_000.0,
        selected_causes=["food"],
        financial=FinancialMetrics(
            total_donations=24_000.0,
            current_balance=24_000.0,
            cause_allocations={"food": 24_000.0},
        ),
        cause_allocation={"food": 100.0},
        consumable_details=ConsumableDetails(
            spending_schedule=SpendingSchedule.PHASED,
            start_date=T0,
            end_date=add_months(T0, 24),
        ),
    )


@pytest.fixture
def permanent():
    """Funded permanent endowment split over two causes."""
    return Endowment(
        id="perm-1",
        waqf_type=WaqfType.PERMANENT,
        principal=5_000.0,
        selected_causes=["school", "clinic"],
        cause_allocation={"school": 60.0, "clinic": 40.0},
        financial=FinancialMetrics(
            total_donations=5_000.0,
            current_balance=5_000.0,
            cause_allocations={"school": 3_000.0, "clinic": 2_000.0},
        ),
    )
