"""Typed settings behind ``Config.validated()``.

The engine reads its tolerances and defaults from ``EngineSettings``; every
engine entry point accepts one and falls back to ``EngineSettings()``.
Unknown top-level sections are kept, so deployments can carry their own.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PathsConfig(BaseModel):
    """File-system paths used by the application."""

    data_dir: Path
    store_dir: Path | None = None
    log_dir: Path | None = None

    @field_validator("data_dir", "store_dir", "log_dir", mode="before")
    @classmethod
    def _expand_user(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v


class LedgerSettings(BaseModel):
    """Reconciliation tolerances."""

    amount_tolerance: float = Field(default=0.5, ge=0)
    percentage_tolerance: float = Field(default=0.05, ge=0)
    hybrid_sum_tolerance: float = Field(default=0.01, ge=0)


class MaturitySettings(BaseModel):
    """Bounds and defaults for lock periods and spend-down schedules."""

    default_lock_months: int = 12
    min_duration_months: int = 1
    max_duration_months: int = 240
    maturing_soon_days: int = 30
    min_consumable_months: int = 1
    max_consumable_months: int = 60
    max_pending_notifications: int = Field(default=50, ge=1)

    @model_validator(mode="after")
    def _bounds_ordered(self) -> MaturitySettings:
        if self.min_duration_months > self.max_duration_months:
            raise ValueError("min_duration_months must not exceed max_duration_months")
        if not self.min_duration_months <= self.default_lock_months <= self.max_duration_months:
            raise ValueError(
                f"default_lock_months {self.default_lock_months} outside "
                f"[{self.min_duration_months}, {self.max_duration_months}]"
            )
        if self.min_consumable_months > self.max_consumable_months:
            raise ValueError("min_consumable_months must not exceed max_consumable_months")
        return self


class InvestmentStrategyDefaults(BaseModel):
    """Investment strategy applied when a tranche converts to permanent without one."""

    asset_allocation: str = Field(default="60% Sukuk, 40% Equity", min_length=5)
    expected_annual_return: float = Field(default=7.0, ge=0, le=100)
    distribution_frequency: Literal["monthly", "quarterly", "annually"] = "quarterly"


class EngineSettings(BaseModel):
    """Everything the allocation and tranche engine needs to know."""

    ledger: LedgerSettings = LedgerSettings()
    maturity: MaturitySettings = MaturitySettings()
    investment_strategy: InvestmentStrategyDefaults = InvestmentStrategyDefaults()


class LoggingConfig(BaseModel):
    """Log sink settings passed to ``setup_logging``."""

    level: str = "WARNING"
    file: str | None = None


class AwqafConfig(BaseModel):
    """Root configuration model.

    Uses ``extra="allow"`` so consumers can bolt on custom sections
    without touching this schema.
    """

    model_config = ConfigDict(extra="allow")

    paths: PathsConfig = PathsConfig(data_dir=Path("~/.awqaf-data"))
    engine: EngineSettings = EngineSettings()
    logging: LoggingConfig = LoggingConfig()
