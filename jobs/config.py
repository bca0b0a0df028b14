"""Runtime configuration for the market pulse pipeline.

Every tunable (credentials, the zip reference set, finance assumptions, windows, batch
sizes and stage cadences) is read from the environment, so changing a rate or a
schedule never requires a code change. A ``.env`` file is honoured via python-dotenv.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, TypeVar

from dotenv import load_dotenv

from pipelines.geo import AUSTIN_MSA, GeoReferenceSet
from pipelines.metrics import FinanceAssumptions

load_dotenv()

T = TypeVar("T")

# ACS 5-year data for year X is typically released around December of X + 1.
DEFAULT_CENSUS_YEAR = 2023

DEFAULT_SCHEDULES: Mapping[str, str] = {
    "value_index": "0 2 * * 0",
    "demographics": "0 3 1 * *",
    "market_activity": "0 4 * * 0",
    "metrics": "0 5 * * *",
    "history": "0 6 * * *",
}


@dataclass(frozen=True)
class PipelineSettings:
    """Everything a pipeline stage needs besides its database connection."""

    reference: GeoReferenceSet = AUSTIN_MSA
    finance: FinanceAssumptions = field(default_factory=FinanceAssumptions)
    census_api_key: str | None = None
    census_year: int = DEFAULT_CENSUS_YEAR
    value_index_window_years: int = 10
    market_activity_window_years: int = 5
    value_index_batch_size: int = 500
    census_batch_size: int = 100
    market_activity_batch_size: int = 500
    freshness_max_age_hours: float = 24.0
    timezone: str = "America/Chicago"
    schedules: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_SCHEDULES))

    def schedule_for(self, stage: str) -> str:
        return self.schedules.get(stage, DEFAULT_SCHEDULES.get(stage, "0 6 * * *"))


def _env(name: str, cast: Callable[[str], T], default: T) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


def _reference_from_env() -> GeoReferenceSet:
    raw = os.getenv("PULSE_ZIPS")
    if not raw:
        return AUSTIN_MSA
    zips = [item.strip() for item in raw.split(",") if item.strip()]
    reference = GeoReferenceSet.from_zips(os.getenv("PULSE_REGION_NAME", "custom"), zips)
    if not len(reference):
        raise ValueError(f"PULSE_ZIPS did not contain any valid zip codes: {raw!r}")
    return reference


def _schedules_from_env() -> dict[str, str]:
    return {
        stage: os.getenv(f"SCHEDULE_{stage.upper()}", default)
        for stage, default in DEFAULT_SCHEDULES.items()
    }


def load_settings() -> PipelineSettings:
    """Build ``PipelineSettings`` from environment variables, falling back to defaults."""

    defaults = FinanceAssumptions()
    finance = FinanceAssumptions(
        mortgage_rate=_env("MORTGAGE_RATE", float, defaults.mortgage_rate),
        loan_term_years=_env("LOAN_TERM_YEARS", int, defaults.loan_term_years),
        down_payment_pct=_env("DOWN_PAYMENT_PCT", float, defaults.down_payment_pct),
        expense_ratio=_env("EXPENSE_RATIO", float, defaults.expense_ratio),
        affordability_ratio=_env("AFFORDABILITY_RATIO", float, defaults.affordability_ratio),
    )
    base = PipelineSettings()
    return PipelineSettings(
        reference=_reference_from_env(),
        finance=finance,
        census_api_key=os.getenv("CENSUS_API_KEY") or None,
        census_year=_env("CENSUS_YEAR", int, base.census_year),
        value_index_window_years=_env(
            "VALUE_INDEX_WINDOW_YEARS", int, base.value_index_window_years
        ),
        market_activity_window_years=_env(
            "MARKET_ACTIVITY_WINDOW_YEARS", int, base.market_activity_window_years
        ),
        value_index_batch_size=_env("VALUE_INDEX_BATCH_SIZE", int, base.value_index_batch_size),
        census_batch_size=_env("CENSUS_BATCH_SIZE", int, base.census_batch_size),
        market_activity_batch_size=_env(
            "MARKET_ACTIVITY_BATCH_SIZE", int, base.market_activity_batch_size
        ),
        freshness_max_age_hours=_env(
            "FRESHNESS_MAX_AGE_HOURS", float, base.freshness_max_age_hours
        ),
        timezone=os.getenv("PULSE_TIMEZONE", base.timezone),
        schedules=_schedules_from_env(),
    )


__all__ = ["FinanceAssumptions", "PipelineSettings", "load_settings", "DEFAULT_SCHEDULES"]
