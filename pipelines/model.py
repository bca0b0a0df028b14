"""Canonical data model for raw observations, derived metrics and snapshots."""

from __future__ import annotations

import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    zip: str = Field(
        ..., min_length=5, max_length=5, description="5-digit zip code (ZCTA) the record covers."
    )


class ValueIndexObservation(_Record):
    """Monthly home-value and rent index figures for one zip (Zillow ZHVI/ZORI)."""

    date: dt.date = Field(..., description="Month-end date the index values apply to.")
    home_value: Optional[float] = Field(
        default=None, description="ZHVI all homes (SFR + condo), mid tier, USD."
    )
    single_family_value: Optional[float] = Field(
        default=None, description="ZHVI single-family residences, USD."
    )
    condo_value: Optional[float] = Field(default=None, description="ZHVI condo/co-op, USD.")
    rent_value: Optional[float] = Field(
        default=None, description="ZORI observed monthly rent, USD."
    )
    fetched_at: dt.datetime = Field(..., description="When the adapter ingested this row.")


class DemographicObservation(_Record):
    """ACS 5-year demographic figures and derived rates for one zip and vintage."""

    year: int = Field(..., description="ACS vintage the figures were fetched from.")
    population: Optional[int] = None
    median_income: Optional[float] = Field(default=None, description="Median household income, USD.")
    median_age: Optional[float] = None
    homeownership_rate: Optional[float] = Field(default=None, description="Owner-occupied share, %.")
    poverty_rate: Optional[float] = Field(default=None, description="Share below poverty line, %.")
    college_degree_rate: Optional[float] = Field(
        default=None, description="Bachelor's degree or higher among adults 25+, %."
    )
    remote_work_pct: Optional[float] = Field(default=None, description="Workers working from home, %.")
    housing_units: Optional[int] = None
    family_households_pct: Optional[float] = None
    homeowners_25_to_44_pct: Optional[float] = None
    homeowners_75_plus_pct: Optional[float] = None
    fetched_at: dt.datetime


class MarketActivityObservation(_Record):
    """Redfin market tracker figures for one zip and reporting period."""

    period_start: dt.date
    median_sale_price: Optional[float] = None
    homes_sold: Optional[int] = None
    median_dom: Optional[int] = Field(default=None, description="Median days on market.")
    inventory: Optional[int] = None
    price_drops_pct: Optional[float] = None
    sale_to_list_ratio: Optional[float] = Field(
        default=None, description="Average sale-to-list price ratio (1.0 = sold at list)."
    )
    new_listings: Optional[int] = None
    fetched_at: dt.datetime


class DerivedMetricRecord(_Record):
    """Affordability, investment and growth metrics computed for one zip and day."""

    date: dt.date
    value_income_ratio: Optional[float] = None
    overvalued_pct: Optional[float] = None
    mortgage_payment: Optional[float] = None
    mtg_pct_income: Optional[float] = None
    salary_to_afford: Optional[float] = None
    cap_rate: Optional[float] = None
    buy_vs_rent: Optional[float] = None
    price_forecast: Optional[float] = Field(
        default=None, description="Forecast 12-month home value change, %."
    )
    investor_score: Optional[int] = Field(default=None, ge=0, le=100)
    growth_score: Optional[int] = Field(default=None, ge=0, le=100)
    market_health_score: Optional[int] = Field(default=None, ge=0, le=100)


class HistorySnapshot(_Record):
    """Daily point-in-time market record with growth deltas and temperature."""

    date: dt.date
    median_home_value: Optional[float] = None
    median_sale_price: Optional[float] = None
    homes_sold: Optional[int] = None
    active_listings: Optional[int] = None
    new_listings: Optional[int] = None
    median_dom: Optional[int] = None
    months_of_supply: Optional[float] = None
    sale_to_list_ratio: Optional[float] = None
    price_drops_pct: Optional[float] = None
    inventory_growth_mom: Optional[float] = None
    sales_growth_mom: Optional[float] = None
    price_growth_mom: Optional[float] = None
    price_growth_yoy: Optional[float] = None
    market_temperature: str = Field(..., description="Hot, Warm, Balanced, Cool or Cold.")
    market_score: int = Field(..., ge=0, le=100)
    price_forecast: Optional[float] = None
    market_health_score: Optional[int] = None
    data_source: str = "combined_zillow_redfin"


class LoadStatus(BaseModel):
    """Last completion of a pipeline stage."""

    status_key: str
    loaded_at: dt.datetime
    row_count: int = 0
    error_count: int = 0


class RefreshResult(BaseModel):
    """Outcome of an adapter or metrics run."""

    model_config = ConfigDict(populate_by_name=True)

    rows_processed: int = Field(default=0, alias="rowsProcessed")
    errors: list[str] = Field(default_factory=list)


class SnapshotResult(BaseModel):
    """Outcome of a history snapshot run."""

    model_config = ConfigDict(populate_by_name=True)

    snapshots_created: int = Field(default=0, alias="snapshotsCreated")
    errors: list[str] = Field(default_factory=list)


__all__ = [
    "ValueIndexObservation",
    "DemographicObservation",
    "MarketActivityObservation",
    "DerivedMetricRecord",
    "HistorySnapshot",
    "LoadStatus",
    "RefreshResult",
    "SnapshotResult",
]
