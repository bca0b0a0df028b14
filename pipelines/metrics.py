"""Derived affordability, investment and growth metrics per zip.

``compute_cell_metrics`` is pure: it works on a ``CellInputs`` bundle that
``load_cell_inputs`` reads from the raw stores, so the formulas can be exercised
without a database. ``refresh_metrics`` runs it for every zip of a reference set and
upserts one ``DerivedMetricRecord`` per (zip, day).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Mapping, Sequence

import duckdb

from pipelines.common import fold_cells, years_before
from pipelines.geo import GeoReferenceSet
from pipelines.model import (
    DemographicObservation,
    DerivedMetricRecord,
    MarketActivityObservation,
    RefreshResult,
    ValueIndexObservation,
)
from pipelines.numeric import (
    clamp,
    is_finite,
    linear_regression_forecast,
    mean_or_none,
    monthly_mortgage_payment,
    pct_change,
    round_half_up,
    round_or_none,
    safe_div,
)
from storage.repositories import (
    DemographicRepository,
    DerivedMetricsRepository,
    MarketActivityRepository,
    ValueIndexRepository,
)

logger = logging.getLogger(__name__)

# Sub-score scale factors. Each sub-score is clamped to [0, 100] before averaging.
CAP_RATE_SCALE = 15
BUY_VS_RENT_CEILING = 2.5
BUY_VS_RENT_SCALE = 50
DOM_SCALE = 2
GROWTH_BASELINE = 50
GROWTH_SENSITIVITY = 5
MORTGAGE_BURDEN_SCALE = 2
OVERVALUATION_BASELINE = 75
SALE_TO_LIST_SCALE = 200

FORECAST_HORIZON_MONTHS = 12
FORECAST_MIN_POINTS = 6
REALIZED_GROWTH_MIN_POINTS = 12


@dataclass(frozen=True)
class FinanceAssumptions:
    """Constants behind the mortgage, affordability and cap-rate calculations."""

    mortgage_rate: float = 0.0689
    loan_term_years: int = 30
    down_payment_pct: float = 0.20
    expense_ratio: float = 0.60
    affordability_ratio: float = 0.28


@dataclass(frozen=True)
class CellInputs:
    """Everything the metrics of one zip depend on."""

    value_index: ValueIndexObservation | None = None
    demographics: DemographicObservation | None = None
    market_activity: MarketActivityObservation | None = None
    home_value_history: Sequence[ValueIndexObservation] = ()
    incomes_by_year: Mapping[int, float] = field(default_factory=dict)
    trailing_values: Sequence[float] = ()


def historical_avg_value_income_ratio(
    history: Sequence[ValueIndexObservation], incomes_by_year: Mapping[int, float]
) -> float | None:
    """Mean home value / income ratio across the observed history.

    Each observation is paired with the income of its calendar year, or with the
    most recent known income when that year has none.
    """

    known = {year: income for year, income in incomes_by_year.items() if is_finite(income)}
    if not known:
        return None
    latest_income = known[max(known)]

    ratios = []
    for observation in history:
        income = known.get(observation.date.year, latest_income)
        ratio = safe_div(observation.home_value, income) if income > 0 else None
        if ratio is not None:
            ratios.append(ratio)
    return mean_or_none(ratios)


def _score(subscores: Sequence[float | None]) -> int | None:
    present = [clamp(value) for value in subscores if value is not None]
    if not present:
        return None
    return round_half_up(sum(present) / len(present))


def _scaled(value: float | None, fn) -> float | None:
    return fn(value) if value is not None else None


def investor_score(
    cap_rate: float | None, buy_vs_rent: float | None, median_dom: int | None
) -> int | None:
    return _score(
        [
            _scaled(cap_rate, lambda v: v * CAP_RATE_SCALE),
            _scaled(buy_vs_rent, lambda v: (BUY_VS_RENT_CEILING - v) * BUY_VS_RENT_SCALE),
            _scaled(median_dom, lambda v: v * DOM_SCALE),
        ]
    )


def growth_score(forecast: float | None, realized_12m: float | None) -> int | None:
    return _score(
        [
            _scaled(forecast, lambda v: GROWTH_BASELINE + v * GROWTH_SENSITIVITY),
            _scaled(realized_12m, lambda v: GROWTH_BASELINE + v * GROWTH_SENSITIVITY),
        ]
    )


def market_health_score(
    mtg_pct_income: float | None,
    overvalued_pct: float | None,
    sale_to_list: float | None,
) -> int | None:
    return _score(
        [
            _scaled(mtg_pct_income, lambda v: 100 - v * MORTGAGE_BURDEN_SCALE),
            _scaled(overvalued_pct, lambda v: OVERVALUATION_BASELINE - v),
            _scaled(sale_to_list, lambda v: 100 - abs(1.0 - v) * SALE_TO_LIST_SCALE),
        ]
    )


def realized_growth(trailing_values: Sequence[float]) -> float | None:
    """Change between the first and last trailing values, given a full year of points."""

    if len(trailing_values) < REALIZED_GROWTH_MIN_POINTS:
        return None
    first = trailing_values[0]
    if not first or first <= 0:
        return None
    return pct_change(trailing_values[-1], first)


def compute_cell_metrics(
    zip_code: str,
    inputs: CellInputs,
    assumptions: FinanceAssumptions,
    today: date,
) -> DerivedMetricRecord | None:
    """Derive the metrics for one zip; ``None`` when it has no home value to work from."""

    latest = inputs.value_index
    if latest is None or not is_finite(latest.home_value):
        return None

    home_value = latest.home_value
    rent = latest.rent_value
    income = inputs.demographics.median_income if inputs.demographics else None
    activity = inputs.market_activity

    value_income_ratio = safe_div(home_value, income)

    overvalued_pct = None
    if value_income_ratio is not None:
        historical = historical_avg_value_income_ratio(
            inputs.home_value_history, inputs.incomes_by_year
        )
        if historical is not None and historical > 0:
            overvalued_pct = (value_income_ratio / historical - 1) * 100

    mortgage_payment = monthly_mortgage_payment(
        home_value,
        annual_rate=assumptions.mortgage_rate,
        term_years=assumptions.loan_term_years,
        down_payment_pct=assumptions.down_payment_pct,
    )
    annual_mortgage = mortgage_payment * 12
    mtg_pct_income = _scaled(safe_div(annual_mortgage, income), lambda v: v * 100)
    salary_to_afford = safe_div(annual_mortgage, assumptions.affordability_ratio)

    cap_rate = _scaled(
        safe_div(rent * 12 * (1 - assumptions.expense_ratio) if is_finite(rent) else None, home_value),
        lambda v: v * 100,
    )
    buy_vs_rent = safe_div(mortgage_payment, rent) if is_finite(rent) and rent > 0 else None

    forecast = linear_regression_forecast(
        inputs.trailing_values,
        horizon=FORECAST_HORIZON_MONTHS,
        min_points=FORECAST_MIN_POINTS,
    )

    return DerivedMetricRecord(
        zip=zip_code,
        date=today,
        value_income_ratio=round_or_none(value_income_ratio),
        overvalued_pct=round_or_none(overvalued_pct),
        mortgage_payment=round_or_none(mortgage_payment),
        mtg_pct_income=round_or_none(mtg_pct_income),
        salary_to_afford=round_or_none(salary_to_afford),
        cap_rate=round_or_none(cap_rate),
        buy_vs_rent=round_or_none(buy_vs_rent),
        price_forecast=round_or_none(forecast),
        investor_score=investor_score(
            cap_rate, buy_vs_rent, activity.median_dom if activity else None
        ),
        growth_score=growth_score(forecast, realized_growth(inputs.trailing_values)),
        market_health_score=market_health_score(
            mtg_pct_income, overvalued_pct, activity.sale_to_list_ratio if activity else None
        ),
    )


def load_cell_inputs(conn: duckdb.DuckDBPyConnection, zip_code: str, today: date) -> CellInputs:
    """Read the raw observations ``compute_cell_metrics`` needs for ``zip_code``."""

    values = ValueIndexRepository(conn)
    demographics = DemographicRepository(conn)
    history = values.home_value_history(zip_code)
    trailing_cutoff = years_before(today, 1)
    return CellInputs(
        value_index=values.latest_with_home_value(zip_code),
        demographics=demographics.latest(zip_code),
        market_activity=MarketActivityRepository(conn).latest(zip_code),
        home_value_history=history,
        incomes_by_year=demographics.incomes_by_year(zip_code),
        trailing_values=[
            row.home_value for row in history if trailing_cutoff <= row.date <= today
        ],
    )


def refresh_metrics(
    conn: duckdb.DuckDBPyConnection,
    reference: GeoReferenceSet,
    *,
    finance: FinanceAssumptions | None = None,
    today: date | None = None,
) -> RefreshResult:
    """Compute and upsert today's derived metrics for every zip of ``reference``."""

    assumptions = finance or FinanceAssumptions()
    run_date = today or date.today()
    repository = DerivedMetricsRepository(conn)
    logger.info("Starting metrics calculation for %s zips on %s...", len(reference), run_date)

    def compute(zip_code: str) -> bool:
        record = compute_cell_metrics(
            zip_code, load_cell_inputs(conn, zip_code, run_date), assumptions, run_date
        )
        if record is None:
            logger.debug("No home value for %s; skipping.", zip_code)
            return False
        repository.upsert([record])
        return True

    processed, errors = fold_cells(reference, compute, label="Metrics")
    logger.info("Metrics complete. %s zips processed, %s errors.", processed, len(errors))
    return RefreshResult(rows_processed=processed, errors=errors)


__all__ = [
    "FinanceAssumptions",
    "CellInputs",
    "historical_avg_value_income_ratio",
    "compute_cell_metrics",
    "load_cell_inputs",
    "refresh_metrics",
]
