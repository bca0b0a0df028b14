"""Daily market history snapshots with growth deltas and a market temperature.

A snapshot combines the latest home value, the latest Redfin market figures and the
latest derived metrics for a zip, compares them with the snapshots stored roughly a
month and a year earlier, and classifies the market from Hot to Cold.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Sequence

import duckdb

from pipelines.common import fold_cells
from pipelines.geo import GeoReferenceSet
from pipelines.model import (
    DerivedMetricRecord,
    HistorySnapshot,
    MarketActivityObservation,
    SnapshotResult,
)
from pipelines.numeric import pct_change, round_half_up, round_or_none, safe_div
from storage.repositories import (
    DerivedMetricsRepository,
    HistoryRepository,
    MarketActivityRepository,
    ValueIndexRepository,
)

logger = logging.getLogger(__name__)

MONTH_AGO_DAYS = 30
MONTH_AGO_TOLERANCE_DAYS = 3
YEAR_AGO_DAYS = 365
YEAR_AGO_TOLERANCE_DAYS = 7

DEFAULT_MARKET_SCORE = 50
DATA_SOURCE = "combined_zillow_redfin"

# (minimum score, label), checked top to bottom.
TEMPERATURE_LABELS: Sequence[tuple[int, str]] = (
    (85, "Hot"),
    (70, "Warm"),
    (50, "Balanced"),
    (35, "Cool"),
)
COLDEST_LABEL = "Cold"


def find_comparable(
    rows: Sequence[HistorySnapshot], target: date, tolerance_days: int
) -> HistorySnapshot | None:
    """Snapshot dated closest to ``target`` within ``tolerance_days``; ties go to the older row."""

    best: HistorySnapshot | None = None
    best_key: tuple[int, date] | None = None
    for row in rows:
        distance = abs((row.date - target).days)
        if distance > tolerance_days:
            continue
        key = (distance, row.date)
        if best_key is None or key < best_key:
            best, best_key = row, key
    return best


def score_days_on_market(dom: float | None) -> int | None:
    if dom is None:
        return None
    if dom < 15:
        return 100
    if dom < 30:
        return 80
    if dom < 45:
        return 60
    if dom < 60:
        return 40
    return 20


def score_sale_to_list(ratio: float | None) -> int | None:
    if ratio is None:
        return None
    if ratio > 1.05:
        return 100
    if ratio > 1.0:
        return 80
    if ratio > 0.98:
        return 60
    if ratio > 0.95:
        return 40
    return 20


def score_months_of_supply(months: float | None) -> int | None:
    if months is None:
        return None
    if months < 2:
        return 100
    if months < 4:
        return 80
    if months < 6:
        return 60
    if months < 8:
        return 40
    return 20


def score_inventory_growth(growth_pct: float | None) -> int | None:
    if growth_pct is None:
        return None
    if growth_pct < -10:
        return 100
    if growth_pct < 0:
        return 80
    if growth_pct < 10:
        return 60
    if growth_pct < 25:
        return 40
    return 20


def label_for_score(score: int) -> str:
    for minimum, label in TEMPERATURE_LABELS:
        if score >= minimum:
            return label
    return COLDEST_LABEL


def market_temperature(
    *,
    dom: float | None = None,
    sale_to_list: float | None = None,
    months_of_supply: float | None = None,
    inventory_growth: float | None = None,
) -> tuple[str, int]:
    """Average the available banded sub-scores into a ``(label, score)`` pair.

    With no inputs at all the market is reported as Balanced with a score of 50.
    """

    subscores = [
        score
        for score in (
            score_days_on_market(dom),
            score_sale_to_list(sale_to_list),
            score_months_of_supply(months_of_supply),
            score_inventory_growth(inventory_growth),
        )
        if score is not None
    ]
    score = (
        round_half_up(sum(subscores) / len(subscores)) if subscores else DEFAULT_MARKET_SCORE
    )
    return label_for_score(score), score


def build_snapshot(
    zip_code: str,
    today: date,
    *,
    home_value: float | None,
    activity: MarketActivityObservation | None,
    derived: DerivedMetricRecord | None,
    month_ago: HistorySnapshot | None,
    year_ago: HistorySnapshot | None,
) -> HistorySnapshot:
    inventory = activity.inventory if activity else None
    homes_sold = activity.homes_sold if activity else None
    median_dom = activity.median_dom if activity else None
    sale_to_list = activity.sale_to_list_ratio if activity else None

    inventory_growth = pct_change(inventory, month_ago.active_listings if month_ago else None)
    sales_growth = pct_change(homes_sold, month_ago.homes_sold if month_ago else None)
    price_growth_mom = pct_change(home_value, month_ago.median_home_value if month_ago else None)
    price_growth_yoy = pct_change(home_value, year_ago.median_home_value if year_ago else None)
    months_of_supply = safe_div(inventory, homes_sold)

    label, score = market_temperature(
        dom=median_dom,
        sale_to_list=sale_to_list,
        months_of_supply=months_of_supply,
        inventory_growth=inventory_growth,
    )

    return HistorySnapshot(
        zip=zip_code,
        date=today,
        median_home_value=home_value,
        median_sale_price=activity.median_sale_price if activity else None,
        homes_sold=homes_sold,
        active_listings=inventory,
        new_listings=activity.new_listings if activity else None,
        median_dom=median_dom,
        months_of_supply=round_or_none(months_of_supply),
        sale_to_list_ratio=sale_to_list,
        price_drops_pct=activity.price_drops_pct if activity else None,
        inventory_growth_mom=round_or_none(inventory_growth),
        sales_growth_mom=round_or_none(sales_growth),
        price_growth_mom=round_or_none(price_growth_mom),
        price_growth_yoy=round_or_none(price_growth_yoy),
        market_temperature=label,
        market_score=score,
        price_forecast=derived.price_forecast if derived else None,
        market_health_score=derived.market_health_score if derived else None,
        data_source=DATA_SOURCE,
    )


def _comparable(
    history: HistoryRepository, zip_code: str, today: date, days_back: int, tolerance: int
) -> HistorySnapshot | None:
    target = today - timedelta(days=days_back)
    rows = history.between(
        zip_code, target - timedelta(days=tolerance), target + timedelta(days=tolerance)
    )
    return find_comparable([row for row in rows if row.date < today], target, tolerance)


def create_daily_snapshot(
    conn: duckdb.DuckDBPyConnection,
    reference: GeoReferenceSet,
    *,
    today: date | None = None,
) -> SnapshotResult:
    """Write today's snapshot for every zip of ``reference``."""

    run_date = today or date.today()
    values = ValueIndexRepository(conn)
    activity_repo = MarketActivityRepository(conn)
    derived_repo = DerivedMetricsRepository(conn)
    history = HistoryRepository(conn)
    logger.info("Creating market history snapshot for %s zips on %s...", len(reference), run_date)

    def snapshot(zip_code: str) -> bool:
        latest_value = values.latest_with_home_value(zip_code)
        record = build_snapshot(
            zip_code,
            run_date,
            home_value=latest_value.home_value if latest_value else None,
            activity=activity_repo.latest(zip_code),
            derived=derived_repo.latest(zip_code),
            month_ago=_comparable(
                history, zip_code, run_date, MONTH_AGO_DAYS, MONTH_AGO_TOLERANCE_DAYS
            ),
            year_ago=_comparable(
                history, zip_code, run_date, YEAR_AGO_DAYS, YEAR_AGO_TOLERANCE_DAYS
            ),
        )
        history.upsert([record])
        return True

    created, errors = fold_cells(reference, snapshot, label="Snapshot")
    logger.info("Snapshot complete. %s snapshots created, %s errors.", created, len(errors))
    return SnapshotResult(snapshots_created=created, errors=errors)


__all__ = [
    "find_comparable",
    "market_temperature",
    "label_for_score",
    "build_snapshot",
    "create_daily_snapshot",
]
