from datetime import date, datetime

import pytest

from pipelines import metrics
from pipelines.geo import GeoReferenceSet
from pipelines.metrics import (
    CellInputs,
    FinanceAssumptions,
    compute_cell_metrics,
    historical_avg_value_income_ratio,
    refresh_metrics,
)
from pipelines.model import (
    DemographicObservation,
    MarketActivityObservation,
    ValueIndexObservation,
)
from storage.db import connect
from storage.repositories import (
    DemographicRepository,
    DerivedMetricsRepository,
    ValueIndexRepository,
)

TODAY = date(2024, 7, 1)
FETCHED_AT = datetime(2024, 7, 1, 12, 0)
ASSUMPTIONS = FinanceAssumptions()


def _value(on: date, home_value: float | None, rent: float | None = None, zip_code="78704"):
    return ValueIndexObservation(
        zip=zip_code, date=on, home_value=home_value, rent_value=rent, fetched_at=FETCHED_AT
    )


def _demographics(income: float | None, year: int = 2023, zip_code="78704"):
    return DemographicObservation(
        zip=zip_code, year=year, median_income=income, fetched_at=FETCHED_AT
    )


def _activity(median_dom=None, sale_to_list=None):
    return MarketActivityObservation(
        zip="78704",
        period_start=date(2024, 5, 1),
        median_dom=median_dom,
        sale_to_list_ratio=sale_to_list,
        fetched_at=FETCHED_AT,
    )


def test_full_inputs_produce_every_ratio_and_score():
    inputs = CellInputs(
        value_index=_value(date(2024, 6, 30), 500_000, rent=2500),
        demographics=_demographics(100_000),
        market_activity=_activity(median_dom=30, sale_to_list=1.0),
    )

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    payment = 2631.73
    assert record.date == TODAY
    assert record.value_income_ratio == pytest.approx(5.0)
    assert record.mortgage_payment == pytest.approx(payment)
    assert record.mtg_pct_income == pytest.approx(31.58)
    assert record.salary_to_afford == pytest.approx(round(payment * 12 / 0.28, 2))
    assert record.cap_rate == pytest.approx(2.4)
    assert record.buy_vs_rent == pytest.approx(1.05)
    # cap 36, buy-vs-rent (2.5 - 1.0527) * 50, DOM 60
    assert record.investor_score == 56
    # mortgage burden 100 - 31.58 * 2, sale-to-list 100
    assert record.market_health_score == 68
    assert record.overvalued_pct is None
    assert record.price_forecast is None
    assert record.growth_score is None


def test_missing_home_value_skips_the_cell():
    inputs = CellInputs(value_index=None, demographics=_demographics(100_000))

    assert compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY) is None


def test_value_index_alone_still_yields_affordability_figures():
    inputs = CellInputs(value_index=_value(date(2024, 6, 30), 300_000))

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    assert record.mortgage_payment == pytest.approx(1579.04)
    assert record.salary_to_afford == pytest.approx(round(1579.04 * 12 / 0.28, 2))
    assert record.value_income_ratio is None
    assert record.mtg_pct_income is None
    assert record.cap_rate is None
    assert record.buy_vs_rent is None
    assert record.investor_score is None
    assert record.market_health_score is None


def test_zero_days_on_market_counts_as_a_sub_score():
    inputs = CellInputs(
        value_index=_value(date(2024, 6, 30), 300_000),
        market_activity=_activity(median_dom=0),
    )

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    assert record.investor_score == 0


def test_overvaluation_compares_with_historical_average_ratio():
    history = [_value(date(2022, 6, 30), 400_000), _value(date(2023, 6, 30), 500_000)]
    inputs = CellInputs(
        value_index=_value(date(2024, 6, 30), 500_000),
        demographics=_demographics(100_000),
        home_value_history=history,
        incomes_by_year={2022: 100_000, 2023: 100_000},
    )

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    # Historical average ratio is 4.5, current ratio 5.0.
    assert record.overvalued_pct == pytest.approx(11.11)
    # Mortgage burden 36.84 and overvaluation 75 - 11.11 average to 50.36.
    assert record.market_health_score == 50


def test_historical_ratio_falls_back_to_latest_income():
    history = [_value(date(2021, 6, 30), 400_000), _value(date(2022, 6, 30), 300_000)]

    ratio = historical_avg_value_income_ratio(history, {2022: 50_000, 2023: 80_000})

    # 2021 has no income and uses the 2023 figure; 2022 uses its own.
    assert ratio == pytest.approx((400_000 / 80_000 + 300_000 / 50_000) / 2)
    assert historical_avg_value_income_ratio(history, {}) is None
    assert historical_avg_value_income_ratio([], {2023: 80_000}) is None


def test_forecast_and_growth_scores_from_trailing_values():
    trailing = [100.0, 101.0, 102.0, 103.0, 104.0, 105.0]
    inputs = CellInputs(
        value_index=_value(date(2024, 6, 30), 105.0),
        trailing_values=trailing,
    )

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    assert record.price_forecast == pytest.approx(11.43)
    # 50 + 11.43 * 5 clamps to 100; realized growth needs a full year of points.
    assert record.growth_score == 100


def test_realized_growth_requires_twelve_points():
    trailing = [100.0] * 11 + [102.0]
    inputs = CellInputs(
        value_index=_value(date(2024, 6, 30), 102.0),
        trailing_values=trailing,
    )

    record = compute_cell_metrics("78704", inputs, ASSUMPTIONS, TODAY)

    # Realized growth of 2% scores 60; the 0.92% forecast scores 54.59.
    assert record.price_forecast == pytest.approx(0.92)
    assert record.growth_score == 57


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "metrics.duckdb")
    try:
        yield connection
    finally:
        connection.close()


def test_refresh_metrics_writes_one_row_per_zip_with_data(conn):
    ValueIndexRepository(conn).upsert(
        [
            _value(date(2024, 5, 31), 495_000, rent=2450),
            _value(date(2024, 6, 30), 500_000, rent=2500),
            _value(date(2024, 7, 31), None, rent=2550),
        ]
    )
    DemographicRepository(conn).upsert([_demographics(100_000)])
    reference = GeoReferenceSet.from_zips("test", ["78704", "78745"])

    result = refresh_metrics(conn, reference, finance=ASSUMPTIONS, today=TODAY)

    assert result.rows_processed == 1
    assert result.errors == []
    stored = DerivedMetricsRepository(conn).get("78704", TODAY)
    assert stored.mortgage_payment == pytest.approx(2631.73)
    # Rent comes from the latest row carrying a home value.
    assert stored.cap_rate == pytest.approx(2.4)
    assert DerivedMetricsRepository(conn).get("78745", TODAY) is None


def test_refresh_metrics_is_idempotent(conn):
    ValueIndexRepository(conn).upsert([_value(date(2024, 6, 30), 500_000, rent=2500)])
    reference = GeoReferenceSet.from_zips("test", ["78704"])

    refresh_metrics(conn, reference, finance=ASSUMPTIONS, today=TODAY)
    first = DerivedMetricsRepository(conn).get("78704", TODAY)
    refresh_metrics(conn, reference, finance=ASSUMPTIONS, today=TODAY)

    assert DerivedMetricsRepository(conn).count() == 1
    assert DerivedMetricsRepository(conn).get("78704", TODAY) == first


def test_refresh_metrics_reports_cell_errors_and_continues(conn, monkeypatch):
    ValueIndexRepository(conn).upsert([_value(date(2024, 6, 30), 500_000)])
    real_loader = metrics.load_cell_inputs

    def flaky_loader(connection, zip_code, today):
        if zip_code == "78745":
            raise RuntimeError("boom")
        return real_loader(connection, zip_code, today)

    monkeypatch.setattr(metrics, "load_cell_inputs", flaky_loader)
    reference = GeoReferenceSet.from_zips("test", ["78704", "78745"])

    result = refresh_metrics(conn, reference, finance=ASSUMPTIONS, today=TODAY)

    assert result.rows_processed == 1
    assert result.errors == ["Metrics for 78745: boom"]
