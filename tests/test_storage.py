from datetime import date, datetime

import pytest

from pipelines.model import HistorySnapshot, ValueIndexObservation
from storage.db import VALUE_INDEX_TABLE, connect, get_database_path, transaction
from storage.repositories import (
    HistoryRepository,
    LoadStatusRepository,
    ValueIndexRepository,
)

FETCHED_AT = datetime(2024, 7, 1, 12, 0)


@pytest.fixture()
def conn(tmp_path):
    connection = connect(tmp_path / "storage.duckdb")
    try:
        yield connection
    finally:
        connection.close()


def _value(on: date, home_value: float | None) -> ValueIndexObservation:
    return ValueIndexObservation(zip="78704", date=on, home_value=home_value, fetched_at=FETCHED_AT)


def _snapshot(on: date) -> HistorySnapshot:
    return HistorySnapshot(zip="78704", date=on, market_temperature="Balanced", market_score=50)


def test_database_path_prefers_override_then_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("MARKET_PULSE_DB_PATH", str(tmp_path / "env.duckdb"))

    assert get_database_path(tmp_path / "explicit.duckdb") == tmp_path / "explicit.duckdb"
    assert get_database_path() == tmp_path / "env.duckdb"


def test_upsert_replaces_rows_with_the_same_key(conn):
    repository = ValueIndexRepository(conn)

    repository.upsert([_value(date(2024, 5, 31), 400_000), _value(date(2024, 6, 30), 410_000)])
    repository.upsert([_value(date(2024, 6, 30), 415_000)])

    assert repository.count() == 2
    assert repository.latest_with_home_value("78704").home_value == pytest.approx(415_000)
    assert repository.upsert([]) == 0


def test_latest_with_home_value_skips_rent_only_rows(conn):
    repository = ValueIndexRepository(conn)
    repository.upsert([_value(date(2024, 6, 30), 410_000), _value(date(2024, 7, 31), None)])

    latest = repository.latest_with_home_value("78704")
    history = repository.home_value_history("78704")

    assert latest.date == date(2024, 6, 30)
    assert [row.date for row in history] == [date(2024, 6, 30)]


def test_transaction_rolls_back_on_error(conn):
    with pytest.raises(RuntimeError):
        with transaction(conn):
            conn.execute(
                f"INSERT INTO {VALUE_INDEX_TABLE} (zip, date, home_value, fetched_at) "
                "VALUES (?, ?, ?, ?)",
                ["78704", date(2024, 6, 30), 1.0, FETCHED_AT],
            )
            raise RuntimeError("abort")

    assert ValueIndexRepository(conn).count() == 0


def test_history_between_is_inclusive_and_ordered(conn):
    repository = HistoryRepository(conn)
    assert repository.latest_date() is None

    repository.upsert([_snapshot(date(2024, 6, day)) for day in (5, 1, 3, 9)])

    rows = repository.between("78704", date(2024, 6, 1), date(2024, 6, 5))
    assert [row.date for row in rows] == [date(2024, 6, 1), date(2024, 6, 3), date(2024, 6, 5)]
    assert repository.latest_date() == date(2024, 6, 9)


def test_load_status_record_overwrites_previous_run(conn):
    repository = LoadStatusRepository(conn)

    repository.record("metrics", loaded_at=FETCHED_AT, row_count=10, error_count=2)
    repository.record("metrics", loaded_at=datetime(2024, 7, 2, 12, 0), row_count=12, error_count=0)

    status = repository.get("metrics")
    assert status.loaded_at == datetime(2024, 7, 2, 12, 0)
    assert (status.row_count, status.error_count) == (12, 0)
    assert repository.get("history") is None


def test_build_query_composes_clauses():
    sql = HistoryRepository.build_query("zip = ?", order_by="date DESC", limit=5)

    assert sql.startswith("SELECT zip, date, median_home_value")
    assert sql.endswith("FROM market_history WHERE zip = ? ORDER BY date DESC LIMIT 5")
