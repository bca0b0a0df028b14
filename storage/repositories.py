"""Per-entity repositories over the DuckDB stores.

Each repository exposes an idempotent ``upsert`` keyed by (zip, period) plus the
narrow set of reads its consumers need, so pipeline logic never issues SQL directly.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, ClassVar, Generic, Sequence, TypeVar

import duckdb
from pydantic import BaseModel

from pipelines.model import (
    DemographicObservation,
    DerivedMetricRecord,
    HistorySnapshot,
    LoadStatus,
    MarketActivityObservation,
    ValueIndexObservation,
)
from storage.db import (
    DEMOGRAPHIC_TABLE,
    DERIVED_METRICS_TABLE,
    HISTORY_TABLE,
    LOAD_STATUS_TABLE,
    MARKET_ACTIVITY_TABLE,
    VALUE_INDEX_TABLE,
    transaction,
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Repository(Generic[ModelT]):
    table: ClassVar[str]
    model: ClassVar[type[BaseModel]]

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn

    @classmethod
    def columns(cls) -> list[str]:
        return list(cls.model.model_fields)

    def upsert(self, records: Sequence[ModelT]) -> int:
        """Insert or replace ``records`` atomically; returns the number written."""

        if not records:
            return 0
        columns = self.columns()
        serialized = [_serialize(record, columns) for record in records]
        placeholders = ", ".join("?" for _ in columns)
        with transaction(self.conn):
            self.conn.executemany(
                f"INSERT OR REPLACE INTO {self.table} ({', '.join(columns)}) "
                f"VALUES ({placeholders})",
                serialized,
            )
        return len(serialized)

    @classmethod
    def build_query(
        cls,
        where: str | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> str:
        sql = f"SELECT {', '.join(cls.columns())} FROM {cls.table}"
        if where:
            sql += f" WHERE {where}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return sql

    def select(
        self,
        where: str | None = None,
        params: Sequence[Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[ModelT]:
        sql = self.build_query(where, order_by=order_by, limit=limit)
        cursor = self.conn.execute(sql, list(params or []))
        names = [column[0] for column in cursor.description]
        return [self.model(**dict(zip(names, row))) for row in cursor.fetchall()]

    def _first(self, where: str, params: Sequence[Any], *, order_by: str) -> ModelT | None:
        rows = self.select(where, params, order_by=order_by, limit=1)
        return rows[0] if rows else None

    def count(self) -> int:
        return self.conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]


def _serialize(record: BaseModel, columns: Sequence[str]) -> tuple:
    data = record.model_dump()
    return tuple(data[column] for column in columns)


class ValueIndexRepository(_Repository[ValueIndexObservation]):
    table = VALUE_INDEX_TABLE
    model = ValueIndexObservation

    def latest_with_home_value(self, zip_code: str) -> ValueIndexObservation | None:
        return self._first(
            "zip = ? AND home_value IS NOT NULL", [zip_code], order_by="date DESC"
        )

    def home_value_history(self, zip_code: str) -> list[ValueIndexObservation]:
        """Observations with a home value for ``zip_code``, oldest first."""

        return self.select(
            "zip = ? AND home_value IS NOT NULL", [zip_code], order_by="date"
        )


class DemographicRepository(_Repository[DemographicObservation]):
    table = DEMOGRAPHIC_TABLE
    model = DemographicObservation

    def latest(self, zip_code: str) -> DemographicObservation | None:
        return self._first("zip = ?", [zip_code], order_by="year DESC")

    def incomes_by_year(self, zip_code: str) -> dict[int, float]:
        """Known median incomes for ``zip_code`` keyed by vintage, oldest first."""

        rows = self.select(
            "zip = ? AND median_income IS NOT NULL", [zip_code], order_by="year"
        )
        return {row.year: row.median_income for row in rows}


class MarketActivityRepository(_Repository[MarketActivityObservation]):
    table = MARKET_ACTIVITY_TABLE
    model = MarketActivityObservation

    def latest(self, zip_code: str) -> MarketActivityObservation | None:
        return self._first("zip = ?", [zip_code], order_by="period_start DESC")


class DerivedMetricsRepository(_Repository[DerivedMetricRecord]):
    table = DERIVED_METRICS_TABLE
    model = DerivedMetricRecord

    def get(self, zip_code: str, on: date) -> DerivedMetricRecord | None:
        return self._first("zip = ? AND date = ?", [zip_code, on], order_by="date")

    def latest(self, zip_code: str) -> DerivedMetricRecord | None:
        return self._first("zip = ?", [zip_code], order_by="date DESC")


class HistoryRepository(_Repository[HistorySnapshot]):
    table = HISTORY_TABLE
    model = HistorySnapshot

    def get(self, zip_code: str, on: date) -> HistorySnapshot | None:
        return self._first("zip = ? AND date = ?", [zip_code, on], order_by="date")

    def between(self, zip_code: str, start: date, end: date) -> list[HistorySnapshot]:
        """Snapshots for ``zip_code`` dated within ``[start, end]``, oldest first."""

        return self.select(
            "zip = ? AND date BETWEEN ? AND ?", [zip_code, start, end], order_by="date"
        )

    def latest_date(self) -> date | None:
        row = self.conn.execute(f"SELECT MAX(date) FROM {self.table}").fetchone()
        return row[0] if row else None


class LoadStatusRepository(_Repository[LoadStatus]):
    table = LOAD_STATUS_TABLE
    model = LoadStatus

    def record(
        self, status_key: str, *, loaded_at: datetime, row_count: int, error_count: int
    ) -> None:
        self.upsert(
            [
                LoadStatus(
                    status_key=status_key,
                    loaded_at=loaded_at,
                    row_count=row_count,
                    error_count=error_count,
                )
            ]
        )

    def get(self, status_key: str) -> LoadStatus | None:
        return self._first("status_key = ?", [status_key], order_by="loaded_at DESC")


__all__ = [
    "ValueIndexRepository",
    "DemographicRepository",
    "MarketActivityRepository",
    "DerivedMetricsRepository",
    "HistoryRepository",
    "LoadStatusRepository",
]
