"""Named pipeline stages and the entry points schedulers call.

Each stage is a row in ``STAGES``: a name, a description and an async runner taking a
connection, the settings and the run timestamp. ``run_stage`` is the single idempotent
entry point per stage; it records a ``load_status`` row and never lets one stage's
failure escape to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

import duckdb

from jobs.config import PipelineSettings, load_settings
from pipelines.common import utc_now
from pipelines.history import create_daily_snapshot
from pipelines.metrics import refresh_metrics
from pipelines.model import RefreshResult, SnapshotResult
from pipelines.sources.acs import refresh_demographics
from pipelines.sources.redfin import refresh_market_activity
from pipelines.sources.zillow import refresh_value_index
from storage.db import connect
from storage.repositories import HistoryRepository, LoadStatusRepository

logger = logging.getLogger(__name__)

StageResult = RefreshResult | SnapshotResult
StageRunner = Callable[[duckdb.DuckDBPyConnection, PipelineSettings, datetime], Awaitable[StageResult]]

ALL_STAGES = "all"


def local_date(now: datetime, timezone: str) -> date:
    """Calendar date of the naive UTC ``now`` in ``timezone``."""

    return now.replace(tzinfo=UTC).astimezone(ZoneInfo(timezone)).date()


async def _value_index(conn, settings: PipelineSettings, now: datetime) -> StageResult:
    return await refresh_value_index(
        conn,
        settings.reference,
        window_years=settings.value_index_window_years,
        batch_size=settings.value_index_batch_size,
        now=now,
    )


async def _demographics(conn, settings: PipelineSettings, now: datetime) -> StageResult:
    return await refresh_demographics(
        conn,
        settings.reference,
        year=settings.census_year,
        api_key=settings.census_api_key,
        batch_size=settings.census_batch_size,
        now=now,
    )


async def _market_activity(conn, settings: PipelineSettings, now: datetime) -> StageResult:
    return await refresh_market_activity(
        conn,
        settings.reference,
        window_years=settings.market_activity_window_years,
        batch_size=settings.market_activity_batch_size,
        now=now,
    )


async def _metrics(conn, settings: PipelineSettings, now: datetime) -> StageResult:
    return refresh_metrics(
        conn,
        settings.reference,
        finance=settings.finance,
        today=local_date(now, settings.timezone),
    )


async def _history(conn, settings: PipelineSettings, now: datetime) -> StageResult:
    return create_daily_snapshot(
        conn, settings.reference, today=local_date(now, settings.timezone)
    )


@dataclass(frozen=True)
class Stage:
    name: str
    description: str
    runner: StageRunner

    def cron(self, settings: PipelineSettings) -> str:
        return settings.schedule_for(self.name)


STAGES: tuple[Stage, ...] = (
    Stage("value_index", "Zillow home value and rent indices", _value_index),
    Stage("demographics", "Census ACS 5-year demographics by ZCTA", _demographics),
    Stage("market_activity", "Redfin zip-code market tracker", _market_activity),
    Stage("metrics", "Derived affordability, investor and growth metrics", _metrics),
    Stage("history", "Daily market history snapshot", _history),
)
STAGE_NAMES = tuple(stage.name for stage in STAGES)


def get_stage(name: str) -> Stage:
    for stage in STAGES:
        if stage.name == name:
            return stage
    raise ValueError(f"Unknown stage {name!r}; expected one of: {', '.join(STAGE_NAMES)}")


def _processed(result: StageResult) -> int:
    if isinstance(result, SnapshotResult):
        return result.snapshots_created
    return result.rows_processed


def _execute(
    stage: Stage,
    conn: duckdb.DuckDBPyConnection,
    settings: PipelineSettings,
    now: datetime,
) -> dict[str, Any]:
    logger.info("Running stage %s...", stage.name)
    try:
        result = asyncio.run(stage.runner(conn, settings, now))
    except Exception as exc:
        logger.exception("Stage %s failed", stage.name)
        summary: dict[str, Any] = {"errors": [f"Fatal: {exc}"]}
        processed = 0
    else:
        summary = result.model_dump(by_alias=True)
        processed = _processed(result)

    try:
        LoadStatusRepository(conn).record(
            stage.name,
            loaded_at=now,
            row_count=processed,
            error_count=len(summary["errors"]),
        )
    except duckdb.Error as exc:
        logger.error("Could not record load status for %s: %s", stage.name, exc)
        summary["errors"].append(f"Load status: {exc}")

    logger.info(
        "Stage %s finished (processed=%s, errors=%s).",
        stage.name,
        processed,
        len(summary["errors"]),
    )
    return summary


def run_stage(
    name: str,
    *,
    settings: PipelineSettings | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Run one stage and return its camelCase result (``rowsProcessed``/``errors``)."""

    stage = get_stage(name)
    settings = settings or load_settings()
    owns_connection = conn is None
    conn = conn or connect()
    try:
        return _execute(stage, conn, settings, now or utc_now())
    finally:
        if owns_connection:
            conn.close()


def run_pipeline(
    *,
    settings: PipelineSettings | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    now: datetime | None = None,
    stages: tuple[str, ...] = STAGE_NAMES,
) -> dict[str, dict[str, Any]]:
    """Run ``stages`` in order on one connection and log a summary."""

    settings = settings or load_settings()
    now = now or utc_now()
    owns_connection = conn is None
    conn = conn or connect()
    try:
        results = {name: _execute(get_stage(name), conn, settings, now) for name in stages}
    finally:
        if owns_connection:
            conn.close()

    logger.info("Pipeline summary:")
    for name, summary in results.items():
        processed = summary.get("rowsProcessed", summary.get("snapshotsCreated", 0))
        logger.info("  %-16s processed=%s errors=%s", name, processed, len(summary["errors"]))
        for error in summary["errors"]:
            logger.warning("  %-16s %s", name, error)
    return results


def snapshot_age_hours(conn: duckdb.DuckDBPyConnection, now: datetime) -> float | None:
    """Hours since the latest history snapshot was written, ``None`` if there is none.

    The ``history`` load status is recorded for failed runs too, so its timestamp is
    only trusted when that run wrote snapshots without errors. Otherwise the age is
    counted from midnight of the latest snapshot date.
    """

    latest = HistoryRepository(conn).latest_date()
    if latest is None:
        return None
    written_at = datetime.combine(latest, time.min)
    status = LoadStatusRepository(conn).get("history")
    if status and status.row_count > 0 and status.error_count == 0:
        written_at = max(written_at, status.loaded_at)
    return (now - written_at).total_seconds() / 3600


def ensure_fresh(
    *,
    settings: PipelineSettings | None = None,
    conn: duckdb.DuckDBPyConnection | None = None,
    now: datetime | None = None,
) -> dict[str, dict[str, Any]] | None:
    """Recompute metrics and the snapshot when the latest snapshot is missing or stale.

    Returns the stage results when a recompute ran, ``None`` when the data was fresh.
    """

    settings = settings or load_settings()
    now = now or utc_now()
    owns_connection = conn is None
    conn = conn or connect()
    try:
        age = snapshot_age_hours(conn, now)
        if age is not None and age <= settings.freshness_max_age_hours:
            logger.info("History snapshot is fresh (%.1f hours old).", age)
            return None
        if age is None:
            logger.warning("No history snapshot found; recomputing metrics and snapshot.")
        else:
            logger.warning(
                "History snapshot is %.1f hours old (max %s); recomputing.",
                age,
                settings.freshness_max_age_hours,
            )
        return run_pipeline(settings=settings, conn=conn, now=now, stages=("metrics", "history"))
    finally:
        if owns_connection:
            conn.close()


__all__ = [
    "ALL_STAGES",
    "STAGES",
    "STAGE_NAMES",
    "Stage",
    "get_stage",
    "run_stage",
    "run_pipeline",
    "ensure_fresh",
    "snapshot_age_hours",
]
