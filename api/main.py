"""Read-only FastAPI service exposing derived metrics and market history."""

from __future__ import annotations

import datetime as dt
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Sequence

import duckdb
from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel

from jobs.config import load_settings
from pipelines.geo import GeoReferenceSet, normalize_zip
from storage.db import DERIVED_METRICS_TABLE, connect
from storage.exports import export_to_csv, export_to_parquet
from storage.repositories import DerivedMetricsRepository, HistoryRepository

DEFAULT_LIMIT = 1000
MAX_LIMIT = 50000
ALLOWED_FORMATS = {"json", "csv", "parquet"}
load_dotenv()


@asynccontextmanager
async def lifespan(_: FastAPI):
    conn = connect()
    conn.close()
    yield


app = FastAPI(title="Market Pulse API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


def _reference() -> GeoReferenceSet:
    return load_settings().reference


def _check_format(format: str) -> str:
    fmt = format.lower()
    if fmt not in ALLOWED_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}'.")
    return fmt


def _check_zip(raw: str | None) -> str | None:
    if raw is None:
        return None
    zip_code = normalize_zip(raw)
    if not zip_code or zip_code not in _reference():
        raise HTTPException(status_code=404, detail=f"Unknown zip code '{raw}'")
    return zip_code


def _where(filters: Sequence[str]) -> str | None:
    return " AND ".join(filters) if filters else None


def _serialize(records: Sequence[BaseModel]) -> list[dict[str, Any]]:
    return [record.model_dump(mode="json") for record in records]


def _respond(
    background_tasks: BackgroundTasks,
    *,
    fmt: str,
    repository: DerivedMetricsRepository | HistoryRepository,
    where: str | None,
    params: list[Any],
    order_by: str,
    limit: int,
    filename: str,
):
    if fmt == "json":
        records = repository.select(where, params, order_by=order_by, limit=limit)
        return JSONResponse(content={"count": len(records), "items": _serialize(records)})

    query = repository.build_query(where, order_by=order_by, limit=limit)
    suffix = ".csv" if fmt == "csv" else ".parquet"
    media_type = "text/csv" if fmt == "csv" else "application/vnd.apache.parquet"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        dest = Path(tmp.name)

    if fmt == "csv":
        export_to_csv(repository.conn, dest, query=query, params=params)
    else:
        export_to_parquet(repository.conn, dest, query=query, params=params)

    def _cleanup(path: Path) -> None:
        path.unlink(missing_ok=True)

    background_tasks.add_task(_cleanup, dest)
    return FileResponse(
        dest, media_type=media_type, filename=f"{filename}{suffix}", background=background_tasks
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/zips")
def list_zips() -> dict[str, Any]:
    reference = _reference()
    return {"name": reference.name, "count": len(reference), "zips": list(reference)}


@app.get("/metrics")
def get_metrics(
    background_tasks: BackgroundTasks,
    format: str = Query("json", description="Response format: json, csv, or parquet"),
    zip: str | None = Query(None, description="5-digit zip code"),
    on: dt.date | None = Query(None, alias="date", description="Metrics date (defaults to latest)"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
):
    fmt = _check_format(format)
    zip_code = _check_zip(zip)

    filters: list[str] = []
    params: list[Any] = []
    if zip_code:
        filters.append("zip = ?")
        params.append(zip_code)
    if on:
        filters.append("date = ?")
        params.append(on)
    else:
        filters.append(
            f"date = (SELECT MAX(latest.date) FROM {DERIVED_METRICS_TABLE} AS latest "
            f"WHERE latest.zip = {DERIVED_METRICS_TABLE}.zip)"
        )

    conn = connect(read_only=True)
    try:
        return _respond(
            background_tasks,
            fmt=fmt,
            repository=DerivedMetricsRepository(conn),
            where=_where(filters),
            params=params,
            order_by="zip, date",
            limit=limit,
            filename="metrics",
        )
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    finally:
        conn.close()


@app.get("/history")
def get_history(
    background_tasks: BackgroundTasks,
    format: str = Query("json", description="Response format: json, csv, or parquet"),
    zip: str | None = Query(None, description="5-digit zip code"),
    start: dt.date | None = Query(None, description="First snapshot date (inclusive)"),
    end: dt.date | None = Query(None, description="Last snapshot date (inclusive)"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
):
    fmt = _check_format(format)
    zip_code = _check_zip(zip)
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="'start' must not be after 'end'.")

    filters: list[str] = []
    params: list[Any] = []
    if zip_code:
        filters.append("zip = ?")
        params.append(zip_code)
    if start:
        filters.append("date >= ?")
        params.append(start)
    if end:
        filters.append("date <= ?")
        params.append(end)

    conn = connect(read_only=True)
    try:
        return _respond(
            background_tasks,
            fmt=fmt,
            repository=HistoryRepository(conn),
            where=_where(filters),
            params=params,
            order_by="zip, date",
            limit=limit,
            filename="history",
        )
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    finally:
        conn.close()
