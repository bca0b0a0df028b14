"""DuckDB persistence utilities for raw observations, derived metrics and history."""

from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import duckdb

DB_ENV_VAR = "MARKET_PULSE_DB_PATH"
DEFAULT_DB_PATH = Path("data/market_pulse.duckdb")

VALUE_INDEX_TABLE = "value_index_observations"
DEMOGRAPHIC_TABLE = "demographic_observations"
MARKET_ACTIVITY_TABLE = "market_activity_observations"
DERIVED_METRICS_TABLE = "derived_metrics"
HISTORY_TABLE = "market_history"
LOAD_STATUS_TABLE = "load_status"

_SCHEMA: dict[str, str] = {
    VALUE_INDEX_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {VALUE_INDEX_TABLE} (
            zip VARCHAR(5) NOT NULL,
            date DATE NOT NULL,
            home_value DOUBLE,
            single_family_value DOUBLE,
            condo_value DOUBLE,
            rent_value DOUBLE,
            fetched_at TIMESTAMP NOT NULL,
            PRIMARY KEY (zip, date)
        )
    """,
    DEMOGRAPHIC_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {DEMOGRAPHIC_TABLE} (
            zip VARCHAR(5) NOT NULL,
            year INTEGER NOT NULL,
            population BIGINT,
            median_income DOUBLE,
            median_age DOUBLE,
            homeownership_rate DOUBLE,
            poverty_rate DOUBLE,
            college_degree_rate DOUBLE,
            remote_work_pct DOUBLE,
            housing_units BIGINT,
            family_households_pct DOUBLE,
            homeowners_25_to_44_pct DOUBLE,
            homeowners_75_plus_pct DOUBLE,
            fetched_at TIMESTAMP NOT NULL,
            PRIMARY KEY (zip, year)
        )
    """,
    MARKET_ACTIVITY_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {MARKET_ACTIVITY_TABLE} (
            zip VARCHAR(5) NOT NULL,
            period_start DATE NOT NULL,
            median_sale_price DOUBLE,
            homes_sold INTEGER,
            median_dom INTEGER,
            inventory INTEGER,
            price_drops_pct DOUBLE,
            sale_to_list_ratio DOUBLE,
            new_listings INTEGER,
            fetched_at TIMESTAMP NOT NULL,
            PRIMARY KEY (zip, period_start)
        )
    """,
    DERIVED_METRICS_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {DERIVED_METRICS_TABLE} (
            zip VARCHAR(5) NOT NULL,
            date DATE NOT NULL,
            value_income_ratio DOUBLE,
            overvalued_pct DOUBLE,
            mortgage_payment DOUBLE,
            mtg_pct_income DOUBLE,
            salary_to_afford DOUBLE,
            cap_rate DOUBLE,
            buy_vs_rent DOUBLE,
            price_forecast DOUBLE,
            investor_score INTEGER,
            growth_score INTEGER,
            market_health_score INTEGER,
            PRIMARY KEY (zip, date)
        )
    """,
    HISTORY_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {HISTORY_TABLE} (
            zip VARCHAR(5) NOT NULL,
            date DATE NOT NULL,
            median_home_value DOUBLE,
            median_sale_price DOUBLE,
            homes_sold INTEGER,
            active_listings INTEGER,
            new_listings INTEGER,
            median_dom INTEGER,
            months_of_supply DOUBLE,
            sale_to_list_ratio DOUBLE,
            price_drops_pct DOUBLE,
            inventory_growth_mom DOUBLE,
            sales_growth_mom DOUBLE,
            price_growth_mom DOUBLE,
            price_growth_yoy DOUBLE,
            market_temperature VARCHAR(20) NOT NULL,
            market_score INTEGER NOT NULL,
            price_forecast DOUBLE,
            market_health_score INTEGER,
            data_source VARCHAR(50) NOT NULL,
            PRIMARY KEY (zip, date)
        )
    """,
    LOAD_STATUS_TABLE: f"""
        CREATE TABLE IF NOT EXISTS {LOAD_STATUS_TABLE} (
            status_key TEXT PRIMARY KEY,
            loaded_at TIMESTAMP NOT NULL,
            row_count INTEGER NOT NULL,
            error_count INTEGER NOT NULL
        )
    """,
}


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_schema(conn)
    return conn


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every pipeline table that does not already exist."""

    for ddl in _SCHEMA.values():
        conn.execute(ddl)


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run the enclosed statements atomically, rolling back on any error."""

    conn.begin()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


__all__ = [
    "connect",
    "ensure_schema",
    "transaction",
    "get_database_path",
    "VALUE_INDEX_TABLE",
    "DEMOGRAPHIC_TABLE",
    "MARKET_ACTIVITY_TABLE",
    "DERIVED_METRICS_TABLE",
    "HISTORY_TABLE",
    "LOAD_STATUS_TABLE",
]
