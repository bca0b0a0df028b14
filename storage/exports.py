"""Export helpers that materialize DuckDB query results as files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import duckdb


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _copy(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    query: str,
    params: Sequence[Any] | None,
    options: str,
) -> Path:
    dest_path = Path(destination)
    _ensure_parent(dest_path)
    sanitized_path = str(dest_path).replace("'", "''")
    conn.execute(f"COPY ({query}) TO '{sanitized_path}' ({options})", list(params or []))
    return dest_path


def export_to_csv(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    query: str,
    params: Sequence[Any] | None = None,
    include_header: bool = True,
) -> Path:
    """Materialize query results into a CSV file using DuckDB's COPY command."""

    header = "TRUE" if include_header else "FALSE"
    return _copy(conn, destination, query, params, f"FORMAT CSV, HEADER {header}")


def export_to_parquet(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    query: str,
    params: Sequence[Any] | None = None,
) -> Path:
    """Export query results to a Parquet file."""

    return _copy(conn, destination, query, params, "FORMAT PARQUET")


__all__ = ["export_to_csv", "export_to_parquet"]
