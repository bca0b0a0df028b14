"""Zillow home value (ZHVI) and observed rent (ZORI) ingestor.

Downloads the zip-level research CSVs, which carry one row per region and one column
per month, melts them to long format, merges the four datasets per (zip, month) and
upserts them as ``ValueIndexObservation`` rows.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from io import StringIO
from typing import Mapping

import duckdb
import httpx
import pandas as pd

from pipelines.common import fetch_text, upsert_in_batches, utc_now, years_before
from pipelines.geo import GeoReferenceSet
from pipelines.model import RefreshResult, ValueIndexObservation
from storage.repositories import ValueIndexRepository

ZILLOW_BASE_URL = "https://files.zillowstatic.com/research/public_csvs"

# Value column -> (display label, file path below ZILLOW_BASE_URL)
ZILLOW_DATASETS: Mapping[str, tuple[str, str]] = {
    "home_value": ("All Homes", "zhvi/Zip_zhvi_uc_sfrcondo_tier_0.33_0.67_sm_sa_month.csv"),
    "single_family_value": ("Single Family", "zhvi/Zip_zhvi_uc_sfr_tier_0.33_0.67_sm_sa_month.csv"),
    "condo_value": ("Condo", "zhvi/Zip_zhvi_uc_condo_tier_0.33_0.67_sm_sa_month.csv"),
    "rent_value": ("Rental", "zori/Zip_zori_uc_sfrcondomfr_sm_sa_month.csv"),
}
VALUE_COLUMNS = tuple(ZILLOW_DATASETS)

_DATE_COLUMN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

logger = logging.getLogger(__name__)


def parse_zillow_csv(csv_text: str, value_col: str, reference: GeoReferenceSet) -> pd.DataFrame:
    """Melt a wide Zillow CSV into ``zip, date, <value_col>`` rows for covered zips.

    Any number of period columns is accepted; non-date columns other than
    ``RegionName`` are ignored.
    """

    frame = pd.read_csv(StringIO(csv_text), dtype={"RegionName": str})
    if "RegionName" not in frame.columns:
        raise ValueError("Zillow CSV is missing the RegionName column")

    frame["zip"] = frame["RegionName"].str.strip().str.zfill(5)
    frame = frame[frame["zip"].isin(reference.zips)]
    date_cols = [col for col in frame.columns if _DATE_COLUMN.match(str(col))]
    if frame.empty or not date_cols:
        return pd.DataFrame(columns=["zip", "date", value_col])

    long = frame.melt(id_vars=["zip"], value_vars=date_cols, var_name="date", value_name=value_col)
    long[value_col] = pd.to_numeric(long[value_col], errors="coerce")
    long = long.dropna(subset=[value_col])
    # Duplicate RegionName rows collapse to the last one, matching upsert semantics.
    return long.drop_duplicates(subset=["zip", "date"], keep="last").reset_index(drop=True)


def merge_value_frames(
    frames: Mapping[str, pd.DataFrame],
    *,
    cutoff: date,
    fetched_at: datetime,
) -> list[ValueIndexObservation]:
    """Combine per-dataset frames into one observation per (zip, date) since ``cutoff``."""

    merged: pd.DataFrame | None = None
    for value_col, frame in frames.items():
        subset = frame[["zip", "date", value_col]]
        merged = subset if merged is None else merged.merge(subset, on=["zip", "date"], how="outer")

    if merged is None or merged.empty:
        return []

    merged = merged[merged["date"] >= cutoff.isoformat()]
    present = [col for col in VALUE_COLUMNS if col in merged.columns]
    merged = merged.dropna(subset=present, how="all").sort_values(["zip", "date"])

    records: list[ValueIndexObservation] = []
    for row in merged.to_dict(orient="records"):
        values = {col: _none_if_nan(row.get(col)) for col in VALUE_COLUMNS}
        records.append(
            ValueIndexObservation(
                zip=row["zip"],
                date=date.fromisoformat(row["date"]),
                fetched_at=fetched_at,
                **values,
            )
        )
    return records


def _none_if_nan(value: object) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)


async def refresh_value_index(
    conn: duckdb.DuckDBPyConnection,
    reference: GeoReferenceSet,
    *,
    window_years: int = 10,
    batch_size: int = 500,
    now: datetime | None = None,
) -> RefreshResult:
    """Download all Zillow datasets and upsert the merged observations."""

    fetched_at = now or utc_now()
    logger.info("Starting Zillow ZHVI/ZORI refresh for %s zips...", len(reference))
    errors: list[str] = []

    frames: dict[str, pd.DataFrame] = {}
    for value_col, (label, path) in ZILLOW_DATASETS.items():
        url = f"{ZILLOW_BASE_URL}/{path}"
        try:
            csv_text = await fetch_text(url)
            frames[value_col] = parse_zillow_csv(csv_text, value_col, reference)
            logger.info("Zillow %s: %s rows for covered zips.", label, len(frames[value_col]))
        except (httpx.HTTPError, ValueError, pd.errors.ParserError) as exc:
            errors.append(f"{label}: {exc}")
            logger.error("Failed to load Zillow %s: %s", label, exc)

    cutoff = years_before(fetched_at.date(), window_years)
    records = merge_value_frames(frames, cutoff=cutoff, fetched_at=fetched_at)
    logger.info("Upserting %s Zillow records in batches of %s...", len(records), batch_size)

    repository = ValueIndexRepository(conn)
    written, batch_errors = upsert_in_batches(
        repository.upsert, records, batch_size=batch_size, label="Zillow"
    )
    errors.extend(batch_errors)

    logger.info("Zillow refresh complete. %s rows upserted, %s errors.", written, len(errors))
    return RefreshResult(rows_processed=written, errors=errors)


__all__ = [
    "ZILLOW_BASE_URL",
    "ZILLOW_DATASETS",
    "parse_zillow_csv",
    "merge_value_frames",
    "refresh_value_index",
]
