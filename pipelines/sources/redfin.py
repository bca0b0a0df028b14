"""Redfin zip-code market tracker ingestor.

The tracker is a single gzipped TSV covering every US region (several hundred MB
compressed). It is streamed to a temporary file and parsed in pandas chunks so only
rows for covered zips are ever held in memory.
"""

from __future__ import annotations

import logging
import tempfile
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Mapping

import duckdb
import httpx
import pandas as pd

from pipelines.common import download_to_file, upsert_in_batches, utc_now, years_before
from pipelines.geo import GeoReferenceSet, normalize_zip
from pipelines.model import MarketActivityObservation, RefreshResult
from storage.repositories import MarketActivityRepository

REDFIN_URL = (
    "https://redfin-public-data.s3.us-west-2.amazonaws.com/"
    "redfin_market_tracker/zip_code_market_tracker.tsv000.gz"
)
CHUNK_ROWS = 200_000

ZIP_REGION_TYPES = {"zip code", "zip_code"}
ZIP_REGION_TYPE_ID = "2"
# "All Residential" is published as 1 or -1 depending on the file vintage.
ALL_RESIDENTIAL_TYPE_IDS = {"", "1", "-1"}

_NULL_STRINGS = {"", "n/a", "nan", "na", "null"}

logger = logging.getLogger(__name__)


def parse_num(value: object) -> float | None:
    """Parse a Redfin number such as ``"$425,000"``; blanks and ``N/A`` become ``None``."""

    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in _NULL_STRINGS:
        return None
    try:
        number = float(text.replace("$", "").replace(",", ""))
    except ValueError:
        return None
    return None if pd.isna(number) else number


def parse_int(value: object) -> int | None:
    number = parse_num(value)
    return int(number) if number is not None else None


def _field(row: Mapping[str, str], name: str) -> str:
    value = row.get(name)
    return "" if value is None else str(value).strip()


def _is_zip_region(row: Mapping[str, str]) -> bool:
    region_type = _field(row, "region_type").lower()
    return region_type in ZIP_REGION_TYPES or _field(row, "region_type_id") == ZIP_REGION_TYPE_ID


def _to_observation(
    row: Mapping[str, str],
    reference: GeoReferenceSet,
    cutoff: date,
    fetched_at: datetime,
) -> MarketActivityObservation | None:
    if not _is_zip_region(row):
        return None
    if _field(row, "property_type_id") not in ALL_RESIDENTIAL_TYPE_IDS:
        return None

    zip_code = normalize_zip(_field(row, "region"))
    if not zip_code or zip_code not in reference:
        return None

    try:
        period_start = date.fromisoformat(_field(row, "period_begin")[:10])
    except ValueError:
        return None
    if period_start < cutoff:
        return None

    return MarketActivityObservation(
        zip=zip_code,
        period_start=period_start,
        median_sale_price=parse_num(row.get("median_sale_price")),
        homes_sold=parse_int(row.get("homes_sold")),
        median_dom=parse_int(row.get("median_dom")),
        inventory=parse_int(row.get("inventory")),
        price_drops_pct=parse_num(row.get("price_drops")),
        sale_to_list_ratio=parse_num(row.get("avg_sale_to_list")),
        new_listings=parse_int(row.get("new_listings")),
        fetched_at=fetched_at,
    )


def collect_observations(
    rows: Iterable[Mapping[str, str]],
    reference: GeoReferenceSet,
    *,
    cutoff: date,
    fetched_at: datetime,
) -> dict[tuple[str, date], MarketActivityObservation]:
    """Keep covered zip rows since ``cutoff``; later duplicates of a (zip, period) win."""

    kept: dict[tuple[str, date], MarketActivityObservation] = {}
    for row in rows:
        observation = _to_observation(row, reference, cutoff, fetched_at)
        if observation is not None:
            kept[(observation.zip, observation.period_start)] = observation
    return kept


def parse_market_activity_file(
    path: str | Path,
    reference: GeoReferenceSet,
    *,
    cutoff: date,
    fetched_at: datetime,
    chunksize: int = CHUNK_ROWS,
) -> list[MarketActivityObservation]:
    """Parse a (gzipped) Redfin tracker TSV into observations, ordered by zip and period."""

    kept: dict[tuple[str, date], MarketActivityObservation] = {}
    total = 0
    reader = pd.read_csv(
        path,
        sep="\t",
        dtype=str,
        keep_default_na=False,
        compression="infer",
        chunksize=chunksize,
        on_bad_lines="skip",
    )
    with reader:
        for chunk in reader:
            chunk.columns = [str(column).strip().lower() for column in chunk.columns]
            total += len(chunk)
            kept.update(
                collect_observations(
                    chunk.to_dict(orient="records"),
                    reference,
                    cutoff=cutoff,
                    fetched_at=fetched_at,
                )
            )
            logger.debug("Redfin: scanned %s rows, %s matches so far.", total, len(kept))

    logger.info("Redfin: parsed %s rows, %s covered zip-periods.", total, len(kept))
    return [kept[key] for key in sorted(kept)]


async def refresh_market_activity(
    conn: duckdb.DuckDBPyConnection,
    reference: GeoReferenceSet,
    *,
    window_years: int = 5,
    batch_size: int = 500,
    now: datetime | None = None,
    url: str = REDFIN_URL,
) -> RefreshResult:
    """Download the Redfin tracker and upsert the covered zip periods."""

    fetched_at = now or utc_now()
    cutoff = years_before(fetched_at.date(), window_years)
    logger.info("Starting Redfin market tracker refresh (periods since %s)...", cutoff)

    with tempfile.TemporaryDirectory(prefix="redfin_") as workdir:
        target = Path(workdir) / "zip_code_market_tracker.tsv.gz"
        try:
            await download_to_file(url, target)
            records = parse_market_activity_file(
                target, reference, cutoff=cutoff, fetched_at=fetched_at
            )
        except (httpx.HTTPError, OSError, ValueError, pd.errors.ParserError) as exc:
            logger.error("Redfin download failed: %s", exc)
            return RefreshResult(rows_processed=0, errors=[f"Download failed: {exc}"])

    if not records:
        logger.warning("No reference-set rows found in Redfin data.")
        return RefreshResult(rows_processed=0, errors=["No reference-set rows in Redfin data"])

    logger.info("Upserting %s Redfin records in batches of %s...", len(records), batch_size)
    repository = MarketActivityRepository(conn)
    written, errors = upsert_in_batches(
        repository.upsert, records, batch_size=batch_size, label="Redfin"
    )
    logger.info("Redfin refresh complete. %s rows upserted, %s errors.", written, len(errors))
    return RefreshResult(rows_processed=written, errors=errors)


__all__ = [
    "REDFIN_URL",
    "parse_num",
    "collect_observations",
    "parse_market_activity_file",
    "refresh_market_activity",
]
