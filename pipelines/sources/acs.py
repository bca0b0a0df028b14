"""Census American Community Survey ingestor.

Retrieves ACS 5-year statistics for every ZCTA in one request, keeps the covered zips
and converts them into ``DemographicObservation`` rows, including the rates derived
from raw counts (homeownership, poverty, degree attainment, remote work, ...).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Sequence

import duckdb
import httpx

from pipelines.common import fetch_json, upsert_in_batches, utc_now
from pipelines.geo import GeoReferenceSet, normalize_zip
from pipelines.model import DemographicObservation, RefreshResult
from pipelines.numeric import safe_pct, sum_present
from storage.repositories import DemographicRepository

ACS_BASE_URL = "https://api.census.gov/data"
ACS_DEFAULT_DATASET = "acs/acs5"
ZCTA_GEOGRAPHY = "zip code tabulation area"

ACS_VARIABLES: Mapping[str, str] = {
    "B01003_001E": "population",
    "B19013_001E": "median income",
    "B01002_001E": "median age",
    "B25003_001E": "tenure total",
    "B25003_002E": "owner occupied",
    "B17001_001E": "poverty status total",
    "B17001_002E": "below poverty",
    "B15003_001E": "education total (25+)",
    "B15003_022E": "bachelor's degree",
    "B15003_023E": "master's degree",
    "B15003_024E": "professional degree",
    "B15003_025E": "doctorate",
    "B08006_001E": "commuting total",
    "B08006_017E": "worked from home",
    "B25001_001E": "housing units",
    "B11001_001E": "total households",
    "B11001_002E": "family households",
    "B25007_002E": "owner occupied by age total",
    "B25007_004E": "owner householder 25-34",
    "B25007_005E": "owner householder 35-44",
    "B25007_010E": "owner householder 75-84",
    "B25007_011E": "owner householder 85+",
}

COLLEGE_DEGREE_VARIABLES = ("B15003_022E", "B15003_023E", "B15003_024E", "B15003_025E")
OWNERS_25_TO_44_VARIABLES = ("B25007_004E", "B25007_005E")
OWNERS_75_PLUS_VARIABLES = ("B25007_010E", "B25007_011E")

_SENTINEL_STRINGS = {"", "N/A", "NA", "null", "Null", "-"}
_SENTINEL_NUMBERS = {"-666666666", "-888888888", "-999999999"}

logger = logging.getLogger(__name__)

RawCounts = Mapping[str, float | None]


class VintageUnavailable(RuntimeError):
    """Raised when an ACS vintage cannot be fetched or has no usable rows."""


def _coerce_numeric(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None
    if value in _SENTINEL_STRINGS or value in _SENTINEL_NUMBERS:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _to_int(value: float | None) -> int | None:
    return int(round(value)) if value is not None else None


def _round2(value: float | None) -> float | None:
    return round(value, 2) if value is not None else None


def parse_acs_payload(
    payload: Any,
    reference: GeoReferenceSet,
    variables: Sequence[str] = tuple(ACS_VARIABLES),
) -> dict[str, dict[str, float | None]]:
    """Map covered ZCTAs to their raw variable values.

    The Census API answers with a header row followed by data rows. An empty payload
    or one without a ZCTA column means the vintage is unusable.
    """

    if not isinstance(payload, list) or len(payload) < 2:
        raise VintageUnavailable("Census API returned no data rows")

    header_row = payload[0]
    if not isinstance(header_row, list):
        raise VintageUnavailable("Census API returned an unexpected header row")

    zcta_col = next(
        (idx for idx, name in enumerate(header_row) if ZCTA_GEOGRAPHY in str(name).lower()),
        None,
    )
    if zcta_col is None:
        raise VintageUnavailable("Could not find ZCTA column in Census response")

    indices = {name: header_row.index(name) for name in variables if name in header_row}

    result: dict[str, dict[str, float | None]] = {}
    for row in payload[1:]:
        if not isinstance(row, list) or len(row) != len(header_row):
            continue
        zcta = normalize_zip(row[zcta_col])
        if not zcta or zcta not in reference:
            continue
        values = {name: _coerce_numeric(row[idx]) for name, idx in indices.items()}
        if all(value is None for value in values.values()):
            continue
        result[zcta] = values
    return result


def compute_demographic_rates(raw: RawCounts) -> dict[str, float | None]:
    """Derive percentage rates from raw ACS counts using null-safe division."""

    owners_by_age_total = raw.get("B25007_002E")
    return {
        "homeownership_rate": safe_pct(raw.get("B25003_002E"), raw.get("B25003_001E")),
        "poverty_rate": safe_pct(raw.get("B17001_002E"), raw.get("B17001_001E")),
        "college_degree_rate": safe_pct(
            sum_present(raw.get(name) for name in COLLEGE_DEGREE_VARIABLES),
            raw.get("B15003_001E"),
        ),
        "remote_work_pct": safe_pct(raw.get("B08006_017E"), raw.get("B08006_001E")),
        "family_households_pct": safe_pct(raw.get("B11001_002E"), raw.get("B11001_001E")),
        "homeowners_25_to_44_pct": safe_pct(
            sum_present(raw.get(name) for name in OWNERS_25_TO_44_VARIABLES),
            owners_by_age_total,
        ),
        "homeowners_75_plus_pct": safe_pct(
            sum_present(raw.get(name) for name in OWNERS_75_PLUS_VARIABLES),
            owners_by_age_total,
        ),
    }


def build_observation(
    zip_code: str, year: int, raw: RawCounts, *, fetched_at: datetime
) -> DemographicObservation:
    rates = {key: _round2(value) for key, value in compute_demographic_rates(raw).items()}
    return DemographicObservation(
        zip=zip_code,
        year=year,
        population=_to_int(raw.get("B01003_001E")),
        median_income=raw.get("B19013_001E"),
        median_age=raw.get("B01002_001E"),
        housing_units=_to_int(raw.get("B25001_001E")),
        fetched_at=fetched_at,
        **rates,
    )


async def fetch_acs_zctas(
    year: int,
    reference: GeoReferenceSet,
    *,
    dataset: str = ACS_DEFAULT_DATASET,
    api_key: str | None = None,
) -> dict[str, dict[str, float | None]]:
    """Fetch one ACS vintage for all ZCTAs and keep the covered ones."""

    params: dict[str, Any] = {
        "get": ",".join(["NAME", *ACS_VARIABLES]),
        "for": f"{ZCTA_GEOGRAPHY}:*",
    }
    if api_key:
        params["key"] = api_key

    logger.info("Fetching ACS %s data...", year)
    try:
        payload = await fetch_json(f"{ACS_BASE_URL}/{year}/{dataset}", params=params)
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response is not None else "?"
        raise VintageUnavailable(f"Census API error ({year}): status={status}") from exc
    except (httpx.HTTPError, ValueError) as exc:
        raise VintageUnavailable(f"Census API error ({year}): {exc}") from exc

    data = parse_acs_payload(payload, reference)
    logger.info("Found ACS %s data for %s covered ZCTAs.", year, len(data))
    return data


async def refresh_demographics(
    conn: duckdb.DuckDBPyConnection,
    reference: GeoReferenceSet,
    *,
    year: int,
    api_key: str | None = None,
    batch_size: int = 100,
    now: datetime | None = None,
) -> RefreshResult:
    """Fetch the target vintage (or the one before it) and upsert the observations."""

    fetched_at = now or utc_now()
    candidates = (year, year - 1)
    vintage: int | None = None
    data: dict[str, dict[str, float | None]] = {}
    last_error: Exception | None = None

    for candidate in candidates:
        try:
            data = await fetch_acs_zctas(candidate, reference, api_key=api_key)
        except VintageUnavailable as exc:
            last_error = exc
            logger.warning("ACS vintage %s unavailable: %s", candidate, exc)
            continue
        vintage = candidate
        break

    if vintage is None:
        tried = ", ".join(str(candidate) for candidate in candidates)
        message = f"Census fetch failed for vintages {tried}: {last_error}"
        logger.error(message)
        return RefreshResult(rows_processed=0, errors=[message])

    records = [
        build_observation(zip_code, vintage, raw, fetched_at=fetched_at)
        for zip_code, raw in sorted(data.items())
    ]
    logger.info("Upserting %s ACS %s records...", len(records), vintage)

    repository = DemographicRepository(conn)
    written, errors = upsert_in_batches(
        repository.upsert, records, batch_size=batch_size, label="Census"
    )
    logger.info("Census refresh complete. %s rows upserted, %s errors.", written, len(errors))
    return RefreshResult(rows_processed=written, errors=errors)


__all__ = [
    "ACS_BASE_URL",
    "ACS_DEFAULT_DATASET",
    "ACS_VARIABLES",
    "VintageUnavailable",
    "parse_acs_payload",
    "compute_demographic_rates",
    "fetch_acs_zctas",
    "refresh_demographics",
]
