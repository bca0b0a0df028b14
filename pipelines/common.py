"""Shared utilities for retrieving external data and writing it in fault-tolerant batches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, MutableMapping, Sequence, TypeVar

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

DEFAULT_TIMEOUT_SECONDS = 30.0
DOWNLOAD_TIMEOUT_SECONDS = 600.0
DOWNLOAD_CHUNK_BYTES = 1 << 20
_DEFAULT_WAIT = wait_exponential(min=1, max=16)
_DEFAULT_STOP = stop_after_attempt(3)
# HTTP status failures are reported to the caller and left to the next scheduled run;
# only dropped connections and timeouts are retried in place.
_DEFAULT_RETRY = retry_if_exception_type(httpx.TransportError)


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None
Data = MutableMapping[str, Any] | bytes | str | None
JsonData = Any

T = TypeVar("T")

logger = logging.getLogger(__name__)


@retry(wait=_DEFAULT_WAIT, stop=_DEFAULT_STOP, retry=_DEFAULT_RETRY, reraise=True)
async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    The helper keeps the interface close to ``httpx.AsyncClient.request`` so source
    adapters can forward API-specific requirements (headers, params, JSON body, etc.)
    without reimplementing networking concerns.
    """

    request_method = method.upper()
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(
            request_method,
            url,
            headers=headers,
            params=params,
            data=data,
            json=json,
        )

    response.raise_for_status()
    return response.json()


@retry(wait=_DEFAULT_WAIT, stop=_DEFAULT_STOP, retry=_DEFAULT_RETRY, reraise=True)
async def fetch_text(
    url: str,
    *,
    params: Params = None,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
) -> str:
    """Download a text resource (e.g. a CSV file) and return it decoded."""

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        response = await client.get(url, params=params)

    response.raise_for_status()
    return response.text


@retry(wait=_DEFAULT_WAIT, stop=_DEFAULT_STOP, retry=_DEFAULT_RETRY, reraise=True)
async def download_to_file(
    url: str,
    destination: str | Path,
    *,
    timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
) -> Path:
    """Stream a (potentially very large) resource to ``destination`` on disk."""

    dest_path = Path(destination)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            with dest_path.open("wb") as handle:
                async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_BYTES):
                    handle.write(chunk)
                    written += len(chunk)
    logger.info("Downloaded %s (%s bytes).", url.rsplit("/", 1)[-1], f"{written:,}")
    return dest_path


def utc_now() -> datetime:
    """Current UTC time as a naive timestamp, the form stored in DuckDB TIMESTAMP columns."""

    return datetime.now(UTC).replace(tzinfo=None)


def years_before(moment: date, years: int) -> date:
    """Same calendar day ``years`` earlier; 29 February falls back to the 28th."""

    try:
        return moment.replace(year=moment.year - years)
    except ValueError:
        return moment.replace(year=moment.year - years, day=28)


def chunked(items: Sequence[T], size: int) -> Iterator[tuple[int, Sequence[T]]]:
    """Yield ``(offset, chunk)`` pairs of at most ``size`` items."""

    if size <= 0:
        raise ValueError("Batch size must be positive.")
    for offset in range(0, len(items), size):
        yield offset, items[offset : offset + size]


def upsert_in_batches(
    upsert: Callable[[Sequence[T]], int],
    records: Sequence[T],
    *,
    batch_size: int,
    label: str,
) -> tuple[int, list[str]]:
    """Write ``records`` through ``upsert`` one bounded batch at a time.

    A failing batch is logged and reported in the returned error list; the remaining
    batches are still attempted.

    Returns
    -------
    tuple[int, list[str]]
        Number of records written and the per-batch error messages.
    """

    written = 0
    errors: list[str] = []
    for offset, batch in chunked(records, batch_size):
        try:
            written += upsert(batch)
        except Exception as exc:
            errors.append(f"{label} batch at offset {offset}: {exc}")
            logger.error("%s batch upsert error at offset %s: %s", label, offset, exc)
    return written, errors


@dataclass(frozen=True)
class CellOutcome:
    """Result of processing a single zip: written, skipped or failed."""

    zip: str
    written: bool = False
    error: str | None = None


def fold_cells(
    cells: Iterable[str],
    compute: Callable[[str], bool],
    *,
    label: str,
) -> tuple[int, list[str]]:
    """Run ``compute`` for each cell and aggregate the outcomes.

    ``compute`` returns ``True`` when it wrote a row and ``False`` when the cell had
    nothing to compute. An exception is captured as that cell's error; no cell can
    abort the run.
    """

    outcomes = [_run_cell(cell, compute, label) for cell in cells]
    processed = sum(1 for outcome in outcomes if outcome.written)
    errors = [outcome.error for outcome in outcomes if outcome.error]
    return processed, errors


def _run_cell(cell: str, compute: Callable[[str], bool], label: str) -> CellOutcome:
    try:
        return CellOutcome(zip=cell, written=bool(compute(cell)))
    except Exception as exc:
        logger.error("%s error for %s: %s", label, cell, exc)
        return CellOutcome(zip=cell, error=f"{label} for {cell}: {exc}")


__all__ = [
    "fetch_json",
    "fetch_text",
    "download_to_file",
    "chunked",
    "years_before",
    "utc_now",
    "upsert_in_batches",
    "fold_cells",
    "CellOutcome",
    "DEFAULT_TIMEOUT_SECONDS",
]
