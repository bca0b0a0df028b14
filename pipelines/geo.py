"""Reference set of zip codes covered by the pipeline.

Every adapter and stage filters against a ``GeoReferenceSet``; rows for zips outside
the set are dropped without being reported as errors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator

# Austin-Round Rock-Georgetown MSA, by county (USPS / Census ZCTA crosswalk).
# Zips that straddle counties appear under each county and are deduplicated below.
TRAVIS_ZIPS = (
    "73301", "73344",
    "78610", "78613", "78617", "78621", "78641", "78645", "78652", "78653",
    "78660", "78664", "78681",
    "78701", "78702", "78703", "78704", "78705",
    "78712", "78717", "78719", "78721", "78722", "78723", "78724", "78725",
    "78726", "78727", "78728", "78729", "78730", "78731", "78732", "78733",
    "78734", "78735", "78736", "78737", "78738", "78739", "78741", "78742",
    "78744", "78745", "78746", "78747", "78748", "78749", "78750", "78751",
    "78752", "78753", "78754", "78756", "78757", "78758", "78759",
)

WILLIAMSON_ZIPS = (
    "76527", "76537", "76574", "76578",
    "78613", "78615", "78626", "78628", "78630", "78633", "78634", "78641",
    "78642", "78646", "78660", "78664", "78665", "78681", "78717",
    "78728", "78729", "78750",
)

HAYS_ZIPS = (
    "78610", "78619", "78620", "78623", "78640", "78652", "78656", "78666",
    "78676", "78737",
)

BASTROP_ZIPS = (
    "78602", "78612", "78617", "78621", "78650", "78653", "78659", "78662",
)

CALDWELL_ZIPS = (
    "78616", "78632", "78638", "78644", "78648", "78655", "78656", "78661",
)

_ZIP_PATTERN = re.compile(r"(\d{5})")


def normalize_zip(raw: object) -> str | None:
    """Return a 5-digit zip for ``raw`` or ``None`` if none can be recovered.

    Accepts integers and short numeric strings (zero-padded, as CSV readers tend to
    drop leading zeros) as well as labels such as ``"Zip Code: 78704"``.
    """

    if raw is None:
        return None
    if isinstance(raw, int):
        text = str(raw)
    else:
        text = str(raw).strip()
    if not text:
        return None
    if text.isdigit() and len(text) <= 5:
        return text.zfill(5)
    match = _ZIP_PATTERN.search(text)
    if match:
        return match.group(1)
    return None


@dataclass(frozen=True)
class GeoReferenceSet:
    """Immutable, deduplicated and sorted collection of covered zip codes."""

    name: str
    zips: tuple[str, ...]
    _members: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_members", frozenset(self.zips))

    @classmethod
    def from_zips(cls, name: str, *groups: Iterable[object]) -> "GeoReferenceSet":
        collected: set[str] = set()
        for group in groups:
            for raw in group:
                normalized = normalize_zip(raw)
                if normalized:
                    collected.add(normalized)
        return cls(name=name, zips=tuple(sorted(collected)))

    def __contains__(self, raw: object) -> bool:
        return normalize_zip(raw) in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(self.zips)

    def __len__(self) -> int:
        return len(self.zips)

    def filter(self, raw_zips: Iterable[object]) -> list[str]:
        """Normalize ``raw_zips`` and keep the covered ones, in input order."""

        kept: list[str] = []
        for raw in raw_zips:
            normalized = normalize_zip(raw)
            if normalized and normalized in self._members:
                kept.append(normalized)
        return kept


AUSTIN_MSA = GeoReferenceSet.from_zips(
    "austin_msa",
    TRAVIS_ZIPS,
    WILLIAMSON_ZIPS,
    HAYS_ZIPS,
    BASTROP_ZIPS,
    CALDWELL_ZIPS,
)


__all__ = ["GeoReferenceSet", "AUSTIN_MSA", "normalize_zip"]
