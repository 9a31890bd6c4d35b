"""Summary statistics, version ordering and date spans over download records."""

import math
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from .types import AggregatedStats, DateRange, DownloadRecord

# Shown when a record set has no versions at all
NO_VERSION = "N/A"

# Width of the "recent downloads" window
RECENT_WINDOW = timedelta(hours=48)

_ONE_DAY = timedelta(days=1)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Version Ordering
# -----------------------------------------------------------------------------


def version_key(version: str) -> tuple[int, ...]:
    """Turn a dotted version string into a comparable tuple of integers.

    Non-numeric components count as 0 and trailing zeros are dropped, so
    "1.0" and "1.0.0" compare equal and "1.10.0" sorts after "1.9.0".
    """
    parts = []
    for component in version.split("."):
        component = component.strip()
        parts.append(int(component) if component.isdecimal() else 0)
    while parts and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1 as version ``a`` is lower, equal or higher than ``b``."""
    key_a, key_b = version_key(a), version_key(b)
    if key_a < key_b:
        return -1
    if key_a > key_b:
        return 1
    return 0


def latest_version(versions: Iterable[str]) -> str:
    """Return the highest version, or ``NO_VERSION`` if there are none.

    Ties go to the first version seen.
    """
    latest: str | None = None
    for version in versions:
        if latest is None or compare_versions(version, latest) > 0:
            latest = version
    return latest if latest is not None else NO_VERSION


# -----------------------------------------------------------------------------
# Aggregation
# -----------------------------------------------------------------------------


def round_half_up(value: Decimal) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def calculate_stats(records: Sequence[DownloadRecord]) -> AggregatedStats:
    """Compute totals, per-version sums and the latest version."""
    downloads_by_version: dict[str, int] = {}
    total_downloads = 0

    for record in records:
        version = record["version"]
        downloads_by_version[version] = (
            downloads_by_version.get(version, 0) + record["downloads"]
        )
        total_downloads += record["downloads"]

    if downloads_by_version:
        average_downloads = round_half_up(
            Decimal(total_downloads) / Decimal(len(downloads_by_version))
        )
    else:
        average_downloads = 0

    return {
        "total_downloads": total_downloads,
        "average_downloads": average_downloads,
        "latest_version": latest_version(downloads_by_version),
        "downloads_by_version": downloads_by_version,
    }


def versions_by_downloads(stats: AggregatedStats) -> list[tuple[str, int]]:
    """Per-version totals, most downloaded first (newest version breaks ties)."""
    return sorted(
        stats["downloads_by_version"].items(),
        key=lambda item: (item[1], version_key(item[0])),
        reverse=True,
    )


# -----------------------------------------------------------------------------
# Date Spans
# -----------------------------------------------------------------------------


def calculate_date_range(
    records: Sequence[DownloadRecord], now: datetime | None = None
) -> DateRange:
    """Return the inclusive day span covered by the records.

    An empty record set yields a zero-day range anchored at ``now``.
    """
    if not records:
        now = now or utc_now()
        return {"start_date": now, "end_date": now, "days": 0}

    start_date = min(r["date"] for r in records)
    end_date = max(r["date"] for r in records)

    span = abs(end_date - start_date)
    days = math.ceil(span / _ONE_DAY) + 1

    return {"start_date": start_date, "end_date": end_date, "days": days}


def recent_downloads(
    records: Iterable[DownloadRecord],
    now: datetime,
    window: timedelta = RECENT_WINDOW,
) -> int:
    """Sum downloads for records dated within ``window`` before ``now``."""
    cutoff = now - window
    return sum(r["downloads"] for r in records if r["date"] >= cutoff)


def unique_countries(records: Iterable[DownloadRecord]) -> int:
    """Count distinct non-empty country codes."""
    return len({r["country"] for r in records if r["country"]})
