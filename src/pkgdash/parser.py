"""Parsing of the download CSV feed and the community JSON snapshots."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from .types import DownloadRecord, GithubStats, GitterStats, ParseReport

logger = logging.getLogger("pkgdash")

# -----------------------------------------------------------------------------
# CSV Layout Constants
# -----------------------------------------------------------------------------

DATE_COLUMN = "download_date"
COUNTRY_COLUMN = "country"
VERSION_COLUMN = "package_version"
DOWNLOADS_COLUMN = "download_count"

REQUIRED_COLUMNS = (DATE_COLUMN, COUNTRY_COLUMN, VERSION_COLUMN, DOWNLOADS_COLUMN)

COMMENT_PREFIX = "#"
BYTE_ORDER_MARK = "\ufeff"

STRICT = "strict"
MERGE = "merge"

# Non-ISO date layouts seen in spreadsheet exports, tried in order
_DATE_FORMATS = (
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%d %b %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%B %d %Y",
    "%B %d, %Y",
)

_INTEGER_PATTERN = re.compile(r"^[+-]?[0-9]+$")

# First Sunday on the calendar; earlier dates have no representable week start
EARLIEST_DATE = datetime(1, 1, 7, tzinfo=timezone.utc)

GITHUB_STATS_KEYS = ("post_cnt", "comment_cnt", "post_authors", "date")
GITTER_STATS_KEYS = ("post_cnt", "unique_users_with_posts", "avg_posts_per_user", "date")


# -----------------------------------------------------------------------------
# Field Parsing
# -----------------------------------------------------------------------------


def parse_date(value: str) -> datetime | None:
    """Parse a date or date-time string into an aware UTC datetime.

    Date-only values land on midnight UTC; naive date-times are taken as UTC.
    Returns None if the value matches none of the accepted layouts, or if it
    falls outside the range a UTC datetime with a whole week can represent.
    """
    value = value.strip()
    if not value:
        return None

    iso_value = value[:-1] + "+00:00" if value.endswith(("Z", "z")) else value
    try:
        parsed = datetime.fromisoformat(iso_value)
    except ValueError:
        parsed = None

    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        try:
            parsed = parsed.astimezone(timezone.utc)
        except OverflowError:
            return None

    if parsed < EARLIEST_DATE:
        return None
    return parsed


def parse_download_count(value: str) -> int | None:
    """Parse a non-negative base-10 download count, or return None."""
    value = value.strip()
    if not _INTEGER_PATTERN.match(value):
        return None
    count = int(value)
    if count < 0:
        return None
    return count


def _clean_lines(text: str) -> list[str]:
    """Strip BOM, normalize line endings, drop blank and comment lines."""
    if text.startswith(BYTE_ORDER_MARK):
        text = text[len(BYTE_ORDER_MARK) :]
    text = text.replace("\r\n", "\n").replace("\r", "\n")

    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if line and not line.startswith(COMMENT_PREFIX):
            lines.append(line)
    return lines


def _find_columns(header_line: str) -> dict[str, int] | None:
    """Map each required column to its index, or None if any is missing."""
    headers = [h.strip().lower() for h in header_line.split(",")]
    indices = {}
    for column in REQUIRED_COLUMNS:
        if column not in headers:
            logger.error(
                "Required column '%s' not found in CSV header: %s",
                column,
                ", ".join(headers),
            )
            return None
        indices[column] = headers.index(column)
    return indices


# -----------------------------------------------------------------------------
# CSV Feed
# -----------------------------------------------------------------------------


def _empty_report() -> ParseReport:
    return {"records": [], "error_count": 0, "merged_count": 0}


def parse_csv_report(text: str, policy: str = STRICT) -> ParseReport:
    """Parse CSV text into download records, with parser diagnostics.

    In ``strict`` mode a row is rejected (and counted in ``error_count``) when
    it is too short, its download count is not a non-negative integer, or its
    date cannot be parsed. In ``merge`` mode rows sharing a
    (date, version, country) key are summed into one record and an unreadable
    download count counts as zero; short rows and bad dates are still
    rejected since they have no usable key.

    Structural problems (no lines, missing required columns) are logged and
    produce an empty report. Bad input never raises.

    Raises:
        ValueError: If ``policy`` is not ``strict`` or ``merge``.
    """
    if policy not in (STRICT, MERGE):
        raise ValueError(f"Unknown parse policy: {policy!r}")

    lines = _clean_lines(text)
    if not lines:
        logger.error("No valid lines found in CSV")
        return _empty_report()

    columns = _find_columns(lines[0])
    if columns is None:
        return _empty_report()

    date_idx = columns[DATE_COLUMN]
    country_idx = columns[COUNTRY_COLUMN]
    version_idx = columns[VERSION_COLUMN]
    downloads_idx = columns[DOWNLOADS_COLUMN]
    min_fields = max(columns.values()) + 1

    records: list[DownloadRecord] = []
    merged: dict[tuple[datetime, str, str | None], DownloadRecord] = {}
    error_count = 0
    merged_count = 0

    for line_no, line in enumerate(lines[1:], 2):
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < min_fields:
            logger.debug("Line %d: expected %d fields, got %d", line_no, min_fields, len(parts))
            error_count += 1
            continue

        downloads = parse_download_count(parts[downloads_idx])
        if downloads is None:
            if policy == STRICT:
                logger.debug("Line %d: invalid download count %r", line_no, parts[downloads_idx])
                error_count += 1
                continue
            downloads = 0

        date = parse_date(parts[date_idx])
        if date is None:
            logger.debug("Line %d: invalid date %r", line_no, parts[date_idx])
            error_count += 1
            continue

        record: DownloadRecord = {
            "date": date,
            "downloads": downloads,
            "version": parts[version_idx],
            "country": parts[country_idx] or None,
        }

        if policy == MERGE:
            key = (date, record["version"], record["country"])
            existing = merged.get(key)
            if existing is not None:
                existing["downloads"] += downloads
                merged_count += 1
                continue
            merged[key] = record

        records.append(record)

    if error_count > 0:
        logger.warning("Encountered %d errors while parsing CSV", error_count)
    if merged_count > 0:
        logger.info("Merged %d duplicate rows", merged_count)

    if not records:
        logger.error("No valid data points were parsed from CSV")
        return {"records": [], "error_count": error_count, "merged_count": merged_count}

    logger.debug("Successfully parsed %d records", len(records))

    # sort is stable, so same-day rows keep their file order
    records.sort(key=lambda r: r["date"])
    return {"records": records, "error_count": error_count, "merged_count": merged_count}


def parse_csv(text: str, policy: str = STRICT) -> list[DownloadRecord]:
    """Parse CSV text into download records sorted by date."""
    return parse_csv_report(text, policy)["records"]


# -----------------------------------------------------------------------------
# Community JSON Snapshots
# -----------------------------------------------------------------------------


def _parse_snapshot(text: str, keys: tuple[str, ...], label: str) -> dict[str, Any] | None:
    """Decode a JSON object and check that every expected key is present."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s stats: %s", label, e)
        return None

    if not isinstance(data, dict):
        logger.warning("Expected a JSON object for %s stats", label)
        return None

    missing = [k for k in keys if k not in data]
    if missing:
        logger.warning("%s stats missing keys: %s", label, ", ".join(missing))
        return None

    return data


def parse_github_stats(text: str) -> GithubStats | None:
    """Parse the GitHub discussions snapshot, or None if it's malformed."""
    data = _parse_snapshot(text, GITHUB_STATS_KEYS, "GitHub")
    if data is None:
        return None
    return {
        "post_cnt": data["post_cnt"],
        "comment_cnt": data["comment_cnt"],
        "post_authors": data["post_authors"],
        "date": data["date"],
    }


def parse_gitter_stats(text: str) -> GitterStats | None:
    """Parse the Gitter chat snapshot, or None if it's malformed."""
    data = _parse_snapshot(text, GITTER_STATS_KEYS, "Gitter")
    if data is None:
        return None
    return {
        "post_cnt": data["post_cnt"],
        "unique_users_with_posts": data["unique_users_with_posts"],
        "avg_posts_per_user": data["avg_posts_per_user"],
        "date": data["date"],
    }
