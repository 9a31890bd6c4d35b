"""Weekly and per-country projections of download records for charts."""

from collections.abc import Iterable
from datetime import datetime, timedelta

from .types import CountryAggregate, DownloadRecord, WeeklyBucket

# Country chart shows the top 15 countries, each with its top 10 versions
DEFAULT_TOP_COUNTRIES = 15
DEFAULT_TOP_VERSIONS = 10

COUNTRY_NAMES = {
    "US": "United States",
    "GB": "United Kingdom",
    "DE": "Germany",
    "FR": "France",
    "JP": "Japan",
    "CN": "China",
    "CA": "Canada",
    "AU": "Australia",
    "IT": "Italy",
    "ES": "Spain",
    "NL": "Netherlands",
    "BR": "Brazil",
    "RU": "Russia",
    "IN": "India",
    "KR": "South Korea",
    "SE": "Sweden",
    "CH": "Switzerland",
    "NO": "Norway",
    "DK": "Denmark",
    "FI": "Finland",
    "BE": "Belgium",
    "AT": "Austria",
    "PL": "Poland",
    "IE": "Ireland",
    "SG": "Singapore",
    "HK": "Hong Kong",
    "TW": "Taiwan",
    "NZ": "New Zealand",
    "IL": "Israel",
    "TR": "Turkey",
    "ZA": "South Africa",
    "MX": "Mexico",
    "AR": "Argentina",
    "CL": "Chile",
    "CO": "Colombia",
    "PE": "Peru",
    "VE": "Venezuela",
    "MY": "Malaysia",
    "TH": "Thailand",
    "ID": "Indonesia",
    "PH": "Philippines",
    "VN": "Vietnam",
    "SA": "Saudi Arabia",
    "AE": "United Arab Emirates",
    "EG": "Egypt",
    "MA": "Morocco",
    "HR": "Croatia",
}


def get_country_name(code: str) -> str:
    """Display name for a country code, falling back to the code itself."""
    return COUNTRY_NAMES.get(code.upper(), code)


def week_start(date: datetime) -> datetime:
    """Midnight of the Sunday that starts the week containing ``date``."""
    midnight = date.replace(hour=0, minute=0, second=0, microsecond=0)
    # weekday(): Monday=0 ... Sunday=6
    return midnight - timedelta(days=(date.weekday() + 1) % 7)


def weekly_buckets(records: Iterable[DownloadRecord]) -> list[WeeklyBucket]:
    """Group downloads into Sunday-aligned weeks, oldest first.

    Each bucket also tracks the largest single record in that week, used to
    scale chart intensity.
    """
    buckets: dict[datetime, WeeklyBucket] = {}
    for record in records:
        key = week_start(record["date"])
        bucket = buckets.get(key)
        if bucket is None:
            bucket = {"week_start": key, "downloads": 0, "max_downloads": 0}
            buckets[key] = bucket
        bucket["downloads"] += record["downloads"]
        bucket["max_downloads"] = max(bucket["max_downloads"], record["downloads"])

    return [buckets[key] for key in sorted(buckets)]


def country_aggregates(records: Iterable[DownloadRecord]) -> list[CountryAggregate]:
    """Total downloads per country with a per-version breakdown.

    Records without a country are skipped. Sorted by total downloads
    descending, then by country code.
    """
    countries: dict[str, CountryAggregate] = {}
    for record in records:
        code = record["country"]
        if not code:
            continue
        aggregate = countries.get(code)
        if aggregate is None:
            aggregate = {
                "country": code,
                "name": get_country_name(code),
                "downloads": 0,
                "versions": {},
            }
            countries[code] = aggregate
        versions = aggregate["versions"]
        versions[record["version"]] = versions.get(record["version"], 0) + record["downloads"]
        aggregate["downloads"] += record["downloads"]

    return sorted(countries.values(), key=lambda a: (-a["downloads"], a["country"]))


def top_countries(
    aggregates: list[CountryAggregate], limit: int = DEFAULT_TOP_COUNTRIES
) -> list[CountryAggregate]:
    """The ``limit`` countries with the most downloads."""
    ranked = sorted(aggregates, key=lambda a: (-a["downloads"], a["country"]))
    return ranked[:limit]


def top_versions(
    aggregate: CountryAggregate, limit: int = DEFAULT_TOP_VERSIONS
) -> list[tuple[str, int]]:
    """The ``limit`` most downloaded versions within one country."""
    ranked = sorted(aggregate["versions"].items(), key=lambda x: (-x[1], x[0]))
    return ranked[:limit]
