"""Type definitions for pkgdash using TypedDict for known structures."""

from datetime import datetime
from typing import TypedDict


class DownloadRecord(TypedDict):
    """One row of download activity from the CSV feed."""

    date: datetime
    downloads: int
    version: str
    country: str | None


class ParseReport(TypedDict):
    """Records parsed from a CSV feed plus parser diagnostics."""

    records: list[DownloadRecord]
    error_count: int
    merged_count: int


class AggregatedStats(TypedDict):
    """Summary statistics derived from a record set."""

    total_downloads: int
    average_downloads: int
    latest_version: str
    downloads_by_version: dict[str, int]


class DateRange(TypedDict):
    """Inclusive day span covered by a record set."""

    start_date: datetime
    end_date: datetime
    days: int


class WeeklyBucket(TypedDict):
    """Downloads summed over a Sunday-aligned week."""

    week_start: datetime
    downloads: int
    max_downloads: int


class CountryAggregate(TypedDict):
    """Downloads for one country with a per-version breakdown."""

    country: str
    name: str
    downloads: int
    versions: dict[str, int]


class GithubStats(TypedDict):
    """Community activity snapshot for GitHub discussions."""

    post_cnt: int
    comment_cnt: int
    post_authors: int
    date: str


class GitterStats(TypedDict):
    """Community activity snapshot for the Gitter chat room."""

    post_cnt: int
    unique_users_with_posts: int
    avg_posts_per_user: float
    date: str


class DashboardConfig(TypedDict):
    """Feed locations and refresh settings."""

    csv_url: str
    github_url: str
    gitter_url: str
    refresh_interval: float
    retry_attempts: int
    retry_delay: float
    request_timeout: float
    parse_policy: str
    title: str
