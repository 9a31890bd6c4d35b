"""Refresh orchestration: fetch all feeds, build a snapshot, publish it.

The derived dashboard state lives in a single immutable ``DashboardSnapshot``
that is replaced wholesale after a successful cycle. A failed cycle leaves
the previous snapshot in place and only sets ``Dashboard.error``, so readers
never see old and new data mixed together.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import cast

from .aggregations import country_aggregates, top_countries, weekly_buckets
from .api import FetchFunc, fetch_feeds, fetch_text
from .config import default_config
from .parser import STRICT, parse_csv_report, parse_github_stats, parse_gitter_stats
from .stats import (
    calculate_date_range,
    calculate_stats,
    recent_downloads,
    unique_countries,
    utc_now,
)
from .types import (
    AggregatedStats,
    CountryAggregate,
    DashboardConfig,
    DateRange,
    DownloadRecord,
    GithubStats,
    GitterStats,
    WeeklyBucket,
)

logger = logging.getLogger("pkgdash")

FEED_DOWNLOADS = "downloads"
FEED_GITHUB = "github"
FEED_GITTER = "gitter"

Subscriber = Callable[["DashboardSnapshot"], None]


def _freeze_record(record: DownloadRecord) -> DownloadRecord:
    return cast(DownloadRecord, MappingProxyType(dict(record)))


def _freeze_stats(stats: AggregatedStats) -> AggregatedStats:
    frozen = dict(stats)
    frozen["downloads_by_version"] = MappingProxyType(dict(stats["downloads_by_version"]))
    return cast(AggregatedStats, MappingProxyType(frozen))


@dataclass(frozen=True)
class DashboardSnapshot:
    """Complete derived state as of the last successful refresh cycle.

    Records and stats built by ``build_snapshot`` are read-only mapping views,
    so a published snapshot cannot be altered through a subscriber.
    """

    version: int
    records: tuple[DownloadRecord, ...]
    stats: AggregatedStats
    date_range: DateRange
    recent_downloads: int
    unique_countries: int
    github: GithubStats | None
    gitter: GitterStats | None
    parse_errors: int
    updated_at: datetime | None

    @property
    def is_empty(self) -> bool:
        return not self.records

    def weekly(self) -> list[WeeklyBucket]:
        """Weekly chart buckets, computed from the held records."""
        return weekly_buckets(self.records)

    def countries(self, limit: int | None = None) -> list[CountryAggregate]:
        """Country chart aggregates, optionally limited to the top ``limit``."""
        aggregates = country_aggregates(self.records)
        if limit is None:
            return aggregates
        return top_countries(aggregates, limit)


def empty_snapshot(now: datetime | None = None) -> DashboardSnapshot:
    """Zero-state snapshot shown before the first successful cycle."""
    return DashboardSnapshot(
        version=0,
        records=(),
        stats=_freeze_stats(calculate_stats([])),
        date_range=calculate_date_range([], now),
        recent_downloads=0,
        unique_countries=0,
        github=None,
        gitter=None,
        parse_errors=0,
        updated_at=None,
    )


def build_snapshot(
    csv_text: str,
    github_text: str | None = None,
    gitter_text: str | None = None,
    now: datetime | None = None,
    version: int = 1,
    policy: str = STRICT,
) -> DashboardSnapshot:
    """Derive a full snapshot from raw feed text.

    ``now`` is the cycle completion instant; the 48-hour window and the
    zero-state date range are measured from it.
    """
    now = now or utc_now()
    report = parse_csv_report(csv_text, policy)
    records = report["records"]

    return DashboardSnapshot(
        version=version,
        records=tuple(_freeze_record(r) for r in records),
        stats=_freeze_stats(calculate_stats(records)),
        date_range=calculate_date_range(records, now),
        recent_downloads=recent_downloads(records, now),
        unique_countries=unique_countries(records),
        github=parse_github_stats(github_text) if github_text is not None else None,
        gitter=parse_gitter_stats(gitter_text) if gitter_text is not None else None,
        parse_errors=report["error_count"],
        updated_at=now,
    )


def describe_interval(seconds: float) -> str:
    """Human-readable refresh interval, e.g. "5 minutes" or "90 seconds"."""
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} second{'s' if seconds != 1 else ''}"


class Dashboard:
    """Owns the current snapshot and refreshes it from the configured feeds.

    Args:
        config: Feed locations and refresh settings (defaults if omitted).
        fetch: Transport used for each attempt, ``fetch(source, timeout)``.
        sleep: Delay function used between retry attempts.
        clock: Source of the cycle completion instant.
    """

    def __init__(
        self,
        config: DashboardConfig | None = None,
        fetch: FetchFunc = fetch_text,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config or default_config()
        self._fetch = fetch
        self._sleep = sleep
        self._clock = clock

        self._snapshot = empty_snapshot(clock())
        self._error: str | None = None
        self._loading = True
        self._subscribers: list[Subscriber] = []

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def snapshot(self) -> DashboardSnapshot:
        return self._snapshot

    @property
    def error(self) -> str | None:
        """Message for the last failed cycle, cleared by the next success."""
        return self._error

    @property
    def loading(self) -> bool:
        """True until the first cycle has finished, successfully or not."""
        return self._loading

    @property
    def last_updated(self) -> datetime | None:
        return self._snapshot.updated_at

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Publish / subscribe
    # -------------------------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback`` with each newly published snapshot.

        Returns a function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, snapshot: DashboardSnapshot) -> None:
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber %r failed", callback)

    # -------------------------------------------------------------------------
    # Refresh cycle
    # -------------------------------------------------------------------------

    def _sources(self) -> dict[str, str]:
        sources = {FEED_DOWNLOADS: self.config["csv_url"]}
        if self.config["github_url"]:
            sources[FEED_GITHUB] = self.config["github_url"]
        if self.config["gitter_url"]:
            sources[FEED_GITTER] = self.config["gitter_url"]
        return sources

    def _failure_message(self, failed: list[str]) -> str:
        interval = describe_interval(self.config["refresh_interval"])
        return (
            f"Failed to load download statistics ({', '.join(sorted(failed))}). "
            f"Will retry in {interval}..."
        )

    def refresh(self) -> bool:
        """Run one fetch-and-publish cycle.

        Returns True if a new snapshot was published. On failure the previous
        snapshot is kept and ``error`` is set; nothing is raised.
        """
        with self._cycle_lock:
            try:
                return self._run_cycle()
            except Exception:
                logger.exception("Refresh cycle failed")
                self._error = self._failure_message(list(self._sources()))
                return False
            finally:
                self._loading = False

    def retry(self) -> bool:
        """Manually re-run a cycle, e.g. after a failure."""
        return self.refresh()

    def _run_cycle(self) -> bool:
        sources = self._sources()
        logger.debug("Refreshing %d feeds: %s", len(sources), ", ".join(sources))

        results = fetch_feeds(
            sources,
            fetch=self._fetch,
            attempts=self.config["retry_attempts"],
            delay=self.config["retry_delay"],
            timeout=self.config["request_timeout"],
            sleep=self._sleep,
        )

        failed = [name for name in sources if results.get(name) is None]
        if failed:
            self._error = self._failure_message(failed)
            logger.error(self._error)
            return False

        snapshot = build_snapshot(
            results[FEED_DOWNLOADS] or "",
            github_text=results.get(FEED_GITHUB),
            gitter_text=results.get(FEED_GITTER),
            now=self._clock(),
            version=self._snapshot.version + 1,
            policy=self.config["parse_policy"],
        )

        # Single reference swap: readers see either the old or the new snapshot
        self._snapshot = snapshot
        self._error = None
        logger.info(
            "Loaded %d records (%s downloads, snapshot v%d)",
            len(snapshot.records),
            f"{snapshot.stats['total_downloads']:,}",
            snapshot.version,
        )
        self._publish(snapshot)
        return True

    # -------------------------------------------------------------------------
    # Periodic refresh
    # -------------------------------------------------------------------------

    def run(self, cycles: int | None = None) -> None:
        """Refresh now and then every ``refresh_interval`` seconds.

        Blocks until ``stop()`` is called or ``cycles`` cycles have run.
        """
        completed = 0
        while not self._stop_event.is_set():
            self.refresh()
            completed += 1
            if cycles is not None and completed >= cycles:
                break
            if self._stop_event.wait(self.config["refresh_interval"]):
                break

    def start(self) -> None:
        """Run the periodic refresh on a background daemon thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run, name="pkgdash-refresh", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        """Cancel the periodic refresh and wait for the thread to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def __enter__(self) -> "Dashboard":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
