"""Tests for feed fetching, the refresh orchestrator, reports and the CLI."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests
import yaml

from pkgdash.api import fetch_feeds, fetch_text, fetch_with_retry, is_local_source
from pkgdash.cli import main
from pkgdash.config import default_config
from pkgdash.dashboard import (
    Dashboard,
    build_snapshot,
    describe_interval,
    empty_snapshot,
)
from pkgdash.reports import (
    generate_html_report,
    make_svg_pie_chart,
    make_weekly_line_chart,
    render_dashboard_html,
)


UTC = timezone.utc
NOW = datetime(2024, 1, 4, 12, 0, tzinfo=UTC)

CSV_URL = "https://example.test/downloads.csv"
GITHUB_URL = "https://example.test/github.json"
GITTER_URL = "https://example.test/gitter.json"

SAMPLE_CSV = """download_date,country,package_version,download_count
2024-01-03,US,1.9.0,10
2024-01-01,GB,1.10.0,5
2024-01-02,US,2.0.0,20
"""

UPDATED_CSV = """download_date,country,package_version,download_count
2024-01-03,US,2.1.0,100
"""

GITHUB_JSON = json.dumps({"post_cnt": 12, "comment_cnt": 40, "post_authors": 9, "date": "2024-01-03"})
GITTER_JSON = json.dumps(
    {"post_cnt": 300, "unique_users_with_posts": 50, "avg_posts_per_user": 6.0, "date": "2024-01-03"}
)


class FakeFeeds:
    """Stand-in transport: maps each source to a queue of outcomes.

    An outcome is either response text or an exception to raise. The last
    outcome in a queue repeats forever.
    """

    def __init__(self, responses):
        self._lock = threading.Lock()
        self.responses = {}
        self.calls = []
        self.set(responses)

    def set(self, responses):
        with self._lock:
            for source, outcome in responses.items():
                self.responses[source] = list(outcome) if isinstance(outcome, list) else [outcome]

    def __call__(self, source, timeout):
        with self._lock:
            self.calls.append(source)
            queue = self.responses[source]
            outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_config(**overrides):
    config = default_config()
    config.update(
        {
            "csv_url": CSV_URL,
            "github_url": GITHUB_URL,
            "gitter_url": GITTER_URL,
        }
    )
    config.update(overrides)
    return config


@pytest.fixture
def feeds():
    return FakeFeeds({CSV_URL: SAMPLE_CSV, GITHUB_URL: GITHUB_JSON, GITTER_URL: GITTER_JSON})


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dashboard(feeds, sleeps):
    return Dashboard(make_config(), fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "downloads.csv"
    path.write_text(SAMPLE_CSV)
    return str(path)


@pytest.fixture
def fast_config(tmp_path):
    """Config file with retries that don't sleep."""
    path = tmp_path / "pkgdash.yml"
    path.write_text(yaml.dump({"retry_attempts": 1, "retry_delay": 0, "refresh_interval": 0.01}))
    return str(path)


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers the CLI attaches so they don't outlive captured streams."""
    yield
    logger = logging.getLogger("pkgdash")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


class TestFetchText:
    """Tests for the feed transport."""

    def test_is_local_source(self):
        assert is_local_source("/tmp/data.csv")
        assert is_local_source("data.csv")
        assert is_local_source("file:///tmp/data.csv")
        assert not is_local_source("https://example.test/data.csv")
        assert not is_local_source("HTTP://example.test/data.csv")

    def test_reads_local_file(self, csv_file):
        assert fetch_text(csv_file) == SAMPLE_CSV

    def test_reads_file_url(self, csv_file):
        assert fetch_text("file://" + csv_file) == SAMPLE_CSV

    def test_http_uses_timeout(self):
        response = MagicMock()
        response.text = "payload"
        with patch("pkgdash.api.requests.get", return_value=response) as mock_get:
            assert fetch_text(CSV_URL, timeout=5) == "payload"
        mock_get.assert_called_once_with(CSV_URL, timeout=5)
        response.raise_for_status.assert_called_once()

    def test_http_error_status_raises(self):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        with patch("pkgdash.api.requests.get", return_value=response):
            with pytest.raises(requests.HTTPError):
                fetch_text(CSV_URL)


class TestFetchWithRetry:
    """Tests for the bounded retry loop."""

    def test_succeeds_after_failures(self, sleeps):
        fake = FakeFeeds({CSV_URL: [requests.ConnectionError("down"), requests.Timeout("slow"), "ok"]})
        assert fetch_with_retry(CSV_URL, fetch=fake, attempts=3, delay=2.0, sleep=sleeps.append) == "ok"
        assert sleeps == [2.0, 2.0]
        assert len(fake.calls) == 3

    def test_gives_up_after_attempts(self, sleeps, caplog):
        fake = FakeFeeds({CSV_URL: requests.ConnectionError("down")})
        with caplog.at_level(logging.WARNING, logger="pkgdash"):
            result = fetch_with_retry(CSV_URL, fetch=fake, attempts=3, delay=2.0, sleep=sleeps.append)
        assert result is None
        assert len(fake.calls) == 3
        # No sleep after the final attempt
        assert sleeps == [2.0, 2.0]
        assert "Giving up" in caplog.text

    def test_non_success_status_is_retried(self, sleeps):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        with patch("pkgdash.api.requests.get", return_value=response) as mock_get:
            assert fetch_with_retry(CSV_URL, attempts=2, delay=0.5, sleep=sleeps.append) is None
        assert mock_get.call_count == 2
        assert sleeps == [0.5]

    def test_missing_local_file(self, tmp_path, sleeps):
        missing = str(tmp_path / "nope.csv")
        assert fetch_with_retry(missing, attempts=2, delay=0, sleep=sleeps.append) is None

    def test_programming_errors_propagate(self, sleeps):
        def broken(source, timeout):
            raise KeyError("bug")

        with pytest.raises(KeyError):
            fetch_with_retry(CSV_URL, fetch=broken, sleep=sleeps.append)


class TestFetchFeeds:
    """Tests for fetching several feeds in parallel."""

    def test_returns_every_feed(self, feeds, sleeps):
        results = fetch_feeds({"downloads": CSV_URL, "github": GITHUB_URL}, fetch=feeds, sleep=sleeps.append)
        assert results == {"downloads": SAMPLE_CSV, "github": GITHUB_JSON}

    def test_failed_feed_is_none(self, feeds, sleeps):
        feeds.set({GITHUB_URL: OSError("unreachable")})
        results = fetch_feeds({"downloads": CSV_URL, "github": GITHUB_URL}, fetch=feeds, sleep=sleeps.append)
        assert results["downloads"] == SAMPLE_CSV
        assert results["github"] is None

    def test_no_sources(self):
        assert fetch_feeds({}) == {}


class TestSnapshot:
    """Tests for building snapshots from feed text."""

    def test_empty_snapshot(self):
        snapshot = empty_snapshot(NOW)
        assert snapshot.version == 0
        assert snapshot.is_empty
        assert snapshot.stats["latest_version"] == "N/A"
        assert snapshot.date_range == {"start_date": NOW, "end_date": NOW, "days": 0}
        assert snapshot.updated_at is None

    def test_build_snapshot(self):
        snapshot = build_snapshot(SAMPLE_CSV, GITHUB_JSON, GITTER_JSON, now=NOW, version=4)
        assert snapshot.version == 4
        assert len(snapshot.records) == 3
        assert snapshot.stats["total_downloads"] == 35
        assert snapshot.stats["average_downloads"] == 12
        assert snapshot.stats["latest_version"] == "2.0.0"
        assert snapshot.date_range["days"] == 3
        assert snapshot.unique_countries == 2
        assert snapshot.github["post_cnt"] == 12
        assert snapshot.gitter["unique_users_with_posts"] == 50
        assert snapshot.updated_at == NOW

    def test_recent_downloads_measured_from_now(self):
        text = (
            "download_date,country,package_version,download_count\n"
            "2024-03-08T13:00:00,US,1.0,7\n"
            "2024-03-08T11:00:00,US,1.0,11\n"
        )
        now = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)
        assert build_snapshot(text, now=now).recent_downloads == 7

    def test_snapshot_is_immutable(self):
        snapshot = build_snapshot(SAMPLE_CSV, now=NOW)
        with pytest.raises(AttributeError):
            snapshot.version = 99

    def test_snapshot_contents_are_read_only(self):
        snapshot = build_snapshot(SAMPLE_CSV, now=NOW)
        with pytest.raises(TypeError):
            snapshot.records[0]["downloads"] = 0
        with pytest.raises(TypeError):
            snapshot.stats["total_downloads"] = 0
        with pytest.raises(TypeError):
            snapshot.stats["downloads_by_version"]["9.9.9"] = 1
        assert snapshot.stats["total_downloads"] == 35

    def test_weekly_survives_earliest_dates(self):
        text = SAMPLE_CSV + "0001-01-01,US,1.0,5\n"
        snapshot = build_snapshot(text, now=NOW)
        assert snapshot.parse_errors == 1
        assert [w["downloads"] for w in snapshot.weekly()] == [35]

    def test_view_models_computed_from_records(self):
        snapshot = build_snapshot(SAMPLE_CSV, now=NOW)
        assert [w["downloads"] for w in snapshot.weekly()] == [35]
        assert [c["country"] for c in snapshot.countries()] == ["US", "GB"]
        assert [c["country"] for c in snapshot.countries(limit=1)] == ["US"]

    def test_merge_policy(self):
        text = SAMPLE_CSV + "2024-01-02,US,2.0.0,abc\n2024-01-02,US,2.0.0,5\n"
        strict = build_snapshot(text, now=NOW)
        merged = build_snapshot(text, now=NOW, policy="merge")
        assert strict.parse_errors == 1
        assert len(strict.records) == 4
        assert merged.parse_errors == 0
        assert len(merged.records) == 3
        assert merged.stats["total_downloads"] == strict.stats["total_downloads"] == 40

    def test_missing_columns_gives_zero_state(self):
        snapshot = build_snapshot("date,count\n2024-01-01,5\n", now=NOW)
        assert snapshot.is_empty
        assert snapshot.stats["total_downloads"] == 0
        assert snapshot.date_range["days"] == 0


class TestDashboardRefresh:
    """Tests for the refresh orchestrator."""

    def test_initial_state(self, dashboard):
        assert dashboard.loading
        assert dashboard.error is None
        assert dashboard.snapshot.version == 0
        assert dashboard.last_updated is None

    def test_successful_refresh(self, dashboard, feeds):
        assert dashboard.refresh() is True
        snapshot = dashboard.snapshot
        assert snapshot.version == 1
        assert snapshot.stats["total_downloads"] == 35
        assert snapshot.github["comment_cnt"] == 40
        assert snapshot.gitter["post_cnt"] == 300
        assert dashboard.error is None
        assert not dashboard.loading
        assert dashboard.last_updated == NOW
        assert sorted(feeds.calls) == sorted([CSV_URL, GITHUB_URL, GITTER_URL])

    def test_versions_increase(self, dashboard):
        dashboard.refresh()
        dashboard.refresh()
        assert dashboard.snapshot.version == 2

    def test_partial_failure_keeps_previous_snapshot(self, dashboard, feeds, sleeps):
        """A feed failing after retries must not leak any new data."""
        dashboard.refresh()
        before = dashboard.snapshot

        feeds.set({CSV_URL: UPDATED_CSV, GITHUB_URL: requests.ConnectionError("down")})
        assert dashboard.refresh() is False

        assert dashboard.snapshot is before
        assert dashboard.snapshot.stats["total_downloads"] == 35
        assert dashboard.error is not None
        assert "github" in dashboard.error
        assert "5 minutes" in dashboard.error
        # 3 attempts for the failing feed, with a delay between each
        assert feeds.calls.count(GITHUB_URL) == 1 + 3
        assert sleeps == [2.0, 2.0]

    def test_first_cycle_failure_keeps_zero_state(self, dashboard, feeds):
        feeds.set({GITTER_URL: requests.HTTPError("500 Server Error")})
        assert dashboard.refresh() is False
        assert dashboard.snapshot.version == 0
        assert dashboard.snapshot.is_empty
        assert not dashboard.loading

    def test_retry_recovers(self, dashboard, feeds):
        feeds.set({CSV_URL: OSError("unreachable")})
        assert dashboard.refresh() is False
        assert "downloads" in dashboard.error

        feeds.set({CSV_URL: SAMPLE_CSV})
        assert dashboard.retry() is True
        assert dashboard.error is None
        assert dashboard.snapshot.version == 1

    def test_optional_feeds_skipped(self, feeds, sleeps):
        config = make_config(github_url="", gitter_url="")
        dashboard = Dashboard(config, fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)
        assert dashboard.refresh() is True
        assert feeds.calls == [CSV_URL]
        assert dashboard.snapshot.github is None
        assert dashboard.snapshot.gitter is None

    def test_malformed_community_feed_is_soft_failure(self, dashboard, feeds):
        feeds.set({GITHUB_URL: "{not json"})
        assert dashboard.refresh() is True
        assert dashboard.snapshot.github is None
        assert dashboard.snapshot.gitter is not None

    def test_malformed_csv_is_soft_failure(self, dashboard, feeds):
        feeds.set({CSV_URL: "nothing,useful\n1,2\n"})
        assert dashboard.refresh() is True
        assert dashboard.error is None
        assert dashboard.snapshot.is_empty
        assert dashboard.snapshot.version == 1

    def test_unexpected_fetch_error_fails_cycle(self, dashboard, feeds, caplog):
        """Errors outside the retried set still end the cycle without raising."""
        dashboard.refresh()
        before = dashboard.snapshot

        feeds.set({CSV_URL: ValueError("embedded null byte")})
        with caplog.at_level(logging.ERROR, logger="pkgdash"):
            assert dashboard.refresh() is False

        assert dashboard.snapshot is before
        assert "downloads" in dashboard.error
        assert "Refresh cycle failed" in caplog.text
        assert not dashboard.loading

    def test_uses_configured_retry_settings(self, feeds, sleeps):
        feeds.set({CSV_URL: OSError("unreachable")})
        config = make_config(retry_attempts=5, retry_delay=0.25, github_url="", gitter_url="")
        dashboard = Dashboard(config, fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)
        dashboard.refresh()
        assert feeds.calls.count(CSV_URL) == 5
        assert sleeps == [0.25] * 4


class TestDashboardSubscribers:
    """Tests for snapshot publication."""

    def test_subscriber_receives_new_snapshot(self, dashboard):
        received = []
        dashboard.subscribe(received.append)
        dashboard.refresh()
        assert received == [dashboard.snapshot]

    def test_not_notified_on_failure(self, dashboard, feeds):
        received = []
        dashboard.subscribe(received.append)
        feeds.set({CSV_URL: OSError("unreachable")})
        dashboard.refresh()
        assert received == []

    def test_unsubscribe(self, dashboard):
        received = []
        unsubscribe = dashboard.subscribe(received.append)
        unsubscribe()
        unsubscribe()
        dashboard.refresh()
        assert received == []

    def test_failing_subscriber_does_not_break_cycle(self, dashboard, caplog):
        received = []

        def broken(snapshot):
            raise RuntimeError("boom")

        dashboard.subscribe(broken)
        dashboard.subscribe(received.append)
        with caplog.at_level(logging.ERROR, logger="pkgdash"):
            assert dashboard.refresh() is True
        assert len(received) == 1
        assert "subscriber" in caplog.text


class TestDashboardTimer:
    """Tests for the periodic refresh loop."""

    def test_run_counts_cycles(self, feeds, sleeps):
        config = make_config(refresh_interval=0.01)
        dashboard = Dashboard(config, fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)
        dashboard.run(cycles=3)
        assert dashboard.snapshot.version == 3

    def test_run_continues_after_unexpected_error(self, feeds, sleeps):
        feeds.set({CSV_URL: [ValueError("embedded null byte"), SAMPLE_CSV]})
        config = make_config(refresh_interval=0.01)
        dashboard = Dashboard(config, fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)
        dashboard.run(cycles=2)
        assert feeds.calls.count(CSV_URL) == 2
        assert dashboard.snapshot.version == 1
        assert dashboard.error is None

    def test_start_refreshes_immediately_and_stop_joins(self, feeds, sleeps):
        published = threading.Event()
        dashboard = Dashboard(make_config(), fetch=feeds, sleep=sleeps.append, clock=lambda: NOW)
        dashboard.subscribe(lambda snapshot: published.set())

        dashboard.start()
        assert dashboard.is_running
        assert published.wait(timeout=5)
        dashboard.stop(timeout=5)

        assert not dashboard.is_running
        assert dashboard.snapshot.version == 1

    def test_context_manager_stops_thread(self, feeds, sleeps):
        published = threading.Event()
        with Dashboard(make_config(), fetch=feeds, sleep=sleeps.append, clock=lambda: NOW) as dashboard:
            dashboard.subscribe(lambda snapshot: published.set())
            dashboard.start()
            assert published.wait(timeout=5)
        assert not dashboard.is_running

    @pytest.mark.parametrize(
        "seconds, expected",
        [(300, "5 minutes"), (60, "1 minute"), (90, "90 seconds"), (2.5, "2.5 seconds"), (1, "1 second")],
    )
    def test_describe_interval(self, seconds, expected):
        assert describe_interval(seconds) == expected


class TestHTMLReport:
    """Tests for HTML report generation."""

    def test_render_contains_cards_and_charts(self):
        snapshot = build_snapshot(SAMPLE_CSV, GITHUB_JSON, GITTER_JSON, now=NOW)
        content = render_dashboard_html(snapshot, title="SimBA Download Statistics")
        assert "<!DOCTYPE html>" in content
        assert "SimBA Download Statistics" in content
        assert "Downloads (3 days)" in content
        assert "Downloads (48h)" in content
        assert "United States" in content
        assert "2.0.0" in content
        assert "GitHub Posts" in content
        assert 'id="country-chart"' in content

    def test_feed_text_is_escaped(self):
        text = "download_date,country,package_version,download_count\n2024-01-01,<b>,<script>,5\n"
        content = render_dashboard_html(build_snapshot(text, now=NOW))
        assert "<script>" not in content
        assert "&lt;script&gt;" in content

    def test_error_banner(self):
        content = render_dashboard_html(empty_snapshot(NOW), error="Failed to load download statistics")
        assert 'class="error-banner"' in content
        assert "Failed to load download statistics" in content

    def test_no_banner_without_error(self):
        content = render_dashboard_html(build_snapshot(SAMPLE_CSV, now=NOW))
        assert 'class="error-banner"' not in content

    def test_generate_html_report_creates_file(self, tmp_path):
        output = tmp_path / "report.html"
        generate_html_report(build_snapshot(SAMPLE_CSV, now=NOW), str(output))
        assert output.exists()
        assert "United Kingdom" in output.read_text()

    def test_empty_snapshot_warns(self, tmp_path, caplog):
        output = tmp_path / "report.html"
        with caplog.at_level(logging.WARNING, logger="pkgdash"):
            generate_html_report(empty_snapshot(NOW), str(output))
        assert output.exists()
        assert "No download records" in caplog.text

    def test_weekly_chart_needs_two_weeks(self):
        snapshot = build_snapshot(SAMPLE_CSV, now=NOW)
        assert "Not enough data" in make_weekly_line_chart(snapshot.weekly())

    def test_weekly_chart_draws_points(self):
        text = SAMPLE_CSV + "2024-01-09,US,2.0.0,8\n2024-01-16,US,2.0.0,4\n"
        chart = make_weekly_line_chart(build_snapshot(text, now=NOW).weekly())
        assert "<polyline" in chart
        assert chart.count("<circle") == 3

    def test_pie_chart_groups_other(self):
        data = [(f"1.{i}", 10 - i) for i in range(10)]
        chart = make_svg_pie_chart(data, "versions")
        assert "Other (" in chart
        assert "1.9 (" not in chart

    def test_pie_chart_single_slice(self):
        assert "<circle" in make_svg_pie_chart([("1.0", 5)], "versions")


class TestCLI:
    """Tests for CLI argument parsing and commands."""

    def test_main_no_command_shows_help(self, capsys):
        """main() with no command should print help."""
        with patch("sys.argv", ["pkgdash"]):
            main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()

    def test_show_command(self, csv_file, capsys):
        main(["--csv", csv_file, "show"])
        captured = capsys.readouterr()
        assert "Latest version" in captured.out
        assert "2.0.0" in captured.out
        assert "35" in captured.out

    def test_versions_command(self, csv_file, capsys):
        main(["--csv", csv_file, "versions"])
        captured = capsys.readouterr()
        assert "1.10.0" in captured.out
        assert "57.1%" in captured.out

    def test_countries_command(self, csv_file, capsys):
        main(["--csv", csv_file, "countries", "-n", "1"])
        captured = capsys.readouterr()
        assert "United States" in captured.out
        assert "United Kingdom" not in captured.out

    def test_weekly_command(self, csv_file, capsys):
        main(["--csv", csv_file, "weekly"])
        captured = capsys.readouterr()
        assert "2023-12-31" in captured.out

    def test_export_json_to_stdout(self, csv_file, capsys):
        main(["--csv", csv_file, "export", "-f", "json"])
        data = json.loads(capsys.readouterr().out)
        assert data["summary"]["total_downloads"] == 35

    def test_export_to_file(self, csv_file, tmp_path, capsys):
        output = tmp_path / "versions.csv"
        main(["--csv", csv_file, "export", "-o", str(output)])
        assert output.read_text().startswith("rank,package_version,downloads,share_pct")
        assert "Exported to" in capsys.readouterr().out

    def test_report_command(self, csv_file, tmp_path):
        output = tmp_path / "report.html"
        with patch("webbrowser.open_new_tab") as mock_open:
            main(["--csv", csv_file, "report", "-o", str(output)])
        assert "United States" in output.read_text()
        mock_open.assert_called_once()

    def test_report_no_browser(self, csv_file, tmp_path):
        output = tmp_path / "report.html"
        with patch("webbrowser.open_new_tab") as mock_open:
            main(["--csv", csv_file, "report", "-o", str(output), "--no-browser"])
        assert output.exists()
        mock_open.assert_not_called()

    def test_fetch_failure_exits(self, tmp_path, fast_config, capsys):
        missing = str(tmp_path / "missing.csv")
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", fast_config, "--csv", missing, "show"])
        assert exc_info.value.code == 1
        assert "Failed to load download statistics" in capsys.readouterr().out

    def test_missing_config_exits(self, csv_file, capsys):
        with pytest.raises(SystemExit):
            main(["-c", "/nonexistent/pkgdash.yml", "--csv", csv_file, "show"])
        assert "Config file not found" in capsys.readouterr().out

    def test_invalid_config_exits(self, csv_file, tmp_path, capsys):
        path = tmp_path / "bad.yml"
        path.write_text(yaml.dump({"refresh_interval": -1}))
        with pytest.raises(SystemExit):
            main(["-c", str(path), "--csv", csv_file, "show"])
        assert "Invalid config" in capsys.readouterr().out

    def test_watch_prints_each_update(self, csv_file, fast_config, tmp_path, capsys):
        output = tmp_path / "live.html"
        main(["-c", fast_config, "--csv", csv_file, "watch", "--count", "2", "-o", str(output)])
        captured = capsys.readouterr()
        assert "[v1]" in captured.out
        assert "[v2]" in captured.out
        assert output.exists()

    def test_watch_failure_writes_stale_report(self, tmp_path, fast_config, capsys):
        output = tmp_path / "live.html"
        missing = str(tmp_path / "missing.csv")
        main(["-c", fast_config, "--csv", missing, "watch", "--count", "1", "-o", str(output)])
        content = Path(output).read_text()
        assert 'class="error-banner"' in content
