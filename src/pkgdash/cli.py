"""CLI argument parsing and command implementations."""

import argparse
import sys
import webbrowser
from pathlib import Path

from tabulate import tabulate

from . import __version__
from .aggregations import DEFAULT_TOP_COUNTRIES, DEFAULT_TOP_VERSIONS, top_versions
from .config import ConfigError, load_config
from .dashboard import Dashboard, DashboardSnapshot
from .export import export_csv, export_json, export_markdown
from .logging import setup_logging
from .reports import generate_html_report
from .stats import versions_by_downloads
from .utils import format_count, format_date, format_date_range, make_sparkline


DEFAULT_REPORT_FILE = "pkgdash-report.html"


def load_dashboard(args: argparse.Namespace) -> Dashboard:
    """Build a Dashboard from the config file and command-line overrides."""
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        print(f"Config file not found: {args.config}")
        sys.exit(1)
    except ConfigError as e:
        print(f"Invalid config: {e}")
        sys.exit(1)

    if args.csv:
        config["csv_url"] = args.csv
    return Dashboard(config)


def fetch_snapshot(args: argparse.Namespace) -> tuple[Dashboard, DashboardSnapshot]:
    """Run one refresh cycle, exiting with status 1 if it fails."""
    dashboard = load_dashboard(args)
    if not dashboard.refresh():
        print(dashboard.error)
        sys.exit(1)
    return dashboard, dashboard.snapshot


def print_summary(snapshot: DashboardSnapshot) -> None:
    """Print the overview cards as a two-column table."""
    stats = snapshot.stats
    date_range = snapshot.date_range
    weekly = [w["downloads"] for w in snapshot.weekly()]

    rows = [
        ["Date range", format_date_range(date_range["start_date"], date_range["end_date"])],
        [f"Downloads ({date_range['days']} days)", f"{stats['total_downloads']:,}"],
        ["Downloads (48h)", f"{snapshot.recent_downloads:,}"],
        ["Latest version", stats["latest_version"]],
        ["Average per version", f"{stats['average_downloads']:,}"],
        ["Countries", f"{snapshot.unique_countries:,}"],
        ["Weekly trend", make_sparkline(weekly)],
    ]
    if snapshot.parse_errors:
        rows.append(["Rejected rows", f"{snapshot.parse_errors:,}"])
    if snapshot.github is not None:
        rows.append(["GitHub posts / comments", f"{snapshot.github['post_cnt']:,} / {snapshot.github['comment_cnt']:,}"])
    if snapshot.gitter is not None:
        rows.append(["Gitter posts / active users", f"{snapshot.gitter['post_cnt']:,} / {snapshot.gitter['unique_users_with_posts']:,}"])

    print(tabulate(rows, tablefmt="simple"))


def cmd_show(args: argparse.Namespace) -> None:
    """Show command: fetch feeds and display the overview."""
    _, snapshot = fetch_snapshot(args)
    if snapshot.is_empty:
        print("No download records found in feed.")
    print_summary(snapshot)


def cmd_versions(args: argparse.Namespace) -> None:
    """Versions command: downloads per package version."""
    _, snapshot = fetch_snapshot(args)
    ranked = versions_by_downloads(snapshot.stats)
    if not ranked:
        print("No download records found in feed.")
        return

    total = snapshot.stats["total_downloads"]
    rows = []
    for i, (version, downloads) in enumerate(ranked[: args.limit], 1):
        pct = (downloads / total * 100) if total > 0 else 0
        rows.append([i, version, f"{downloads:,}", f"{pct:.1f}%"])

    headers = ["#", "Version", "Downloads", "Share"]
    print(tabulate(rows, headers=headers, tablefmt="simple"))


def cmd_countries(args: argparse.Namespace) -> None:
    """Countries command: top countries with their top versions."""
    _, snapshot = fetch_snapshot(args)
    countries = snapshot.countries(limit=args.limit)
    if not countries:
        print("No country data found in feed.")
        return

    rows = []
    for i, country in enumerate(countries, 1):
        versions = ", ".join(
            f"{version} ({downloads:,})"
            for version, downloads in top_versions(country, args.versions)
        )
        rows.append([i, country["name"], country["country"], f"{country['downloads']:,}", versions])

    headers = ["#", "Country", "Code", "Downloads", "Top Versions"]
    print(tabulate(rows, headers=headers, tablefmt="simple"))


def cmd_weekly(args: argparse.Namespace) -> None:
    """Weekly command: downloads per Sunday-aligned week."""
    _, snapshot = fetch_snapshot(args)
    weeks = snapshot.weekly()
    if not weeks:
        print("No download records found in feed.")
        return

    max_week = max(w["downloads"] for w in weeks) or 1
    rows = []
    for w in weeks:
        bar = "#" * int(w["downloads"] / max_week * 30)
        rows.append([format_date(w["week_start"]), f"{w['downloads']:,}", f"{w['max_downloads']:,}", bar])

    headers = ["Week of", "Downloads", "Peak Row", ""]
    print(tabulate(rows, headers=headers, tablefmt="simple"))


def cmd_report(args: argparse.Namespace) -> None:
    """Report command: generate the HTML dashboard."""
    dashboard, snapshot = fetch_snapshot(args)
    generate_html_report(snapshot, args.output, title=dashboard.config["title"])

    if not args.no_browser:
        print("Opening report in browser...")
        webbrowser.open_new_tab(Path(args.output).resolve().as_uri())


def cmd_export(args: argparse.Namespace) -> None:
    """Export command: export the snapshot in various formats."""
    _, snapshot = fetch_snapshot(args)

    if args.format == "csv":
        output = export_csv(snapshot)
    elif args.format == "json":
        output = export_json(snapshot)
    else:
        output = export_markdown(snapshot)

    if args.output:
        with open(args.output, "w") as f:
            f.write(output)
        print(f"Exported to {args.output}")
    else:
        print(output)


def cmd_watch(args: argparse.Namespace) -> None:
    """Watch command: refresh on an interval, printing each new snapshot."""
    setup_logging(verbose=args.verbose, quiet=args.quiet, timestamps=True)
    dashboard = load_dashboard(args)

    def on_publish(snapshot: DashboardSnapshot) -> None:
        stats = snapshot.stats
        print(
            f"[v{snapshot.version}] {format_count(stats['total_downloads'])} downloads | "
            f"48h: {snapshot.recent_downloads:,} | latest: {stats['latest_version']}"
        )
        if args.output:
            generate_html_report(snapshot, args.output, title=dashboard.config["title"])

    dashboard.subscribe(on_publish)
    print(f"Refreshing every {dashboard.config['refresh_interval']:g}s (Ctrl+C to stop)")

    try:
        dashboard.run(cycles=args.count)
    except KeyboardInterrupt:
        print("Stopped.")
    finally:
        dashboard.stop()

    # Keep the last good data on disk, but flag that it's stale
    if dashboard.error and args.output:
        generate_html_report(
            dashboard.snapshot,
            args.output,
            title=dashboard.config["title"],
            error=dashboard.error,
        )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description="Dashboard for package download statistics.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="YAML config file with feed URLs and refresh settings",
    )
    parser.add_argument(
        "--csv",
        help="Download CSV source (URL or local path), overrides the config",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show debug output",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only show warnings and errors",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # show command
    show_parser = subparsers.add_parser(
        "show",
        help="Display the download overview in terminal",
    )
    show_parser.set_defaults(func=cmd_show)

    # versions command
    versions_parser = subparsers.add_parser(
        "versions",
        help="Show downloads per package version",
    )
    versions_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=20,
        help="Number of versions to show (default: 20)",
    )
    versions_parser.set_defaults(func=cmd_versions)

    # countries command
    countries_parser = subparsers.add_parser(
        "countries",
        help="Show downloads by country",
    )
    countries_parser.add_argument(
        "-n",
        "--limit",
        type=int,
        default=DEFAULT_TOP_COUNTRIES,
        help=f"Number of countries to show (default: {DEFAULT_TOP_COUNTRIES})",
    )
    countries_parser.add_argument(
        "--versions",
        type=int,
        default=3,
        help=f"Top versions listed per country (default: 3, chart uses {DEFAULT_TOP_VERSIONS})",
    )
    countries_parser.set_defaults(func=cmd_countries)

    # weekly command
    weekly_parser = subparsers.add_parser(
        "weekly",
        help="Show downloads per week",
    )
    weekly_parser.set_defaults(func=cmd_weekly)

    # report command
    report_parser = subparsers.add_parser(
        "report",
        help="Generate HTML dashboard with charts",
    )
    report_parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_REPORT_FILE,
        help=f"Output HTML file (default: {DEFAULT_REPORT_FILE})",
    )
    report_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't open report in browser (useful for automation)",
    )
    report_parser.set_defaults(func=cmd_report)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export stats in various formats (csv, json, markdown)",
    )
    export_parser.add_argument(
        "-f",
        "--format",
        choices=["csv", "json", "markdown", "md"],
        default="csv",
        help="Export format (default: csv)",
    )
    export_parser.add_argument(
        "-o",
        "--output",
        help="Output file (default: stdout)",
    )
    export_parser.set_defaults(func=cmd_export)

    # watch command
    watch_parser = subparsers.add_parser(
        "watch",
        help="Refresh periodically and print each update",
    )
    watch_parser.add_argument(
        "-o",
        "--output",
        help="Rewrite this HTML report on every update",
    )
    watch_parser.add_argument(
        "--count",
        type=int,
        help="Stop after this many refresh cycles (default: run until interrupted)",
    )
    watch_parser.set_defaults(func=cmd_watch)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    setup_logging(verbose=args.verbose, quiet=args.quiet)
    args.func(args)
