"""Export functions for various formats."""

import csv
import io
import json
from datetime import datetime, timezone
from typing import Any

from .aggregations import top_versions
from .dashboard import DashboardSnapshot
from .stats import versions_by_downloads
from .utils import format_date


def _share(downloads: int, total: int) -> float:
    return round(downloads / total * 100, 2) if total > 0 else 0.0


def _markdown_cell(value: str) -> str:
    """Escape pipes so a value can't split a Markdown table cell."""
    return value.replace("|", "\\|")


def export_csv(snapshot: DashboardSnapshot, output: io.StringIO | None = None) -> str:
    """Export per-version download totals to CSV format."""
    if output is None:
        output = io.StringIO()

    total = snapshot.stats["total_downloads"]
    writer = csv.writer(output)
    writer.writerow(["rank", "package_version", "downloads", "share_pct"])

    for i, (version, downloads) in enumerate(versions_by_downloads(snapshot.stats), 1):
        writer.writerow([i, version, downloads, _share(downloads, total)])

    return output.getvalue()


def snapshot_to_dict(snapshot: DashboardSnapshot) -> dict[str, Any]:
    """JSON-friendly view of a snapshot (dates as ISO strings)."""
    stats = snapshot.stats
    date_range = snapshot.date_range
    return {
        "generated": datetime.now(timezone.utc).isoformat(),
        "updated_at": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
        "summary": {
            "total_downloads": stats["total_downloads"],
            "average_downloads": stats["average_downloads"],
            "latest_version": stats["latest_version"],
            "recent_downloads_48h": snapshot.recent_downloads,
            "unique_countries": snapshot.unique_countries,
            "start_date": format_date(date_range["start_date"]),
            "end_date": format_date(date_range["end_date"]),
            "days": date_range["days"],
        },
        "versions": [
            {"version": version, "downloads": downloads}
            for version, downloads in versions_by_downloads(stats)
        ],
        "countries": [
            {
                "country": c["country"],
                "name": c["name"],
                "downloads": c["downloads"],
                "top_versions": dict(top_versions(c)),
            }
            for c in snapshot.countries()
        ],
        "weekly": [
            {
                "week_start": format_date(w["week_start"]),
                "downloads": w["downloads"],
                "max_downloads": w["max_downloads"],
            }
            for w in snapshot.weekly()
        ],
        "github": snapshot.github,
        "gitter": snapshot.gitter,
    }


def export_json(snapshot: DashboardSnapshot) -> str:
    """Export the full snapshot to JSON format."""
    return json.dumps(snapshot_to_dict(snapshot), indent=2)


def export_markdown(snapshot: DashboardSnapshot) -> str:
    """Export summary and per-version totals as Markdown tables."""
    stats = snapshot.stats
    total = stats["total_downloads"]
    date_range = snapshot.date_range

    lines = [
        "| Metric | Value |",
        "|--------|------:|",
        f"| Downloads ({date_range['days']} days) | {total:,} |",
        f"| Downloads (48h) | {snapshot.recent_downloads:,} |",
        f"| Latest version | {_markdown_cell(stats['latest_version'])} |",
        f"| Countries | {snapshot.unique_countries:,} |",
        "",
        "| Rank | Version | Downloads | Share |",
        "|------|---------|----------:|------:|",
    ]

    for i, (version, downloads) in enumerate(versions_by_downloads(stats), 1):
        lines.append(
            f"| {i} | {_markdown_cell(version)} | {downloads:,} | {_share(downloads, total):.1f}% |"
        )

    return "\n".join(lines)
