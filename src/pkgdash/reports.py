"""HTML dashboard report with inline SVG charts."""

import html
import logging
import math
from datetime import datetime

from .aggregations import top_versions
from .dashboard import DashboardSnapshot
from .stats import versions_by_downloads
from .types import CountryAggregate, GithubStats, GitterStats, WeeklyBucket
from .utils import format_date, format_date_range

logger = logging.getLogger("pkgdash")

# -----------------------------------------------------------------------------
# Theme and Chart Constants
# -----------------------------------------------------------------------------

THEME_BACKGROUND = "#0a192f"
THEME_PANEL = "#112240"
THEME_TEXT = "#ffffff"
THEME_MUTED = "#8892b0"
THEME_ACCENT = "#64ffda"

DEFAULT_LINE_CHART_WIDTH = 700
DEFAULT_LINE_CHART_HEIGHT = 260
DEFAULT_PIE_CHART_SIZE = 220

# Pie chart limits
PIE_CHART_MAX_ITEMS = 8  # Maximum slices before grouping into "Other"

# Country chart shows the top 15 countries, each tooltip the top 10 versions
REPORT_TOP_COUNTRIES = 15
REPORT_TOP_VERSIONS = 10


# -----------------------------------------------------------------------------
# CSS Styles
# -----------------------------------------------------------------------------


def _get_styles() -> str:
    """Return the dashboard stylesheet."""
    return f"""
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            max-width: 1200px;
            margin: 0 auto;
            padding: 20px;
            background: {THEME_BACKGROUND};
            color: {THEME_TEXT};
        }}
        h1 {{
            text-align: center;
            margin-bottom: 4px;
        }}
        .subtitle {{
            text-align: center;
            color: {THEME_MUTED};
            margin: 2px 0;
        }}
        .chart-container {{
            background: {THEME_PANEL};
            border-radius: 8px;
            padding: 20px;
            margin: 20px 0;
            overflow-x: auto;
        }}
        .stats-grid {{
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(200px, 1fr));
            gap: 20px;
            margin: 30px 0;
        }}
        .stat-card {{
            background: {THEME_PANEL};
            border-radius: 8px;
            padding: 20px;
            text-align: center;
        }}
        .stat-value {{
            font-size: 26px;
            font-weight: bold;
            color: {THEME_ACCENT};
        }}
        .stat-label {{
            font-size: 12px;
            color: {THEME_MUTED};
            margin-top: 5px;
        }}
        .error-banner {{
            background: #fee2e2;
            border: 1px solid #f87171;
            color: #b91c1c;
            padding: 12px 16px;
            border-radius: 6px;
            margin: 20px 0;
        }}
        .footer {{
            color: {THEME_MUTED};
            font-size: 0.9em;
            margin-top: 40px;
            text-align: center;
        }}
    """


# -----------------------------------------------------------------------------
# HTML Template
# -----------------------------------------------------------------------------


def _render_html_document(title: str, body_content: str) -> str:
    """Render a complete HTML document around ``body_content``."""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(title)}</title>
    <style>{_get_styles()}</style>
</head>
<body>
{body_content}
</body>
</html>
"""


def _stat_card(label: str, value: str) -> str:
    return (
        '        <div class="stat-card">\n'
        f'            <div class="stat-value">{html.escape(value)}</div>\n'
        f'            <div class="stat-label">{html.escape(label)}</div>\n'
        "        </div>\n"
    )


# -----------------------------------------------------------------------------
# SVG Chart Components
# -----------------------------------------------------------------------------


def make_country_bar_chart(
    countries: list[CountryAggregate],
    chart_id: str = "country-chart",
    top_version_count: int = REPORT_TOP_VERSIONS,
) -> str:
    """Horizontal bar chart of downloads per country.

    Each bar carries an SVG ``<title>`` tooltip listing the country's top
    versions.
    """
    if not countries:
        return "<p>No country data available.</p>"

    max_val = max(c["downloads"] for c in countries) or 1
    bar_height = 26
    bar_gap = 8
    label_width = 170
    value_width = 90
    chart_width = 720
    bar_area_width = chart_width - label_width - value_width
    chart_height = len(countries) * (bar_height + bar_gap) + 20

    svg_parts = [
        f'<svg id="{chart_id}" viewBox="0 0 {chart_width} {chart_height}" '
        f'style="width:100%;max-width:{chart_width}px;height:auto;font-family:system-ui,sans-serif;font-size:12px;">'
    ]

    for i, country in enumerate(countries):
        y = i * (bar_height + bar_gap) + 10
        bar_width = (country["downloads"] / max_val) * bar_area_width
        name = html.escape(country["name"])

        tooltip_lines = [f"Total Downloads: {country['downloads']:,}", "", "Top Versions:"]
        tooltip_lines += [
            f"{version}: {downloads:,} downloads"
            for version, downloads in top_versions(country, top_version_count)
        ]
        tooltip = html.escape("\n".join(tooltip_lines))

        svg_parts.append(
            f'<text x="{label_width - 8}" y="{y + bar_height // 2 + 4}" '
            f'text-anchor="end" fill="{THEME_TEXT}">{name}</text>'
        )
        svg_parts.append(
            f'<rect x="{label_width}" y="{y}" width="{bar_width:.1f}" '
            f'height="{bar_height}" fill="rgba(255,255,255,0.15)" stroke="{THEME_TEXT}" '
            f'stroke-width="1" rx="4"><title>{name}\n{tooltip}</title></rect>'
        )
        svg_parts.append(
            f'<text x="{label_width + bar_area_width + 8}" y="{y + bar_height // 2 + 4}" '
            f'fill="{THEME_MUTED}">{country["downloads"]:,}</text>'
        )

    svg_parts.append("</svg>")
    return "\n".join(svg_parts)


def make_weekly_line_chart(
    weeks: list[WeeklyBucket],
    chart_id: str = "weekly-chart",
    chart_width: int = DEFAULT_LINE_CHART_WIDTH,
    chart_height: int = DEFAULT_LINE_CHART_HEIGHT,
) -> str:
    """Line chart of weekly downloads.

    Point opacity is scaled by the week's largest single-day count relative
    to the busiest week, so spiky weeks stand out.
    """
    if len(weeks) < 2:
        return "<p>Not enough data for a weekly trend chart.</p>"

    margin = {"top": 20, "right": 20, "bottom": 40, "left": 80}
    plot_width = chart_width - margin["left"] - margin["right"]
    plot_height = chart_height - margin["top"] - margin["bottom"]
    max_val = max(w["downloads"] for w in weeks) or 1
    max_peak = max(w["max_downloads"] for w in weeks) or 1

    svg_parts = [
        f'<svg id="{chart_id}" viewBox="0 0 {chart_width} {chart_height}" '
        f'style="width:100%;max-width:{chart_width}px;height:auto;font-family:system-ui,sans-serif;font-size:11px;">'
    ]

    # Y-axis labels and grid lines
    for i in range(5):
        y_val = max_val * (4 - i) / 4
        y_pos = margin["top"] + (i * plot_height / 4)
        svg_parts.append(
            f'<text x="{margin["left"] - 8}" y="{y_pos + 4}" '
            f'text-anchor="end" fill="{THEME_MUTED}">{int(y_val):,}</text>'
        )
        svg_parts.append(
            f'<line x1="{margin["left"]}" y1="{y_pos}" '
            f'x2="{chart_width - margin["right"]}" y2="{y_pos}" '
            f'stroke="rgba(255,255,255,0.1)" stroke-width="1"/>'
        )

    # X-axis labels (first, middle, last week)
    last = len(weeks) - 1
    for idx in sorted({0, last // 2, last}):
        x_pos = margin["left"] + (idx / last) * plot_width
        svg_parts.append(
            f'<text x="{x_pos:.1f}" y="{chart_height - 10}" '
            f'text-anchor="middle" fill="{THEME_MUTED}">{format_date(weeks[idx]["week_start"])}</text>'
        )

    points = []
    markers = []
    for i, week in enumerate(weeks):
        x = margin["left"] + (i / last) * plot_width
        y = margin["top"] + plot_height - (week["downloads"] / max_val) * plot_height
        points.append(f"{x:.1f},{y:.1f}")
        opacity = 0.3 + 0.7 * (week["max_downloads"] / max_peak)
        markers.append(
            f'<circle cx="{x:.1f}" cy="{y:.1f}" r="4" fill="{THEME_TEXT}" '
            f'fill-opacity="{opacity:.2f}"><title>Week of {format_date(week["week_start"])}: '
            f'{week["downloads"]:,} downloads</title></circle>'
        )

    svg_parts.append(
        f'<polyline points="{" ".join(points)}" '
        f'fill="none" stroke="{THEME_TEXT}" stroke-width="2"/>'
    )
    svg_parts.extend(markers)
    svg_parts.append("</svg>")
    return "\n".join(svg_parts)


def make_svg_pie_chart(
    data: list[tuple[str, int]], chart_id: str, size: int = DEFAULT_PIE_CHART_SIZE
) -> str:
    """Pie chart with a legend; slices past the limit are grouped as "Other"."""
    total = sum(v for _, v in data)
    if not data or total == 0:
        return "<p>No data available.</p>"

    if len(data) > PIE_CHART_MAX_ITEMS:
        other_total = sum(v for _, v in data[PIE_CHART_MAX_ITEMS - 1 :])
        data = data[: PIE_CHART_MAX_ITEMS - 1] + [("Other", other_total)]

    cx = cy = size // 2
    radius = size // 2 - 10
    legend_width = 170
    total_width = size + legend_width

    svg_parts = [
        f'<svg id="{chart_id}" viewBox="0 0 {total_width} {size}" '
        f'style="width:100%;max-width:{total_width}px;height:auto;font-family:system-ui,sans-serif;font-size:11px;">'
    ]

    start_angle = 0.0
    for i, (name, value) in enumerate(data):
        if value == 0:
            continue
        pct = value / total
        hue = (i * 360 // len(data)) % 360
        color = f"hsl({hue}, 70%, 60%)"

        if pct >= 1:
            # A single full slice can't be drawn as an arc
            svg_parts.append(f'<circle cx="{cx}" cy="{cy}" r="{radius}" fill="{color}"/>')
        else:
            angle = pct * 360
            end_angle = start_angle + angle
            start_rad = math.radians(start_angle - 90)
            end_rad = math.radians(end_angle - 90)
            x1 = cx + radius * math.cos(start_rad)
            y1 = cy + radius * math.sin(start_rad)
            x2 = cx + radius * math.cos(end_rad)
            y2 = cy + radius * math.sin(end_rad)
            large_arc = 1 if angle > 180 else 0
            path = (
                f"M {cx} {cy} L {x1:.1f} {y1:.1f} "
                f"A {radius} {radius} 0 {large_arc} 1 {x2:.1f} {y2:.1f} Z"
            )
            svg_parts.append(f'<path d="{path}" fill="{color}"/>')
            start_angle = end_angle

        ly = 20 + i * 22
        svg_parts.append(
            f'<rect x="{size + 10}" y="{ly - 9}" width="12" height="12" fill="{color}"/>'
        )
        svg_parts.append(
            f'<text x="{size + 28}" y="{ly}" fill="{THEME_TEXT}">'
            f"{html.escape(name)} ({pct * 100:.1f}%)</text>"
        )

    svg_parts.append("</svg>")
    return "\n".join(svg_parts)


# -----------------------------------------------------------------------------
# Report Sections
# -----------------------------------------------------------------------------


def _community_section(github: GithubStats | None, gitter: GitterStats | None) -> str:
    if github is None and gitter is None:
        return ""

    cards = ""
    if github is not None:
        cards += _stat_card("GitHub Posts", f"{github['post_cnt']:,}")
        cards += _stat_card("GitHub Comments", f"{github['comment_cnt']:,}")
        cards += _stat_card("GitHub Post Authors", f"{github['post_authors']:,}")
    if gitter is not None:
        cards += _stat_card("Gitter Posts", f"{gitter['post_cnt']:,}")
        cards += _stat_card("Gitter Active Users", f"{gitter['unique_users_with_posts']:,}")
        cards += _stat_card("Gitter Posts per User", f"{gitter['avg_posts_per_user']:.1f}")

    as_of = [s["date"] for s in (github, gitter) if s is not None]
    return f"""    <h2>Community</h2>
    <p class="subtitle">As of {html.escape(", ".join(str(d) for d in as_of))}</p>
    <div class="stats-grid">
{cards}    </div>
"""


def render_dashboard_html(
    snapshot: DashboardSnapshot,
    title: str = "Package Download Statistics",
    error: str | None = None,
) -> str:
    """Render a snapshot as a self-contained HTML page.

    ``error`` is shown as a banner above the (possibly stale) data.
    """
    stats = snapshot.stats
    date_range = snapshot.date_range
    days = date_range["days"]

    cards = (
        _stat_card(f"Downloads ({days} days)", f"{stats['total_downloads']:,}")
        + _stat_card("Downloads (48h)", f"{snapshot.recent_downloads:,}")
        + _stat_card("Latest Version", stats["latest_version"])
        + _stat_card(f"Download Countries ({days} days)", f"{snapshot.unique_countries:,}")
    )

    weekly_chart = make_weekly_line_chart(snapshot.weekly())
    country_chart = make_country_bar_chart(snapshot.countries(limit=REPORT_TOP_COUNTRIES))
    version_chart = make_svg_pie_chart(versions_by_downloads(stats), "version-chart")

    error_html = (
        f'    <div class="error-banner">{html.escape(error)}</div>\n' if error else ""
    )
    updated = (
        snapshot.updated_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        if snapshot.updated_at
        else "never"
    )
    generated = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    body_content = f"""    <h1>{html.escape(title)}</h1>
    <p class="subtitle">Last {days} days</p>
    <p class="subtitle">{format_date_range(date_range["start_date"], date_range["end_date"])}</p>
{error_html}
    <div class="stats-grid">
{cards}    </div>

    <div class="chart-container">
        <h2>Weekly Download Trends</h2>
        {weekly_chart}
    </div>

    <div class="chart-container">
        <h2>Downloads by Country ({days} days)</h2>
        {country_chart}
    </div>

    <div class="chart-container">
        <h2>Downloads by Version</h2>
        {version_chart}
    </div>

{_community_section(snapshot.github, snapshot.gitter)}
    <div class="footer">
        <p>Data source: bigquery-public-data.pypi.file_downloads</p>
        <p>Last updated: {updated} &middot; Generated on {generated}</p>
    </div>
"""
    return _render_html_document(title, body_content)


def generate_html_report(
    snapshot: DashboardSnapshot,
    output_file: str,
    title: str = "Package Download Statistics",
    error: str | None = None,
) -> None:
    """Write the dashboard report for ``snapshot`` to ``output_file``."""
    if snapshot.is_empty:
        logger.warning("No download records available; writing zero-state report.")

    with open(output_file, "w", encoding="utf-8") as f:
        f.write(render_dashboard_html(snapshot, title=title, error=error))
    logger.info("Report generated: %s", output_file)
