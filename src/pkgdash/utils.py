"""Formatting helpers shared by the CLI and report output."""

from datetime import datetime

# -----------------------------------------------------------------------------
# Sparkline Constants
# -----------------------------------------------------------------------------

# Default width for sparkline charts (number of characters)
SPARKLINE_WIDTH = 12

# Characters used to represent values in sparklines (low to high)
SPARKLINE_CHARS = " _.,:-=+*#"

DATE_FORMAT = "%Y-%m-%d"


def format_count(count: int) -> str:
    """Format a download count compactly.

    Examples: 1234 -> "1.2K", 1234567 -> "1.2M", 123 -> "123"
    """
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.1f}B"
    elif count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    elif count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def format_date(value: datetime | None) -> str:
    """Format a datetime as YYYY-MM-DD, or an empty string for None."""
    if value is None:
        return ""
    return value.strftime(DATE_FORMAT)


def format_date_range(start: datetime, end: datetime) -> str:
    return f"{format_date(start)} - {format_date(end)}"


def make_sparkline(values: list[int], width: int = SPARKLINE_WIDTH) -> str:
    """Generate an ASCII sparkline of the last ``width`` values.

    Shorter inputs are left-padded with zeros; a flat series renders as a
    row of the middle character.
    """
    if not values:
        return " " * width

    values = values[-width:]
    if len(values) < width:
        values = [0] * (width - len(values)) + values

    min_val = min(values)
    max_val = max(values)

    if max_val == min_val:
        mid_idx = len(SPARKLINE_CHARS) // 2
        return SPARKLINE_CHARS[mid_idx] * width

    scale = len(SPARKLINE_CHARS) - 1
    return "".join(
        SPARKLINE_CHARS[int((v - min_val) / (max_val - min_val) * scale)]
        for v in values
    )
