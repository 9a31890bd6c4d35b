"""
pkgdash - Dashboard for package download statistics.

Fetches a download-records CSV feed (plus optional community activity
snapshots), derives summary statistics and chart view-models, and renders
them as terminal tables or a self-contained HTML report.
"""

__version__ = "0.1.0"

from .cli import main  # noqa: E402

__all__ = ["__version__", "main"]
