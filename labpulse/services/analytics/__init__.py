"""
Analytics package.

- engine.py: CommitAnalytics, which drives a GitLabClient
- statistics.py: pure aggregation (streaks, heatmaps, languages, insights)
"""

from labpulse.services.analytics.engine import CommitAnalytics, empty_activity
from labpulse.services.analytics.statistics import (
    calculate_streaks,
    generate_commit_statistics,
    generate_heatmap,
    language_diversity,
)

__all__ = [
    "CommitAnalytics",
    "calculate_streaks",
    "empty_activity",
    "generate_commit_statistics",
    "generate_heatmap",
    "language_diversity",
]
