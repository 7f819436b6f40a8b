"""
Pure aggregation functions over fetched GitLab data.

Nothing here performs I/O; every function is a deterministic function of its
inputs plus an explicit reference date. All calendar bucketing is in UTC.
Day-of-week numbering follows GitLab's UI: 0 = Sunday.
"""

import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Any

from labpulse.services.gitlab.constants import ACCESS_LEVELS, DAY_NAMES
from labpulse.services.gitlab.types import CommitRecord

# Longest look-back when counting the current streak
STREAK_SCAN_DAYS = 365

# Heatmap level thresholds: count <= bound -> level
HEATMAP_THRESHOLDS: tuple[tuple[int, int], ...] = ((0, 0), (2, 1), (5, 2), (10, 3))


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_key(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = _utc(value).date()
    return value.isoformat()


def week_key(value: datetime | date) -> str:
    """ISO-8601 week key, e.g. ``2024-W01``. Uses the ISO year, not the calendar year."""
    if isinstance(value, datetime):
        value = _utc(value).date()
    iso_year, iso_week, _ = value.isocalendar()
    return f"{iso_year}-W{iso_week:02d}"


def month_key(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = _utc(value).date()
    return f"{value.year}-{value.month:02d}"


def day_of_week(value: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return value.isoweekday() % 7


def heatmap_level(count: int) -> int:
    for bound, level in HEATMAP_THRESHOLDS:
        if count <= bound:
            return level
    return 4


def _today(today: date | None) -> date:
    return today or datetime.now(UTC).date()


# ─────────────────────────────────────────────────────────────────────────────
# Streaks
# ─────────────────────────────────────────────────────────────────────────────


def calculate_streaks(by_day: Mapping[str, int], today: date | None = None) -> dict[str, int]:
    """
    Longest and current runs of consecutive days with at least one commit.

    The current streak counts backward from ``today`` inclusive and stops at
    the first day without commits, so a day with no commit yet today yields 0.
    """
    active_days = sorted(date.fromisoformat(key) for key, count in by_day.items() if count > 0)

    longest = 0
    run = 0
    previous: date | None = None
    for day in active_days:
        run = run + 1 if previous is not None and (day - previous).days == 1 else 1
        longest = max(longest, run)
        previous = day

    active = set(active_days)
    current = 0
    cursor = _today(today)
    for _ in range(STREAK_SCAN_DAYS):
        if cursor not in active:
            break
        current += 1
        cursor -= timedelta(days=1)

    return {"current": current, "longest": longest}


# ─────────────────────────────────────────────────────────────────────────────
# Commit statistics
# ─────────────────────────────────────────────────────────────────────────────


def empty_statistics() -> dict[str, Any]:
    return {
        "total": 0,
        "by_day": {},
        "by_week": {},
        "by_month": {},
        "by_hour": {},
        "by_day_of_week": {},
        "streak": {"current": 0, "longest": 0},
        "averages": {"commits_per_day": 0.0, "commits_per_week": 0.0, "commits_per_month": 0.0},
        "patterns": {"most_active_day": None, "most_active_hour": None, "most_active_project": None},
        "recent": [],
        "project_stats": {},
    }


def _most_common(counts: Mapping[Any, int]) -> Any | None:
    """Key with the highest count; ties go to the smallest key."""
    if not counts:
        return None
    return min(counts, key=lambda key: (-counts[key], key))


def _average(total: int, buckets: int) -> float:
    return round(total / buckets, 2) if buckets else 0.0


def generate_commit_statistics(
    commits: Sequence[CommitRecord],
    today: date | None = None,
) -> dict[str, Any]:
    """
    Aggregate a commit set into histograms, streaks, averages and patterns.

    ``commits`` is expected newest-first; ``recent`` is its first ten items.
    Averages divide by the number of distinct active days/weeks/months.
    """
    if not commits:
        return empty_statistics()

    by_day: Counter[str] = Counter()
    by_week: Counter[str] = Counter()
    by_month: Counter[str] = Counter()
    by_hour: Counter[int] = Counter()
    by_weekday: Counter[int] = Counter()
    project_stats: dict[int, dict[str, Any]] = {}

    for commit in commits:
        created = _utc(commit.created_at)
        by_day[day_key(created)] += 1
        by_week[week_key(created)] += 1
        by_month[month_key(created)] += 1
        by_hour[created.hour] += 1
        by_weekday[day_of_week(created.date())] += 1

        project = commit.project
        entry = project_stats.get(project.id)
        if entry is None:
            entry = project_stats[project.id] = {
                "id": project.id,
                "name": project.name,
                "path": project.path,
                "commits": 0,
                "first_commit": created,
                "last_commit": created,
            }
        entry["commits"] += 1
        entry["first_commit"] = min(entry["first_commit"], created)
        entry["last_commit"] = max(entry["last_commit"], created)

    total = len(commits)
    busiest_weekday = _most_common(by_weekday)
    busiest_hour = _most_common(by_hour)
    busiest_project = _most_common({pid: stats["commits"] for pid, stats in project_stats.items()})

    return {
        "total": total,
        "by_day": dict(sorted(by_day.items())),
        "by_week": dict(sorted(by_week.items())),
        "by_month": dict(sorted(by_month.items())),
        "by_hour": dict(sorted(by_hour.items())),
        "by_day_of_week": dict(sorted(by_weekday.items())),
        "streak": calculate_streaks(by_day, today),
        "averages": {
            "commits_per_day": _average(total, len(by_day)),
            "commits_per_week": _average(total, len(by_week)),
            "commits_per_month": _average(total, len(by_month)),
        },
        "patterns": {
            "most_active_day": DAY_NAMES[busiest_weekday],
            "most_active_hour": f"{busiest_hour}:00",
            "most_active_project": project_stats[busiest_project]["name"],
        },
        "recent": [commit.to_dict() for commit in commits[:10]],
        "project_stats": {
            pid: {
                **stats,
                "first_commit": stats["first_commit"].isoformat(),
                "last_commit": stats["last_commit"].isoformat(),
            }
            for pid, stats in project_stats.items()
        },
    }


# ─────────────────────────────────────────────────────────────────────────────
# Heatmap
# ─────────────────────────────────────────────────────────────────────────────


def generate_heatmap(
    commits: Iterable[CommitRecord],
    days: int = 90,
    today: date | None = None,
) -> dict[str, Any]:
    """
    One cell per calendar day for the ``days`` days ending ``today``,
    oldest first, including days without commits.
    """
    end = _today(today)
    start = end - timedelta(days=days - 1)
    counts: Counter[date] = Counter()
    for commit in commits:
        day = _utc(commit.created_at).date()
        if start <= day <= end:
            counts[day] += 1

    cells = []
    for offset in range(days):
        day = start + timedelta(days=offset)
        count = counts.get(day, 0)
        cells.append(
            {
                "date": day.isoformat(),
                "count": count,
                "level": heatmap_level(count),
                "day_of_week": day_of_week(day),
                "week_of_year": day.isocalendar()[1],
                "month": day.month,
                "day": day.day,
            }
        )

    total = sum(cell["count"] for cell in cells)
    return {
        "data": cells,
        "summary": {
            "total_days": days,
            "active_days": sum(1 for cell in cells if cell["count"] > 0),
            "max_commits_in_day": max((cell["count"] for cell in cells), default=0),
            "average_commits_per_day": round(total / days, 2) if days else 0.0,
            "total_commits": total,
        },
    }


# ─────────────────────────────────────────────────────────────────────────────
# Languages
# ─────────────────────────────────────────────────────────────────────────────


def language_diversity(totals: Sequence[float]) -> float:
    """Normalized Shannon entropy of the language distribution (0..1)."""
    totals = [t for t in totals if t > 0]
    if len(totals) <= 1:
        return 0.0
    grand_total = sum(totals)
    entropy = -sum((t / grand_total) * math.log2(t / grand_total) for t in totals)
    return round(entropy / math.log2(len(totals)), 2)


def aggregate_languages(
    project_languages: Sequence[tuple[Mapping[str, Any], Mapping[str, float]]],
) -> dict[str, Any]:
    """
    Combine per-project language percentages.

    Args:
        project_languages: (project, {language: percentage}) pairs
    """
    stats: dict[str, dict[str, Any]] = {}
    for project, languages in project_languages:
        for language, percentage in languages.items():
            entry = stats.setdefault(language, {"total": 0.0, "projects": []})
            entry["total"] += float(percentage)
            entry["projects"].append(
                {"id": project.get("id"), "name": project.get("name"), "percentage": float(percentage)}
            )

    ranked = sorted(
        (
            {
                "language": language,
                "average_percentage": round(entry["total"] / len(entry["projects"]), 2),
                "total_percentage": round(entry["total"], 2),
                "project_count": len(entry["projects"]),
                "projects": sorted(entry["projects"], key=lambda p: p["percentage"], reverse=True),
            }
            for language, entry in stats.items()
        ),
        key=lambda item: (-item["total_percentage"], item["language"]),
    )

    return {
        "languages": ranked,
        "summary": {
            "total_languages": len(ranked),
            "primary_language": ranked[0]["language"] if ranked else None,
            "diversity_score": language_diversity([entry["total"] for entry in stats.values()]),
        },
    }


# ─────────────────────────────────────────────────────────────────────────────
# Project insights
# ─────────────────────────────────────────────────────────────────────────────


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def analyze_project_commits(commits: Sequence[Mapping[str, Any]], days: int) -> dict[str, Any]:
    return {
        "total": len(commits),
        "authors": len({c.get("author_name") for c in commits if c.get("author_name")}),
        "average_per_day": round(len(commits) / days, 2) if days else 0.0,
        "recent_activity": list(commits[:5]),
    }


def analyze_project_issues(issues: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    open_count = sum(1 for i in issues if i.get("state") == "opened")
    closed_count = sum(1 for i in issues if i.get("state") == "closed")
    return {
        "total": len(issues),
        "open": open_count,
        "closed": closed_count,
        "open_rate": _rate(open_count, len(issues)),
    }


def analyze_project_merge_requests(merge_requests: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    open_count = sum(1 for mr in merge_requests if mr.get("state") == "opened")
    merged_count = sum(1 for mr in merge_requests if mr.get("state") == "merged")
    return {
        "total": len(merge_requests),
        "open": open_count,
        "merged": merged_count,
        "merge_rate": _rate(merged_count, len(merge_requests)),
    }


def analyze_project_contributors(members: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    roles: Counter[str] = Counter()
    for member in members:
        level = member.get("access_level")
        roles[ACCESS_LEVELS.get(level, str(level))] += 1
    return {"total": len(members), "roles": dict(roles)}


def compare_insights(insights: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
    """Reduce per-project insights to totals and the most active project."""
    valid = [item for item in insights if "error" not in item]
    if not valid:
        return {"error": "No valid projects to compare"}

    def commit_total(item: Mapping[str, Any]) -> int:
        return (item.get("commit_analytics") or {}).get("total", 0)

    most_active = max(valid, key=commit_total)
    return {
        "total_projects": len(valid),
        "most_active_project": most_active["project"],
        "total_commits": sum(commit_total(item) for item in valid),
        "total_issues": sum((item.get("issue_analytics") or {}).get("total", 0) for item in valid),
        "total_merge_requests": sum(
            (item.get("merge_request_analytics") or {}).get("total", 0) for item in valid
        ),
    }
