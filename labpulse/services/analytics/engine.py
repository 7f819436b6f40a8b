"""
Commit and project analytics driven by a GitLabClient.

Fetches run concurrently under a semaphore; a failure for one project is
recorded in the result's ``errors`` list and never aborts the aggregate.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from labpulse.services.analytics.statistics import (
    aggregate_languages,
    analyze_project_commits,
    analyze_project_contributors,
    analyze_project_issues,
    analyze_project_merge_requests,
    compare_insights,
    empty_statistics,
    generate_commit_statistics,
    generate_heatmap,
)
from labpulse.services.gitlab.client import GitLabClient, ProjectId
from labpulse.services.gitlab.constants import MAX_CONCURRENT_PROJECT_FETCHES
from labpulse.services.gitlab.exceptions import ErrorCode, GitLabError
from labpulse.services.gitlab.types import CommitRecord, ProjectRef

logger = logging.getLogger(__name__)

DEFAULT_DAYS = 90
MAX_LANGUAGE_PROJECTS = 50
MAX_COMMIT_PAGES = 10


def _project_summary(project: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": project.get("id"),
        "name": project.get("name"),
        "path": project.get("path_with_namespace"),
        "web_url": project.get("web_url"),
        "last_activity_at": project.get("last_activity_at"),
    }


def _error_entry(project: dict[str, Any], error: BaseException) -> dict[str, Any]:
    message = error.message if isinstance(error, GitLabError) else str(error)
    return {"project_id": project.get("id"), "project_name": project.get("name"), "error": message}


def empty_activity() -> dict[str, Any]:
    return {
        "user": None,
        "projects": [],
        "commits": [],
        "total_commits": 0,
        "active_projects": 0,
        "date_range": None,
        "errors": [],
        "statistics": empty_statistics(),
        "heatmap": {"data": [], "summary": {}},
        "languages": {"languages": [], "summary": {}},
    }


class CommitAnalytics:
    """Analytics over the projects visible to one GitLab user."""

    def __init__(
        self,
        client: GitLabClient,
        *,
        default_days: int = DEFAULT_DAYS,
        max_concurrency: int = MAX_CONCURRENT_PROJECT_FETCHES,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.client = client
        self.default_days = default_days
        self.max_concurrency = max_concurrency
        self._clock = clock

    async def _resolve_projects(
        self, project_ids: Sequence[ProjectId] | None
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Projects to analyze, plus an error entry for each explicit id that failed."""
        if project_ids is None:
            return await self.client.get_all_user_projects(), []

        results = await asyncio.gather(
            *[self.client.get_project(pid) for pid in project_ids],
            return_exceptions=True,
        )
        projects = []
        errors = []
        for pid, result in zip(project_ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to fetch project {pid}: {result}")
                errors.append(_error_entry({"id": pid}, result))
                continue
            projects.append(result)
        return projects, errors

    async def fetch_commits(
        self,
        projects: Sequence[dict[str, Any]],
        *,
        since: datetime,
        author: str | None,
    ) -> tuple[list[CommitRecord], int, list[dict[str, Any]]]:
        """
        Fetch the author's commits from every project concurrently.

        Returns:
            (commits newest-first, number of projects with commits, per-project errors)
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_project(project: dict[str, Any]) -> list[CommitRecord]:
            ref = ProjectRef.from_api(project)
            async with semaphore:
                raw = await self.client.get_all_project_commits(
                    ref.id,
                    since=since,
                    author=author,
                    max_pages=MAX_COMMIT_PAGES,
                )
            records = []
            for item in raw or []:
                try:
                    records.append(CommitRecord.from_api(item, ref))
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed commit in project {ref.id}: {e}")
            return records

        results = await asyncio.gather(
            *[fetch_project(project) for project in projects],
            return_exceptions=True,
        )

        commits: list[CommitRecord] = []
        errors: list[dict[str, Any]] = []
        active_projects = 0
        for project, result in zip(projects, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to fetch commits for project {project.get('id')}: {result}")
                errors.append(_error_entry(project, result))
                continue
            if result:
                active_projects += 1
                commits.extend(result)

        commits.sort(key=lambda c: c.created_at, reverse=True)
        return commits, active_projects, errors

    async def analyze_languages(self, projects: Sequence[dict[str, Any]]) -> dict[str, Any]:
        """Language breakdown across up to 50 projects."""
        subset = list(projects[:MAX_LANGUAGE_PROJECTS])
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch(project: dict[str, Any]) -> dict[str, float]:
            async with semaphore:
                return await self.client.get_project_languages(project["id"])

        results = await asyncio.gather(*[fetch(p) for p in subset], return_exceptions=True)

        pairs = []
        errors = []
        for project, result in zip(subset, results, strict=True):
            if isinstance(result, BaseException):
                errors.append(_error_entry(project, result))
                continue
            if isinstance(result, dict):
                pairs.append((project, result))

        breakdown = aggregate_languages(pairs)
        breakdown["errors"] = errors
        return breakdown

    async def get_user_commit_activity(
        self,
        days: int | None = None,
        *,
        include_stats: bool = True,
        include_heatmap: bool = True,
        include_languages: bool = True,
        project_ids: Sequence[ProjectId] | None = None,
    ) -> dict[str, Any]:
        """
        Commit activity of the current user over the last ``days`` days.

        Projects that fail to load or whose commits fail to fetch are listed
        under ``errors``; everything else is still aggregated.
        """
        days = days or self.default_days
        projects, resolve_errors = await self._resolve_projects(project_ids)
        if not projects:
            return {**empty_activity(), "errors": resolve_errors}

        user = await self.client.get_current_user()
        author = user.get("email") or user.get("username")

        now = self._clock()
        since = now - timedelta(days=days)
        commits, active_projects, fetch_errors = await self.fetch_commits(projects, since=since, author=author)
        errors = resolve_errors + fetch_errors

        activity: dict[str, Any] = {
            "user": user,
            "projects": [_project_summary(p) for p in projects],
            "commits": [commit.to_dict() for commit in commits],
            "total_commits": len(commits),
            "active_projects": active_projects,
            "date_range": {"since": since.isoformat(), "until": now.isoformat(), "days": days},
            "errors": errors,
        }

        if include_stats:
            activity["statistics"] = generate_commit_statistics(commits, today=now.date())
        if include_heatmap:
            activity["heatmap"] = generate_heatmap(commits, days, today=now.date())
        if include_languages:
            activity["languages"] = await self.analyze_languages(projects)

        logger.info(
            f"Commit activity: {len(commits)} commits across {active_projects}/{len(projects)} projects "
            f"({len(errors)} failed)"
        )
        return activity

    async def get_project_insights(
        self,
        project_id: ProjectId,
        days: int = 30,
        *,
        include_commits: bool = True,
        include_issues: bool = True,
        include_merge_requests: bool = True,
        include_contributors: bool = True,
    ) -> dict[str, Any]:
        """
        Activity summary for one project.

        The project itself must load; each enabled category is fetched
        concurrently and a failing category is reported under ``errors``.
        """
        project = await self.client.get_project(project_id)
        now = self._clock()
        since = now - timedelta(days=days)

        insights: dict[str, Any] = {
            "project": {
                "id": project.get("id"),
                "name": project.get("name"),
                "path": project.get("path_with_namespace"),
                "description": project.get("description"),
                "visibility": project.get("visibility"),
                "created_at": project.get("created_at"),
                "last_activity_at": project.get("last_activity_at"),
            },
            "period": {"since": since.isoformat(), "until": now.isoformat(), "days": days},
            "errors": [],
        }

        fetches: dict[str, Any] = {}
        if include_commits:
            fetches["commits"] = self.client.get_project_commits(project_id, since=since, per_page=100)
        if include_issues:
            fetches["issues"] = self.client.get_project_issues(project_id, per_page=100)
        if include_merge_requests:
            fetches["merge_requests"] = self.client.get_project_merge_requests(project_id, per_page=100)
        if include_contributors:
            fetches["contributors"] = self.client.get_project_members(project_id)

        results = await asyncio.gather(*fetches.values(), return_exceptions=True)
        data: dict[str, Any] = {}
        for category, result in zip(fetches, results, strict=True):
            if isinstance(result, BaseException):
                message = result.message if isinstance(result, GitLabError) else str(result)
                logger.warning(f"Insights for project {project_id}: {category} failed: {message}")
                insights["errors"].append({"type": category, "error": message})
                continue
            data[category] = result or []

        if "commits" in data:
            insights["commit_analytics"] = analyze_project_commits(data["commits"], days)
        if "issues" in data:
            insights["issue_analytics"] = analyze_project_issues(data["issues"])
        if "merge_requests" in data:
            insights["merge_request_analytics"] = analyze_project_merge_requests(data["merge_requests"])
        if "contributors" in data:
            insights["contributor_analytics"] = analyze_project_contributors(data["contributors"])

        return insights

    async def compare_projects(self, project_ids: Sequence[ProjectId], days: int = 30) -> dict[str, Any]:
        """Insights for several projects plus totals; failed projects are kept as errors."""
        if not project_ids:
            raise GitLabError("At least one project id is required", ErrorCode.INVALID_CONFIG)

        comparisons: list[dict[str, Any]] = []
        for project_id in project_ids:
            try:
                comparisons.append(await self.get_project_insights(project_id, days))
            except GitLabError as e:
                logger.warning(f"Skipping project {project_id} in comparison: {e.message}")
                comparisons.append({"project_id": project_id, "error": e.message})

        now = self._clock()
        return {
            "projects": comparisons,
            "comparison": compare_insights(comparisons),
            "period": {
                "days": days,
                "since": (now - timedelta(days=days)).isoformat(),
                "until": now.isoformat(),
            },
        }
