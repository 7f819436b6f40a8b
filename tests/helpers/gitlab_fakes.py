"""Fakes for GitLab tests: a manual clock, REST payload factories and an
in-memory GitLab served through httpx.MockTransport.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

API = "/api/v4"

# ─────────────────────────────────────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ─────────────────────────────────────────────────────────────────────────────
# Payload factories
# ─────────────────────────────────────────────────────────────────────────────


def project_json(project_id: int = 1, name: str = "intern-app", **overrides: Any) -> dict[str, Any]:
    """Minimal GitLab project payload."""
    base = {
        "id": project_id,
        "name": name,
        "path_with_namespace": f"interns/{name}",
        "web_url": f"https://gitlab.example.com/interns/{name}",
        "description": "Intern project",
        "visibility": "private",
        "created_at": "2024-01-01T00:00:00Z",
        "last_activity_at": "2024-01-10T12:00:00Z",
    }
    base.update(overrides)
    return base


def commit_json(sha: str, created_at: datetime | str, **overrides: Any) -> dict[str, Any]:
    """Minimal GitLab commit payload."""
    if isinstance(created_at, datetime):
        created_at = created_at.astimezone(UTC).isoformat()
    base = {
        "id": sha,
        "short_id": sha[:8],
        "title": f"Commit {sha[:8]}",
        "message": f"Commit {sha[:8]}\n",
        "author_name": "Intern One",
        "author_email": "intern@example.com",
        "created_at": created_at,
        "committed_date": created_at,
        "web_url": f"https://gitlab.example.com/commit/{sha}",
    }
    base.update(overrides)
    return base


def user_json(user_id: int = 7, username: str = "intern1") -> dict[str, Any]:
    return {
        "id": user_id,
        "username": username,
        "name": "Intern One",
        "email": "intern@example.com",
        "state": "active",
    }


# ─────────────────────────────────────────────────────────────────────────────
# In-memory GitLab
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class CannedResponse:
    status_code: int = 200
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def build(self) -> httpx.Response:
        if self.json is None:
            return httpx.Response(self.status_code, headers=self.headers)
        return httpx.Response(self.status_code, json=self.json, headers=self.headers)


Route = Callable[[httpx.Request], httpx.Response]


class FakeGitLab:
    """
    Serves canned responses keyed by (method, path).

    A route given several responses returns them in order and then keeps
    returning the last one. Unknown routes answer 404 like GitLab does.
    """

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[CannedResponse] | Route] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        path: str,
        json: Any = None,
        *,
        status_code: int = 200,
        headers: dict[str, str] | None = None,
    ) -> FakeGitLab:
        responses = self._routes.setdefault((method.upper(), path), [])
        assert isinstance(responses, list)
        responses.append(CannedResponse(status_code, json, headers or {}))
        return self

    def route(self, method: str, path: str, handler: Route) -> FakeGitLab:
        self._routes[(method.upper(), path)] = handler
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self._routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "404 Not Found"})
        if callable(route):
            return route(request)
        canned = route.pop(0) if len(route) > 1 else route[0]
        return canned.build()

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    def calls(self, method: str, path: str) -> int:
        return sum(1 for r in self.requests if r.method == method.upper() and r.url.path == path)
