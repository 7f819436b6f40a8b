"""Data types for GitLab API responses and credentials."""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


@dataclass(frozen=True)
class ProjectRef:
    """Project metadata attached to each commit during aggregation."""

    id: int
    name: str
    path: str
    url: str | None = None

    @classmethod
    def from_api(cls, project: dict[str, Any]) -> "ProjectRef":
        return cls(
            id=project["id"],
            name=project.get("name") or project.get("path") or str(project["id"]),
            path=project.get("path_with_namespace") or project.get("path") or "",
            url=project.get("web_url"),
        )


@dataclass(frozen=True)
class CommitStats:
    additions: int = 0
    deletions: int = 0


@dataclass(frozen=True)
class CommitRecord:
    """Normalized commit used for aggregation. Never mutated after creation."""

    id: str
    short_id: str
    title: str
    author_name: str
    author_email: str
    created_at: datetime  # Always timezone-aware
    project: ProjectRef
    stats: CommitStats = field(default_factory=CommitStats)
    web_url: str | None = None

    @classmethod
    def from_api(cls, commit: dict[str, Any], project: ProjectRef) -> "CommitRecord":
        created_at = (
            _as_datetime(commit.get("created_at"))
            or _as_datetime(commit.get("committed_date"))
            or _as_datetime(commit.get("authored_date"))
        )
        if created_at is None:
            raise ValueError(f"Commit {commit.get('id')} has no usable timestamp")
        raw_stats = commit.get("stats") or {}
        commit_id = str(commit.get("id", ""))
        return cls(
            id=commit_id,
            short_id=commit.get("short_id") or commit_id[:8],
            title=commit.get("title") or (commit.get("message") or "").split("\n", 1)[0],
            author_name=commit.get("author_name") or "",
            author_email=commit.get("author_email") or "",
            created_at=created_at,
            project=project,
            stats=CommitStats(
                additions=int(raw_stats.get("additions", 0) or 0),
                deletions=int(raw_stats.get("deletions", 0) or 0),
            ),
            web_url=commit.get("web_url"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class AccessCredential:
    """OAuth or personal access token held for one user."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scopes: list[str] = field(default_factory=list)
    obtained_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)

    def to_dict(self) -> dict[str, Any]:
        """Serializable view without the raw token response."""
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "scopes": list(self.scopes),
            "obtained_at": self.obtained_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class AuthorizationRequest:
    """Where to send the user to grant access, plus the CSRF state to check on return."""

    url: str
    state: str
    scopes: list[str]
