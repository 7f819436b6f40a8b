"""Constants for the GitLab service."""

DEFAULT_GITLAB_URL = "https://code.swecha.org"
DEFAULT_API_VERSION = "v4"

# Pagination limits enforced by GitLab
DEFAULT_PER_PAGE = 20
MAX_PER_PAGE = 100

# Safety valve when walking every page of a listing
MAX_PAGES = 50

# Maximum concurrent per-project fetches during analytics aggregation
MAX_CONCURRENT_PROJECT_FETCHES = 10

# Per-resource cache TTLs in seconds
CACHE_TTL: dict[str, int] = {
    "user": 300,
    "projects": 600,
    "commits": 180,
    "issues": 120,
    "merge_requests": 120,
    "repository": 900,
}

# Events a project hook can subscribe to
GITLAB_EVENTS: tuple[str, ...] = (
    "push",
    "tag_push",
    "issue",
    "merge_request",
    "wiki_page",
    "pipeline",
    "job",
    "deployment",
    "release",
    "note",
    "confidential_issue",
    "confidential_note",
)

# Member access levels as reported by the members API
ACCESS_LEVELS: dict[int, str] = {
    10: "guest",
    20: "reporter",
    30: "developer",
    40: "maintainer",
    50: "owner",
}

DAY_NAMES: tuple[str, ...] = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)
