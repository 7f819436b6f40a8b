"""GitLabError -> JSON error responses with status codes per error kind."""

import logging
import math

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from labpulse.services.gitlab.exceptions import (
    ErrorCode,
    ErrorKind,
    GitLabError,
    GitLabRateLimitError,
)

logger = logging.getLogger(__name__)

_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.AUTH: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.PERMISSION: status.HTTP_403_FORBIDDEN,
    ErrorKind.RATE_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.CONFIG: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.WEBHOOK: status.HTTP_400_BAD_REQUEST,
}

_CODE_STATUS: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_INITIALIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
}

_WEBHOOK_STATUS: dict[ErrorCode, int] = {
    ErrorCode.ACCESS_DENIED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.PAYLOAD_TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    ErrorCode.INVALID_PAYLOAD: status.HTTP_400_BAD_REQUEST,
}


def status_for(exc: GitLabError) -> int:
    """HTTP status to report for a GitLab access layer failure."""
    if exc.kind == ErrorKind.WEBHOOK:
        return _WEBHOOK_STATUS.get(exc.code, status.HTTP_502_BAD_GATEWAY)
    if exc.code in _CODE_STATUS:
        return _CODE_STATUS[exc.code]
    return _KIND_STATUS.get(exc.kind, status.HTTP_502_BAD_GATEWAY)


async def _gitlab_error_handler(_request: Request, exc: GitLabError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"GitLab request failed: {exc!r}")

    headers = None
    if isinstance(exc, GitLabRateLimitError) and exc.retry_after is not None:
        headers = {"Retry-After": str(math.ceil(exc.retry_after))}

    details = exc.to_dict()
    details.pop("message", None)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.message, "details": details},
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register exception handlers on the app."""
    app.add_exception_handler(GitLabError, _gitlab_error_handler)  # type: ignore[arg-type]
