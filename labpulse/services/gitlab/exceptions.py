"""Exceptions for the GitLab service.

Every failure surfaced by the access layer is a ``GitLabError`` tagged with an
``ErrorKind`` and a machine-readable ``ErrorCode``. Callers branch on the
predicates rather than on subclasses where they can.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    AUTH = "auth"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    API = "api"
    CONFIG = "config"
    WEBHOOK = "webhook"


class ErrorCode(StrEnum):
    # Authentication
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
    # Authorization
    ACCESS_DENIED = "ACCESS_DENIED"
    NOT_FOUND = "NOT_FOUND"
    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    QUEUE_FULL = "QUEUE_FULL"
    LIMITER_CLOSED = "LIMITER_CLOSED"
    # Transport
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    REQUEST_SUPERSEDED = "REQUEST_SUPERSEDED"
    # API
    API_ERROR = "API_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    # Configuration
    INVALID_CONFIG = "INVALID_CONFIG"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    # Webhooks
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"


class GitLabError(Exception):
    """Error from the GitLab access layer."""

    kind: ErrorKind = ErrorKind.API

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.API_ERROR,
        status_code: int | None = None,
        response_body: Any = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.response_body = response_body
        self.details = details or {}
        super().__init__(message)

    @property
    def retry_after(self) -> float | None:
        return None

    @property
    def is_retryable(self) -> bool:
        """Network failures, rate limiting and 5xx responses may be retried."""
        if self.code == ErrorCode.REQUEST_SUPERSEDED:
            return False
        if self.kind in (ErrorKind.NETWORK, ErrorKind.RATE_LIMIT):
            return True
        return self.status_code is not None and self.status_code >= 500

    @property
    def is_auth_error(self) -> bool:
        return self.kind == ErrorKind.AUTH

    @property
    def is_permission_error(self) -> bool:
        return self.kind == ErrorKind.PERMISSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code.value}, status={self.status_code})"


class GitLabAuthError(GitLabError):
    """Invalid, expired or under-scoped credentials."""

    kind = ErrorKind.AUTH

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_TOKEN, **kwargs: Any):
        super().__init__(message, code, **kwargs)

    @property
    def needs_token_refresh(self) -> bool:
        """True when a refresh token can recover the session."""
        if self.code == ErrorCode.TOKEN_EXPIRED:
            return True
        return self.status_code == 401 and "expired" in self.message.lower()

    @property
    def needs_reauth(self) -> bool:
        return self.code in (ErrorCode.INVALID_TOKEN, ErrorCode.INSUFFICIENT_SCOPE) and (
            not self.needs_token_refresh
        )


class GitLabPermissionError(GitLabError):
    kind = ErrorKind.PERMISSION

    def __init__(self, message: str, code: ErrorCode = ErrorCode.ACCESS_DENIED, **kwargs: Any):
        super().__init__(message, code, **kwargs)


class GitLabRateLimitError(GitLabError):
    """Rate limit hit, either on GitLab (429) or in the local token bucket."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.RATE_LIMIT_EXCEEDED,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        self._retry_after = retry_after
        super().__init__(message, code, **kwargs)

    @property
    def retry_after(self) -> float:
        """Seconds to wait before trying again."""
        if self._retry_after is not None:
            return self._retry_after
        return 60.0

    @property
    def is_retryable(self) -> bool:
        # Queue overflow and shutdown are local and final.
        return self.code == ErrorCode.RATE_LIMIT_EXCEEDED

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class GitLabNetworkError(GitLabError):
    kind = ErrorKind.NETWORK

    def __init__(self, message: str, code: ErrorCode = ErrorCode.NETWORK_ERROR, **kwargs: Any):
        super().__init__(message, code, **kwargs)


class GitLabConfigError(GitLabError):
    kind = ErrorKind.CONFIG

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_CONFIG, **kwargs: Any):
        super().__init__(message, code, **kwargs)


class GitLabWebhookError(GitLabError):
    kind = ErrorKind.WEBHOOK

    def __init__(self, message: str, code: ErrorCode = ErrorCode.INVALID_PAYLOAD, **kwargs: Any):
        super().__init__(message, code, **kwargs)
