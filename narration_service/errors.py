from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    """Base class for every error the acquisition pipeline raises on purpose."""


class ValidationError(PipelineError):
    """Bad or missing input. Never retried."""


class AuthError(PipelineError):
    """Missing or invalid bearer identity."""


class PermissionDenied(PipelineError):
    """The identity is known but does not own the resource."""


class NotFoundError(PipelineError):
    pass


class RateLimited(PipelineError):
    def __init__(self, reset_time: int, retry_after: int, message: str | None = None) -> None:
        super().__init__(message or "Too many requests. Please wait before trying again.")
        self.reset_time = reset_time
        self.retry_after = retry_after


class InsufficientCredits(PipelineError):
    def __init__(self, credits_needed: int, current_balance: int) -> None:
        super().__init__(
            f"Insufficient credits. You need {credits_needed} credits but have {current_balance}."
        )
        self.credits_needed = credits_needed
        self.current_balance = current_balance


class UpstreamError(PipelineError):
    """An external service answered with an error."""

    def __init__(self, status_code: int | None, body: str = "", message: str | None = None) -> None:
        super().__init__(message or f"upstream error {status_code}: {body[:200]}")
        self.status_code = status_code
        self.body = body


class AlignmentError(PipelineError):
    pass


class StorageError(PipelineError):
    pass


class DownloadFailure(str, Enum):
    INVALID_URL = "invalid_url"
    BLOCKED_HOST = "blocked_host"
    UPSTREAM_STATUS = "upstream_status"
    TOO_LARGE = "too_large"
    TOOL_FAILURE = "tool_failure"
    NETWORK_ERROR = "network_error"


SECURITY_REJECTIONS = frozenset(
    {DownloadFailure.INVALID_URL, DownloadFailure.BLOCKED_HOST, DownloadFailure.TOO_LARGE}
)


class DownloadError(PipelineError):
    def __init__(self, reason: DownloadFailure, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code

    @property
    def is_security_rejection(self) -> bool:
        return self.reason in SECURITY_REJECTIONS
