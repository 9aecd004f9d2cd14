"""Custom exceptions for the relay application."""

import math
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from relay.app.middleware.rate_limit.models import RateLimitDecision
    from relay.app.providers.credentials import FailureKind


class RelayException(Exception):
    """Base class for relay exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Relay error"):
        self.message = message
        super().__init__(message)


class RateLimitExceededError(RelayException):
    """Raised when a caller has used up its sliding-window allowance.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(
        self,
        limit: int,
        reset_at_ms: int,
        retry_after: int,
        detail: Optional[str] = None,
    ):
        self.limit = limit
        self.remaining = 0
        self.reset_at_ms = reset_at_ms
        self.retry_after = retry_after
        message = detail or (
            f"Rate limit exceeded. Please wait {retry_after} seconds "
            "before trying again."
        )
        super().__init__(message)

    @classmethod
    def from_decision(cls, decision: "RateLimitDecision") -> "RateLimitExceededError":
        retry_after = decision.retry_after
        if retry_after is None:
            retry_after = max(1, math.ceil(decision.window_ms / 1000))
        return cls(
            limit=decision.limit,
            reset_at_ms=decision.reset_at_ms,
            retry_after=retry_after,
        )

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.reset_at_ms // 1000),
            "Retry-After": str(self.retry_after),
        }

    def to_response(self) -> dict:
        return {
            "error": "rate_limit_exceeded",
            "code": "RATE_LIMIT_EXCEEDED",
            "message": self.message,
            "remaining": 0,
            "retry_after": self.retry_after,
        }


class NoCredentialsAvailableError(RelayException):
    """Raised when no upstream credential is configured.

    This is a configuration error: it is surfaced immediately and never
    retried. Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(
        self,
        detail: str = "No API keys configured. Set OPENROUTER_API_KEYS in environment variables.",
    ):
        super().__init__(detail)


class UpstreamError(RelayException):
    """Raised when the upstream model API call fails.

    Carries the upstream HTTP status (None for network errors) and the
    failure classification used by the credential rotator.
    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        kind: Optional["FailureKind"] = None,
    ):
        self.upstream_status = upstream_status
        self.kind = kind
        super().__init__(message)
