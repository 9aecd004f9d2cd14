"""Middleware package for the relay."""

from relay.app.middleware.rate_limit import (
    AdmissionController,
    RateLimitMiddleware,
    caller_identity,
)
from relay.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "AdmissionController",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "caller_identity",
    "get_request_id",
]
