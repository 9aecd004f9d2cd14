"""Upstream credential rotation.

This module spreads upstream calls across a pool of API keys. Keys that are
rejected (auth) or out of quota sit out a cooldown; keys with a poor success
record are skipped while healthier keys exist.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from relay.app.core.config import parse_api_keys, settings
from relay.app.core.logging import get_logger, mask_secret
from relay.app.exceptions import NoCredentialsAvailableError, UpstreamError

logger = get_logger(__name__)

# Health counters saturate here so old history cannot dominate forever.
MAX_COUNTER = 1000


class FailureKind(str, Enum):
    """How an upstream failure affects the credential that caused it."""

    AUTH = "auth"
    QUOTA = "quota"
    TRANSIENT = "transient"


class CredentialState(str, Enum):
    HEALTHY = "healthy"
    COOLDOWN = "cooldown"


AUTH_STATUSES = frozenset({401, 403})
QUOTA_STATUSES = frozenset({402, 429})


def classify_failure(error: Any) -> FailureKind:
    """Classify an upstream failure.

    Args:
        error: A FailureKind, an HTTP status code, an UpstreamError, an
            httpx.HTTPStatusError, or any other exception

    Returns:
        AUTH for 401/403, QUOTA for 402/429, TRANSIENT otherwise
    """
    if isinstance(error, FailureKind):
        return error

    status: Optional[int] = None
    if isinstance(error, bool):
        status = None
    elif isinstance(error, int):
        status = error
    elif isinstance(error, UpstreamError):
        if error.kind is not None:
            return error.kind
        status = error.upstream_status
    elif isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code

    if status in AUTH_STATUSES:
        return FailureKind.AUTH
    if status in QUOTA_STATUSES:
        return FailureKind.QUOTA
    return FailureKind.TRANSIENT


@dataclass
class Credential:
    """One upstream secret and its health record.

    Times are seconds since epoch; 0 means never.
    """
    secret: str
    success_count: int = 0
    failure_count: int = 0
    cooldown_until: float = 0.0
    last_used: float = 0.0
    state: CredentialState = CredentialState.HEALTHY

    @property
    def success_rate(self) -> float:
        total = self.success_count + self.failure_count
        if total == 0:
            return 1.0
        return self.success_count / total

    def refresh(self, now: float) -> CredentialState:
        """Leave cooldown once the timer has passed."""
        if self.state == CredentialState.COOLDOWN and now >= self.cooldown_until:
            self.state = CredentialState.HEALTHY
            self.cooldown_until = 0.0
        return self.state


class CredentialRotator:
    """Health-aware round-robin over upstream API keys.

    Usage:
        rotator = CredentialRotator.from_string("sk-a,sk-b,sk-c")
        key = rotator.next()
        try:
            response = await call_upstream(key)
            rotator.report_success(key)
        except UpstreamError as e:
            rotator.report_failure(key, e)

    All methods are synchronous and guarded by one threading.Lock, so the
    rotator can be shared by coroutines and worker threads alike.
    """

    def __init__(
        self,
        secrets: Optional[Iterable[str]] = None,
        cooldown_seconds: Optional[float] = None,
        success_floor: Optional[float] = None,
        idle_retry_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the rotator.

        Args:
            secrets: Upstream API keys; None reads settings.upstream_api_keys
            cooldown_seconds: Sit-out period after an auth/quota failure
            success_floor: Minimum success rate for normal selection
            idle_retry_seconds: Idle time after which a weak key is retried
            clock: Time source, seconds since epoch
        """
        if secrets is None:
            secrets = settings.upstream_api_keys
        cooldown = (
            settings.credential_cooldown_seconds
            if cooldown_seconds is None
            else cooldown_seconds
        )
        if cooldown <= 0:
            raise ValueError("cooldown_seconds must be positive")

        self._cooldown_seconds = cooldown
        self._success_floor = (
            settings.credential_success_floor if success_floor is None else success_floor
        )
        self._idle_retry_seconds = (
            settings.credential_idle_retry_seconds
            if idle_retry_seconds is None
            else idle_retry_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._credentials: List[Credential] = []
        self._position = 0

        for secret in secrets:
            self._add(secret)

        if self._credentials:
            logger.info(f"Credential rotator initialized with {len(self._credentials)} keys")
        else:
            logger.warning("No upstream API keys configured")

    @classmethod
    def from_string(cls, raw: str, **kwargs: Any) -> "CredentialRotator":
        """Build a rotator from a comma-separated key list."""
        return cls(parse_api_keys(raw), **kwargs)

    def __len__(self) -> int:
        return len(self._credentials)

    def _find(self, secret: str) -> Optional[Credential]:
        for credential in self._credentials:
            if credential.secret == secret:
                return credential
        return None

    def _add(self, secret: str) -> bool:
        secret = secret.strip()
        if not secret or self._find(secret) is not None:
            return False
        self._credentials.append(Credential(secret=secret))
        return True

    def next(self) -> str:
        """Select the credential for the next upstream call.

        Raises:
            NoCredentialsAvailableError: If no credentials are configured
        """
        with self._lock:
            if not self._credentials:
                raise NoCredentialsAvailableError()

            now = self._clock()
            count = len(self._credentials)
            chosen: Optional[Credential] = None

            for offset in range(count):
                index = (self._position + offset) % count
                credential = self._credentials[index]
                if credential.refresh(now) == CredentialState.COOLDOWN:
                    continue
                idle = now - credential.last_used > self._idle_retry_seconds
                if credential.success_rate >= self._success_floor or idle:
                    chosen = credential
                    self._position = (index + 1) % count
                    break

            if chosen is None:
                candidates = [
                    c for c in self._credentials if c.state == CredentialState.HEALTHY
                ] or self._credentials
                chosen = min(candidates, key=lambda c: c.last_used)
                self._position = (self._credentials.index(chosen) + 1) % count
                logger.debug(
                    f"No credential above success floor, using least recently used "
                    f"{mask_secret(chosen.secret)}"
                )

            chosen.last_used = now
            return chosen.secret

    def report_success(self, secret: str) -> None:
        """Record a successful call made with ``secret``."""
        with self._lock:
            credential = self._find(secret)
            if credential is None:
                return
            credential.success_count = min(MAX_COUNTER, credential.success_count + 1)
            credential.failure_count = max(0, credential.failure_count - 1)

    def report_failure(self, secret: str, error: Any = None) -> FailureKind:
        """Record a failed call made with ``secret``.

        Auth and quota failures start (or extend) a cooldown.

        Returns:
            The failure classification
        """
        kind = classify_failure(error)
        with self._lock:
            credential = self._find(secret)
            if credential is None:
                return kind

            credential.failure_count = min(MAX_COUNTER, credential.failure_count + 1)
            if kind in (FailureKind.AUTH, FailureKind.QUOTA):
                until = self._clock() + self._cooldown_seconds
                credential.cooldown_until = max(credential.cooldown_until, until)
                credential.state = CredentialState.COOLDOWN
                logger.warning(
                    f"Credential {mask_secret(secret)} cooling down for "
                    f"{self._cooldown_seconds}s after {kind.value} failure"
                )
        return kind

    def add_credential(self, secret: str) -> bool:
        """Add a key at runtime. Returns False if empty or already present."""
        with self._lock:
            added = self._add(secret)
        if added:
            logger.info(f"Added credential {mask_secret(secret)}")
        return added

    def remove_credential(self, secret: str) -> bool:
        """Remove a key at runtime. Returns False if it was not present."""
        with self._lock:
            credential = self._find(secret)
            if credential is None:
                return False
            self._credentials.remove(credential)
            if self._credentials:
                self._position %= len(self._credentials)
            else:
                self._position = 0
        logger.info(f"Removed credential {mask_secret(secret)}")
        return True

    def stats(self) -> List[Dict[str, Any]]:
        """Per-credential health, with secrets masked."""
        with self._lock:
            now = self._clock()
            result = []
            for credential in self._credentials:
                state = credential.refresh(now)
                result.append(
                    {
                        "key": mask_secret(credential.secret),
                        "state": state.value,
                        "success_count": credential.success_count,
                        "failure_count": credential.failure_count,
                        "success_rate": round(credential.success_rate, 4),
                        "last_used": credential.last_used or None,
                        "cooldown_remaining": (
                            round(credential.cooldown_until - now, 3)
                            if state == CredentialState.COOLDOWN
                            else 0.0
                        ),
                    }
                )
            return result
