"""LLM response caching service.

Design:
- Global shared cache keyed by a request fingerprint (no caller identity)
- Redis with native per-key TTL when the shared store is reachable
- Process-local map with a periodic expiry sweep otherwise
- Expiry is re-checked on every read, whatever the backend has evicted
- Streaming and multi-modal requests are never cached
"""

import hashlib
import json
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.core.periodic import PeriodicTask
from relay.app.core.store import STORE_EXCEPTIONS, SharedStore

logger = get_logger(__name__)

# Length of the hex digest prefix kept in keys.
FINGERPRINT_LENGTH = 16

# Content part types that make a request multi-modal.
ATTACHMENT_PART_TYPES = frozenset(
    {"image_url", "image", "input_image", "input_audio", "file"}
)


def generate_fingerprint(
    message: Any,
    model: str,
    temperature: Optional[float] = None,
    system_prompt: Optional[str] = None,
    prefix: str = "cache:llm",
) -> str:
    """Generate a deterministic cache key for a request.

    The digest covers exactly the fields that change the answer: message
    content, model id, sampling temperature and system prompt. Messages are
    canonicalized as sorted-key JSON, so dict ordering and whitespace in the
    surrounding HTTP body do not matter.
    """
    if isinstance(message, str):
        normalized_message = message
    else:
        normalized_message = json.dumps(
            message, sort_keys=True, ensure_ascii=False, separators=(",", ":")
        )

    document = json.dumps(
        {
            "message": normalized_message,
            "model": model,
            "temperature": temperature,
            "system_prompt": system_prompt,
        },
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    )
    digest = hashlib.sha256(document.encode()).hexdigest()[:FINGERPRINT_LENGTH]
    return f"{prefix}:{digest}"


def has_attachments(messages: Optional[Iterable[Dict[str, Any]]]) -> bool:
    """Whether any message carries binary / image content parts."""
    for msg in messages or ():
        content = msg.get("content")
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") in ATTACHMENT_PART_TYPES:
                    return True
    return False


def is_cacheable(
    stream: bool = False,
    messages: Optional[Iterable[Dict[str, Any]]] = None,
    image: Optional[str] = None,
) -> bool:
    """Whether a request may be served from / stored in the cache.

    A cached value is a single complete text payload, which does not
    represent a streamed or multi-modal exchange.
    """
    if stream or image:
        return False
    return not has_attachments(messages)


@dataclass
class CacheEntry:
    """One cached response. Times are epoch milliseconds."""
    payload: Any
    created_at: int
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(
            {
                "response": self.payload,
                "created": self.created_at,
                "expires": self.expires_at,
            },
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: Any) -> "CacheEntry":
        if isinstance(raw, bytes):
            raw = raw.decode()
        data = json.loads(raw)
        return cls(
            payload=data["response"],
            created_at=int(data.get("created", 0)),
            expires_at=int(data["expires"]),
        )


@dataclass
class CacheHit:
    """A payload served from the cache."""
    payload: Any
    created_at: int
    expires_at: int
    cached: bool = True


@dataclass
class CacheStats:
    """Cache counters.

    ``size`` counts entries held in process memory only; keys living in the
    shared store are not counted (``backend`` tells which one is in use).
    """
    hits: int
    misses: int
    hit_rate: float
    size: int
    backend: str
    enabled: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "size": self.size,
            "backend": self.backend,
            "enabled": self.enabled,
        }


class ResponseCache:
    """Fingerprint-keyed response cache with Redis or local storage.

    Get-or-set is race tolerant rather than single-flight: concurrent
    identical misses may each call upstream once. No locking is needed
    because every read re-checks the entry's absolute expiry.

    Usage:
        cache = ResponseCache(store)
        fp = cache.fingerprint(messages, "qwen/qwen-3-4b:free", 0.7, system)
        hit = await cache.lookup(fp)
        if hit is None:
            payload = await call_upstream()
            await cache.store(fp, payload)
    """

    def __init__(
        self,
        store: Optional[SharedStore] = None,
        enabled: Optional[bool] = None,
        default_ttl: Optional[int] = None,
        prefix: Optional[str] = None,
        max_entries: Optional[int] = None,
        max_payload_bytes: Optional[int] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store or SharedStore(enabled=False)
        self.enabled = settings.cache_enabled if enabled is None else enabled
        self.default_ttl = default_ttl or settings.cache_ttl_seconds
        self.prefix = prefix or settings.cache_prefix
        self._max_entries = max_entries or settings.cache_max_entries
        self._max_payload_bytes = max_payload_bytes or settings.cache_max_payload_bytes
        self._sweep_interval = sweep_interval or settings.cache_sweep_interval_seconds
        self._clock = clock

        self._local: Dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

        self._sweeper = PeriodicTask("cache sweeper", self._sweep_interval, self.sweep)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def fingerprint(
        self,
        message: Any,
        model: str,
        temperature: Optional[float] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        return generate_fingerprint(
            message, model, temperature, system_prompt, prefix=self.prefix
        )

    async def lookup(self, fingerprint: str) -> Optional[CacheHit]:
        """Return the cached payload for ``fingerprint`` if still fresh.

        Store errors and corrupt entries count as misses.
        """
        if not self.enabled:
            return None

        entry = await self._read(fingerprint)
        now_ms = self._now_ms()
        if entry is None or entry.is_expired(now_ms):
            if entry is not None:
                self._local.pop(fingerprint, None)
            self._misses += 1
            return None

        self._hits += 1
        logger.debug(f"Cache hit for key: {fingerprint}")
        return CacheHit(
            payload=entry.payload,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
        )

    async def _read(self, fingerprint: str) -> Optional[CacheEntry]:
        client = self._store.client
        if client is not None:
            try:
                raw = await client.get(fingerprint)
                self._store.mark_success()
                if raw is None:
                    return None
                return CacheEntry.from_json(raw)
            except STORE_EXCEPTIONS as e:
                self._store.mark_unavailable(e)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable cache entry {fingerprint}: {e}")
                return None
        return self._local.get(fingerprint)

    async def store(
        self, fingerprint: str, payload: Any, ttl: Optional[float] = None
    ) -> bool:
        """Cache ``payload`` for ``ttl`` seconds.

        Returns:
            True if the entry was written, False if skipped or failed
        """
        if not self.enabled:
            return False

        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            return False

        now_ms = self._now_ms()
        entry = CacheEntry(
            payload=payload,
            created_at=now_ms,
            expires_at=now_ms + int(ttl * 1000),
        )
        try:
            serialized = entry.to_json()
        except (TypeError, ValueError) as e:
            logger.warning(f"Response not cacheable: {e}")
            return False

        if len(serialized.encode()) > self._max_payload_bytes:
            logger.debug(f"Response too large to cache: {len(serialized)} bytes")
            return False

        client = self._store.client
        if client is not None:
            try:
                await client.setex(fingerprint, max(1, math.ceil(ttl)), serialized)
                self._store.mark_success()
                logger.debug(f"Cached response with TTL {ttl}s: {fingerprint}")
                return True
            except STORE_EXCEPTIONS as e:
                self._store.mark_unavailable(e)

        self._local.pop(fingerprint, None)
        self._local[fingerprint] = entry
        self._enforce_size_limit()
        return True

    async def get_or_set(
        self,
        fingerprint: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Tuple[Any, bool]:
        """Return (payload, cached), calling ``producer`` on a miss.

        Concurrent misses for the same fingerprint are not collapsed.
        """
        hit = await self.lookup(fingerprint)
        if hit is not None:
            return hit.payload, True

        payload = await producer()
        await self.store(fingerprint, payload, ttl)
        return payload, False

    async def invalidate(self, fingerprint: str) -> None:
        """Delete one cache entry."""
        self._local.pop(fingerprint, None)
        client = self._store.client
        if client is not None:
            try:
                await client.delete(fingerprint)
            except STORE_EXCEPTIONS as e:
                self._store.mark_unavailable(e)

    async def invalidate_all(self) -> int:
        """Clear every entry under this cache's prefix.

        Returns:
            Number of entries removed
        """
        removed = len(self._local)
        self._local.clear()

        client = self._store.client
        if client is not None:
            try:
                batch: List[Any] = []
                async for key in client.scan_iter(match=f"{self.prefix}:*", count=500):
                    batch.append(key)
                    if len(batch) >= 500:
                        removed += await client.delete(*batch)
                        batch = []
                if batch:
                    removed += await client.delete(*batch)
            except STORE_EXCEPTIONS as e:
                logger.warning(f"Cache invalidation failed: {e}")
                self._store.mark_unavailable(e)

        logger.info(f"Cache cleared ({removed} entries)")
        return removed

    async def warm(self, entries: Iterable[Tuple[str, Any]], ttl: Optional[float] = None) -> int:
        """Preload (fingerprint, payload) pairs that are not cached yet.

        Returns:
            Number of entries written
        """
        written = 0
        for fingerprint, payload in entries:
            if await self._read(fingerprint) is not None:
                continue
            if await self.store(fingerprint, payload, ttl):
                written += 1
        logger.info(f"Cache warmed with {written} entries")
        return written

    def sweep(self) -> int:
        """Remove expired local entries.

        Returns:
            Number of entries removed
        """
        now_ms = self._now_ms()
        expired = [key for key, entry in self._local.items() if entry.is_expired(now_ms)]
        for key in expired:
            del self._local[key]
        return len(expired)

    def _enforce_size_limit(self) -> None:
        if len(self._local) <= self._max_entries:
            return
        self.sweep()
        # Oldest insertions go first.
        while len(self._local) > self._max_entries:
            del self._local[next(iter(self._local))]

    def stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            hit_rate=round(self._hits / total, 4) if total else 0.0,
            size=len(self._local),
            backend=self._store.mode,
            enabled=self.enabled,
        )

    async def start(self) -> None:
        """Start the background expiry sweep for local entries.

        The shared store expires keys natively, so the sweep only ever has
        work to do while running in local mode.
        """
        await self._sweeper.start()

    async def stop(self) -> None:
        """Stop the background sweep task."""
        await self._sweeper.stop()
