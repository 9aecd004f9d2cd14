"""Chat request pipeline.

Composes the relay's protective layers for one chat request:

    admission -> context shaping -> cache lookup
      -> (miss) credential selection -> upstream call -> cache store
      -> credential health report

Streaming and image requests skip the cache but go through every other step.
Document and summary requests are looked up before shaping, since shaping
them calls upstream.
"""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from pydantic import BaseModel, Field, model_validator

from relay.app.core.config import settings
from relay.app.core.logging import get_logger, mask_secret
from relay.app.exceptions import RateLimitExceededError, UpstreamError
from relay.app.middleware.rate_limit import (
    AdmissionController,
    CallerTier,
    RateLimitDecision,
)
from relay.app.providers.credentials import CredentialRotator
from relay.app.providers.upstream import UpstreamClient, extract_content
from relay.app.services.context_budget import ContextBudgeter, ShapedConversation
from relay.app.services.response_cache import ResponseCache, is_cacheable

logger = get_logger(__name__)

# max_tokens for auxiliary calls.
SCORING_MAX_TOKENS = 10
SUMMARY_MAX_TOKENS = 200

T = TypeVar("T")


def stream_error_event(error: UpstreamError) -> str:
    """SSE data line reporting a failure after the stream has started."""
    body = {
        "error": {
            "message": error.message,
            "code": "upstream_error",
            "upstream_status": error.upstream_status,
        }
    }
    return f"data: {json.dumps(body)}"


class ChatRequest(BaseModel):
    """Body of POST /v1/chat.

    Either ``message`` (a single user turn) or ``messages`` (a history) is
    required. ``document`` turns ``message`` into a question over the
    document.
    """
    message: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None
    model: str = Field(default_factory=lambda: settings.default_model, min_length=1)
    stream: bool = False
    image: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    system_prompt: Optional[str] = None
    cache: bool = True
    document: Optional[str] = None
    summarize: bool = False

    @model_validator(mode="after")
    def require_input(self) -> "ChatRequest":
        if not self.message and not self.messages:
            raise ValueError("Message or messages array is required")
        if self.document and not self.message:
            raise ValueError("A document requires a message to ask about it")
        if self.document and len(self.document) > settings.max_document_chars:
            raise ValueError(
                f"Document too long (max {settings.max_document_chars} characters)"
            )
        return self

    def build_messages(self) -> List[Dict[str, Any]]:
        """Assemble the chat history this request describes."""
        messages = [dict(m) for m in (self.messages or [])]
        if self.system_prompt:
            messages.insert(0, {"role": "system", "content": self.system_prompt})
        if self.message:
            messages.append({"role": "user", "content": self.message})

        if self.image and messages and messages[-1].get("role") == "user":
            last = messages[-1]
            content = last.get("content")
            parts = list(content) if isinstance(content, list) else [
                {"type": "text", "text": content or ""}
            ]
            parts.append({"type": "image_url", "image_url": {"url": self.image}})
            messages[-1] = {**last, "content": parts}
        return messages


@dataclass
class PipelineResult:
    """Outcome of one chat request."""
    model: str
    response: Any = None
    cached: bool = False
    usage: Optional[Dict[str, Any]] = None
    context_tokens: int = 0
    context_truncated: bool = False
    response_time_ms: int = 0
    rate_limit: Optional[RateLimitDecision] = None
    stream: Optional[AsyncIterator[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": True,
            "model": self.model,
            "response": self.response,
            "cached": self.cached,
            "context_tokens": self.context_tokens,
            "context_truncated": self.context_truncated,
            "response_time_ms": self.response_time_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.usage is not None:
            body["usage"] = self.usage
        body.update(self.extra)
        return body


class RequestPipeline:
    """Runs chat requests through admission, shaping, caching and rotation.

    Usage:
        pipeline = RequestPipeline(admission, cache, rotator, budgeter, upstream)
        result = await pipeline.handle(ChatRequest(message="hi"), caller_key)
        return result.to_response()
    """

    def __init__(
        self,
        admission: AdmissionController,
        cache: ResponseCache,
        rotator: CredentialRotator,
        budgeter: ContextBudgeter,
        upstream: UpstreamClient,
        max_attempts: Optional[int] = None,
    ):
        self.admission = admission
        self.cache = cache
        self.rotator = rotator
        self.budgeter = budgeter
        self.upstream = upstream
        self.max_attempts = max_attempts or settings.upstream_max_attempts

    def context_ceiling(self, model: str) -> int:
        if "128k" in model:
            return settings.large_context_tokens
        return self.budgeter.max_tokens

    async def handle(
        self,
        request: ChatRequest,
        caller_key: str,
        tier: Optional[CallerTier] = None,
        credential_hash: Optional[str] = None,
        decision: Optional[RateLimitDecision] = None,
    ) -> PipelineResult:
        """Process one chat request.

        Args:
            request: The chat request
            caller_key: Rate limit identity of the caller
            tier: Tier hint for callers unknown to the registry
            credential_hash: Hash of the caller's credential, if any
            decision: Admission decision already taken (by the middleware);
                None runs admission here

        Raises:
            RateLimitExceededError: If admission denies the request
            NoCredentialsAvailableError: If no upstream key is configured
            UpstreamError: If every attempted upstream call failed
        """
        started = time.perf_counter()

        if decision is None:
            decision = await self.admission.check_caller(
                caller_key, tier=tier, credential_hash=credential_hash
            )
            if not decision.allowed:
                raise RateLimitExceededError.from_decision(decision)

        cacheable = request.cache and is_cacheable(
            request.stream, request.build_messages(), request.image
        )

        # Document and summary requests are keyed on the raw request and
        # looked up before any auxiliary upstream call.
        fingerprint: Optional[str] = None
        if cacheable and (request.document or request.summarize):
            fingerprint = self.cache.fingerprint(
                self._request_key(request),
                request.model,
                request.temperature,
                request.system_prompt,
            )
            hit = await self.cache.lookup(fingerprint)
            if hit is not None:
                return self._cached_result(request, hit.payload, caller_key, started, decision)

        shaped, extra = await self._shape(request)

        if cacheable and fingerprint is None:
            fingerprint = self.cache.fingerprint(
                shaped.messages, request.model, request.temperature, request.system_prompt
            )
            hit = await self.cache.lookup(fingerprint)
            if hit is not None:
                return self._cached_result(
                    request, hit.payload, caller_key, started, decision, shaped, extra
                )

        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": shaped.messages,
            "temperature": request.temperature,
        }
        if request.max_tokens:
            payload["max_tokens"] = request.max_tokens

        if request.stream:
            (lines, first), secret = await self._with_credentials(
                lambda key: self._open_stream(payload, key)
            )
            return PipelineResult(
                model=request.model,
                context_tokens=shaped.tokens_used,
                context_truncated=shaped.was_truncated,
                rate_limit=decision,
                stream=self._stream(lines, first, secret),
                extra=extra,
            )

        data, secret = await self._with_credentials(
            lambda key: self.upstream.chat_completion(payload, key)
        )
        self.rotator.report_success(secret)
        content = extract_content(data)
        if fingerprint is not None and content:
            await self.cache.store(fingerprint, content)

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Chat request completed",
            extra={
                "caller_key": caller_key,
                "credential": mask_secret(secret),
                "model": request.model,
                "cached": False,
                "duration_ms": duration_ms,
            },
        )
        return PipelineResult(
            model=request.model,
            response=content or data,
            cached=False,
            usage=data.get("usage"),
            context_tokens=shaped.tokens_used,
            context_truncated=shaped.was_truncated,
            response_time_ms=duration_ms,
            rate_limit=decision,
            extra=extra,
        )

    @staticmethod
    def _request_key(request: ChatRequest) -> Dict[str, Any]:
        if request.document:
            return {"document": request.document, "message": request.message}
        return {"messages": request.build_messages(), "summarize": True}

    @staticmethod
    def _cached_result(
        request: ChatRequest,
        payload: Any,
        caller_key: str,
        started: float,
        decision: RateLimitDecision,
        shaped: Optional[ShapedConversation] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> PipelineResult:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Chat request served from cache",
            extra={
                "caller_key": caller_key,
                "model": request.model,
                "cached": True,
                "duration_ms": duration_ms,
            },
        )
        return PipelineResult(
            model=request.model,
            response=payload,
            cached=True,
            context_tokens=shaped.tokens_used if shaped else 0,
            context_truncated=shaped.was_truncated if shaped else False,
            response_time_ms=duration_ms,
            rate_limit=decision,
            extra=extra or {},
        )

    async def _shape(self, request: ChatRequest) -> Tuple[ShapedConversation, Dict[str, Any]]:
        extra: Dict[str, Any] = {}
        if request.document:
            document = await self.budgeter.process_document(
                request.document, request.message or "", self._score
            )
            messages = list(document.messages)
            if request.system_prompt:
                messages.insert(0, {"role": "system", "content": request.system_prompt})
            extra["chunks_used"] = document.chunks_used
            extra["total_chunks"] = document.total_chunks
        else:
            messages = request.build_messages()

        ceiling = self.context_ceiling(request.model)
        if request.summarize:
            shaped = await self.budgeter.summarize(
                messages, self._summarize, token_ceiling=ceiling
            )
            extra["summarized"] = shaped.summarized
        else:
            shaped = self.budgeter.shape(messages, ceiling)
        return shaped, extra

    async def _with_credentials(
        self, call: Callable[[str], Awaitable[T]]
    ) -> Tuple[T, str]:
        """Run ``call(secret)``, moving to the next credential after a failure.

        Success is not reported here; streams only succeed once fully read.
        """
        attempts = max(1, min(self.max_attempts, len(self.rotator)))
        last_error: Optional[UpstreamError] = None

        for attempt in range(1, attempts + 1):
            secret = self.rotator.next()
            try:
                return await call(secret), secret
            except UpstreamError as e:
                kind = self.rotator.report_failure(secret, e)
                logger.warning(
                    f"Upstream attempt {attempt}/{attempts} failed ({kind.value}): {e.message}",
                    extra={"credential": mask_secret(secret)},
                )
                last_error = e

        raise last_error

    async def _open_stream(
        self, payload: Dict[str, Any], secret: str
    ) -> Tuple[AsyncGenerator[str, None], Optional[str]]:
        """Start an upstream stream and read its first line.

        Failures before the first line surface here, while the response can
        still become a 502.
        """
        lines = self.upstream.stream_chat(payload, secret)
        try:
            first = await anext(lines)
        except StopAsyncIteration:
            first = None
        except UpstreamError:
            await lines.aclose()
            raise
        return lines, first

    async def _stream(
        self,
        lines: AsyncGenerator[str, None],
        first: Optional[str],
        secret: str,
    ) -> AsyncIterator[str]:
        try:
            if first is not None:
                yield first
            async for line in lines:
                yield line
        except UpstreamError as e:
            # Headers are already sent: report in-band and end the stream.
            self.rotator.report_failure(secret, e)
            logger.warning(
                f"Upstream stream failed: {e.message}",
                extra={"credential": mask_secret(secret)},
            )
            yield stream_error_event(e)
        else:
            self.rotator.report_success(secret)
        finally:
            await lines.aclose()

    async def _auxiliary(self, prompt: str, max_tokens: int) -> str:
        secret = self.rotator.next()
        try:
            reply = await self.upstream.complete(
                prompt, secret, model=settings.scoring_model, max_tokens=max_tokens
            )
        except UpstreamError as e:
            self.rotator.report_failure(secret, e)
            raise
        self.rotator.report_success(secret)
        return reply

    async def _score(self, prompt: str) -> str:
        return await self._auxiliary(prompt, SCORING_MAX_TOKENS)

    async def _summarize(self, prompt: str) -> str:
        return await self._auxiliary(prompt, SUMMARY_MAX_TOKENS)

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats().to_dict(),
            "api_keys": self.rotator.stats(),
            "rate_limits": {
                "backend": self.admission.mode,
                "window_ms": settings.rate_limit_window_ms,
                "default": settings.rate_limit_default,
                "premium": settings.rate_limit_premium,
                "unlimited": settings.rate_limit_unlimited,
            },
        }
