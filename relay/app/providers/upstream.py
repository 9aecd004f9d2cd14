"""OpenAI-compatible upstream client.

Talks to the upstream chat completions API (OpenRouter by default) with a
pooled httpx client. Every failure is surfaced as an UpstreamError carrying
the upstream status and its FailureKind, so callers can feed it straight
into the credential rotator.
"""

from typing import Any, AsyncGenerator, Dict, Optional

import httpx

from relay.app.core.config import settings
from relay.app.core.logging import get_logger
from relay.app.exceptions import UpstreamError
from relay.app.providers.credentials import FailureKind, classify_failure

logger = get_logger(__name__)


def extract_content(response: Dict[str, Any]) -> str:
    """Return the assistant text of a chat completion response."""
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    return content or ""


class UpstreamClient:
    """Chat completions client for one upstream base URL.

    The API key is passed per call because the rotator picks a different
    credential for each request.

    Usage:
        upstream = UpstreamClient()
        data = await upstream.chat_completion(payload, api_key=key)
        ...
        await upstream.aclose()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API base URL, defaults to settings.upstream_base_url
            http_client: Shared httpx client; one is created if omitted
            timeout: Request timeout in seconds
        """
        self.base_url = (base_url or settings.upstream_base_url).rstrip("/")
        self.timeout = timeout or settings.upstream_timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _status_error(e: httpx.HTTPStatusError) -> UpstreamError:
        status = e.response.status_code
        return UpstreamError(
            f"Upstream returned HTTP {status}",
            upstream_status=status,
            kind=classify_failure(status),
        )

    async def chat_completion(self, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        """Send a non-streaming chat completion request.

        Args:
            payload: Request body (model, messages, temperature, ...)
            api_key: Upstream credential for this call

        Returns:
            The JSON response from the API

        Raises:
            UpstreamError: On HTTP errors, timeouts and connection failures
        """
        try:
            resp = await self._client.post(
                self._url("/chat/completions"),
                headers=self._headers(api_key),
                json=payload,
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise self._status_error(e) from e
        except httpx.TimeoutException as e:
            raise UpstreamError("Upstream request timed out", kind=FailureKind.TRANSIENT) from e
        except httpx.RequestError as e:
            raise UpstreamError(
                f"Upstream connection failed: {e}", kind=FailureKind.TRANSIENT
            ) from e
        except ValueError as e:
            raise UpstreamError(
                "Upstream returned invalid JSON", kind=FailureKind.TRANSIENT
            ) from e

    async def stream_chat(
        self, payload: Dict[str, Any], api_key: str
    ) -> AsyncGenerator[str, None]:
        """Send a streaming chat completion request, yielding SSE lines.

        Raises:
            UpstreamError: If the request fails before or during streaming
        """
        body = {**payload, "stream": True}
        try:
            async with self._client.stream(
                "POST",
                self._url("/chat/completions"),
                headers=self._headers(api_key),
                json=body,
            ) as resp:
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if line:
                        yield line
        except httpx.HTTPStatusError as e:
            raise self._status_error(e) from e
        except httpx.TimeoutException as e:
            raise UpstreamError("Upstream stream timed out", kind=FailureKind.TRANSIENT) from e
        except httpx.RequestError as e:
            raise UpstreamError(
                f"Upstream connection failed: {e}", kind=FailureKind.TRANSIENT
            ) from e

    async def complete(
        self,
        prompt: str,
        api_key: str,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Single-prompt helper used for auxiliary calls (scoring, summaries)."""
        payload: Dict[str, Any] = {
            "model": model or settings.scoring_model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return extract_content(await self.chat_completion(payload, api_key))

    async def aclose(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
