"""End-to-end tests of the relay HTTP surface."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from relay.app.core.store import SharedStore
from relay.app.exceptions import UpstreamError
from relay.app.main import create_app
from relay.app.middleware.rate_limit import CallerProfile, CallerTier
from relay.app.providers.credentials import CredentialRotator, FailureKind


class TwoPerMinuteRegistry:
    async def get_profile(self, caller_key, credential_hash):
        return CallerProfile(
            caller_key=caller_key, tier=CallerTier.STANDARD, per_minute=2, daily_limit=-1
        )


@pytest.fixture
def upstream():
    client = MagicMock()
    client.chat_completion = AsyncMock(
        return_value={
            "choices": [{"message": {"role": "assistant", "content": "pong"}}],
            "usage": {"total_tokens": 3},
        }
    )
    client.complete = AsyncMock(return_value="")
    client.aclose = AsyncMock()
    return client


def build_client(upstream, secrets=("sk-or-v1-aaaaaaaaaaaa", "sk-or-v1-bbbbbbbbbbbb")):
    app = create_app(
        store=SharedStore(enabled=False),
        rotator=CredentialRotator(list(secrets)),
        upstream=upstream,
        registry=TwoPerMinuteRegistry(),
    )
    return TestClient(app)


class TestChatEndpoint:

    def test_chat_round_trip(self, upstream):
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"message": "ping", "model": "m"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["response"] == "pong"
        assert body["cached"] is False
        assert body["model"] == "m"
        assert body["usage"] == {"total_tokens": 3}
        assert "X-RateLimit-Limit" in response.headers
        assert "X-Request-ID" in response.headers

    def test_second_identical_request_is_cached(self, upstream):
        with build_client(upstream) as client:
            client.post("/v1/chat", json={"message": "ping"})
            response = client.post("/v1/chat", json={"message": "ping"})

        assert response.json()["cached"] is True
        upstream.chat_completion.assert_awaited_once()

    def test_missing_message_is_422(self, upstream):
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"model": "m"})
        assert response.status_code == 422

    def test_rate_limited_caller_gets_429(self, upstream):
        headers = {"X-API-Key": "llmr_caller_key"}
        with build_client(upstream) as client:
            codes = [
                client.post("/v1/chat", json={"message": f"q{i}"}, headers=headers).status_code
                for i in range(3)
            ]
            denied = client.post("/v1/chat", json={"message": "again"}, headers=headers)

        assert codes == [200, 200, 429]
        assert denied.status_code == 429
        assert denied.json()["error"] == "rate_limit_exceeded"
        assert int(denied.headers["Retry-After"]) >= 1
        assert upstream.chat_completion.await_count == 2

    def test_other_callers_are_independent(self, upstream):
        with build_client(upstream) as client:
            for i in range(3):
                client.post("/v1/chat", json={"message": f"q{i}"}, headers={"X-API-Key": "k-one"})
            response = client.post(
                "/v1/chat", json={"message": "hi"}, headers={"X-API-Key": "k-two"}
            )
        assert response.status_code == 200

    def test_no_credentials_is_503(self, upstream):
        with build_client(upstream, secrets=()) as client:
            response = client.post("/v1/chat", json={"message": "ping"})

        assert response.status_code == 503
        assert response.json()["code"] == "NoCredentialsAvailableError"
        upstream.chat_completion.assert_not_awaited()

    def test_upstream_failure_is_502(self, upstream):
        upstream.chat_completion.side_effect = UpstreamError(
            "Upstream returned HTTP 500", upstream_status=500, kind=FailureKind.TRANSIENT
        )
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"message": "ping"})

        assert response.status_code == 502
        assert response.json()["success"] is False

    def test_streaming(self, upstream):
        async def stream_chat(payload, api_key):
            yield 'data: {"choices":[{"delta":{"content":"po"}}]}'
            yield "data: [DONE]"

        upstream.stream_chat = MagicMock(side_effect=stream_chat)
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"message": "ping", "stream": True})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.endswith("data: [DONE]\n\n")
        upstream.chat_completion.assert_not_awaited()

    def test_stream_failure_before_first_byte_is_502(self, upstream):
        async def stream_chat(payload, api_key):
            raise UpstreamError("Upstream returned HTTP 429", upstream_status=429)
            yield  # pragma: no cover

        upstream.stream_chat = MagicMock(side_effect=stream_chat)
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"message": "ping", "stream": True})

        assert response.status_code == 502
        assert response.headers["content-type"].startswith("application/json")
        assert response.json()["success"] is False
        assert upstream.stream_chat.call_count == 2

    def test_stream_failure_after_first_byte_ends_with_error_event(self, upstream):
        async def stream_chat(payload, api_key):
            yield 'data: {"choices":[{"delta":{"content":"po"}}]}'
            raise UpstreamError("Upstream stream interrupted", upstream_status=None)

        upstream.stream_chat = MagicMock(side_effect=stream_chat)
        with build_client(upstream) as client:
            response = client.post("/v1/chat", json={"message": "ping", "stream": True})

        assert response.status_code == 200
        events = [line for line in response.text.split("\n\n") if line]
        assert len(events) == 2
        assert '"code": "upstream_error"' in events[1]


class TestOperationalEndpoints:

    def test_stats(self, upstream):
        with build_client(upstream) as client:
            client.post("/v1/chat", json={"message": "ping"})
            response = client.get("/stats")

        assert response.status_code == 200
        stats = response.json()["stats"]
        assert stats["cache"]["misses"] == 1
        assert stats["rate_limits"]["backend"] == "memory"
        assert len(stats["api_keys"]) == 2
        assert all(k["key"].endswith("...") for k in stats["api_keys"])

    def test_health_ok(self, upstream):
        with build_client(upstream) as client:
            response = client.get("/health")

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ok"
        assert body["components"]["credentials"] == {"healthy": 2, "total": 2}
        assert "X-RateLimit-Limit" not in response.headers

    def test_health_degraded_without_credentials(self, upstream):
        with build_client(upstream, secrets=()) as client:
            assert client.get("/health").json()["status"] == "degraded"

    def test_lifespan_closes_upstream(self, upstream):
        with build_client(upstream):
            pass
        upstream.aclose.assert_awaited_once()
