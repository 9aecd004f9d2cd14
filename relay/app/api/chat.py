"""Chat API endpoints for the relay."""

from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from relay.app.core.logging import get_logger
from relay.app.middleware.rate_limit import caller_identity
from relay.app.middleware.request_id import get_request_id
from relay.app.services.pipeline import ChatRequest, RequestPipeline

router = APIRouter()
logger = get_logger(__name__)


def get_pipeline(request: Request) -> RequestPipeline:
    """Get the request pipeline built by the app factory."""
    return request.app.state.pipeline


async def _sse(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    async for line in lines:
        yield f"{line}\n\n"


@router.post("/v1/chat", response_model=None)
async def chat(
    body: ChatRequest,
    request: Request,
    pipeline: RequestPipeline = Depends(get_pipeline),
) -> JSONResponse | StreamingResponse:
    """Relay one chat request upstream.

    Admission normally happens in RateLimitMiddleware; when the middleware
    did not run (exempt path, custom app), the pipeline performs it.
    """
    decision = getattr(request.state, "rate_limit", None)
    caller_key = getattr(request.state, "caller_key", None)
    tier = None
    credential_hash = None
    if caller_key is None:
        try:
            caller_key, credential_hash, tier = caller_identity(request)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    result = await pipeline.handle(
        body,
        caller_key,
        tier=tier,
        credential_hash=credential_hash,
        decision=decision,
    )

    if result.stream is not None:
        return StreamingResponse(
            _sse(result.stream),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
                "X-Request-ID": get_request_id(request),
            },
        )

    return JSONResponse(content=result.to_response())


@router.get("/stats")
async def stats(pipeline: RequestPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    """Cache, credential and rate limit statistics."""
    return {"success": True, "stats": pipeline.stats()}


@router.get("/health")
async def health(pipeline: RequestPipeline = Depends(get_pipeline)) -> dict[str, Any]:
    """Liveness plus a summary of degraded components."""
    credentials = pipeline.rotator.stats()
    healthy = sum(1 for c in credentials if c["state"] == "healthy")

    status = "ok"
    if not credentials or healthy == 0:
        status = "degraded"

    return {
        "status": status,
        "components": {
            "shared_store": {"mode": pipeline.admission.mode},
            "cache": {
                "enabled": pipeline.cache.enabled,
                "backend": pipeline.cache.stats().backend,
            },
            "credentials": {"healthy": healthy, "total": len(credentials)},
        },
    }
