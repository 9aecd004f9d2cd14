from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relay.app.api.chat import router as chat_router
from relay.app.core.config import settings
from relay.app.core.logging import get_logger, setup_logging
from relay.app.core.store import SharedStore
from relay.app.db import models  # noqa: F401 - import to register models
from relay.app.db.registry import SqlCallerRegistry
from relay.app.db.session import create_engine, create_session_maker, init_db
from relay.app.exceptions import RateLimitExceededError, RelayException
from relay.app.middleware.rate_limit import (
    AdmissionController,
    CallerProfileResolver,
    CallerRegistry,
    RateLimitMiddleware,
)
from relay.app.middleware.request_id import RequestIdMiddleware
from relay.app.providers.credentials import CredentialRotator
from relay.app.providers.upstream import UpstreamClient
from relay.app.services.context_budget import ContextBudgeter
from relay.app.services.pipeline import RequestPipeline
from relay.app.services.response_cache import ResponseCache


def create_app(
    store: Optional[SharedStore] = None,
    rotator: Optional[CredentialRotator] = None,
    upstream: Optional[UpstreamClient] = None,
    registry: Optional[CallerRegistry] = None,
    database_url: Optional[str] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Components are built once here and shared through ``app.state``.
    Arguments override the settings-derived defaults (tests inject fakes).

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    store = store or SharedStore()
    rotator = rotator or CredentialRotator()
    upstream = upstream or UpstreamClient()

    engine = None
    if registry is None:
        engine = create_engine(database_url)
        registry = SqlCallerRegistry(create_session_maker(engine))

    admission = AdmissionController(store, CallerProfileResolver(registry))
    cache = ResponseCache(store)
    pipeline = RequestPipeline(admission, cache, rotator, ContextBudgeter(), upstream)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Connect the shared store and registry, run the housekeeping loops."""
        await store.connect()
        if engine is not None:
            await init_db(engine)
        await cache.start()
        await admission.start()

        logger.info(
            "Application startup complete",
            extra={
                "store_mode": store.mode,
                "credentials": len(rotator),
                "debug_mode": settings.debug,
            },
        )

        yield

        await admission.stop()
        await cache.stop()
        await upstream.aclose()
        await store.close()
        if engine is not None:
            await engine.dispose()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="LLM Relay",
        description="Chat relay with sliding-window rate limiting, response caching and key rotation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    # Order matters: last added = first executed.
    app.add_middleware(RateLimitMiddleware, admission=admission)
    app.add_middleware(RequestIdMiddleware)

    app.include_router(chat_router)

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.headers(),
        )

    @app.exception_handler(RelayException)
    async def relay_error_handler(request: Request, exc: RelayException) -> JSONResponse:
        """Map relay exceptions to their HTTP status."""
        logger.warning(
            f"{type(exc).__name__}: {exc.message}",
            extra={"request_id": getattr(request.state, "request_id", "-")},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.message,
                "code": type(exc).__name__,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; debug mode exposes the
        exception message only.
        """
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"request_id": request_id},
        )
        content: dict[str, Any] = {
            "success": False,
            "error": "internal_error",
            "message": "An internal error occurred",
        }
        if settings.debug:
            content["message"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
