from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from sessionward.api.error_handling import register_exception_handlers
from sessionward.api.routes import router
from sessionward.logging import get_logger, set_correlation_id
from sessionward.service.runtime import Authenticator, Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(
    runtime: Optional[Runtime] = None, *, authenticator: Optional[Authenticator] = None
) -> FastAPI:
    """Build the HTTP app around ``runtime``; one is constructed at startup when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        current = app.state.runtime
        if current is None:
            current = Runtime(authenticator=authenticator)
            app.state.runtime = current
        current.init()
        logger.info("app_started", version=__version__)
        try:
            yield
        finally:
            try:
                current.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="sessionward", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    if runtime is not None and authenticator is not None:
        runtime.authenticator = authenticator

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Bind a correlation id (client ``X-Request-ID`` or a fresh UUID) for logs and the response."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
