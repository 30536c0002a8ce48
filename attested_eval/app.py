from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI

from attested_eval.api.error_handling import register_exception_handlers
from attested_eval.api.routes import router, tls_router
from attested_eval.api.timeouts import install_write_timeout
from attested_eval.logging import get_logger, set_correlation_id
from attested_eval.config import get_settings
from attested_eval.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def install_correlation_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with X-Request-ID (or a fresh UUID) and echo it back."""
        client_request_id = request.headers.get("X-Request-ID")
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response


def create_app(runtime: Optional[Runtime] = None, *, tls: bool = False) -> FastAPI:
    """Build the isolated-process API.

    ``tls`` adds the routes that are only served behind the attested
    certificate. When ``runtime`` is given it replaces the process-wide
    singleton and is closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("attested_api_started", tls=tls)
        yield
        if runtime is not None:
            await runtime.close()
            logger.info("runtime_cleanup_complete")

    app = FastAPI(
        title="attested-eval" + (" (tls)" if tls else ""),
        version=__version__,
        lifespan=lifespan,
    )
    settings = runtime.settings if runtime is not None else get_settings()
    install_write_timeout(app, settings.write_timeout)
    install_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(router)
    if tls:
        app.include_router(tls_router)
    if runtime is not None:
        app.dependency_overrides[get_runtime] = lambda: runtime

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    return app
