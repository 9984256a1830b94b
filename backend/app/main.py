"""FastAPI application entrypoint and configuration.

This module provides the main FastAPI application factory that sets up
logging, CORS middleware, the per-request error boundary and timing log,
includes the tile, map snapshot and gateway routers, and exposes a health
check endpoint for monitoring.

Example:
    The application can be run with uvicorn:
        $ uvicorn app.main:app --port 8800

    Or imported and used programmatically:
        >>> from app.main import app
        >>> # Use app in ASGI server
"""

import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import fastapi
from fastapi import responses
from fastapi.middleware import cors

from app.api import gateway, maps, tiles
from app.core import config, errors, logging_setup
from app.db import database

logger = logging.getLogger(__name__)

_STARTED_AT = time.monotonic()


async def _handle_tile_cache_error(
    request: fastapi.Request, exc: errors.TileCacheError
) -> responses.JSONResponse:
    """Render a reported error as ``{"error": message}`` with its status."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return responses.JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
    )


def _install_request_boundary(app: fastapi.FastAPI, slow_request_ms: int) -> None:
    """Log every request with its duration and contain unexpected failures.

    Anything not already converted by an exception handler becomes a 500
    response for that request only; the process keeps serving.
    """

    @app.middleware("http")
    async def request_boundary(
        request: fastapi.Request,
        call_next: Callable[[fastapi.Request], Awaitable[responses.Response]],
    ) -> responses.Response:
        started = time.perf_counter()
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        logger.info("--> %s %s", request.method, target)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled error in %s %s", request.method, target)
            response = responses.JSONResponse(
                status_code=500,
                content={"error": str(exc) or exc.__class__.__name__},
            )
        duration_ms = (time.perf_counter() - started) * 1000
        tag = " SLOW" if duration_ms > slow_request_ms else ""
        logger.info(
            "<-- %s %s %d %.0fms%s",
            request.method,
            target,
            response.status_code,
            duration_ms,
            tag,
        )
        return response


@contextlib.asynccontextmanager
async def _lifespan(_app: fastapi.FastAPI) -> AsyncIterator[None]:
    yield
    database.close_connection_pools()


def create_app() -> fastapi.FastAPI:
    """Create and configure the FastAPI application.

    Configures logging, includes the tile, map and gateway routers,
    registers the error handler for reported errors, installs the request
    boundary middleware and CORS, and adds a health check endpoint. CORS
    origins are configured from settings.

    Returns:
        Configured FastAPI application instance ready for ASGI server.

    Example:
        The app can be used with uvicorn or other ASGI servers:
            >>> app = create_app()
            >>> # Or use the module-level app instance:
            >>> from app.main import app
    """
    settings = config.get_settings()
    logging_setup.configure_logging(settings.log_level)
    app = fastapi.FastAPI(
        title="Tile Cache",
        version="0.1.0",
        lifespan=_lifespan,
    )

    app.include_router(tiles.router)
    app.include_router(maps.router)
    app.include_router(gateway.router)

    app.add_exception_handler(
        errors.TileCacheError,
        _handle_tile_cache_error,  # type: ignore[arg-type]
    )
    _install_request_boundary(app, settings.slow_request_ms)

    app.add_middleware(
        cors.CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=settings.allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str | float]:  # type: ignore[misc]
        """Health check endpoint for monitoring and load balancers.

        Returns:
            Dictionary with status "ok" and process uptime in seconds.
        """
        return {"status": "ok", "uptime": round(time.monotonic() - _STARTED_AT, 3)}

    return app


app = create_app()
