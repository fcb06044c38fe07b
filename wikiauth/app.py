from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wikiauth.api.error_handling import register_exception_handlers
from wikiauth.api.routes import router
from wikiauth.config import Settings
from wikiauth.logging import get_logger, set_correlation_id
from wikiauth.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from wikiauth.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except StoreUnavailableError as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Wiki Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    # Cookies are SameSite=Strict; cross-origin callers are limited to the site itself
    return [_settings.app_base_url]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-CSRF-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Reset"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for structured logs.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report key-value store reachability."""
    from wikiauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": {"type": type(runtime.store).__name__}}
    healthy = True
    try:
        await runtime.store.get("healthz:probe")
        checks["store"]["status"] = "ok"
    except StoreUnavailableError as exc:
        healthy = False
        checks["store"]["status"] = "unavailable"
        logger.warning("health_store_unavailable", operation=exc.operation)
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks},
    )


def create_app() -> FastAPI:
    return app
