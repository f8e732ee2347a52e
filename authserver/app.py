from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authserver.api.error_handling import register_exception_handlers
from authserver.api.routes import router
from authserver.config import Settings
from authserver.logging import get_logger, set_correlation_id
from authserver.service.runtime import get_runtime
from authserver.storage.redis_cache import RedisCodeStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))
        raise

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Authorization Server", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to the request context and echo it back.

    Taken from the X-Request-ID header when the caller supplies one,
    otherwise generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token responses must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report durable and ephemeral store reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    def _db_probe() -> None:
        runtime.store.get_client_by_name("__healthz__")

    try:
        await asyncio.wait_for(asyncio.to_thread(_db_probe), timeout=2.0)
        checks["store"] = {"status": "ok", "backend": type(runtime.store).__name__}
    except Exception as exc:
        logger.warning("healthz_store_failed", error=str(exc))
        checks["store"] = {"status": "error", "backend": type(runtime.store).__name__}

    if isinstance(runtime.code_store, RedisCodeStore):
        try:
            await asyncio.wait_for(runtime.code_store.client.ping(), timeout=2.0)
            checks["code_store"] = {"status": "ok", "backend": "redis"}
        except Exception as exc:
            logger.warning("healthz_redis_failed", error=str(exc))
            checks["code_store"] = {"status": "error", "backend": "redis"}
    else:
        checks["code_store"] = {"status": "ok", "backend": "memory"}

    healthy = all(check["status"] == "ok" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
