from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatharbor.api.error_handling import register_exception_handlers
from chatharbor.api.routes import router
from chatharbor.config import Settings
from chatharbor.logging import get_logger, set_correlation_id
from chatharbor.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime before serving.

    Misconfiguration (for example a missing JWT_SECRET) propagates out of
    startup so the server refuses to come up.
    """
    runtime = get_runtime()
    logger.info("app_started", version=__version__, app_env=runtime.settings.app_env.value)

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="ChatHarbor", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts; avoid wildcard when credentials are enabled.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    Taken from X-Request-ID when the client sends one, otherwise generated.
    It is bound into every log line and echoed back in X-Request-ID.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {
        "store": {"status": "ok", "type": type(runtime.store).__name__},
    }
    healthy = True
    if runtime.cache is not None:
        try:
            await runtime.cache.ping()
            checks["redis"] = {"status": "ok"}
        except Exception as exc:
            healthy = False
            logger.warning("health_redis_failed", error=str(exc))
            checks["redis"] = {"status": "error", "error": type(exc).__name__}
    else:
        checks["redis"] = {"status": "disabled"}
    return {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "checks": checks,
    }


register_exception_handlers(app)
app.include_router(router)
