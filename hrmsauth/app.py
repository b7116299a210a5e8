from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hrmsauth.api import access_routes, routes
from hrmsauth.api.error_handling import register_exception_handlers
from hrmsauth.config import Settings
from hrmsauth.logging import begin_request, get_logger
from hrmsauth.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

# Mounted in order by create_app
ROUTERS: List[APIRouter] = [
    routes.router,
    access_routes.router,
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the runtime's Redis client and database pool on shutdown."""
    yield
    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def add_correlation_id(request: Request, call_next):
    """Tag the request with a correlation id for logs and the X-Request-ID header.

    A client-supplied X-Request-ID is reused; otherwise a new UUID is generated.
    """
    correlation_id = begin_request(
        request.method, request.url.path, request.headers.get("X-Request-ID")
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens; never let a proxy cache them
    response.headers.setdefault("Cache-Control", "no-store")
    return response


async def health(request: Request) -> JSONResponse:
    """Report store and Redis reachability."""
    runtime: Runtime = request.app.state.runtime
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the application around an explicit runtime.

    Run with ``uvicorn --factory hrmsauth.app:create_app``.
    """
    if runtime is None:
        runtime = Runtime(settings or Settings.from_env())
    settings = runtime.settings

    app = FastAPI(title="HRMS Access Control", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], include_in_schema=False)
    return app
