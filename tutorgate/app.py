from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tutorgate.api.error_handling import register_exception_handlers
from tutorgate.api.routes import router
from tutorgate.config import Settings
from tutorgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_session_purge(interval_seconds: int) -> None:
    """Periodically delete sessions that can no longer be refreshed."""
    from tutorgate.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime = get_runtime()
            await asyncio.to_thread(runtime.auth.purge_expired_sessions)
        except Exception as exc:
            logger.warning("session_purge_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    from tutorgate.service.runtime import get_runtime

    purge_task: asyncio.Task | None = None
    try:
        runtime = get_runtime()
        interval = runtime.settings.session_purge_interval_seconds
        if interval > 0:
            purge_task = asyncio.create_task(_run_session_purge(interval))
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if purge_task:
            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def add_correlation_id(request, call_next):
    """Tag every log line and response with the request's correlation id.

    The id comes from ``X-Request-ID`` when the client sends one, otherwise a
    new UUID is generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # tokens travel in these bodies; never let a proxy keep them
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


async def health() -> JSONResponse:
    """Report store and cache reachability."""
    from tutorgate.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    runtime = get_runtime()

    try:
        await asyncio.wait_for(asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS)
        db_ok = True
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        db_ok = False
    checks["store"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            redis_ok = False
        # the denylist fails open, so redis never makes the service unhealthy
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    body = {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=body)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="Tutorgate Auth", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "WWW-Authenticate"],
        max_age=3600,
    )
    app.middleware("http")(add_correlation_id)
    app.middleware("http")(add_security_headers)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()
