from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from authsession.api.error_handling import register_exception_handlers
from authsession.api.routes import router
from authsession.logging import clear_request_context, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start maintenance sweeps on startup and stop them on shutdown."""
    from authsession.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.scheduler_enabled:
        try:
            await runtime.scheduler.start()
        except Exception as exc:
            logger.error("startup_scheduler_failed", error=str(exc))

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authsession", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (client supplied or generated)."""
    clear_request_context()
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authsession.service.runtime import get_runtime

    runtime = get_runtime()
    redis_status = "disabled"
    if runtime.redis is not None:
        try:
            await runtime.redis.ping()
            redis_status = "ok"
        except Exception as exc:
            logger.warning("health_redis_unreachable", error=str(exc))
            redis_status = "unreachable"
    return {
        "status": "ok" if redis_status != "unreachable" else "degraded",
        "version": __version__,
        "redis": redis_status,
        "scheduler": "running" if runtime.scheduler.running else "stopped",
    }
