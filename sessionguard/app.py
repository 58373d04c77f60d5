from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and start the cleanup jobs; tear both down on shutdown."""
    from sessionguard.service.runtime import close_runtime, get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.cleanup_enabled:
            runtime.cleanup.start()
        else:
            logger.info("cleanup_scheduler_disabled")
    except Exception as exc:
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await close_runtime()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)
register_exception_handlers(app)
app.include_router(router)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    cid = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = cid
    response.headers.setdefault("API-Version", __version__)
    return response
