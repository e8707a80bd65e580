from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatauth import __version__
from chatauth.api.error_handling import register_exception_handlers
from chatauth.api.routes import router
from chatauth.api.schemas import Envelope
from chatauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the backend on shutdown."""
    from chatauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", store_type=type(runtime.kv).__name__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="chatauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log entry for the request with X-Request-ID (generated if absent)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    from chatauth.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await runtime.kv.ping()
    return Envelope(
        status="ok",
        data={"version": __version__, "store": "ok" if store_ok else "unavailable"},
    )
