from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import router
from gatehouse.api.schemas import Envelope, HealthResponse
from gatehouse.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from gatehouse.service.runtime import get_runtime

    get_runtime()
    yield
    await get_runtime().close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs with the client's X-Request-ID (or a fresh one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    health = HealthResponse(
        status="ok",
        store=type(runtime.store).__name__,
        redis=runtime.cache is not None,
    )
    return Envelope(status="ok", data=health.model_dump())
