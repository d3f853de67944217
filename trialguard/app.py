from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trialguard.api.error_handling import register_exception_handlers
from trialguard.api.routes import health_router, router
from trialguard.config import Settings
from trialguard.logging import bind_invocation, get_logger

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from trialguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", redis_enabled=runtime.cache is not None)

    yield

    if runtime.cache is not None:
        try:
            await runtime.cache.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))
    logger.info("app_stopped")


app = FastAPI(title="trialguard", version=__version__, lifespan=lifespan)

if _settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Reuse the client's X-Request-ID when present, otherwise generate one."""
    correlation_id = bind_invocation("http", request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(health_router)
app.include_router(router)
