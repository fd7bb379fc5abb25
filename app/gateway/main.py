"""LeadZap – WhatsApp Gateway.

Hosts the send/relay functions of the CRM, plus health and metrics.
Audio deliveries run on the background supervisor and are drained on
shutdown.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from app.core.db import run_migrations
from app.core.instrumentation import router as metrics_router
from app.core.instrumentation import setup_instrumentation
from app.gateway.dependencies import redis_bus, settings, supervisor
from app.gateway.routers.whatsapp import router as whatsapp_router

logger = structlog.get_logger()

VERSION = "1.0.0"


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return origins or ["http://localhost:5173"]


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return
    if settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}:
        raise RuntimeError("Refusing startup in production due to weak/default AUTH_SECRET.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: schema bootstrap and Redis on startup, drain on shutdown."""
    _enforce_startup_guards()
    run_migrations()
    supervisor.reopen()
    logger.info("leadzap.gateway.startup", version=VERSION, env=settings.environment)
    try:
        await redis_bus.connect()
    except Exception:
        logger.warning("leadzap.gateway.redis_unavailable", msg="Starting without Redis")

    yield

    await supervisor.drain(settings.background_drain_timeout_seconds)
    await redis_bus.disconnect()
    logger.info("leadzap.gateway.shutdown")


app = FastAPI(
    title="LeadZap Gateway",
    description="LeadZap – WhatsApp send/relay functions for the CRM",
    version=VERSION,
    lifespan=lifespan,
)

setup_instrumentation(app, settings.log_level)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_parse_cors_origins(settings.cors_allowed_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render errors as ``{"error": ...}`` like every other relay response."""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


app.include_router(whatsapp_router)
app.include_router(metrics_router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns system status."""
    redis_ok = await redis_bus.health_check()
    return {
        "status": "ok" if redis_ok else "degraded",
        "service": "leadzap-gateway",
        "version": VERSION,
        "redis": "connected" if redis_ok else "disconnected",
        "background_tasks": supervisor.active_count,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
