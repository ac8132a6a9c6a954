"""
Silent Trust - anti-spam decision engine

FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import redis.asyncio as redis
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from starlette.middleware.base import BaseHTTPMiddleware

from silent_trust import __version__
from silent_trust.api.routes import maintenance_router, submissions_router, weights_router
from silent_trust.config import settings
from silent_trust.db.orm import Base
from silent_trust.db.repositories import SqlPersistenceGateway
from silent_trust.decision.mail import HttpMailTransport
from silent_trust.services import build_services
from silent_trust.tasks import AsyncioTaskScheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests and their processing time."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            f"Response: {request.method} {request.url.path} "
            f"[{request_id}] status={response.status_code} time={process_time:.3f}s"
        )
        return response


# Database engine and session factory
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting Silent Trust...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app.state.redis = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    app.state.db_session = async_session

    scheduler = AsyncioTaskScheduler()
    transport = HttpMailTransport(settings.mail_relay_url) if settings.mail_relay_url else None

    app.state.services = build_services(
        settings,
        gateway=SqlPersistenceGateway(async_session),
        scheduler=scheduler,
        transport=transport,
        redis_client=app.state.redis,
    )

    logger.info("Silent Trust started successfully")

    yield

    logger.info("Shutting down Silent Trust...")
    await scheduler.shutdown()
    if transport is not None:
        await transport.close()
    await app.state.redis.close()
    await engine.dispose()
    logger.info("Silent Trust shutdown complete")


app = FastAPI(
    title="Silent Trust",
    description="Silent server-side anti-spam decision engine for web forms",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-Process-Time"],
    max_age=600,
)

app.include_router(submissions_router, prefix="/api/v1/submissions", tags=["submissions"])
app.include_router(weights_router, prefix="/api/v1/weights", tags=["weights"])
app.include_router(maintenance_router, prefix="/api/v1/maintenance", tags=["maintenance"])


@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns the status of the database, Redis and the task scheduler.
    """
    health_status: dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__,
        "services": {},
    }

    try:
        async with request.app.state.db_session() as session:
            await session.execute(text("SELECT 1"))
        health_status["services"]["database"] = {"status": "healthy"}
    except Exception as e:
        health_status["services"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    try:
        await request.app.state.redis.ping()
        health_status["services"]["redis"] = {"status": "healthy"}
    except Exception as e:
        health_status["services"]["redis"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    services = getattr(request.app.state, "services", None)
    async_mode = services.async_gate.should_use_async() if services else False
    health_status["services"]["async_analysis"] = {"status": "enabled" if async_mode else "sync_fallback"}

    return health_status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": "Silent Trust",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
