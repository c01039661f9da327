# billing_service/main.py
# GymFit billing-service FastAPI application entry point
#
# Startup:  optional migrations, DB connection check, Redis ping, background jobs
# Shutdown: stop background jobs, clean connection pool disposal
# Routes:   /health, /api/v1/* (all endpoints via master router)

import logging
from contextlib import asynccontextmanager
from typing import Optional

from alembic import command
from alembic.config import Config
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis as redis_lib

import billing_service.db.base  # noqa: F401 -- configures every mapper before first request
from billing_service.api.v1.router import api_router
from billing_service.core.config import settings
from billing_service.core.dependencies import BillingContext, get_billing_context
from billing_service.core.errors import register_exception_handlers
from billing_service.core.redis_client import ping_redis
from billing_service.db.session import check_db_connection, engine
from billing_service.jobs.scheduler import start_background_jobs, stop_background_jobs

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("billing")


def run_startup_migrations() -> bool:
    """Run `alembic upgrade head` using the project alembic.ini."""
    try:
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations: OK")
        return True
    except Exception as exc:
        logger.warning(f"Database migrations failed -- {exc}")
        return False


# ── Lifespan ──────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} v{settings.app_version} [{settings.app_env}]")

    if settings.auto_migrate_on_startup:
        run_startup_migrations()

    if check_db_connection():
        logger.info("Database connection: OK")
    else:
        logger.warning("Database connection failed -- check DATABASE_URL")

    if ping_redis():
        logger.info("Redis connection: OK")
    else:
        # Idempotency and compensation degrade (fail-open / log-only) without Redis
        logger.warning("Redis connection failed -- check REDIS_URL")

    jobs = start_background_jobs() if settings.enable_background_jobs else []

    yield  # App runs here

    logger.info("Shutting down -- stopping jobs, disposing DB connection pool")
    await stop_background_jobs(jobs)
    engine.dispose()


# ── App Instance ──────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="GymFit billing: payments, subscriptions, discounts and refunds.",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)


# ── CORS ──────────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ── Routes ────────────────────────────────────────────────────────────────────

app.include_router(api_router, prefix="/api/v1")


# ── Health Check ──────────────────────────────────────────────────────────────

def _compensation_backlog(ctx: BillingContext) -> Optional[int]:
    try:
        return len(ctx.compensation.list_pending())
    except redis_lib.RedisError as exc:
        logger.warning(f"Could not count compensation tasks: {exc}")
        return None


@app.get("/health", tags=["Health"], include_in_schema=False)
def health_check(ctx: BillingContext = Depends(get_billing_context)):
    """
    Health check for the orchestrator and load balancers.
    Always 200 while the process is up; dependency status and the number of
    side effects still waiting for replay are informational.
    """
    return JSONResponse(
        status_code=200,
        content={
            "status": "ok",
            "app": settings.app_name,
            "version": settings.app_version,
            "environment": settings.app_env,
            "services": {
                "database": "ok" if check_db_connection() else "unavailable",
                "redis": "ok" if ping_redis() else "unavailable",
            },
            "compensation_backlog": _compensation_backlog(ctx),
        },
    )


@app.get("/", include_in_schema=False)
def root():
    return JSONResponse(
        content={
            "message": "GymFit Billing Service",
            "docs": "/api/docs",
            "health": "/health",
        }
    )
