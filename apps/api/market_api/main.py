"""Marketplace API - Main FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from market_api.errors import MarketError
from market_api.middleware.auth import AuthMiddleware
from market_api.middleware.correlation import CorrelationIDMiddleware
from market_api.routes import admin, downloads, evaluations, purchases
from market_api.settings import get_settings

# Configure logging
logging.basicConfig(
    level=get_settings().log_level,
    format='{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting marketplace API...")
    try:
        settings.validate_fee_split()
        settings.validate_production_settings()

        from market_api.ledger.client import build_ledger_client
        from market_api.ledger.signer import get_signer

        app.state.ledger_client = build_ledger_client(settings)
        logger.info(f"Ledger client initialized: {settings.ledger_rpc_url}")
        logger.info(f"Platform signer initialized: {get_signer(settings).get_address()}")
    except ValueError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e

    yield

    logger.info("Shutting down marketplace API...")
    client = getattr(app.state, "ledger_client", None)
    if client is not None and hasattr(client, "close"):
        client.close()


# Create FastAPI app
app = FastAPI(
    title="Marketplace API",
    description="Escrow-settled digital asset marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Custom middleware (order matters - last added is first executed)
app.add_middleware(AuthMiddleware)
app.add_middleware(CorrelationIDMiddleware)


@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    """Render service errors with their status and error code."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        f"{exc.error_code}: {exc.message}",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "path": request.url.path,
            "status_code": exc.status_code,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Register routers
app.include_router(purchases.router)
app.include_router(downloads.router)
app.include_router(evaluations.router)
app.include_router(admin.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "market-api",
        "version": "0.1.0",
    }


@app.get("/ready")
async def readiness_check(request: Request):
    """Readiness check endpoint (verifies dependencies)."""
    from sqlalchemy import text
    import redis

    from market_api.db.session import SessionLocal

    checks = {
        "database": False,
        "migrations": False,
        "redis": False,
        "ledger": False,
    }

    # Check database connectivity
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database check failed: {e}")
    finally:
        db.close()

    # Check Alembic migrations are at head
    if checks["database"]:
        try:
            from alembic.config import Config
            from alembic.runtime.migration import MigrationContext
            from alembic.script import ScriptDirectory

            db = SessionLocal()
            try:
                context = MigrationContext.configure(db.connection())
                current_rev = context.get_current_revision()

                alembic_ini_path = os.path.join(os.path.dirname(__file__), "..", "alembic.ini")
                alembic_cfg = Config(alembic_ini_path)
                alembic_cfg.set_main_option("script_location", os.path.join(os.path.dirname(__file__), "..", "alembic"))
                head_rev = ScriptDirectory.from_config(alembic_cfg).get_current_head()

                if current_rev == head_rev:
                    checks["migrations"] = True
                else:
                    logger.warning(f"Migrations not at head: current={current_rev}, head={head_rev}")
            finally:
                db.close()
        except Exception as e:
            logger.error(f"Migration check failed: {e}")

    # Check Redis (Celery broker)
    try:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        redis_client.ping()
        checks["redis"] = True
    except Exception as e:
        logger.error(f"Redis check failed: {e}")

    # Check the ledger node answers for the platform account
    ledger = getattr(request.app.state, "ledger_client", None)
    if ledger is not None:
        try:
            ledger.query_account_objects(settings.platform_address, "escrow")
            checks["ledger"] = True
        except MarketError as e:
            logger.error(f"Ledger check failed: {e}")

    all_ready = all(checks.values())
    return JSONResponse(
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if all_ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Marketplace API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
