"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core import otel
from app.core.config import settings
from app.core.exceptions import BillingError
from app.core.logging import setup_logging
from app.core.middleware import (
    billing_exception_handler, global_exception_handler,
    security_middleware, setup_cors_middleware
)
from app.db.redis import get_redis_client
from app.db.session import engine, init_db

# Import routers
from app.api import analytics, billing, plans, subscriptions

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if otel.initialize_otel():
        otel.instrument_fastapi(app)
        otel.instrument_sqlalchemy(engine)
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Content Billing Backend",
    description="Subscription billing and entitlement reconciliation",
    version=otel.SERVICE_VERSION,
    lifespan=lifespan
)

setup_cors_middleware(app)
app.middleware("http")(security_middleware)

# Include routers
app.include_router(billing.router)
app.include_router(subscriptions.router)
app.include_router(plans.router)
app.include_router(analytics.router)

app.add_exception_handler(BillingError, billing_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
