"""
Swiftora Shipping Core
FastAPI application entry point

- Carrier-agnostic tracking with status normalisation
- Rate shopping and write-once booking
- Carrier webhooks reconciled through the same path as pulled tracking
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.deps import close_carriers, get_carriers
from app.api.routes import shipping, tracking, webhooks
from app.core.config import settings
from app.core.database import engine, ping_database
from app.services.tracking_service import drain_pending_reconciliations

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build carrier clients on startup; on shutdown let in-flight
    reconciliations finish, then close carrier HTTP clients and the pool.
    """
    carriers = get_carriers()
    if not carriers:
        logger.warning("No carriers enabled - tracking and booking will find nothing")

    yield

    await drain_pending_reconciliations()
    await close_carriers()
    logger.info("Carrier HTTP clients closed")
    await engine.dispose()


app = FastAPI(
    lifespan=lifespan,
    title="Swiftora Shipping API",
    description="Carrier abstraction, tracking and booking for Swiftora merchants.",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(tracking.router, prefix="/api", tags=["Tracking"])
app.include_router(shipping.router, prefix="/api", tags=["Shipping"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "Swiftora Shipping API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "carriers": list(settings.CARRIER_PRIORITY),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    db_error = await ping_database()
    if db_error:
        health_status["database"] = f"error: {db_error}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
