"""
SleepCare CRM reconciliation engine
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.api import health, sync, trade_in, webhooks
from app.config import get_settings
from app.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    from app.scheduler import start_scheduler, stop_scheduler
    try:
        start_scheduler()
    except Exception as e:
        log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    stop_scheduler()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Cross-provider reconciliation for the mattress-care CRM

    Keeps customers, subscriptions, trade-in evaluations and coupons
    consistent across:
    - the record store (canonical data)
    - the payments provider (Stripe)
    - the storefront (Shopify)

    Features:
    - Duplicate, missing-mapping and stale-data detection and repair
    - Scheduled and manual full syncs with an audit trail
    - Idempotent webhook ingestion for both providers
    - Trade-in evaluation approval with storefront discount codes
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
app.include_router(webhooks.router)
app.include_router(trade_in.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": settings.app_name,
        "version": __version__,
        "status": "running",
        "docs": "/docs",
        "endpoints": {
            "health": "GET /health",
            "status": "GET /status",
            "sync_full": "POST /sync/full",
            "sync_customers": "POST /sync/customers",
            "sync_conflicts": "GET /sync/conflicts",
            "sync_resolve": "POST /sync/conflicts/resolve",
            "sync_history": "GET /sync/history",
            "sync_schedule": "GET|PUT /sync/schedule",
            "webhooks_payments": "POST /webhooks/payments",
            "webhooks_commerce": "POST /webhooks/commerce",
            "webhooks_commerce_register": "POST /webhooks/commerce/register",
            "trade_in_create": "POST /trade-in/evaluations",
            "trade_in_approve": "POST /trade-in/evaluations/{id}/approve",
            "trade_in_reject": "POST /trade-in/evaluations/{id}/reject"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
