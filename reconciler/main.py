"""
Order Lifecycle Reconciler
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from reconciler.config import get_settings
from reconciler.utils.logger import log
from reconciler import __version__

# Import routers
from reconciler.api import health, orders, payments, shipments, webhooks, admin
from reconciler.middleware.auth_middleware import AuthMiddleware

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from reconciler.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for the poller, outbox and order timers
    try:
        from reconciler.scheduler import start_scheduler
        start_scheduler()
    except Exception as e:
        log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    try:
        from reconciler.scheduler import stop_scheduler
        stop_scheduler()
    except Exception as e:
        log.error(f"Scheduler shutdown error: {str(e)}")
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Order lifecycle reconciliation core

    Keeps orders consistent with two external systems that report
    asynchronously:
    - Dragonpay (payment gateway): intents, postbacks, browser returns, inquiry polling
    - NinjaVan (carrier): parcel creation, cancellation, waybills, tracking webhooks

    Every change goes through one order state machine with idempotent,
    forward-only transitions, an inventory ledger and a transactional outbox.
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Forwarded-identity middleware
app.add_middleware(AuthMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(shipments.router)
app.include_router(webhooks.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "checkout": "POST /orders",
            "get_order": "GET /orders/{order_id}",
            "cancel_order": "POST /orders/{order_id}/cancel",
            "payment_intent": "POST /payments/intents",
            "gateway_postback": "POST /payments/postback",
            "gateway_return": "GET /payments/return",
            "cancel_shipment": "DELETE /shipments/{tracking_id}",
            "tracking": "GET /shipments/{tracking_id}/tracking",
            "waybill": "GET /shipments/{tracking_id}/waybill",
            "carrier_webhook_v1": "POST /webhooks/carrier/v1",
            "carrier_webhook_v2": "POST /webhooks/carrier/v2",
            "reconcile_now": "POST /admin/reconcile",
            "reconcile_status": "GET /admin/reconcile/status",
            "drain_outbox": "POST /admin/outbox/drain",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "reconciler.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1
    )
