from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from errors import ServiceError, ValidationFailed
from routes import (
    auth, user, products, suppliers, customers, campaigns, movements,
    installments, reports, store, public_store, billing, webhooks,
)

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# In-memory job store: the only job is idempotent and rescheduled on every start
scheduler = AsyncIOScheduler()

BILLING_RECONCILE_INTERVAL_MINUTES = int(os.environ.get("BILLING_RECONCILE_INTERVAL_MINUTES", "60"))


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    logger.info("Starting Stockfront API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and which price IDs are in use (no secret keys)
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_SECRET_KEY is not set. Checkout and billing sync will answer 503.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    for plan in ("STARTER", "PREMIUM"):
        logger.info("Stripe price id plan=%s price_id=%s", plan.lower(), os.environ.get(f"STRIPE_PRICE_{plan}") or "(missing)")

    # Configure scheduled jobs
    from services.billing_events import run_billing_reconciliation
    scheduler.add_job(
        run_billing_reconciliation,
        IntervalTrigger(minutes=BILLING_RECONCILE_INTERVAL_MINUTES),
        id="billing_reconciliation",
        name="Billing Reconciliation",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Stockfront API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Stockfront API",
    description="Multi-tenant inventory and storefront management",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth.router)
app.include_router(user.router)
app.include_router(products.router)
app.include_router(suppliers.router)
app.include_router(customers.router)
app.include_router(campaigns.router)
app.include_router(movements.router)
app.include_router(installments.router)
app.include_router(reports.router)
app.include_router(store.router)
app.include_router(public_store.router)  # Unauthenticated storefront
app.include_router(billing.router)
app.include_router(webhooks.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Domain errors: single rendering for every ServiceError
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    request_id = str(uuid.uuid4())
    if exc.status_code >= 500:
        logger.warning("%s on %s request_id=%s: %s", exc.error_code, request.url.path, request_id, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": {**exc.to_detail(), "request_id": request_id}},
    )


# Request validation errors are rendered as ValidationFailed with field-level detail
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in e.get("loc", ()) if part != "body"),
            "message": e.get("msg"),
            "type": e.get("type"),
        }
        for e in exc.errors()
    ]
    return await service_error_handler(request, ValidationFailed(errors=errors))


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": {"error_code": "INTERNAL_ERROR", "message": "Internal server error"}}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
