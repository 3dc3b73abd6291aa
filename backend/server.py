from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from config import billing_settings
from routes import auth, billing, connect, profile, webhooks
from services.billing_errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Invoice Billing API")
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix and which price IDs are in use (no secret keys)
    logger.info("STRIPE_MODE = %s (from Stripe key prefix)", billing_settings.stripe_mode)
    logger.info(
        "Stripe price IDs monthly=%s yearly=%s",
        billing_settings.monthly_price_id or "(missing)",
        billing_settings.yearly_price_id or "(missing)",
    )
    if not billing_settings.connect_webhook_secret:
        logger.warning("STRIPE_CONNECT_WEBHOOK_SECRET is not set. Connect webhooks will be rejected.")
    logger.info(
        "Platform fee configured: %.2f%% strict_tiers=%s",
        billing_settings.platform_fee_percentage * 100, billing_settings.strict_tiers,
    )

    yield

    # Shutdown
    logger.info("Shutting down Invoice Billing API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Invoice Billing API",
    description="Plans, subscriptions and payout accounts for the invoicing app",
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
app.include_router(profile.router)
app.include_router(billing.router)
app.include_router(connect.router)
app.include_router(webhooks.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Invoice Billing API",
        "version": "1.0.0",
        "status": "operational"
    }


# Expected billing failures: status code comes from the error class
@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("Billing error on %s: %s", request.url.path, exc.message)
    else:
        logger.info("Billing request rejected on %s: %s %s", request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": type(exc).__name__}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
