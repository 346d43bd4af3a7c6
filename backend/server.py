from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, checkout, billing, onboarding, kyc, profile, equity

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


def _log_config_warnings():
    """Log which integrations are configured (never the secrets themselves)."""
    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout and billing will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")

    if not (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.error("STRIPE_WEBHOOK_SECRET is not set. Every Stripe webhook will be rejected.")
    if not (os.environ.get("PERSONA_WEBHOOK_SECRET") or "").strip():
        logger.error("PERSONA_WEBHOOK_SECRET is not set. Every Persona webhook will be rejected.")

    from services.plan_registry import plan_registry
    for tier, price_id in plan_registry.price_ids.items():
        logger.info("Stripe price ID tier=%s price_id=%s", tier.value, price_id)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Ampel Onboarding API")
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    await database.connect()
    _log_config_warnings()

    yield

    # Shutdown
    logger.info("Shutting down Ampel Onboarding API")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Ampel Onboarding API",
    description="Verification, subscription checkout and equity grants for Ampel onboarding",
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
    expose_headers=["X-Redirect"],
)

# Include routers
app.include_router(webhooks.router)
app.include_router(checkout.router)
app.include_router(billing.router)
app.include_router(onboarding.router)
app.include_router(kyc.router)
app.include_router(profile.router)
app.include_router(equity.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
                 "request_id": request_id},
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
