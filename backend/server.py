from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import checkout, webhooks, subscriptions, admin_retention
from services.stripe_client import StripeProviderClient

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'cyber_safety_academy')

try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Job runners are shared with the admin run-now endpoint
from job_runner import run_retention_sweep

RETENTION_SWEEP_HOUR = int(os.environ.get("RETENTION_SWEEP_HOUR", "2"))
RETENTION_SWEEP_MINUTE = int(os.environ.get("RETENTION_SWEEP_MINUTE", "38"))


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting billing and retention API")

    # Provider client is built once and shared by every request (no secret values logged)
    provider = StripeProviderClient.from_env()
    app.state.provider = provider
    if not provider.api_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout and sync will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", provider.mode)
    if not provider.webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) is not set. Webhooks will be rejected.")

    # Skip MongoDB and scheduler under pytest
    testing = bool(os.environ.get("PYTEST_RUNNING"))
    if not testing:
        await database.connect()

        # Retention sweep daily (default 02:38 UTC)
        scheduler.add_job(
            run_retention_sweep,
            CronTrigger(hour=RETENTION_SWEEP_HOUR, minute=RETENTION_SWEEP_MINUTE),
            id="retention_sweep",
            name="Child Profile Retention Sweep",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down billing and retention API")
    if not testing:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
        await database.close()

# Create FastAPI app
app = FastAPI(
    title="Cyber Safety Academy Billing API",
    description="Billing lifecycle sync and child profile retention",
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
app.include_router(checkout.router)
app.include_router(webhooks.router)
app.include_router(subscriptions.router)
app.include_router(admin_retention.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

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
