from settlement.routes import settlement_router, momo_token_manager
from settlement.db_init import ensure_indexes
from settlement.config import POLL_SETTINGS
from utils.environment import ENVIRONMENT, get_environment_info
from database import db, client, check_db_connection
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
import os
import logging

# Create the main app
app = FastAPI(title="Ticket Settlement & Ledger Engine")

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Ticket Settlement & Ledger Engine API", "version": "1.0.0"}


@api_router.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **get_environment_info(),
        "momo_token": momo_token_manager.status().state
    }


scheduler = AsyncIOScheduler()

api_router.include_router(settlement_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Check database connection first - fail fast if database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Unique indexes back wallet, ledger, play and payment idempotency
    for result in await ensure_indexes(db):
        logger.info(result)

    await momo_token_manager.start()

    # Pending MoMo attempts nobody polled to the end (closed app, timeouts)
    async def reconcile_pending_payments():
        """Settle stale pending payment attempts"""
        try:
            from settlement.payment_coordinator import PaymentCoordinator
            from settlement.momo_service import MoMoCollectionService
            coordinator = PaymentCoordinator(db, MoMoCollectionService(db, momo_token_manager))
            await coordinator.reconcile_pending()
        except Exception as e:
            logger.error(f"Payment reconcile error: {e}")

    scheduler.add_job(
        reconcile_pending_payments,
        'interval',
        minutes=POLL_SETTINGS["reconcile_every_minutes"],
        id='payment_reconcile',
        replace_existing=True
    )

    scheduler.start()
    logger.info(
        f"Settlement engine started ({ENVIRONMENT}) - payment reconcile every "
        f"{POLL_SETTINGS['reconcile_every_minutes']} min")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Payment reconcile scheduler shut down")

    await momo_token_manager.stop()

    # Close MongoDB client
    client.close()
