import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import models  # noqa: F401  (registers tables on Base.metadata)
from app.database import Base, SessionLocal, engine
from app.errors import register_error_handlers
from app.logging_config import configure_logging
from app.notifications import shutdown_outbox
from app.routers import admin, payments, plans, subscription, webhooks
from app.schema_patch import ensure_payment_failure_columns, ensure_subscription_reconciliation_columns
from app.services.subscription_sweeps import start_subscription_sweep_scheduler, stop_subscription_sweep_scheduler
from app.subscriptions import backfill_missing_subscriptions

configure_logging()
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ensure_subscription_reconciliation_columns()
    ensure_payment_failure_columns()

    db = SessionLocal()
    try:
        created = backfill_missing_subscriptions(db)
        if created:
            logger.info("Backfilled %s missing subscription rows", created)
    finally:
        db.close()

    start_subscription_sweep_scheduler()
    try:
        yield
    finally:
        stop_subscription_sweep_scheduler()
        shutdown_outbox()


app = FastAPI(
    title="ExamPrep",
    description="Exam preparation platform: subscriptions and payments",
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include routers
app.include_router(subscription.router)
app.include_router(plans.router)
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(webhooks.router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}
