# FastAPI Server for the Affiliate Commission Ledger

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
import logging

from config.app_config import MONTH_CLOSE_ENABLED, MONTH_CLOSE_DAY, MONTH_CLOSE_HOUR
from database.config import init_db, SessionLocal
from routers import affiliate_router, admin_affiliates_router
from services import MonthCloseService

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Affiliate Ledger API",
    description="Affiliate commission ledger and payout engine",
    version="1.0.0"
)


def scheduled_month_close():
    logger.info("Running scheduled month close...")
    db = SessionLocal()
    try:
        summary = MonthCloseService(db).close_month()
        logger.info(f"Scheduled month close finished: {summary}")
    except Exception as e:
        logger.error(f"Scheduled month close failed: {e}")
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    # Tables are created with create_all; schema changes go through Alembic
    init_db()

    if not MONTH_CLOSE_ENABLED:
        return

    from apscheduler.schedulers.background import BackgroundScheduler

    scheduler = BackgroundScheduler()
    scheduler.add_job(scheduled_month_close, 'cron', day=MONTH_CLOSE_DAY, hour=MONTH_CLOSE_HOUR, minute=5)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(f"Scheduler started: month close runs on day {MONTH_CLOSE_DAY} at {MONTH_CLOSE_HOUR:02d}:05 UTC")


@app.on_event("shutdown")
def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)


# CORS Setup - Allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Required when using "*"
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(affiliate_router)
app.include_router(admin_affiliates_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
