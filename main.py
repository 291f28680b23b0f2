import argparse
import time
import schedule
import logging
import sys
from database.config import SessionLocal
from services.month_close import MonthCloseService

# Configure Logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("month_close_worker.log")
    ]
)

def run_month_close(month_key=None):
    logging.info(f"Starting Month Close for {month_key or 'previous month'}...")
    db = SessionLocal()
    try:
        summary = MonthCloseService(db).close_month(month_key)
        logging.info(
            f"Month Close Complete. {summary['month_key']}: {summary['rows_locked']} rows locked, "
            f"{summary['payouts_created']} payouts staged, {len(summary['failures'])} failures."
        )
        return summary
    except Exception as e:
        logging.error(f"Error in month close: {e}")
    finally:
        db.close()

def start_scheduler():
    logging.info("Starting Month Close Scheduler (Daily)...")
    # Closing is idempotent, so a daily run catches up on missed months
    run_month_close()

    schedule.every().day.at("00:05").do(run_month_close)

    while True:
        schedule.run_pending()
        time.sleep(60)

def main():
    parser = argparse.ArgumentParser(description="Affiliate Ledger Month Close Worker")
    parser.add_argument("--mode", choices=["once", "schedule"], default="schedule", help="Run once or schedule")
    parser.add_argument("--month", help="Month to close (YYYY-MM); defaults to the previous month")
    args = parser.parse_args()

    if args.mode == "schedule":
        start_scheduler()
    else:
        run_month_close(args.month)

if __name__ == "__main__":
    main()
