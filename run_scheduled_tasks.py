"""
Background Task Runner for the league
Runs scheduled tasks periodically while the app is running.

This script runs in the background alongside the main Flask app.
"""

import time
import threading
from datetime import datetime
from sqlalchemy.exc import SQLAlchemyError
from scheduled_tasks import process_expired_bids, expire_transfer_offers, complete_finished_injury_reserves


def run_hourly_tasks(interval=3600):
    """Tasks that run every hour"""
    while True:
        print(f"[{datetime.now()}] Running hourly tasks...")
        for task in (process_expired_bids, expire_transfer_offers, complete_finished_injury_reserves):
            try:
                task()
            except SQLAlchemyError as e:
                print(f"[ERROR] Scheduled task {task.__name__} failed: {e}")

        # Wait 1 hour
        time.sleep(interval)


if __name__ == "__main__":
    print("[BACKGROUND TASKS] Starting league housekeeping...")
    print("[BACKGROUND TASKS] Expired bids, transfer offers, injury reserves: Every hour")

    # Run in background thread
    task_thread = threading.Thread(target=run_hourly_tasks, daemon=True)
    task_thread.start()

    # Keep main thread alive
    try:
        while True:
            time.sleep(60)
    except KeyboardInterrupt:
        print("\n[BACKGROUND TASKS] Shutting down...")
