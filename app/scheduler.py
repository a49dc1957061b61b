"""Background scheduler driving the sync queue"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.services.sync_engine import SyncEngine, sync_engine

logger = logging.getLogger(__name__)

DRAIN_JOB_ID = "sync_queue_drain"
PURGE_JOB_ID = "webhook_event_purge"


class SyncScheduler:
    """Runs the queue drain and housekeeping jobs"""

    def __init__(self, engine: SyncEngine, interval_seconds: int):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        # One drain at a time per process; overlapping ticks are skipped.
        self.scheduler.add_job(
            func=self._drain_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=DRAIN_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            func=self._purge_job,
            trigger=IntervalTrigger(hours=1),
            id=PURGE_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Sync scheduler started (draining every {self.interval_seconds}s)")

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Sync scheduler stopped")

    def _drain_job(self):
        try:
            self.engine.worker.drain()
        except Exception as e:
            logger.error(f"Sync queue drain failed: {e}")

    def _purge_job(self):
        try:
            self.engine.purge_webhook_events()
        except Exception as e:
            logger.error(f"Webhook event purge failed: {e}")


# Global scheduler instance
scheduler = SyncScheduler(sync_engine, settings.sync_worker_interval_seconds)
