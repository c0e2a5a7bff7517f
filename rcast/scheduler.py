"""Periodic background feed sync."""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .podcast.feed_sync import FeedSyncService

logger = logging.getLogger(__name__)

JOB_ID = "sync_all"


class BackgroundSync:
    """Runs FeedSyncService.sync_all on an interval in a background thread.

    No retry or backoff: a failed subscription is simply tried again on the
    next run.
    """

    def __init__(
        self,
        sync_service: FeedSyncService,
        interval_minutes: int = 30,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self.sync_service = sync_service
        self.interval_minutes = interval_minutes
        self._scheduler = scheduler or BackgroundScheduler()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self, run_immediately: bool = False) -> None:
        self._scheduler.add_job(
            self.run_once,
            "interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )
        if run_immediately:
            self._scheduler.add_job(self.run_once, "date", misfire_grace_time=600)
        self._scheduler.start()
        logger.info(f"Background sync started. Syncing every {self.interval_minutes} minutes.")

    def reschedule(self, interval_minutes: int) -> None:
        """Change the sync interval of a started scheduler."""
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self.interval_minutes = interval_minutes
        self._scheduler.reschedule_job(JOB_ID, trigger="interval", minutes=interval_minutes)
        logger.info(f"Background sync interval changed to {interval_minutes} minutes")

    def run_once(self) -> None:
        try:
            summary = self.sync_service.sync_all()
        except Exception:
            logger.exception("Background sync failed")
            return
        logger.info(
            f"Background sync: {summary.synced} synced, {summary.failed} failed, "
            f"{summary.added} new episodes"
        )

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Background sync stopped")
