"""
Certificate renewal scheduler.

Background task scheduler for automatic certificate renewal using
APScheduler.
"""

import logging
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from core.cert_manager import CertificateLifecycleManager, get_cert_manager

logger = logging.getLogger(__name__)


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs the renewal sweep every CERT_RENEWAL_CHECK_HOURS, plus once
    shortly after startup.
    """

    def __init__(self, cert_manager: Optional[CertificateLifecycleManager] = None):
        self.scheduler = AsyncIOScheduler()
        self.cert_manager = cert_manager or get_cert_manager()
        self._started = False

    async def start(self) -> None:
        """Start the renewal scheduler."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler.add_job(
            self._check_renewals,
            IntervalTrigger(hours=settings.cert_renewal_check_hours),
            id="cert_renewal_check",
            name="Certificate Renewal Check",
            replace_existing=True,
        )

        # Initial sweep one minute after startup
        self.scheduler.add_job(
            self._check_renewals,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(minutes=1),
            id="cert_initial_check",
            name="Initial Certificate Check",
        )

        self.scheduler.start()
        self._started = True
        logger.info(f"Certificate renewal scheduler started (every {settings.cert_renewal_check_hours}h)")

    async def stop(self) -> None:
        """Stop the renewal scheduler."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Certificate renewal scheduler stopped")

    async def _check_renewals(self) -> None:
        """Run one renewal sweep; errors never escape into the scheduler."""
        logger.info("Starting certificate renewal check")
        try:
            await self.cert_manager.check_renewals()
        except Exception as e:
            logger.exception(f"Error in renewal check: {e}")

    async def trigger_renewal_check(self, email: Optional[str] = None) -> dict:
        """
        Manually trigger a renewal check.

        Returns summary of actions taken.
        """
        logger.info("Manual renewal check triggered")
        summary = await self.cert_manager.check_renewals(email)
        return {"status": "completed", **asdict(summary)}

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs[job.id] = {"name": job.name, "next_run": next_run.isoformat() if next_run else None}
        return jobs


# Singleton instance
_cert_scheduler: CertScheduler | None = None


def get_cert_scheduler() -> CertScheduler:
    """Get the global certificate scheduler instance."""
    global _cert_scheduler
    if _cert_scheduler is None:
        _cert_scheduler = CertScheduler()
    return _cert_scheduler
