"""
Escrow Background Job Scheduler - 3 Core Jobs

1. Deposit Poll - check active deposit watches against the chain API
2. Escrow Sweeps - expire overdue FUNDED escrows, auto-accept overdue inspections
3. Housekeeping - purge processed notification queue entries

Each job wraps its own work in try/except so a failing run is logged and the
next run still happens; per-escrow and per-watch failures are isolated one
level lower, inside the services.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.deposit_monitor import DepositMonitor, get_deposit_monitor
from services.escrow_expiry_service import EscrowExpiryService
from services.notification_queue import NotificationQueueService
from utils.atomic_transactions import atomic_transaction

logger = logging.getLogger(__name__)


async def run_deposit_poll(monitor: Optional[DepositMonitor] = None) -> Dict[str, Any]:
    """Job 1: one deposit monitor cycle"""
    try:
        return await (monitor or get_deposit_monitor()).poll_once()
    except Exception as e:
        logger.error(f"❌ DEPOSIT_POLL_JOB_ERROR: {e}", exc_info=True)
        return {"errors": [str(e)]}


async def run_escrow_sweeps(expiry_service: Optional[EscrowExpiryService] = None) -> Dict[str, Any]:
    """Job 2: expiry and auto-accept sweeps"""
    try:
        summary = await (expiry_service or EscrowExpiryService()).run_sweeps()
        expired = summary.get("expired", {}).get("processed", 0)
        auto_accepted = summary.get("auto_accepted", {}).get("processed", 0)
        if expired or auto_accepted:
            logger.info(f"✅ ESCROW_SWEEPS_COMPLETE: {expired} expired, {auto_accepted} auto-accepted")
        return summary
    except Exception as e:
        logger.error(f"❌ ESCROW_SWEEP_JOB_ERROR: {e}", exc_info=True)
        return {"errors": [str(e)]}


def _purge_notifications() -> int:
    with atomic_transaction() as session:
        return NotificationQueueService.purge_processed(session, Config.NOTIFICATION_RETENTION_DAYS)


async def run_housekeeping() -> Dict[str, Any]:
    """Job 3: notification queue retention"""
    try:
        purged = await asyncio.to_thread(_purge_notifications)
        return {"notifications_purged": purged}
    except Exception as e:
        logger.error(f"❌ HOUSEKEEPING_JOB_ERROR: {e}", exc_info=True)
        return {"errors": [str(e)]}


class EscrowScheduler:
    """
    Recurring driver for the escrow engine

    Scheduling Strategy:
    - Deposit Poll: every DEPOSIT_POLL_INTERVAL_SECONDS (30s)
    - Escrow Sweeps: every ESCROW_SWEEP_INTERVAL_MINUTES (5m), first run
      SCHEDULER_STARTUP_DELAY_SECONDS after start
    - Housekeeping: every HOUSEKEEPING_INTERVAL_MINUTES (60m)
    """

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the three core jobs"""
        now = datetime.now(timezone.utc)

        self.scheduler.add_job(
            run_deposit_poll,
            trigger=IntervalTrigger(seconds=Config.DEPOSIT_POLL_INTERVAL_SECONDS),
            id="deposit_poll",
            name="🔎 Deposit Poll - On-chain Funding Confirmation",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=Config.DEPOSIT_POLL_INTERVAL_SECONDS,
            replace_existing=True
        )
        logger.info(f"✅ Deposit Poll scheduled every {Config.DEPOSIT_POLL_INTERVAL_SECONDS} seconds")

        self.scheduler.add_job(
            run_escrow_sweeps,
            trigger=IntervalTrigger(minutes=Config.ESCROW_SWEEP_INTERVAL_MINUTES),
            next_run_time=now + timedelta(seconds=Config.SCHEDULER_STARTUP_DELAY_SECONDS),
            id="escrow_sweeps",
            name="⏰ Escrow Sweeps - Expiry & Auto-Accept",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(
            f"✅ Escrow Sweeps scheduled every {Config.ESCROW_SWEEP_INTERVAL_MINUTES} minutes "
            f"(first run in {Config.SCHEDULER_STARTUP_DELAY_SECONDS}s)"
        )

        self.scheduler.add_job(
            run_housekeeping,
            trigger=IntervalTrigger(minutes=Config.HOUSEKEEPING_INTERVAL_MINUTES),
            id="housekeeping",
            name="🧹 Housekeeping - Notification Queue Retention",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
            replace_existing=True
        )
        logger.info(f"✅ Housekeeping scheduled every {Config.HOUSEKEEPING_INTERVAL_MINUTES} minutes")

    def start(self):
        """Start the scheduler (must be called with a running event loop)"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 Escrow scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Escrow scheduler stopped")


_global_scheduler = None


def get_escrow_scheduler_instance() -> EscrowScheduler:
    """Get the global escrow scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = EscrowScheduler()
    return _global_scheduler


__all__ = [
    "EscrowScheduler",
    "get_escrow_scheduler_instance",
    "run_deposit_poll",
    "run_escrow_sweeps",
    "run_housekeeping",
]
