"""
Settlement Background Job Scheduler

Two jobs keep the settlement core moving without user interaction:
1. Trade Expiry - resolves trades past their status deadline (expire / cancel / dispute)
2. Outbox Relay - delivers notifications written by finalization
"""

import logging
from datetime import datetime
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from jobs.outbox_relay import run_outbox_relay
from jobs.trade_expiry_worker import run_trade_expiry

from config import Config

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """
    Scheduler for the settlement background jobs

    Scheduling Strategy:
    - Trade Expiry: every EXPIRY_POLL_SECONDS (default 10s)
    - Outbox Relay: every OUTBOX_RELAY_INTERVAL_SECONDS (default 30s), staggered
    """

    def __init__(self, expiry_job=None, outbox_job=None):
        self.expiry_job = expiry_job or run_trade_expiry
        self.outbox_job = outbox_job or run_outbox_relay

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the settlement jobs, replacing any earlier registration"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        # ===== JOB 1: TRADE EXPIRY =====
        self.scheduler.add_job(
            self.expiry_job,
            trigger=IntervalTrigger(seconds=Config.EXPIRY_POLL_SECONDS),
            id="trade_expiry_worker",
            name="⏰ Trade Expiry - Deadline Reconciliation",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Trade Expiry scheduled every {Config.EXPIRY_POLL_SECONDS} seconds")

        # ===== JOB 2: OUTBOX RELAY =====
        # Offset start so both jobs do not hit the database in the same second
        self.scheduler.add_job(
            self.outbox_job,
            trigger=IntervalTrigger(
                seconds=Config.OUTBOX_RELAY_INTERVAL_SECONDS,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            id="notification_outbox_relay",
            name="📬 Outbox Relay - Notification Delivery",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Outbox Relay scheduled every {Config.OUTBOX_RELAY_INTERVAL_SECONDS} seconds")

    def get_job_ids(self):
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        """Start the settlement scheduler"""
        problems = Config.validate_settlement_configuration()
        if problems:
            raise RuntimeError(f"Invalid settlement configuration: {problems}")

        Config.log_settlement_config()
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 SETTLEMENT_SCHEDULER_STARTED: {self.get_job_ids()}")

    def stop(self):
        """Stop the settlement scheduler"""
        self.scheduler.shutdown()
        logger.info("📴 Settlement job scheduler stopped")


_global_scheduler = None


def get_settlement_scheduler_instance():
    """Get the global settlement scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = SettlementScheduler()
    return _global_scheduler
