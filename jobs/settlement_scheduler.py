"""Background job scheduler for settlement progression and recovery"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """Runs payout initiation and stale-claim recovery on an interval"""

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register settlement jobs"""
        for job_id in ("initiate_payouts", "recover_stale_claims"):
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job")

        # Move verified off-ramp deposits into payout
        self.scheduler.add_job(
            self.initiate_payouts,
            trigger=IntervalTrigger(
                seconds=Config.PAYOUT_JOB_INTERVAL_SECONDS,
                start_date=datetime.now().replace(microsecond=0),
            ),
            id="initiate_payouts",
            name="Initiate Off-ramp Payouts",
            max_instances=1,
            coalesce=True,
        )

        # Fail transfers whose claim holder died mid-flight
        self.scheduler.add_job(
            self.recover_stale_claims,
            trigger=IntervalTrigger(seconds=Config.CLAIM_RECOVERY_INTERVAL_SECONDS),
            id="recover_stale_claims",
            name="Recover Stale Transfer Claims",
            max_instances=1,
            coalesce=True,
        )
        logger.info("✅ SETTLEMENT_SCHEDULER: Jobs registered")

    async def initiate_payouts(self):
        try:
            return await self.orchestrator.initiate_pending_payouts()
        except Exception as e:
            logger.error(f"❌ PAYOUT_JOB: Run failed: {e}", exc_info=True)

    async def recover_stale_claims(self):
        try:
            return await self.orchestrator.recover_stale_claims()
        except Exception as e:
            logger.error(f"❌ CLAIM_RECOVERY: Run failed: {e}", exc_info=True)

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 SETTLEMENT_SCHEDULER: Started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 SETTLEMENT_SCHEDULER: Stopped")
