"""
Settlement scheduler: job registration and error isolation.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import Config
from jobs.settlement_scheduler import SettlementScheduler


class TestSchedulerSetup:

    def test_jobs_registered_with_configured_intervals(self):
        scheduler = SettlementScheduler(MagicMock())
        with patch.object(Config, "PAYOUT_JOB_INTERVAL_SECONDS", 45), \
                patch.object(Config, "CLAIM_RECOVERY_INTERVAL_SECONDS", 90):
            scheduler.setup_jobs()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"initiate_payouts", "recover_stale_claims"}
        assert jobs["initiate_payouts"].trigger.interval.total_seconds() == 45
        assert jobs["recover_stale_claims"].trigger.interval.total_seconds() == 90

    def test_setup_is_idempotent(self):
        scheduler = SettlementScheduler(MagicMock())
        scheduler.setup_jobs()
        scheduler.setup_jobs()
        assert len(scheduler.scheduler.get_jobs()) == 2


class TestSchedulerJobs:

    @pytest.mark.asyncio
    async def test_payout_job_delegates(self):
        orchestrator = MagicMock()
        orchestrator.initiate_pending_payouts = AsyncMock(return_value={"initiated": 2, "failed": 0, "skipped": 0})

        result = await SettlementScheduler(orchestrator).initiate_payouts()

        assert result["initiated"] == 2
        orchestrator.initiate_pending_payouts.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_job_errors_are_contained(self):
        orchestrator = MagicMock()
        orchestrator.recover_stale_claims = AsyncMock(side_effect=RuntimeError("database down"))

        assert await SettlementScheduler(orchestrator).recover_stale_claims() is None

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self):
        scheduler = SettlementScheduler(MagicMock())
        scheduler.start()
        assert scheduler.scheduler.running
        scheduler.shutdown()
        assert not scheduler.scheduler.running

    @pytest.mark.asyncio
    async def test_recovery_job_against_orchestrator(self, orchestrator):
        assert await SettlementScheduler(orchestrator).recover_stale_claims() == []
