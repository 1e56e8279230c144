"""
Scheduler and periodic job wrapper tests
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import Config
from jobs.dispute_escalation_monitor import run_escalation_check
from jobs.milestone_auto_approval import run_auto_approval
from jobs.scheduler import EscrowScheduler


def fake_container():
    container = MagicMock()
    container.milestones.process_auto_approvals = AsyncMock(
        return_value={"checked": 3, "warned": 1, "approved": 2, "failed": 0}
    )
    container.disputes.process_escalations = AsyncMock(
        return_value={"checked": 2, "escalated": 1, "failed": 0}
    )
    return container


class TestJobWrappers:
    @pytest.mark.asyncio
    async def test_auto_approval_reports_sweep_stats(self):
        container = fake_container()

        results = await run_auto_approval(container)

        assert results["status"] == "success"
        assert results["approved"] == 2
        assert results["warned"] == 1
        assert "execution_time_ms" in results
        container.milestones.process_auto_approvals.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_escalation_check_reports_sweep_stats(self):
        container = fake_container()

        results = await run_escalation_check(container)

        assert results["status"] == "success"
        assert results["escalated"] == 1
        container.disputes.process_escalations.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_crash_is_reported_not_raised(self):
        container = fake_container()
        container.milestones.process_auto_approvals.side_effect = RuntimeError("database locked")

        results = await run_auto_approval(container)

        assert results["status"] == "error"
        assert results["error"] == "database locked"

    @pytest.mark.asyncio
    async def test_auto_approval_job_against_real_services(self, container, submitted_milestone, clock):
        project, _ = await submitted_milestone()
        clock.advance(days=8)

        results = await run_auto_approval(container)

        assert results["status"] == "success"
        assert results["approved"] == 1
        milestone = (await container.projects.get_project(project["id"])).unwrap()["milestones"][0]
        assert milestone["status"] == "approved"
        assert milestone["auto_approved"] is True


class TestEscrowScheduler:
    def test_setup_registers_both_sweeps(self):
        scheduler = EscrowScheduler(fake_container())
        scheduler.setup_jobs()

        approval = scheduler.scheduler.get_job(EscrowScheduler.AUTO_APPROVAL_JOB_ID)
        escalation = scheduler.scheduler.get_job(EscrowScheduler.ESCALATION_JOB_ID)

        assert approval.id == "milestone_auto_approval"
        assert approval.trigger.interval == timedelta(minutes=Config.AUTO_APPROVAL_INTERVAL_MINUTES)
        assert escalation.id == "dispute_escalation_monitor"
        assert escalation.trigger.interval == timedelta(minutes=Config.ESCALATION_CHECK_INTERVAL_MINUTES)
        assert approval.args == (scheduler.container,)

    def test_stop_before_start_is_safe(self):
        scheduler = EscrowScheduler(fake_container())
        scheduler.stop()
        assert scheduler.scheduler.running is False
