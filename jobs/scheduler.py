"""Background job scheduler for milestone auto-approval and dispute escalation"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.dispute_escalation_monitor import run_escalation_check
from jobs.milestone_auto_approval import run_auto_approval

logger = logging.getLogger(__name__)


class EscrowScheduler:
    """
    Runs the two periodic sweeps against a ServiceContainer.

    - Auto-approval: every AUTO_APPROVAL_INTERVAL_MINUTES
    - Escalation check: every ESCALATION_CHECK_INTERVAL_MINUTES
    """

    AUTO_APPROVAL_JOB_ID = "milestone_auto_approval"
    ESCALATION_JOB_ID = "dispute_escalation_monitor"

    def __init__(self, container):
        self.container = container
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 120
        }
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        approval_minutes = Config.AUTO_APPROVAL_INTERVAL_MINUTES
        self.scheduler.add_job(
            run_auto_approval,
            trigger=IntervalTrigger(minutes=approval_minutes, start_date=datetime.now().replace(second=5, microsecond=0)),
            args=[self.container],
            id=self.AUTO_APPROVAL_JOB_ID,
            name="🤖 Milestone Auto-Approval",
            replace_existing=True
        )
        logger.info(f"✅ Milestone auto-approval scheduled every {approval_minutes} minutes")

        escalation_minutes = Config.ESCALATION_CHECK_INTERVAL_MINUTES
        self.scheduler.add_job(
            run_escalation_check,
            trigger=IntervalTrigger(minutes=escalation_minutes, start_date=datetime.now().replace(second=35, microsecond=0)),
            args=[self.container],
            id=self.ESCALATION_JOB_ID,
            name="⚖️ Dispute Escalation Monitor",
            replace_existing=True
        )
        logger.info(f"✅ Dispute escalation monitor scheduled every {escalation_minutes} minutes")

    def start(self):
        """Must be called from inside a running event loop"""
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Escrow scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Escrow scheduler stopped")
