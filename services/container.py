"""Explicit wiring of the escrow services and their collaborators"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from config import Config
from database import build_engine, build_session_factory, create_tables
from services.dispute_resolution import DisputeResolutionService
from services.ledger import LedgerService
from services.milestone_service import MilestoneService
from services.project_service import ProjectService
from utils.event_dispatch import EventDispatcher

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Holds one instance of each workflow service sharing a session factory,
    ledger and event dispatcher. Build one per process (or per test).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        payment_gateway=None,
        content_moderator=None,
        dispute_advisor=None,
        notification_sink=None,
        audit_sink=None,
        clock: Optional[Callable] = None,
    ):
        self.session_factory = session_factory
        self.ledger = LedgerService()
        self.dispatcher = EventDispatcher(notification_sink=notification_sink, audit_sink=audit_sink)

        shared = dict(
            session_factory=session_factory,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            payment_gateway=payment_gateway,
            content_moderator=content_moderator,
            clock=clock,
        )
        self.projects = ProjectService(**shared)
        self.milestones = MilestoneService(**shared)
        self.disputes = DisputeResolutionService(dispute_advisor=dispute_advisor, **shared)

    @classmethod
    def from_config(cls, database_url: Optional[str] = None, **collaborators) -> "ServiceContainer":
        """Build the engine from Config (or an explicit URL) and make sure tables exist"""
        Config.log_environment_config()
        engine = build_engine(database_url)
        create_tables(engine)
        logger.info(f"✅ Service container ready on {engine.url.render_as_string(hide_password=True)}")
        return cls(build_session_factory(engine), **collaborators)
