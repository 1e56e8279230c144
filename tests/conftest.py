"""
Shared fixtures for the escrow test suite

Key Components:
1. Per-test SQLite database file with the full schema
2. AsyncMock collaborators: payment gateway, moderator, advisor, sinks
3. A controllable clock so auto-approval and escalation windows can be crossed
4. User factories and a helper that drives a project to ACTIVE
"""

import asyncio
import itertools
import logging
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from database import build_engine, build_session_factory, create_tables, managed_session
from models import User, UserRole
from services.container import ServiceContainer
from services.interfaces import GatewayResult, ModerationResult

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_MILESTONES = (60000, 40000)


class FakeClock:
    """Callable clock; tests move time forward explicitly"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}", echo=False)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


def _gateway_call(prefix: str):
    counter = itertools.count(1)

    async def call(**kwargs):
        # Yield to the loop like a real network call would
        await asyncio.sleep(0)
        return GatewayResult(id=f"{prefix}_{next(counter)}", status="succeeded")

    return call


@pytest.fixture
def mock_gateway():
    gateway = AsyncMock()
    gateway.transfer_to_freelancer = AsyncMock(side_effect=_gateway_call("tr"))
    gateway.create_deposit_intent = AsyncMock(side_effect=_gateway_call("pi"))
    gateway.refund_to_client = AsyncMock(side_effect=_gateway_call("re"))
    return gateway


@pytest.fixture
def mock_moderator():
    moderator = AsyncMock()
    moderator.moderate = AsyncMock(return_value=ModerationResult(is_approved=True))
    return moderator


@pytest.fixture
def mock_advisor():
    advisor = AsyncMock()
    advisor.analyze_dispute = AsyncMock(
        return_value={
            "confidence_score": {"freelancer": 55, "client": 45},
            "recommended_resolution": "partial_payment",
            "key_issues": ["scope"],
            "reasoning": "Both parties have partial claims",
        }
    )
    return advisor


@pytest.fixture
def notification_sink():
    sink = AsyncMock()
    sink.notify = AsyncMock(return_value=None)
    return sink


@pytest.fixture
def audit_sink():
    sink = AsyncMock()
    sink.log_event = AsyncMock(return_value=None)
    return sink


@pytest.fixture
def container(session_factory, mock_gateway, mock_moderator, mock_advisor, notification_sink, audit_sink, clock):
    return ServiceContainer(
        session_factory,
        payment_gateway=mock_gateway,
        content_moderator=mock_moderator,
        dispute_advisor=mock_advisor,
        notification_sink=notification_sink,
        audit_sink=audit_sink,
        clock=clock,
    )


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    def factory(role: UserRole, payout_account_id=None, customer_ref=None) -> str:
        n = next(counter)
        with managed_session(session_factory) as session:
            user = User(
                email=f"{role.value}_{n}@example.com",
                display_name=f"{role.value.title()} {n}",
                role=role.value,
                payout_account_id=payout_account_id,
                customer_ref=customer_ref,
            )
            session.add(user)
            session.flush()
            return user.id

    return factory


@pytest.fixture
def users(make_user):
    return {
        "client": make_user(UserRole.CLIENT, customer_ref="cus_client"),
        "freelancer": make_user(UserRole.FREELANCER, payout_account_id="acct_freelancer", customer_ref="cus_freelancer"),
        "admin": make_user(UserRole.ADMIN),
        "arbitrator": make_user(UserRole.ARBITRATOR),
        "mediator": make_user(UserRole.MEDIATOR),
    }


def milestone_specs(amounts=DEFAULT_MILESTONES):
    return [
        {"title": f"Milestone {i + 1}", "description": f"Deliver part {i + 1}", "amount": amount}
        for i, amount in enumerate(amounts)
    ]


@pytest.fixture
def create_project(container, users, clock):
    async def factory(amounts=DEFAULT_MILESTONES, currency="USD", budget=None, **kwargs):
        result = await container.projects.create_project(
            client_id=users["client"],
            title="Marketing site",
            description="Five page marketing site with a blog",
            budget=sum(amounts) if budget is None else budget,
            currency=currency,
            deadline=clock() + timedelta(days=60),
            milestones=milestone_specs(amounts),
            **kwargs,
        )
        return result.unwrap()

    return factory


@pytest.fixture
def active_project(container, users, create_project):
    """Create, invite, accept and fund a project; returns its snapshot"""

    async def factory(amounts=DEFAULT_MILESTONES, currency="USD"):
        project = await create_project(amounts=amounts, currency=currency)
        (await container.projects.invite_freelancer(project["id"], users["client"], users["freelancer"])).unwrap()
        (await container.projects.accept_invitation(project["id"], users["freelancer"])).unwrap()
        return (await container.projects.deposit_funds(project["id"], users["client"], "pm_card")).unwrap()

    return factory


@pytest.fixture
def submitted_milestone(container, users, active_project):
    """Funded project with its first milestone started and submitted"""

    async def factory(amounts=DEFAULT_MILESTONES, index=0):
        project = await active_project(amounts=amounts)
        milestone_id = project["milestones"][index]["id"]
        (await container.milestones.start_milestone(milestone_id, users["freelancer"])).unwrap()
        (await container.milestones.submit_milestone(
            milestone_id, users["freelancer"], deliverables=[{"filename": "site.zip"}], notes="Done"
        )).unwrap()
        return project, milestone_id

    return factory
