"""Shared plumbing for the escrow workflow services"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from models import (
    ActivityAction,
    Project,
    ProjectStatus,
    ProjectActivity,
    Milestone,
    MilestoneStatus,
    Dispute,
    DisputeStatus,
    ResolutionDecision,
    User,
    UserRole,
)
from services.interfaces import GatewayResult, ModerationResult
from services.ledger import LedgerService
from utils.datetime_helpers import get_naive_utc_now
from utils.error_handler import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
    ErrorCodes,
)
from utils.event_dispatch import EventDispatcher
from utils.optimistic_locking import versioned_session
from utils.state_machines import DisputeStateValidator, ProjectStateValidator

logger = logging.getLogger(__name__)


class EscrowServiceBase:
    """Collaborators are injected; nothing is looked up from module state"""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: LedgerService,
        dispatcher: EventDispatcher,
        payment_gateway=None,
        content_moderator=None,
        clock: Optional[Callable] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.payment_gateway = payment_gateway
        self.content_moderator = content_moderator
        self.clock = clock or get_naive_utc_now

    def _session(self):
        return versioned_session(self.session_factory)

    def _now(self):
        return self.clock()

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @staticmethod
    def _get_project(session: Session, project_id: str) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"Project {project_id} not found", code=ErrorCodes.PROJECT_NOT_FOUND)
        return project

    @staticmethod
    def _get_milestone(session: Session, milestone_id: str) -> Milestone:
        milestone = session.get(Milestone, milestone_id)
        if milestone is None or milestone.cancelled_at is not None:
            raise NotFoundError(f"Milestone {milestone_id} not found", code=ErrorCodes.MILESTONE_NOT_FOUND)
        return milestone

    @staticmethod
    def _get_dispute(session: Session, dispute_id: str) -> Dispute:
        dispute = session.get(Dispute, dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found", code=ErrorCodes.DISPUTE_NOT_FOUND)
        return dispute

    @staticmethod
    def _get_user(session: Session, user_id: str) -> User:
        user = session.get(User, user_id) if user_id else None
        if user is None:
            raise NotFoundError(f"User {user_id} not found", code=ErrorCodes.USER_NOT_FOUND)
        return user

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_role(user: User, roles: Iterable[UserRole], action: str):
        allowed = set(roles)
        if user.role_enum not in allowed:
            raise AuthorizationError(
                f"{action} requires role {', '.join(sorted(r.value for r in allowed))}",
                code=ErrorCodes.INSUFFICIENT_PERMISSIONS,
                details={"user_id": user.id, "role": user.role},
            )

    @staticmethod
    def _require_client(project: Project, actor_id: str, action: str):
        if project.client_id != actor_id:
            raise AuthorizationError(
                f"Only the project client can {action}",
                details={"project_id": project.id, "actor_id": actor_id},
            )

    @staticmethod
    def _require_freelancer(project: Project, actor_id: str, action: str):
        if not project.freelancer_id or project.freelancer_id != actor_id:
            raise AuthorizationError(
                f"Only the assigned freelancer can {action}",
                details={"project_id": project.id, "actor_id": actor_id},
            )

    @staticmethod
    def _require_party(project: Project, actor_id: str, action: str):
        if not project.is_party(actor_id):
            raise AuthorizationError(
                f"Only the project client or freelancer can {action}",
                details={"project_id": project.id, "actor_id": actor_id},
            )

    @staticmethod
    def _parse_status_filter(enum_cls, status):
        """Optional list filter; an unknown status is bad input, not an empty result"""
        if status is None:
            return None
        try:
            return enum_cls.parse(status)
        except ValueError:
            raise ValidationError(
                f"Unknown status filter {status!r}",
                code=ErrorCodes.INVALID_FORMAT,
                details={"allowed": enum_cls.values()},
            )

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def _log_activity(self, project: Project, action, actor_id: str, details: Optional[Dict[str, Any]] = None):
        project.activities.append(
            ProjectActivity(
                action=action.value,
                performed_by=actor_id,
                details=details or {},
                created_at=self._now(),
            )
        )

    # ------------------------------------------------------------------
    # External collaborators
    # ------------------------------------------------------------------

    async def _moderate(self, kind: str, content: Dict[str, Any]):
        """
        Gate content before it is persisted.

        An unavailable moderator blocks the operation (default deny).
        """
        if self.content_moderator is None:
            raise ExternalServiceError(
                "Content moderation is not configured",
                service="content_moderator",
                code=ErrorCodes.MODERATION_UNAVAILABLE,
            )
        try:
            raw = await self.content_moderator.moderate(kind, content)
        except Exception as e:
            logger.error(f"❌ Content moderator unavailable for {kind}: {e}")
            raise ExternalServiceError(
                "Content moderation is temporarily unavailable; please retry",
                service="content_moderator",
                code=ErrorCodes.MODERATION_UNAVAILABLE,
            ) from e

        result = ModerationResult.coerce(raw)
        if not result.is_approved:
            logger.warning(f"🚫 Content rejected by moderation ({kind}): {result.message}")
            raise ValidationError(
                result.message or "Content was rejected by moderation",
                code=ErrorCodes.CONTENT_REJECTED,
                details={"kind": kind},
            )

    async def _call_gateway(self, operation: str, call: Callable[[], Awaitable[Any]]) -> GatewayResult:
        """Run one gateway call; any failure surfaces as a retryable ExternalServiceError"""
        if self.payment_gateway is None:
            raise ExternalServiceError(
                "Payment gateway is not configured", service="payment_gateway", retryable=False
            )
        try:
            result = GatewayResult.coerce(await call())
        except Exception as e:
            logger.error(f"❌ Payment gateway {operation} failed: {type(e).__name__}: {e}")
            raise ExternalServiceError(
                f"Payment gateway {operation} failed: {e}",
                service="payment_gateway",
                code=ErrorCodes.PAYMENT_FAILED,
                details={"operation": operation},
            ) from e

        if not result.succeeded:
            logger.error(f"❌ Payment gateway {operation} returned status {result.status} ({result.id})")
            raise ExternalServiceError(
                f"Payment gateway {operation} did not succeed (status: {result.status})",
                service="payment_gateway",
                code=ErrorCodes.PAYMENT_FAILED,
                details={"operation": operation, "provider_transaction_id": result.id, "status": result.status},
            )
        return result

    # ------------------------------------------------------------------
    # Project roll-up
    # ------------------------------------------------------------------

    @staticmethod
    def _milestone_settled(session: Session, milestone: Milestone) -> bool:
        """APPROVED, or DISPUTED with the dispute resolved as a refund"""
        status = milestone.status_enum
        if status == MilestoneStatus.APPROVED:
            return True
        if status != MilestoneStatus.DISPUTED:
            return False
        latest = session.scalars(
            select(Dispute)
            .where(Dispute.milestone_id == milestone.id)
            .order_by(Dispute.created_at.desc())
            .limit(1)
        ).first()
        return (
            latest is not None
            and latest.status_enum == DisputeStatus.RESOLVED
            and latest.resolution_decision == ResolutionDecision.FULL_REFUND_TO_CLIENT.value
        )

    @staticmethod
    def _open_dispute_count(session: Session, project_id: str) -> int:
        open_values = [s.value for s in DisputeStateValidator.OPEN_STATES]
        return len(
            session.scalars(
                select(Dispute.id).where(
                    Dispute.project_id == project_id, Dispute.status.in_(open_values)
                )
            ).all()
        )

    def _roll_up_project(self, session: Session, project: Project, actor_id: str) -> Optional[ProjectStatus]:
        """
        Advance an ACTIVE or DISPUTED project once its milestones allow it.

        Returns the new status when it changed.
        """
        current = project.status_enum
        if current not in (ProjectStatus.ACTIVE, ProjectStatus.DISPUTED):
            return None

        session.flush()
        milestones = project.active_milestones
        if milestones and all(self._milestone_settled(session, m) for m in milestones):
            if self._open_dispute_count(session, project.id) == 0:
                ProjectStateValidator.ensure_transition(current, ProjectStatus.COMPLETED, project.id)
                project.status = ProjectStatus.COMPLETED.value
                project.completed_at = self._now()
                self._log_activity(project, ActivityAction.PROJECT_COMPLETED, actor_id, {"milestones": len(milestones)})
                logger.info(f"🏁 Project {project.id} completed")
                return ProjectStatus.COMPLETED

        if current == ProjectStatus.DISPUTED and self._open_dispute_count(session, project.id) == 0:
            ProjectStateValidator.ensure_transition(current, ProjectStatus.ACTIVE, project.id)
            project.status = ProjectStatus.ACTIVE.value
            logger.info(f"✅ Project {project.id} back to active, no open disputes")
            return ProjectStatus.ACTIVE

        return None
