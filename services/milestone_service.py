"""
Milestone Service
Milestone work lifecycle and the release of escrowed funds on approval,
including the automatic approval sweep for submissions the client ignores.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from config import Config
from models import (
    ActivityAction,
    Milestone,
    MilestoneRevision,
    MilestoneStatus,
    Project,
    ProjectStatus,
    SYSTEM_ACTOR,
    UserRole,
)
from services.base_service import EscrowServiceBase
from utils.currency import format_amount
from utils.error_handler import (
    StateConflictError,
    ValidationError,
    ErrorCodes,
    EscrowDomainError,
    service_operation,
)
from utils.fee_calculator import FeeCalculator
from utils.input_validation import InputValidator
from utils.optimistic_locking import claim
from utils.serializers import milestone_to_dict
from utils.state_machines import MilestoneStateValidator

logger = logging.getLogger(__name__)

WORKING_PROJECT_STATES = {ProjectStatus.ACTIVE, ProjectStatus.DISPUTED}


class MilestoneService(EscrowServiceBase):
    """Milestone state machine; only APPROVED releases funds"""

    @staticmethod
    def _require_working_project(project: Project, action: str):
        if project.status_enum not in WORKING_PROJECT_STATES:
            raise StateConflictError(
                f"Cannot {action} while the project is {project.status}",
                details={"project_id": project.id, "status": project.status},
            )

    @service_operation
    async def start_milestone(self, milestone_id: str, actor_id: str) -> Dict[str, Any]:
        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._require_freelancer(project, actor_id, "start milestones")
            if project.status_enum not in WORKING_PROJECT_STATES or project.operation_in_flight:
                raise StateConflictError(
                    "Milestones can only be started on a funded, active project",
                    details={"project_id": project.id, "status": project.status},
                )
            MilestoneStateValidator.ensure_transition(milestone.status, MilestoneStatus.IN_PROGRESS, milestone_id)

            milestone.status = MilestoneStatus.IN_PROGRESS.value
            milestone.started_at = self._now()
            self._log_activity(project, ActivityAction.MILESTONE_STARTED, actor_id, {"milestone_id": milestone_id})
            session.flush()
            snapshot = milestone_to_dict(milestone)

        logger.info(f"▶️ Milestone {milestone_id} started by {actor_id}")
        self.dispatcher.notify(snapshot["project_id"], "milestone-started", {"milestone_id": milestone_id})
        return snapshot

    @service_operation
    async def submit_milestone(
        self,
        milestone_id: str,
        actor_id: str,
        deliverables: Optional[List[Dict[str, Any]]] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Submit work for review; resubmitting after a revision request is allowed"""
        notes = InputValidator.validate_text("Submission notes", notes, required=False)
        if not deliverables and not notes:
            raise ValidationError(
                "A submission needs deliverables or notes", code=ErrorCodes.MISSING_REQUIRED_FIELD
            )
        deliverables = [dict(d) for d in (deliverables or [])]

        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._require_freelancer(project, actor_id, "submit milestones")
            self._require_working_project(project, "submit work")
            previous = milestone.status_enum
            if previous == MilestoneStatus.DISPUTED:
                raise StateConflictError(
                    "A disputed milestone cannot be resubmitted until the dispute is resolved",
                    details={"milestone_id": milestone_id},
                )
            MilestoneStateValidator.ensure_transition(previous, MilestoneStatus.SUBMITTED, milestone_id)

        await self._moderate("milestone_submission", {"notes": notes, "deliverables": deliverables})

        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._require_working_project(project, "submit work")
            if milestone.status_enum != previous:
                raise StateConflictError(
                    f"Milestone changed to {milestone.status} while the submission was checked",
                    code=ErrorCodes.CONCURRENT_MODIFICATION,
                    details={"milestone_id": milestone_id},
                )
            milestone.status = MilestoneStatus.SUBMITTED.value
            milestone.deliverables = deliverables
            milestone.submission_notes = notes
            milestone.submitted_at = self._now()
            milestone.auto_approval_warned_at = None
            action = (
                ActivityAction.MILESTONE_RESUBMITTED
                if previous == MilestoneStatus.REVISION_REQUESTED
                else ActivityAction.MILESTONE_SUBMITTED
            )
            self._log_activity(
                project, action, actor_id,
                {"milestone_id": milestone_id, "deliverables": len(deliverables)},
            )
            session.flush()
            snapshot = milestone_to_dict(milestone)
            auto_approve_days = project.auto_approve_days

        logger.info(f"📦 Milestone {milestone_id} submitted ({action.value}), auto-approves in {auto_approve_days}d")
        self.dispatcher.notify(
            snapshot["project_id"], "milestone-submitted",
            {"milestone_id": milestone_id, "auto_approve_days": auto_approve_days},
        )
        return snapshot

    @service_operation
    async def request_revision(self, milestone_id: str, actor_id: str, notes: str) -> Dict[str, Any]:
        notes = InputValidator.validate_text("Revision notes", notes, max_length=5000)
        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._require_client(project, actor_id, "request revisions")
            self._require_working_project(project, "request a revision")
            if milestone.status_enum != MilestoneStatus.SUBMITTED or milestone.payout_in_flight:
                raise StateConflictError(
                    f"Revisions can only be requested on submitted milestones (is {milestone.status})",
                    details={"milestone_id": milestone_id},
                )
            now = self._now()
            milestone.status = MilestoneStatus.REVISION_REQUESTED.value
            milestone.revision_history.append(
                MilestoneRevision(requested_by=actor_id, notes=notes, requested_at=now)
            )
            self._log_activity(project, ActivityAction.REVISION_REQUESTED, actor_id, {"milestone_id": milestone_id})
            session.flush()
            snapshot = milestone_to_dict(milestone)

        logger.info(f"🔁 Revision requested on milestone {milestone_id}")
        self.dispatcher.notify(snapshot["project_id"], "revision-requested", {"milestone_id": milestone_id, "notes": notes})
        return snapshot

    @service_operation
    async def list_milestones(self, project_id: str, actor_id: str) -> List[Dict[str, Any]]:
        """A project's milestones in order; visible to its parties and to admins"""
        with self._session() as session:
            project = self._get_project(session, project_id)
            if not project.is_party(actor_id):
                actor = self._get_user(session, actor_id)
                self._require_role(actor, [UserRole.ADMIN], "Viewing another project's milestones")
            return [milestone_to_dict(m) for m in project.active_milestones]

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    @service_operation
    async def approve_milestone(self, milestone_id: str, actor_id: str) -> Dict[str, Any]:
        """Client approval releases milestone amount less the freelancer fee"""
        return await self._release_milestone(milestone_id, actor_id, auto=False)

    @service_operation
    async def auto_approve_milestone(self, milestone_id: str) -> Optional[Dict[str, Any]]:
        """
        Approve on the client's behalf once the review period has lapsed.

        Returns None when the milestone is no longer eligible, so a sweep that
        races a manual approval is a no-op.
        """
        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            if not self._auto_approval_due(milestone):
                logger.debug(f"Milestone {milestone_id} not due for auto-approval")
                return None
        try:
            return await self._release_milestone(milestone_id, SYSTEM_ACTOR, auto=True)
        except StateConflictError as e:
            if e.code in (ErrorCodes.OPERATION_IN_FLIGHT, ErrorCodes.INVALID_TRANSITION):
                logger.info(f"⏭️ Milestone {milestone_id} already handled: {e.message}")
                return None
            raise

    def _auto_approval_due(self, milestone: Milestone) -> bool:
        if milestone.status_enum != MilestoneStatus.SUBMITTED or milestone.payout_in_flight:
            return False
        if milestone.project.status_enum not in WORKING_PROJECT_STATES:
            return False
        due_at = milestone.submitted_at + timedelta(days=milestone.project.auto_approve_days)
        return self._now() >= due_at

    async def _release_milestone(self, milestone_id: str, actor_id: str, auto: bool) -> Dict[str, Any]:
        # Claim: SUBMITTED and no payout outstanding
        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            if not auto:
                self._require_client(project, actor_id, "approve milestones")
            self._require_working_project(project, "approve milestones")
            MilestoneStateValidator.ensure_transition(milestone.status, MilestoneStatus.APPROVED, milestone_id)
            if milestone.status_enum != MilestoneStatus.SUBMITTED:
                raise StateConflictError(
                    f"Only submitted milestones can be approved (is {milestone.status})",
                    details={"milestone_id": milestone_id},
                )
            self.ledger.ensure_available(project, milestone.amount)
            payout_account_id = project.freelancer.payout_account_id if project.freelancer else None
            if not payout_account_id:
                raise ValidationError(
                    "Freelancer has no payout account configured",
                    code=ErrorCodes.MISSING_REQUIRED_FIELD,
                    details={"freelancer_id": project.freelancer_id},
                )
            release = FeeCalculator.calculate_release_amounts(
                milestone.amount,
                milestone.currency,
                project.client_fee_percent,
                project.freelancer_fee_percent,
            )
            project_id = project.id
            currency = milestone.currency
            title = milestone.title

            won = claim(
                session,
                Milestone,
                milestone_id,
                expected={"status": MilestoneStatus.SUBMITTED.value, "payout_in_flight": False},
                updates={"payout_in_flight": True},
            )
            if not won:
                raise StateConflictError(
                    "Milestone payout is already being processed",
                    code=ErrorCodes.OPERATION_IN_FLIGHT,
                    details={"milestone_id": milestone_id},
                )

        try:
            gateway_result = await self._call_gateway(
                "transfer_to_freelancer",
                lambda: self.payment_gateway.transfer_to_freelancer(
                    amount=release.net_decimal,
                    currency=currency,
                    payout_account_id=payout_account_id,
                    description=f"Payment for milestone: {title}",
                ),
            )
        except Exception:
            self._release_payout_claim(milestone_id)
            raise

        action = ActivityAction.MILESTONE_AUTO_APPROVED if auto else ActivityAction.MILESTONE_APPROVED
        try:
            with self._session() as session:
                milestone = self._get_milestone(session, milestone_id)
                project = milestone.project
                milestone.status = MilestoneStatus.APPROVED.value
                milestone.approved_at = self._now()
                milestone.auto_approved = auto
                milestone.payout_in_flight = False
                self.ledger.apply_release(project, milestone.amount)
                self.ledger.record_milestone_release(session, project, milestone, release, gateway_result)
                self._log_activity(
                    project, action, actor_id,
                    {
                        "milestone_id": milestone_id,
                        "amount": milestone.amount,
                        "net_amount": release.net_amount,
                        "freelancer_fee": release.freelancer_fee,
                        "provider_transaction_id": gateway_result.id,
                    },
                )
                project_status = self._roll_up_project(session, project, actor_id)
                session.flush()
                snapshot = milestone_to_dict(milestone)
        except Exception as e:
            raise self.ledger.flag_for_reconciliation(
                self.session_factory,
                operation="milestone_release",
                project_id=project_id,
                milestone_id=milestone_id,
                amount=release.net_amount,
                currency=currency,
                error=e,
                gateway_result=gateway_result,
            ) from e

        logger.info(
            f"✅ Milestone {milestone_id} {'auto-' if auto else ''}approved: "
            f"{format_amount(release.net_amount, currency)} to freelancer, "
            f"fee {format_amount(release.freelancer_fee, currency)}"
        )
        event = "milestone-auto-approved" if auto else "milestone-approved"
        self.dispatcher.notify(
            project_id, event,
            {"milestone_id": milestone_id, "net_amount": release.net_amount, "freelancer_fee": release.freelancer_fee},
        )
        self.dispatcher.audit(
            action.value.upper(), actor_id, "milestone", milestone_id,
            old_values={"status": "submitted"}, new_values={"status": "approved", "auto": auto},
        )
        if project_status == ProjectStatus.COMPLETED:
            self.dispatcher.notify(project_id, "project-completed", {})
        return snapshot

    def _release_payout_claim(self, milestone_id: str):
        with self._session() as session:
            claim(
                session,
                Milestone,
                milestone_id,
                expected={"payout_in_flight": True},
                updates={"payout_in_flight": False},
            )
        logger.info(f"🔓 Released payout claim on milestone {milestone_id}")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def process_auto_approvals(self) -> Dict[str, int]:
        """
        One pass over SUBMITTED milestones: warn clients once inside the
        warning window and approve those past their review period.

        A failure on one milestone is logged and the sweep continues.
        """
        now = self._now()
        stats = {"checked": 0, "warned": 0, "approved": 0, "failed": 0}

        with self._session() as session:
            rows = session.execute(
                select(Milestone.id, Milestone.submitted_at, Milestone.auto_approval_warned_at, Project.auto_approve_days)
                .join(Project, Milestone.project_id == Project.id)
                .where(
                    Milestone.status == MilestoneStatus.SUBMITTED.value,
                    Milestone.payout_in_flight.is_(False),
                    Milestone.cancelled_at.is_(None),
                    Project.status.in_([s.value for s in WORKING_PROJECT_STATES]),
                )
                .order_by(Milestone.submitted_at)
            ).all()

        warning_window = timedelta(hours=Config.AUTO_APPROVAL_WARNING_HOURS)
        for milestone_id, submitted_at, warned_at, days in rows:
            stats["checked"] += 1
            due_at = submitted_at + timedelta(days=days)
            if now >= due_at:
                result = await self.auto_approve_milestone(milestone_id)
                if result.success and result.value is not None:
                    stats["approved"] += 1
                elif not result.success:
                    stats["failed"] += 1
            elif warned_at is None and now >= due_at - warning_window:
                try:
                    if self._send_auto_approval_warning(milestone_id, due_at):
                        stats["warned"] += 1
                except EscrowDomainError as e:
                    stats["failed"] += 1
                    logger.warning(f"⚠️ Auto-approval warning for {milestone_id} skipped: {e.message}")

        if stats["checked"]:
            logger.info(
                f"🤖 Auto-approval sweep: checked={stats['checked']} approved={stats['approved']} "
                f"warned={stats['warned']} failed={stats['failed']}"
            )
        return stats

    def _send_auto_approval_warning(self, milestone_id: str, due_at) -> bool:
        with self._session() as session:
            won = claim(
                session,
                Milestone,
                milestone_id,
                expected={"status": MilestoneStatus.SUBMITTED.value, "auto_approval_warned_at": None},
                updates={"auto_approval_warned_at": self._now()},
            )
            if not won:
                return False
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._log_activity(
                project, ActivityAction.AUTO_APPROVAL_WARNING_SENT, SYSTEM_ACTOR,
                {"milestone_id": milestone_id, "auto_approve_at": due_at.isoformat()},
            )
            project_id = project.id

        self.dispatcher.notify(
            project_id, "auto-approval-warning",
            {"milestone_id": milestone_id, "auto_approve_at": due_at.isoformat()},
        )
        return True
