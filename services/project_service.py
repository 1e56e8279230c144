"""
Project Service
Project lifecycle: creation with milestone budget validation, invitation,
escrow deposit, cancellation (with escrow refund), archiving and duplication.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select

from config import Config
from models import (
    ActivityAction,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    EscrowStatus,
    Transaction,
    UserRole,
)
from services.base_service import EscrowServiceBase
from utils.currency import to_decimal, format_amount
from utils.error_handler import (
    StateConflictError,
    ValidationError,
    ErrorCodes,
    service_operation,
)
from utils.fee_calculator import FeeCalculator
from utils.input_validation import InputValidator
from utils.optimistic_locking import claim
from utils.serializers import project_to_dict, transaction_to_dict
from utils.state_machines import MilestoneStateValidator, ProjectStateValidator

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = {
    ProjectStatus.DRAFT,
    ProjectStatus.PENDING_ACCEPTANCE,
    ProjectStatus.AWAITING_DEPOSIT,
    ProjectStatus.ACTIVE,
}


class ProjectService(EscrowServiceBase):
    """Project state machine and escrow ownership"""

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_milestone_inputs(
        self,
        milestones: List[Dict[str, Any]],
        currency: str,
        project_deadline: datetime,
        now: datetime,
    ) -> List[Dict[str, Any]]:
        limits = Config.limits_for(currency)
        cleaned = []
        for index, item in enumerate(milestones):
            label = f"Milestone {index + 1}"
            milestone_currency = InputValidator.validate_currency(item.get("currency") or currency)
            if milestone_currency != currency:
                raise ValidationError(
                    f"{label} currency must match the project currency {currency}",
                    code=ErrorCodes.UNSUPPORTED_CURRENCY,
                )
            amount = InputValidator.validate_minor_amount(
                f"{label} amount", item.get("amount"), currency, minimum=limits["min_milestone"]
            )
            deadline = item.get("deadline")
            if deadline is not None:
                deadline = InputValidator.validate_future_datetime(f"{label} deadline", deadline, now)
                if deadline > project_deadline:
                    raise ValidationError(
                        f"{label} deadline cannot be after the project deadline",
                        code=ErrorCodes.VALUE_OUT_OF_RANGE,
                    )
            cleaned.append(
                {
                    "title": InputValidator.validate_text(f"{label} title", item.get("title"), max_length=200),
                    "description": InputValidator.validate_text(
                        f"{label} description", item.get("description"), required=False
                    ),
                    "acceptance_criteria": InputValidator.validate_text(
                        f"{label} acceptance criteria", item.get("acceptance_criteria"), required=False
                    ),
                    "amount": amount,
                    "currency": currency,
                    "deadline": deadline,
                }
            )
        return cleaned

    @service_operation
    async def create_project(
        self,
        client_id: str,
        title: str,
        description: str,
        budget: int,
        currency: str,
        deadline: datetime,
        milestones: List[Dict[str, Any]],
        category: Optional[str] = None,
        auto_approve_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a DRAFT project; milestone amounts must sum to the budget exactly"""
        now = self._now()
        title = InputValidator.validate_text("Title", title, max_length=200)
        description = InputValidator.validate_text("Description", description, max_length=5000)
        category = InputValidator.validate_text("Category", category, max_length=100, required=False)
        currency = InputValidator.validate_currency(currency)
        limits = Config.limits_for(currency)
        budget = InputValidator.validate_minor_amount(
            "Budget", budget, currency, minimum=limits["min_budget"], maximum=limits["max_budget"]
        )
        deadline = InputValidator.validate_future_datetime("Deadline", deadline, now)
        auto_approve_days = InputValidator.validate_auto_approve_days(auto_approve_days)

        if not milestones:
            raise ValidationError("At least one milestone is required", code=ErrorCodes.MISSING_REQUIRED_FIELD)
        milestone_data = self._validate_milestone_inputs(milestones, currency, deadline, now)

        allocated = sum(m["amount"] for m in milestone_data)
        if allocated != budget:
            raise ValidationError(
                f"Milestone amounts ({allocated}) must equal the project budget ({budget})",
                code=ErrorCodes.INVALID_AMOUNT,
                details={"allocated": allocated, "budget": budget},
            )

        with self._session() as session:
            client = self._get_user(session, client_id)
            self._require_role(client, [UserRole.CLIENT], "Creating a project")

        await self._moderate(
            "project",
            {
                "title": title,
                "description": description,
                "milestones": [f"{m['title']} {m['description'] or ''}".strip() for m in milestone_data],
            },
        )

        schedule = FeeCalculator.default_schedule(auto_approve_days)
        with self._session() as session:
            project = Project(
                title=title,
                description=description,
                category=category,
                client_id=client_id,
                budget=budget,
                currency=currency,
                deadline=deadline,
                status=ProjectStatus.DRAFT.value,
                escrow_status=EscrowStatus.NOT_DEPOSITED.value,
                escrow_total_held=0,
                escrow_total_released=0,
                escrow_total_refunded=0,
                escrow_remaining=0,
                client_fee_percent=schedule["client_fee_percent"],
                freelancer_fee_percent=schedule["freelancer_fee_percent"],
                total_fee_percent=schedule["total_fee_percent"],
                auto_approve_days=schedule["auto_approve_days"],
                created_at=now,
                updated_at=now,
            )
            for position, data in enumerate(milestone_data):
                project.milestones.append(Milestone(position=position, created_at=now, updated_at=now, **data))
            self._log_activity(
                project,
                ActivityAction.PROJECT_CREATED,
                client_id,
                {"budget": budget, "currency": currency, "milestones": len(milestone_data)},
            )
            session.add(project)
            session.flush()
            snapshot = project_to_dict(project)

        logger.info(
            f"✅ Project {snapshot['id']} created by {client_id}: {format_amount(budget, currency)} "
            f"in {len(milestone_data)} milestones"
        )
        self.dispatcher.notify(snapshot["id"], "project-created", {"title": title, "budget": budget})
        self.dispatcher.audit("PROJECT_CREATED", client_id, "project", snapshot["id"], new_values={"status": "draft"})
        return snapshot

    @service_operation
    async def add_milestone(
        self,
        project_id: str,
        actor_id: str,
        title: str,
        amount: int,
        description: Optional[str] = None,
        deadline: Optional[datetime] = None,
        acceptance_criteria: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Add a milestone before funding; the budget grows by its amount so milestones still sum to it"""
        now = self._now()
        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_client(project, actor_id, "add milestones")
            self._check_milestone_editable(project)
            data = self._validate_milestone_inputs(
                [
                    {
                        "title": title,
                        "description": description,
                        "amount": amount,
                        "deadline": deadline,
                        "acceptance_criteria": acceptance_criteria,
                    }
                ],
                project.currency,
                project.deadline,
                now,
            )[0]
            self._check_budget_limit(project, data["amount"])

        await self._moderate("milestone", {"title": data["title"], "description": data["description"]})

        with self._session() as session:
            project = self._get_project(session, project_id)
            self._check_milestone_editable(project)
            self._check_budget_limit(project, data["amount"])
            milestone = Milestone(
                position=len(project.milestones),
                created_at=now,
                updated_at=now,
                **data,
            )
            project.milestones.append(milestone)
            project.budget += data["amount"]
            project.updated_at = now
            self._log_activity(
                project, ActivityAction.MILESTONE_CREATED, actor_id,
                {"title": data["title"], "amount": data["amount"], "budget": project.budget},
            )
            session.flush()
            snapshot = project_to_dict(project)

        self.dispatcher.notify(project_id, "milestone-created", {"title": data["title"], "amount": data["amount"]})
        return snapshot

    @staticmethod
    def _check_milestone_editable(project: Project):
        if project.status_enum not in (ProjectStatus.DRAFT, ProjectStatus.PENDING_ACCEPTANCE):
            raise StateConflictError(
                f"Milestones can only be added while the project is draft or pending acceptance (is {project.status})",
                details={"project_id": project.id, "status": project.status},
            )

    @staticmethod
    def _check_budget_limit(project: Project, amount: int):
        limits = Config.limits_for(project.currency)
        new_budget = project.budget + amount
        if to_decimal(new_budget, project.currency) > limits["max_budget"]:
            raise ValidationError(
                f"Adding this milestone would exceed the maximum budget of {limits['max_budget']} {project.currency}",
                code=ErrorCodes.VALUE_OUT_OF_RANGE,
                details={"budget": project.budget, "amount": amount},
            )

    # ------------------------------------------------------------------
    # Invitation
    # ------------------------------------------------------------------

    @service_operation
    async def invite_freelancer(self, project_id: str, actor_id: str, freelancer_id: str) -> Dict[str, Any]:
        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_client(project, actor_id, "invite a freelancer")
            if project.freelancer_id:
                raise StateConflictError(
                    "Project already has a freelancer", details={"project_id": project_id}
                )
            freelancer = self._get_user(session, freelancer_id)
            self._require_role(freelancer, [UserRole.FREELANCER], "Joining a project")

            ProjectStateValidator.ensure_transition(project.status, ProjectStatus.PENDING_ACCEPTANCE, project_id)
            project.status = ProjectStatus.PENDING_ACCEPTANCE.value
            project.freelancer_id = freelancer_id
            self._log_activity(project, ActivityAction.FREELANCER_INVITED, actor_id, {"freelancer_id": freelancer_id})
            session.flush()
            snapshot = project_to_dict(project)

        logger.info(f"📨 Freelancer {freelancer_id} invited to project {project_id}")
        self.dispatcher.notify(project_id, "freelancer-invited", {"freelancer_id": freelancer_id})
        self.dispatcher.audit(
            "FREELANCER_INVITED", actor_id, "project", project_id,
            old_values={"status": "draft"}, new_values={"status": "pending_acceptance"},
        )
        return snapshot

    @service_operation
    async def accept_invitation(self, project_id: str, actor_id: str) -> Dict[str, Any]:
        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_freelancer(project, actor_id, "accept this invitation")
            ProjectStateValidator.ensure_transition(project.status, ProjectStatus.AWAITING_DEPOSIT, project_id)
            project.status = ProjectStatus.AWAITING_DEPOSIT.value
            self._log_activity(project, ActivityAction.INVITATION_ACCEPTED, actor_id)
            session.flush()
            snapshot = project_to_dict(project)

        logger.info(f"🤝 Freelancer {actor_id} accepted project {project_id}")
        self.dispatcher.notify(project_id, "invitation-accepted", {"freelancer_id": actor_id})
        self.dispatcher.audit(
            "INVITATION_ACCEPTED", actor_id, "project", project_id,
            old_values={"status": "pending_acceptance"}, new_values={"status": "awaiting_deposit"},
        )
        return snapshot

    @service_operation
    async def submit_counter_proposals(
        self, project_id: str, actor_id: str, proposals: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Invited freelancer proposes changed milestone terms before accepting"""
        if not proposals:
            raise ValidationError("At least one counter proposal is required", code=ErrorCodes.MISSING_REQUIRED_FIELD)

        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_freelancer(project, actor_id, "submit counter proposals")
            if project.status_enum != ProjectStatus.PENDING_ACCEPTANCE:
                raise StateConflictError(
                    "Counter proposals are only accepted while the invitation is pending",
                    details={"project_id": project_id, "status": project.status},
                )
            project.counter_proposals = [dict(p) for p in proposals]
            self._log_activity(
                project, ActivityAction.COUNTER_PROPOSALS_SUBMITTED, actor_id, {"count": len(proposals)}
            )
            session.flush()
            snapshot = project_to_dict(project)

        self.dispatcher.notify(project_id, "counter-proposals-submitted", {"count": len(proposals)})
        return snapshot

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    @service_operation
    async def deposit_funds(self, project_id: str, actor_id: str, payment_method_ref: str) -> Dict[str, Any]:
        """
        Charge budget plus client fee and move the project to ACTIVE.

        The project is claimed first so a second deposit cannot race the
        gateway call; the status transition and DEPOSIT entry are committed
        only after the gateway reports success.
        """
        if not payment_method_ref:
            raise ValidationError("A payment method is required", code=ErrorCodes.MISSING_REQUIRED_FIELD)

        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_client(project, actor_id, "deposit funds")
            ProjectStateValidator.ensure_transition(project.status, ProjectStatus.ACTIVE, project_id)
            if project.status_enum != ProjectStatus.AWAITING_DEPOSIT:
                raise StateConflictError(
                    f"Project must be awaiting deposit (is {project.status})",
                    details={"project_id": project_id},
                )
            fees = FeeCalculator.calculate_deposit_fees(project.budget, project.client_fee_percent)
            currency = project.currency
            budget = project.budget
            title = project.title
            customer_ref = project.client.customer_ref
            self._claim_project(session, project_id, ProjectStatus.AWAITING_DEPOSIT, "deposit")

        charge = to_decimal(budget + fees.client, currency)
        try:
            gateway_result = await self._call_gateway(
                "create_deposit_intent",
                lambda: self.payment_gateway.create_deposit_intent(
                    amount=charge,
                    currency=currency,
                    description=f"Escrow deposit for project: {title}",
                    payment_method_ref=payment_method_ref,
                    customer_ref=customer_ref,
                ),
            )
        except Exception:
            self._release_project_claim(project_id, "deposit")
            raise

        try:
            with self._session() as session:
                project = self._get_project(session, project_id)
                project.status = ProjectStatus.ACTIVE.value
                project.operation_in_flight = None
                self.ledger.apply_deposit(project, budget)
                self.ledger.record_deposit(session, project, fees, gateway_result)
                self._log_activity(
                    project, ActivityAction.FUNDS_DEPOSITED, actor_id,
                    {"amount": budget, "client_fee": fees.client, "provider_transaction_id": gateway_result.id},
                )
                session.flush()
                snapshot = project_to_dict(project)
        except Exception as e:
            raise self.ledger.flag_for_reconciliation(
                self.session_factory,
                operation="deposit",
                project_id=project_id,
                amount=budget + fees.client,
                currency=currency,
                error=e,
                gateway_result=gateway_result,
            ) from e

        logger.info(
            f"💰 Project {project_id} funded: {format_amount(budget, currency)} held, "
            f"client fee {format_amount(fees.client, currency)}"
        )
        self.dispatcher.notify(project_id, "funds-deposited", {"amount": budget, "client_fee": fees.client})
        self.dispatcher.audit(
            "FUNDS_DEPOSITED", actor_id, "project", project_id,
            old_values={"status": "awaiting_deposit"}, new_values={"status": "active", "escrow": snapshot["escrow"]},
        )
        return snapshot

    def _claim_project(self, session, project_id: str, expected_status: ProjectStatus, operation: str):
        won = claim(
            session,
            Project,
            project_id,
            expected={"status": expected_status.value, "operation_in_flight": None},
            updates={"operation_in_flight": operation},
        )
        if not won:
            raise StateConflictError(
                "Another payment operation is already in progress for this project",
                code=ErrorCodes.OPERATION_IN_FLIGHT,
                details={"project_id": project_id, "operation": operation},
            )

    def _release_project_claim(self, project_id: str, operation: str):
        with self._session() as session:
            claim(
                session,
                Project,
                project_id,
                expected={"operation_in_flight": operation},
                updates={"operation_in_flight": None},
            )
        logger.info(f"🔓 Released {operation} claim on project {project_id}")

    # ------------------------------------------------------------------
    # Cancellation, archiving, duplication
    # ------------------------------------------------------------------

    @service_operation
    async def cancel_project(self, project_id: str, actor_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel a project with no work in flight. Escrow still held is refunded
        to the client through the gateway before the cancellation commits.
        """
        reason = InputValidator.validate_text("Cancellation reason", reason, required=False, max_length=1000)
        now = self._now()

        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_party(project, actor_id, "cancel this project")
            current = project.status_enum
            if current not in CANCELLABLE_STATES:
                raise StateConflictError(
                    f"Project cannot be cancelled from {current.value}",
                    details={"project_id": project_id, "status": current.value},
                )
            ProjectStateValidator.ensure_transition(current, ProjectStatus.CANCELLED, project_id)
            self._check_no_active_work(project)

            refund_amount = project.escrow_remaining
            currency = project.currency
            customer_ref = project.client.customer_ref
            title = project.title

            if refund_amount == 0:
                previous = project.status
                self._apply_cancellation(project, actor_id, reason, now)
                session.flush()
                snapshot = project_to_dict(project)
            else:
                self._claim_project(session, project_id, current, "cancel_refund")
                snapshot = None

        if snapshot is not None:
            self._after_cancel(project_id, actor_id, previous, reason)
            return snapshot

        try:
            gateway_result = await self._call_gateway(
                "refund_to_client",
                lambda: self.payment_gateway.refund_to_client(
                    amount=to_decimal(refund_amount, currency),
                    currency=currency,
                    customer_ref=customer_ref,
                    description=f"Escrow refund for cancelled project: {title}",
                ),
            )
        except Exception:
            self._release_project_claim(project_id, "cancel_refund")
            raise

        try:
            with self._session() as session:
                project = self._get_project(session, project_id)
                previous = project.status
                self.ledger.apply_refund(project, refund_amount)
                self.ledger.record_refund(session, project, refund_amount, gateway_result)
                self._log_activity(
                    project, ActivityAction.ESCROW_REFUNDED, actor_id,
                    {"amount": refund_amount, "provider_transaction_id": gateway_result.id},
                )
                project.operation_in_flight = None
                self._apply_cancellation(project, actor_id, reason, now)
                session.flush()
                snapshot = project_to_dict(project)
        except Exception as e:
            raise self.ledger.flag_for_reconciliation(
                self.session_factory,
                operation="cancel_refund",
                project_id=project_id,
                amount=refund_amount,
                currency=currency,
                error=e,
                gateway_result=gateway_result,
            ) from e

        logger.info(f"↩️ Refunded {format_amount(refund_amount, currency)} on cancellation of {project_id}")
        self._after_cancel(project_id, actor_id, previous, reason)
        return snapshot

    @staticmethod
    def _check_no_active_work(project: Project):
        busy = [
            m.id for m in project.active_milestones
            if m.status_enum in MilestoneStateValidator.ACTIVE_WORK
        ]
        if busy:
            raise StateConflictError(
                "Cannot cancel a project with milestones in progress, submitted or under revision",
                details={"project_id": project.id, "milestones": busy},
            )

    def _apply_cancellation(self, project: Project, actor_id: str, reason: Optional[str], now: datetime):
        funded = project.escrow_total_held > 0 or project.escrow_total_released > 0 or project.escrow_total_refunded > 0
        project.status = ProjectStatus.CANCELLED.value
        project.cancelled_at = now
        if not funded:
            # Nothing was ever funded, so the milestones are retired with the project
            for milestone in project.milestones:
                if milestone.cancelled_at is None:
                    milestone.cancelled_at = now
        self._log_activity(project, ActivityAction.PROJECT_CANCELLED, actor_id, {"reason": reason})

    def _after_cancel(self, project_id: str, actor_id: str, previous_status: str, reason: Optional[str]):
        logger.info(f"🛑 Project {project_id} cancelled by {actor_id}")
        self.dispatcher.notify(project_id, "project-cancelled", {"cancelled_by": actor_id, "reason": reason})
        self.dispatcher.audit(
            "PROJECT_CANCELLED", actor_id, "project", project_id,
            old_values={"status": previous_status}, new_values={"status": "cancelled"},
        )

    @service_operation
    async def archive_project(self, project_id: str, actor_id: str) -> Dict[str, Any]:
        with self._session() as session:
            project = self._get_project(session, project_id)
            self._require_client(project, actor_id, "archive this project")
            previous = project.status
            ProjectStateValidator.ensure_transition(previous, ProjectStatus.ARCHIVED, project_id)
            project.status = ProjectStatus.ARCHIVED.value
            project.archived_at = self._now()
            self._log_activity(project, ActivityAction.PROJECT_ARCHIVED, actor_id)
            session.flush()
            snapshot = project_to_dict(project)

        self.dispatcher.notify(project_id, "project-archived", {})
        self.dispatcher.audit(
            "PROJECT_ARCHIVED", actor_id, "project", project_id,
            old_values={"status": previous}, new_values={"status": "archived"},
        )
        return snapshot

    @service_operation
    async def duplicate_project(self, project_id: str, actor_id: str) -> Dict[str, Any]:
        """New DRAFT project copying the source with its milestones as templates"""
        now = self._now()
        with self._session() as session:
            source = self._get_project(session, project_id)
            self._require_client(source, actor_id, "duplicate this project")
            # A stale deadline moves forward keeping the source's original duration
            shift = now - source.created_at if source.deadline <= now else timedelta(0)

            copy = Project(
                title=f"{source.title} (Copy)"[:200],
                description=source.description,
                category=source.category,
                client_id=source.client_id,
                budget=source.budget,
                currency=source.currency,
                deadline=source.deadline + shift,
                status=ProjectStatus.DRAFT.value,
                escrow_status=EscrowStatus.NOT_DEPOSITED.value,
                escrow_total_held=0,
                escrow_total_released=0,
                escrow_total_refunded=0,
                escrow_remaining=0,
                client_fee_percent=source.client_fee_percent,
                freelancer_fee_percent=source.freelancer_fee_percent,
                total_fee_percent=source.total_fee_percent,
                auto_approve_days=source.auto_approve_days,
                source_project_id=source.id,
                created_at=now,
                updated_at=now,
            )
            templates = source.active_milestones or source.milestones
            for position, template in enumerate(templates):
                copy.milestones.append(
                    Milestone(
                        position=position,
                        title=template.title,
                        description=template.description,
                        amount=template.amount,
                        currency=template.currency,
                        deadline=template.deadline + shift if template.deadline else None,
                        acceptance_criteria=template.acceptance_criteria,
                        status=MilestoneStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    )
                )
            self._log_activity(copy, ActivityAction.PROJECT_DUPLICATED, actor_id, {"original_project_id": source.id})
            session.add(copy)
            session.flush()
            snapshot = project_to_dict(copy)

        logger.info(f"📄 Project {project_id} duplicated as {snapshot['id']}")
        self.dispatcher.audit("PROJECT_DUPLICATED", actor_id, "project", snapshot["id"], new_values={"source": project_id})
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @service_operation
    async def get_project(self, project_id: str) -> Dict[str, Any]:
        with self._session() as session:
            return project_to_dict(self._get_project(session, project_id))

    @service_operation
    async def get_project_stats(self, project_id: str) -> Dict[str, Any]:
        with self._session() as session:
            project = self._get_project(session, project_id)
            milestones = project.active_milestones
            counts = Counter(m.status for m in milestones)
            approved_amount = sum(m.amount for m in milestones if m.status_enum == MilestoneStatus.APPROVED)
            return {
                "project_id": project.id,
                "status": project.status,
                "milestone_count": len(milestones),
                "milestones_by_status": {s.value: counts.get(s.value, 0) for s in MilestoneStatus},
                "completion_percent": (
                    round(counts.get(MilestoneStatus.APPROVED.value, 0) * 100 / len(milestones))
                    if milestones else 0
                ),
                "approved_amount": approved_amount,
                "escrow": project.escrow,
                "currency": project.currency,
            }

    @service_operation
    async def list_transactions(self, project_id: str) -> List[Dict[str, Any]]:
        with self._session() as session:
            self._get_project(session, project_id)
            rows = session.scalars(
                select(Transaction)
                .where(Transaction.project_id == project_id)
                .order_by(Transaction.created_at, Transaction.id)
            ).all()
            return [transaction_to_dict(t) for t in rows]

    @service_operation
    async def list_projects(
        self,
        user_id: str,
        status: Optional[str] = None,
        role: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Projects the user takes part in, newest first

        ``role`` narrows the list to projects where the user is the client
        or the freelancer; by default both are included.
        """
        wanted = self._parse_status_filter(ProjectStatus, status)
        with self._session() as session:
            self._get_user(session, user_id)
            if role is None:
                party = or_(Project.client_id == user_id, Project.freelancer_id == user_id)
            elif role == UserRole.CLIENT.value:
                party = Project.client_id == user_id
            elif role == UserRole.FREELANCER.value:
                party = Project.freelancer_id == user_id
            else:
                raise ValidationError(
                    f"Unknown role filter {role!r}",
                    code=ErrorCodes.INVALID_FORMAT,
                    details={"allowed": [UserRole.CLIENT.value, UserRole.FREELANCER.value]},
                )
            query = select(Project).where(party)
            if wanted is not None:
                query = query.where(Project.status == wanted.value)
            rows = session.scalars(query.order_by(Project.created_at.desc(), Project.id)).all()
            return [project_to_dict(p, include_activity=False) for p in rows]
