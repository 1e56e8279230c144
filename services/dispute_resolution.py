"""
Dispute Resolution Service
Milestone disputes from creation through fee collection, automated review,
mediation, arbitration and a single appeal.

Fund movements on resolution follow the same claim, gateway, settle sequence
as milestone releases: nothing terminal is committed until the gateway
reports success.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select

from config import Config
from models import (
    ActivityAction,
    AppealStatus,
    Dispute,
    DisputeAppeal,
    DisputeEvidence,
    DisputeFeeStatus,
    DisputeMessage,
    DisputeStatus,
    DisputeTimelineEntry,
    Milestone,
    MilestoneRevision,
    MilestoneStatus,
    PartyFeeStatus,
    Project,
    ProjectStatus,
    ResolutionDecision,
    Transaction,
    UserRole,
    SYSTEM_ACTOR,
)
from services.base_service import EscrowServiceBase
from services.interfaces import DisputeAnalysis
from utils.currency import format_amount, to_decimal
from utils.datetime_helpers import hours_between, isoformat_or_none
from utils.error_handler import (
    AuthorizationError,
    EscrowDomainError,
    StateConflictError,
    ValidationError,
    ErrorCodes,
    service_operation,
)
from utils.fee_calculator import FeeCalculator
from utils.input_validation import InputValidator
from utils.optimistic_locking import claim
from utils.serializers import dispute_to_dict, milestone_to_dict, transaction_to_dict
from utils.state_machines import (
    DisputeStateValidator,
    MilestoneStateValidator,
    ProjectStateValidator,
)

logger = logging.getLogger(__name__)

STAFF_ROLES = (UserRole.ADMIN, UserRole.ARBITRATOR)
MEDIATOR_ROLES = (UserRole.ADMIN, UserRole.ARBITRATOR, UserRole.MEDIATOR)
MESSAGING_STATES = {DisputeStatus.SELF_RESOLUTION, DisputeStatus.IN_MEDIATION, DisputeStatus.IN_ARBITRATION}
RESOLVABLE_STATES = MESSAGING_STATES
PAYMENT_DECISIONS = {ResolutionDecision.FULL_PAYMENT_TO_FREELANCER, ResolutionDecision.PARTIAL_PAYMENT}


class DisputeResolutionService(EscrowServiceBase):
    """Dispute workflow; the advisor only ever routes, it never moves funds"""

    def __init__(self, *args, dispute_advisor=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.dispute_advisor = dispute_advisor

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _add_timeline(self, dispute: Dispute, action: str, actor_id: Optional[str], note: Optional[str] = None):
        dispute.timeline.append(
            DisputeTimelineEntry(
                status=dispute.status,
                action=action,
                note=note,
                actor_id=actor_id,
                created_at=self._now(),
            )
        )

    def _set_status(self, dispute: Dispute, new_status: DisputeStatus):
        DisputeStateValidator.ensure_transition(dispute.status, new_status, dispute.id)
        dispute.status = new_status.value
        dispute.status_changed_at = self._now()

    @staticmethod
    def _message_count(session, dispute_id: str) -> int:
        return session.scalar(
            select(func.count(DisputeMessage.id)).where(DisputeMessage.dispute_id == dispute_id)
        ) or 0

    def _require_dispute_party(self, dispute: Dispute, actor_id: str, action: str):
        if not dispute.project.is_party(actor_id):
            raise AuthorizationError(
                f"Only the project client or freelancer can {action}",
                details={"dispute_id": dispute.id, "actor_id": actor_id},
            )

    @staticmethod
    def _evidence_rows(files, uploaded_by_id: str, now) -> List[DisputeEvidence]:
        return [
            DisputeEvidence(
                filename=f.filename,
                url=f.url,
                file_type=f.file_type,
                size_bytes=f.size_bytes,
                uploaded_by_id=uploaded_by_id,
                uploaded_at=now,
            )
            for f in files
        ]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @service_operation
    async def create_dispute(
        self,
        milestone_id: str,
        actor_id: str,
        reason: str,
        evidence: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Dispute a milestone in progress, submitted or under revision"""
        reason = InputValidator.validate_dispute_reason(reason)
        files = InputValidator.validate_evidence_files(evidence)
        now = self._now()

        with self._session() as session:
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            self._require_party(project, actor_id, "raise a dispute")
            if project.status_enum not in (ProjectStatus.ACTIVE, ProjectStatus.DISPUTED):
                raise StateConflictError(
                    f"Disputes can only be raised on active projects (is {project.status})",
                    details={"project_id": project.id},
                )
            self._check_no_open_dispute(session, milestone_id)
            previous_status = milestone.status_enum
            if previous_status not in MilestoneStateValidator.DISPUTABLE:
                raise StateConflictError(
                    f"Milestone in status {previous_status.value} cannot be disputed",
                    details={"milestone_id": milestone_id, "status": previous_status.value},
                )
            self._check_raise_cooldown(session, milestone_id, actor_id, now)
            quote = FeeCalculator.calculate_dispute_fee(milestone.amount, milestone.currency)

        await self._moderate(
            "dispute",
            {"reason": reason, "evidence": [f.filename for f in files]},
        )

        with self._session() as session:
            self._check_no_open_dispute(session, milestone_id)
            won = claim(
                session,
                Milestone,
                milestone_id,
                expected={"status": previous_status.value, "payout_in_flight": False},
                updates={"status": MilestoneStatus.DISPUTED.value},
            )
            if not won:
                raise StateConflictError(
                    "Milestone changed while the dispute was being raised; re-fetch and retry",
                    code=ErrorCodes.CONCURRENT_MODIFICATION,
                    details={"milestone_id": milestone_id},
                )
            milestone = self._get_milestone(session, milestone_id)
            project = milestone.project
            if project.status_enum == ProjectStatus.ACTIVE:
                ProjectStateValidator.ensure_transition(project.status, ProjectStatus.DISPUTED, project.id)
                project.status = ProjectStatus.DISPUTED.value

            dispute = Dispute(
                project_id=project.id,
                milestone_id=milestone_id,
                raised_by_id=actor_id,
                reason=reason,
                status=DisputeStatus.PENDING_FEE.value,
                status_changed_at=now,
                fee_per_party=quote.per_party_fee,
                fee_total=quote.total_amount,
                fee_currency=quote.currency,
                fee_status=DisputeFeeStatus.PENDING.value,
                client_fee_status=PartyFeeStatus.UNPAID.value,
                freelancer_fee_status=PartyFeeStatus.UNPAID.value,
                created_at=now,
                updated_at=now,
            )
            dispute.evidence.extend(self._evidence_rows(files, actor_id, now))
            self._add_timeline(dispute, "dispute_raised", actor_id, reason)
            session.add(dispute)
            session.flush()
            self._log_activity(
                project, ActivityAction.DISPUTE_RAISED, actor_id,
                {"dispute_id": dispute.id, "milestone_id": milestone_id, "previous_status": previous_status.value},
            )
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(
            f"⚖️ Dispute {snapshot['id']} raised on milestone {milestone_id} by {actor_id}, "
            f"fee {format_amount(quote.per_party_fee, quote.currency)} per party"
        )
        self.dispatcher.notify(
            snapshot["project_id"], "dispute-raised",
            {"dispute_id": snapshot["id"], "milestone_id": milestone_id, "dispute_fee": snapshot["dispute_fee"]},
        )
        self.dispatcher.audit(
            "DISPUTE_RAISED", actor_id, "dispute", snapshot["id"],
            old_values={"milestone_status": previous_status.value},
            new_values={"status": DisputeStatus.PENDING_FEE.value},
        )
        return snapshot

    @staticmethod
    def _check_no_open_dispute(session, milestone_id: str):
        open_values = [s.value for s in DisputeStateValidator.OPEN_STATES]
        existing = session.scalars(
            select(Dispute.id).where(Dispute.milestone_id == milestone_id, Dispute.status.in_(open_values))
        ).first()
        if existing:
            raise StateConflictError(
                "An open dispute already exists for this milestone",
                code=ErrorCodes.DUPLICATE_DISPUTE,
                details={"milestone_id": milestone_id, "dispute_id": existing},
            )

    @staticmethod
    def _check_raise_cooldown(session, milestone_id: str, actor_id: str, now):
        since = now - timedelta(hours=Config.DISPUTE_RAISE_COOLDOWN_HOURS)
        recent = session.scalars(
            select(Dispute.id).where(
                Dispute.milestone_id == milestone_id,
                Dispute.raised_by_id == actor_id,
                Dispute.created_at > since,
            )
        ).first()
        if recent:
            raise ValidationError(
                f"You already raised a dispute on this milestone in the last "
                f"{Config.DISPUTE_RAISE_COOLDOWN_HOURS} hours",
                code=ErrorCodes.RATE_LIMITED,
                details={"milestone_id": milestone_id, "dispute_id": recent},
            )

    # ------------------------------------------------------------------
    # Fee collection
    # ------------------------------------------------------------------

    @service_operation
    async def process_dispute_fee(self, dispute_id: str, payer_id: str, payment_method_ref: str) -> Dict[str, Any]:
        """
        Charge one party's dispute fee. Paying twice is a no-op for that party.

        Once both parties have paid the dispute moves to PENDING_REVIEW and
        the automated review runs immediately.
        """
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            project = dispute.project
            self._require_dispute_party(dispute, payer_id, "pay the dispute fee")
            fee_column = "client_fee_status" if payer_id == project.client_id else "freelancer_fee_status"
            party_status = PartyFeeStatus.parse(getattr(dispute, fee_column))

            if party_status == PartyFeeStatus.PAID:
                logger.info(f"💳 Dispute fee already paid by {payer_id} on {dispute_id}")
                return dispute_to_dict(dispute)
            if party_status == PartyFeeStatus.PROCESSING:
                raise StateConflictError(
                    "Dispute fee payment is already being processed",
                    code=ErrorCodes.OPERATION_IN_FLIGHT,
                    details={"dispute_id": dispute_id, "payer_id": payer_id},
                )
            if dispute.status_enum != DisputeStatus.PENDING_FEE:
                raise StateConflictError(
                    f"Dispute is not awaiting fees (is {dispute.status})",
                    details={"dispute_id": dispute_id},
                )
            if not payment_method_ref:
                raise ValidationError("A payment method is required", code=ErrorCodes.MISSING_REQUIRED_FIELD)

            payer = self._get_user(session, payer_id)
            customer_ref = payer.customer_ref
            fee_amount = dispute.fee_per_party
            fee_currency = dispute.fee_currency
            project_id = project.id

            won = claim(
                session,
                Dispute,
                dispute_id,
                expected={"status": DisputeStatus.PENDING_FEE.value, fee_column: PartyFeeStatus.UNPAID.value},
                updates={fee_column: PartyFeeStatus.PROCESSING.value},
            )
            if not won:
                raise StateConflictError(
                    "Dispute fee payment is already being processed",
                    code=ErrorCodes.OPERATION_IN_FLIGHT,
                    details={"dispute_id": dispute_id, "payer_id": payer_id},
                )

        try:
            gateway_result = await self._call_gateway(
                "create_deposit_intent",
                lambda: self.payment_gateway.create_deposit_intent(
                    amount=to_decimal(fee_amount, fee_currency),
                    currency=fee_currency,
                    description=f"Dispute fee for dispute {dispute_id}",
                    payment_method_ref=payment_method_ref,
                    customer_ref=customer_ref,
                ),
            )
        except Exception:
            with self._session() as session:
                claim(
                    session,
                    Dispute,
                    dispute_id,
                    expected={fee_column: PartyFeeStatus.PROCESSING.value},
                    updates={fee_column: PartyFeeStatus.UNPAID.value},
                )
            raise

        try:
            with self._session() as session:
                dispute = self._get_dispute(session, dispute_id)
                setattr(dispute, fee_column, PartyFeeStatus.PAID.value)
                both_paid = (
                    dispute.client_fee_status == PartyFeeStatus.PAID.value
                    and dispute.freelancer_fee_status == PartyFeeStatus.PAID.value
                )
                dispute.fee_status = (DisputeFeeStatus.PAID if both_paid else DisputeFeeStatus.PARTIALLY_PAID).value
                self.ledger.record_dispute_fee(session, dispute, payer_id, gateway_result)
                self._add_timeline(dispute, "fee_paid", payer_id, f"{fee_column.split('_')[0]} fee paid")
                if both_paid:
                    self._set_status(dispute, DisputeStatus.PENDING_REVIEW)
                    self._add_timeline(dispute, "fees_complete", SYSTEM_ACTOR)
                session.flush()
                snapshot = dispute_to_dict(dispute)
        except Exception as e:
            raise self.ledger.flag_for_reconciliation(
                self.session_factory,
                operation="dispute_fee",
                project_id=project_id,
                dispute_id=dispute_id,
                amount=fee_amount,
                currency=fee_currency,
                error=e,
                gateway_result=gateway_result,
            ) from e

        logger.info(f"💳 Dispute fee {format_amount(fee_amount, fee_currency)} paid by {payer_id} on {dispute_id}")
        self.dispatcher.notify(project_id, "dispute-fee-paid", {"dispute_id": dispute_id, "payer_id": payer_id})

        if both_paid:
            self.dispatcher.notify(project_id, "dispute-fees-complete", {"dispute_id": dispute_id})
            reviewed = await self._automated_review(dispute_id)
            if reviewed is not None:
                snapshot = reviewed
        return snapshot

    # ------------------------------------------------------------------
    # Automated review
    # ------------------------------------------------------------------

    @service_operation
    async def run_automated_review(self, dispute_id: str, actor_id: str) -> Dict[str, Any]:
        """Re-run the review for a dispute left in PENDING_REVIEW"""
        with self._session() as session:
            actor = self._get_user(session, actor_id)
            self._require_role(actor, STAFF_ROLES, "Running a dispute review")
            dispute = self._get_dispute(session, dispute_id)
            if dispute.status_enum != DisputeStatus.PENDING_REVIEW:
                raise StateConflictError(
                    f"Dispute is not pending review (is {dispute.status})",
                    details={"dispute_id": dispute_id},
                )
        reviewed = await self._automated_review(dispute_id)
        if reviewed is None:
            raise StateConflictError(
                "Dispute was moved on by another request during review",
                code=ErrorCodes.CONCURRENT_MODIFICATION,
                details={"dispute_id": dispute_id},
            )
        return reviewed

    def _review_context(self, dispute: Dispute) -> Dict[str, Any]:
        project = dispute.project
        milestone = dispute.milestone
        return {
            "dispute_id": dispute.id,
            "reason": dispute.reason,
            "raised_by": "client" if dispute.raised_by_id == project.client_id else "freelancer",
            "evidence": [e.to_dict() for e in dispute.evidence],
            "project": {"title": project.title, "description": project.description},
            "milestone": {
                "title": milestone.title,
                "description": milestone.description,
                "acceptance_criteria": milestone.acceptance_criteria,
                "amount": str(to_decimal(milestone.amount, milestone.currency)),
                "currency": milestone.currency,
                "deliverables": list(milestone.deliverables or []),
                "submission_notes": milestone.submission_notes,
                "revisions": len(milestone.revision_history),
            },
        }

    async def _analyze(self, context: Dict[str, Any]) -> Optional[DisputeAnalysis]:
        if self.dispute_advisor is None:
            logger.warning("⚠️ No dispute advisor configured, routing to mediation")
            return None
        try:
            return DisputeAnalysis.coerce(await self.dispute_advisor.analyze_dispute(context))
        except Exception as e:
            logger.warning(f"⚠️ Dispute advisor failed for {context['dispute_id']}, routing to mediation: {e}")
            return None

    async def _automated_review(self, dispute_id: str) -> Optional[Dict[str, Any]]:
        """
        Route a PENDING_REVIEW dispute. A confidence score above the threshold
        for either party goes to SELF_RESOLUTION, anything else (including an
        advisor failure) goes to IN_MEDIATION.

        Returns None if the dispute left PENDING_REVIEW meanwhile.
        """
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            if dispute.status_enum != DisputeStatus.PENDING_REVIEW:
                return None
            context = self._review_context(dispute)

        analysis = await self._analyze(context)
        if analysis is not None and analysis.max_confidence > Config.AI_CONFIDENCE_THRESHOLD:
            target = DisputeStatus.SELF_RESOLUTION
        else:
            target = DisputeStatus.IN_MEDIATION

        with self._session() as session:
            won = claim(
                session,
                Dispute,
                dispute_id,
                expected={"status": DisputeStatus.PENDING_REVIEW.value},
                updates={
                    "status": target.value,
                    "status_changed_at": self._now(),
                    "ai_analysis": analysis.to_dict() if analysis else None,
                },
            )
            if not won:
                logger.info(f"⏭️ Dispute {dispute_id} already routed")
                return None
            dispute = self._get_dispute(session, dispute_id)
            note = (
                f"Advisor confidence {analysis.max_confidence}" if analysis else "Advisor unavailable"
            )
            self._add_timeline(dispute, "automated_review", SYSTEM_ACTOR, note)
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(f"🤖 Dispute {dispute_id} routed to {target.value}")
        self.dispatcher.notify(
            snapshot["project_id"], "dispute-review-complete",
            {"dispute_id": dispute_id, "status": target.value},
        )
        return snapshot

    # ------------------------------------------------------------------
    # Mediation
    # ------------------------------------------------------------------

    @service_operation
    async def assign_mediator(self, dispute_id: str, actor_id: str) -> Dict[str, Any]:
        """Staff member takes the dispute as mediator"""
        with self._session() as session:
            actor = self._get_user(session, actor_id)
            self._require_role(actor, MEDIATOR_ROLES, "Mediating a dispute")
            dispute = self._get_dispute(session, dispute_id)
            status = dispute.status_enum
            if status not in (DisputeStatus.SELF_RESOLUTION, DisputeStatus.IN_MEDIATION):
                raise StateConflictError(
                    f"A mediator cannot be assigned while the dispute is {status.value}",
                    details={"dispute_id": dispute_id},
                )
            if dispute.mediator_id and dispute.mediator_id != actor_id:
                raise StateConflictError(
                    "Dispute already has a mediator",
                    details={"dispute_id": dispute_id, "mediator_id": dispute.mediator_id},
                )
            if dispute.mediator_id != actor_id:
                if status == DisputeStatus.SELF_RESOLUTION:
                    self._set_status(dispute, DisputeStatus.IN_MEDIATION)
                dispute.mediator_id = actor_id
                dispute.mediator_assigned_at = self._now()
                self._add_timeline(dispute, "mediator_assigned", actor_id)
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(f"🧑‍⚖️ Mediator {actor_id} assigned to dispute {dispute_id}")
        self.dispatcher.notify(snapshot["project_id"], "mediator-assigned", {"dispute_id": dispute_id, "mediator_id": actor_id})
        return snapshot

    @service_operation
    async def post_message(self, dispute_id: str, actor_id: str, content: str) -> Dict[str, Any]:
        """Append a moderated message, then apply any escalation that is now due"""
        content = InputValidator.validate_text("Message", content, max_length=5000)
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            if not (dispute.project.is_party(actor_id) or actor_id in (dispute.mediator_id, dispute.arbitrator_id)):
                raise AuthorizationError(
                    "Only dispute participants can post messages",
                    details={"dispute_id": dispute_id, "actor_id": actor_id},
                )
            if dispute.status_enum not in MESSAGING_STATES:
                raise StateConflictError(
                    f"Messages cannot be posted while the dispute is {dispute.status}",
                    details={"dispute_id": dispute_id},
                )

        await self._moderate("dispute_message", {"content": content})

        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            if dispute.status_enum not in MESSAGING_STATES:
                raise StateConflictError(
                    f"Messages cannot be posted while the dispute is {dispute.status}",
                    details={"dispute_id": dispute_id},
                )
            dispute.messages.append(DisputeMessage(sender_id=actor_id, content=content, sent_at=self._now()))
            session.flush()
            escalated_to, reasons = self._apply_escalation(session, dispute, SYSTEM_ACTOR)
            session.flush()
            snapshot = dispute_to_dict(dispute)

        self.dispatcher.notify(
            snapshot["project_id"], "dispute-message",
            {"dispute_id": dispute_id, "sender_id": actor_id, "message_count": snapshot["message_count"]},
        )
        if escalated_to is not None:
            self._after_escalation(snapshot, escalated_to, reasons)
        return snapshot

    def _assess_escalation(self, dispute: Dispute, message_count: int) -> Tuple[Optional[DisputeStatus], List[str]]:
        """Target status the dispute should move to, with the rules that fired"""
        now = self._now()
        status = dispute.status_enum
        reasons = []
        if status == DisputeStatus.IN_MEDIATION:
            if (
                dispute.mediator_assigned_at is not None
                and hours_between(dispute.mediator_assigned_at, now) > Config.MEDIATION_ESCALATION_HOURS
            ):
                reasons.append("mediation_timeout")
            if message_count > Config.MEDIATION_MESSAGE_THRESHOLD:
                reasons.append("message_threshold")
            return (DisputeStatus.IN_ARBITRATION if reasons else None), reasons
        if status == DisputeStatus.SELF_RESOLUTION:
            if hours_between(dispute.status_changed_at, now) > Config.SELF_RESOLUTION_ESCALATION_HOURS:
                reasons.append("self_resolution_timeout")
            return (DisputeStatus.IN_MEDIATION if reasons else None), reasons
        return None, reasons

    def _apply_escalation(self, session, dispute: Dispute, actor_id: str) -> Tuple[Optional[DisputeStatus], List[str]]:
        target, reasons = self._assess_escalation(dispute, self._message_count(session, dispute.id))
        if target is None:
            return None, reasons
        self._set_status(dispute, target)
        self._add_timeline(dispute, "escalated", actor_id, ", ".join(reasons))
        return target, reasons

    def _after_escalation(self, snapshot: Dict[str, Any], target: DisputeStatus, reasons: List[str]):
        logger.info(f"⬆️ Dispute {snapshot['id']} escalated to {target.value} ({', '.join(reasons)})")
        self.dispatcher.notify(
            snapshot["project_id"], "dispute-escalated",
            {"dispute_id": snapshot["id"], "status": target.value, "reasons": reasons},
        )
        self.dispatcher.audit(
            "DISPUTE_ESCALATED", SYSTEM_ACTOR, "dispute", snapshot["id"], new_values={"status": target.value},
        )

    @service_operation
    async def evaluate_escalation(self, dispute_id: str) -> Dict[str, Any]:
        """Advisory only; never changes the dispute"""
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            message_count = self._message_count(session, dispute_id)
            target, reasons = self._assess_escalation(dispute, message_count)
            hours_in_mediation = (
                round(hours_between(dispute.mediator_assigned_at, self._now()), 2)
                if dispute.mediator_assigned_at else None
            )
            return {
                "dispute_id": dispute_id,
                "status": dispute.status,
                "should_escalate": target is not None,
                "target_status": target.value if target else None,
                "reasons": reasons,
                "message_count": message_count,
                "message_threshold": Config.MEDIATION_MESSAGE_THRESHOLD,
                "hours_in_mediation": hours_in_mediation,
                "escalation_hours": Config.MEDIATION_ESCALATION_HOURS,
            }

    @service_operation
    async def check_mediation_escalation(self, dispute_id: str) -> Dict[str, Any]:
        """Apply a due escalation; a no-op when nothing is due"""
        return self._escalate_one(dispute_id)

    def _escalate_one(self, dispute_id: str) -> Dict[str, Any]:
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            target, reasons = self._apply_escalation(session, dispute, SYSTEM_ACTOR)
            session.flush()
            snapshot = dispute_to_dict(dispute)
        if target is not None:
            self._after_escalation(snapshot, target, reasons)
        return {"escalated": target is not None, "reasons": reasons, "dispute": snapshot}

    async def process_escalations(self) -> Dict[str, int]:
        """Sweep disputes in self-resolution or mediation and apply due escalations"""
        stats = {"checked": 0, "escalated": 0, "failed": 0}
        with self._session() as session:
            candidates = session.scalars(
                select(Dispute.id)
                .where(Dispute.status.in_([DisputeStatus.SELF_RESOLUTION.value, DisputeStatus.IN_MEDIATION.value]))
                .order_by(Dispute.status_changed_at)
            ).all()

        for dispute_id in candidates:
            stats["checked"] += 1
            try:
                if self._escalate_one(dispute_id)["escalated"]:
                    stats["escalated"] += 1
            except EscrowDomainError as e:
                stats["failed"] += 1
                logger.warning(f"⚠️ Escalation check failed for {dispute_id}: {e.message}")

        if stats["checked"]:
            logger.info(
                f"⚖️ Escalation sweep: checked={stats['checked']} escalated={stats['escalated']} failed={stats['failed']}"
            )
        return stats

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------

    @service_operation
    async def assign_arbitrator(self, dispute_id: str, actor_id: str, arbitrator_id: str) -> Dict[str, Any]:
        """Admin assigns an arbitrator, moving the dispute into arbitration if needed"""
        with self._session() as session:
            actor = self._get_user(session, actor_id)
            self._require_role(actor, [UserRole.ADMIN], "Assigning an arbitrator")
            arbitrator = self._get_user(session, arbitrator_id)
            self._require_role(arbitrator, [UserRole.ARBITRATOR], "Arbitrating a dispute")
            dispute = self._get_dispute(session, dispute_id)
            if dispute.status_enum not in RESOLVABLE_STATES:
                raise StateConflictError(
                    f"An arbitrator cannot be assigned while the dispute is {dispute.status}",
                    details={"dispute_id": dispute_id},
                )
            if dispute.resolution_in_flight:
                raise StateConflictError(
                    "Dispute resolution is being processed",
                    code=ErrorCodes.OPERATION_IN_FLIGHT,
                    details={"dispute_id": dispute_id},
                )
            if dispute.status_enum != DisputeStatus.IN_ARBITRATION:
                self._set_status(dispute, DisputeStatus.IN_ARBITRATION)
            dispute.arbitrator_id = arbitrator_id
            dispute.arbitrator_assigned_at = self._now()
            self._add_timeline(dispute, "arbitrator_assigned", actor_id, arbitrator_id)
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(f"⚖️ Arbitrator {arbitrator_id} assigned to dispute {dispute_id}")
        self.dispatcher.notify(
            snapshot["project_id"], "arbitrator-assigned", {"dispute_id": dispute_id, "arbitrator_id": arbitrator_id}
        )
        self.dispatcher.audit(
            "ARBITRATOR_ASSIGNED", actor_id, "dispute", dispute_id, new_values={"arbitrator_id": arbitrator_id}
        )
        return snapshot

    @staticmethod
    def _validate_resolution_amounts(
        decision: ResolutionDecision, milestone_amount: int, to_freelancer, to_client
    ) -> Tuple[int, int]:
        if decision == ResolutionDecision.REVISION_REQUIRED:
            if to_freelancer or to_client:
                raise ValidationError(
                    "A revision decision cannot move funds", code=ErrorCodes.INVALID_AMOUNT
                )
            return 0, 0

        for label, value in (("Amount to freelancer", to_freelancer), ("Amount to client", to_client)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(
                    f"{label} must be a non-negative integer in minor units", code=ErrorCodes.INVALID_AMOUNT
                )
        if to_freelancer + to_client != milestone_amount:
            raise ValidationError(
                f"Resolution amounts ({to_freelancer} + {to_client}) must equal the milestone amount "
                f"({milestone_amount}) exactly",
                code=ErrorCodes.INVALID_AMOUNT,
                details={
                    "amount_to_freelancer": to_freelancer,
                    "amount_to_client": to_client,
                    "milestone_amount": milestone_amount,
                },
            )
        if decision == ResolutionDecision.FULL_PAYMENT_TO_FREELANCER and to_client != 0:
            raise ValidationError("Full payment cannot refund the client", code=ErrorCodes.INVALID_AMOUNT)
        if decision == ResolutionDecision.FULL_REFUND_TO_CLIENT and to_freelancer != 0:
            raise ValidationError("Full refund cannot pay the freelancer", code=ErrorCodes.INVALID_AMOUNT)
        if decision == ResolutionDecision.PARTIAL_PAYMENT and (to_freelancer == 0 or to_client == 0):
            raise ValidationError(
                "Partial payment must pay both parties a non-zero amount", code=ErrorCodes.INVALID_AMOUNT
            )
        return to_freelancer, to_client

    @service_operation
    async def resolve_dispute(
        self,
        dispute_id: str,
        actor_id: str,
        decision,
        amount_to_freelancer: int = 0,
        amount_to_client: int = 0,
        decision_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record the binding decision and move the disputed milestone's funds.

        Freelancer payout and client refund each go through the gateway before
        the RESOLVED status and ledger entries are committed.
        """
        try:
            decision = ResolutionDecision.parse(decision)
        except ValueError as e:
            raise ValidationError(str(e), code=ErrorCodes.INVALID_INPUT) from e
        decision_reason = InputValidator.validate_text("Decision reason", decision_reason, max_length=5000)

        with self._session() as session:
            actor = self._get_user(session, actor_id)
            dispute = self._get_dispute(session, dispute_id)
            if actor_id != dispute.arbitrator_id:
                self._require_role(actor, [UserRole.ADMIN], "Resolving a dispute you are not arbitrating")
            current = dispute.status_enum
            if current not in RESOLVABLE_STATES:
                raise StateConflictError(
                    f"Dispute cannot be resolved from {current.value}", details={"dispute_id": dispute_id}
                )
            if dispute.resolution_in_flight:
                raise StateConflictError(
                    "Dispute resolution is already being processed",
                    code=ErrorCodes.OPERATION_IN_FLIGHT,
                    details={"dispute_id": dispute_id},
                )
            milestone = dispute.milestone
            project = dispute.project
            if milestone.status_enum != MilestoneStatus.DISPUTED:
                raise StateConflictError(
                    f"Disputed milestone is {milestone.status}, expected disputed",
                    details={"milestone_id": milestone.id},
                )
            to_freelancer, to_client = self._validate_resolution_amounts(
                decision, milestone.amount, amount_to_freelancer, amount_to_client
            )
            moves_funds = decision != ResolutionDecision.REVISION_REQUIRED

            if not moves_funds:
                self._settle_resolution(
                    session, dispute, decision, 0, 0, decision_reason, actor_id, None, None
                )
                session.flush()
                snapshot = dispute_to_dict(dispute)
            else:
                self.ledger.ensure_available(project, milestone.amount)
                payout_account_id = project.freelancer.payout_account_id if project.freelancer else None
                if to_freelancer and not payout_account_id:
                    raise ValidationError(
                        "Freelancer has no payout account configured",
                        code=ErrorCodes.MISSING_REQUIRED_FIELD,
                        details={"freelancer_id": project.freelancer_id},
                    )
                customer_ref = project.client.customer_ref
                currency = milestone.currency
                project_id = project.id
                milestone_title = milestone.title
                won = claim(
                    session,
                    Dispute,
                    dispute_id,
                    expected={"status": current.value, "resolution_in_flight": False},
                    updates={"resolution_in_flight": True},
                )
                if not won:
                    raise StateConflictError(
                        "Dispute resolution is already being processed",
                        code=ErrorCodes.OPERATION_IN_FLIGHT,
                        details={"dispute_id": dispute_id},
                    )
                snapshot = None

        if snapshot is not None:
            self._after_resolution(snapshot, actor_id, decision)
            return snapshot

        payout_result = None
        if to_freelancer:
            try:
                payout_result = await self._call_gateway(
                    "transfer_to_freelancer",
                    lambda: self.payment_gateway.transfer_to_freelancer(
                        amount=to_decimal(to_freelancer, currency),
                        currency=currency,
                        payout_account_id=payout_account_id,
                        description=f"Dispute resolution payment for milestone: {milestone_title}",
                    ),
                )
            except Exception:
                self._release_resolution_claim(dispute_id)
                raise

        refund_result = None
        if to_client:
            try:
                refund_result = await self._call_gateway(
                    "refund_to_client",
                    lambda: self.payment_gateway.refund_to_client(
                        amount=to_decimal(to_client, currency),
                        currency=currency,
                        customer_ref=customer_ref,
                        description=f"Dispute resolution refund for milestone: {milestone_title}",
                    ),
                )
            except Exception as e:
                if payout_result is None:
                    self._release_resolution_claim(dispute_id)
                    raise
                # The freelancer was already paid, so the claim stays set
                raise self.ledger.flag_for_reconciliation(
                    self.session_factory,
                    operation="dispute_resolution",
                    project_id=project_id,
                    dispute_id=dispute_id,
                    amount=to_freelancer,
                    currency=currency,
                    error=e,
                    gateway_result=payout_result,
                ) from e

        try:
            with self._session() as session:
                dispute = self._get_dispute(session, dispute_id)
                self._settle_resolution(
                    session, dispute, decision, to_freelancer, to_client, decision_reason,
                    actor_id, payout_result, refund_result,
                )
                session.flush()
                snapshot = dispute_to_dict(dispute)
        except Exception as e:
            raise self.ledger.flag_for_reconciliation(
                self.session_factory,
                operation="dispute_resolution",
                project_id=project_id,
                dispute_id=dispute_id,
                amount=to_freelancer + to_client,
                currency=currency,
                error=e,
                gateway_result=payout_result or refund_result,
            ) from e

        logger.info(
            f"⚖️ Dispute {dispute_id} resolved ({decision.value}): "
            f"{format_amount(to_freelancer, currency)} to freelancer, {format_amount(to_client, currency)} to client"
        )
        self._after_resolution(snapshot, actor_id, decision)
        return snapshot

    def _settle_resolution(
        self, session, dispute: Dispute, decision: ResolutionDecision, to_freelancer: int, to_client: int,
        decision_reason: str, actor_id: str, payout_result, refund_result,
    ):
        milestone = dispute.milestone
        project = dispute.project
        now = self._now()

        self._set_status(dispute, DisputeStatus.RESOLVED)
        dispute.resolution_decision = decision.value
        dispute.resolution_amount_to_freelancer = to_freelancer
        dispute.resolution_amount_to_client = to_client
        dispute.resolution_reason = decision_reason
        dispute.resolved_by_id = actor_id
        dispute.resolved_at = now
        dispute.resolution_funds_moved = bool(to_freelancer or to_client)
        dispute.resolution_in_flight = False

        if to_freelancer:
            self.ledger.apply_release(project, to_freelancer)
            self.ledger.record_dispute_payment(
                session, dispute, milestone, to_freelancer, project.freelancer_id, payout_result
            )
        if to_client:
            self.ledger.apply_refund(project, to_client)
            self.ledger.record_dispute_refund(session, dispute, milestone, to_client, project.client_id, refund_result)

        if decision in PAYMENT_DECISIONS:
            MilestoneStateValidator.ensure_transition(milestone.status, MilestoneStatus.APPROVED, milestone.id)
            milestone.status = MilestoneStatus.APPROVED.value
            milestone.approved_at = now
        elif decision == ResolutionDecision.REVISION_REQUIRED:
            MilestoneStateValidator.ensure_transition(
                milestone.status, MilestoneStatus.REVISION_REQUESTED, milestone.id
            )
            milestone.status = MilestoneStatus.REVISION_REQUESTED.value
            milestone.revision_history.append(
                MilestoneRevision(requested_by=actor_id, notes=decision_reason, requested_at=now)
            )
        # Stays DISPUTED: under revision, a resubmit and approve would pay out of other milestones' escrow

        self._add_timeline(dispute, "resolved", actor_id, decision.value)
        self._log_activity(
            project, ActivityAction.DISPUTE_RESOLVED, actor_id,
            {
                "dispute_id": dispute.id,
                "decision": decision.value,
                "amount_to_freelancer": to_freelancer,
                "amount_to_client": to_client,
            },
        )
        self._roll_up_project(session, project, actor_id)

    def _release_resolution_claim(self, dispute_id: str):
        with self._session() as session:
            claim(
                session,
                Dispute,
                dispute_id,
                expected={"resolution_in_flight": True},
                updates={"resolution_in_flight": False},
            )
        logger.info(f"🔓 Released resolution claim on dispute {dispute_id}")

    def _after_resolution(self, snapshot: Dict[str, Any], actor_id: str, decision: ResolutionDecision):
        self.dispatcher.notify(
            snapshot["project_id"], "dispute-resolved",
            {"dispute_id": snapshot["id"], "resolution": snapshot["resolution"]},
        )
        self.dispatcher.audit(
            "DISPUTE_RESOLVED", actor_id, "dispute", snapshot["id"],
            new_values={"status": "resolved", "decision": decision.value},
        )

    # ------------------------------------------------------------------
    # Appeals
    # ------------------------------------------------------------------

    @service_operation
    async def submit_appeal(
        self,
        dispute_id: str,
        actor_id: str,
        reason: str,
        evidence: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """One appeal per resolved dispute, by either party, inside the appeal window"""
        reason = InputValidator.validate_dispute_reason(reason)
        files = InputValidator.validate_evidence_files(evidence)
        now = self._now()

        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            self._require_dispute_party(dispute, actor_id, "appeal this dispute")
            self._check_appealable(dispute, now)

        await self._moderate("appeal", {"reason": reason, "evidence": [f.filename for f in files]})

        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            self._check_appealable(dispute, now)
            appeal = DisputeAppeal(
                appellant_id=actor_id,
                reason=reason,
                status=AppealStatus.PENDING.value,
                previous_resolution=dispute.resolution,
                submitted_at=now,
            )
            dispute.appeal = appeal
            session.flush()
            for row in self._evidence_rows(files, actor_id, now):
                row.appeal_id = appeal.id
                dispute.evidence.append(row)
            self._add_timeline(dispute, "appeal_submitted", actor_id, reason)
            # Touch the dispute row so a racing second appeal loses on version
            dispute.updated_at = now
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(f"📣 Appeal submitted on dispute {dispute_id} by {actor_id}")
        self.dispatcher.notify(snapshot["project_id"], "appeal-submitted", {"dispute_id": dispute_id})
        self.dispatcher.audit("APPEAL_SUBMITTED", actor_id, "dispute", dispute_id, new_values={"appeal": "pending"})
        return snapshot

    @staticmethod
    def _check_appealable(dispute: Dispute, now):
        if dispute.status_enum != DisputeStatus.RESOLVED:
            raise StateConflictError(
                f"Only resolved disputes can be appealed (is {dispute.status})",
                code=ErrorCodes.APPEAL_NOT_ALLOWED,
                details={"dispute_id": dispute.id},
            )
        if dispute.appeal is not None:
            raise StateConflictError(
                "This dispute has already been appealed",
                code=ErrorCodes.APPEAL_NOT_ALLOWED,
                details={"dispute_id": dispute.id},
            )
        deadline = dispute.resolved_at + timedelta(days=Config.APPEAL_WINDOW_DAYS)
        if now > deadline:
            raise StateConflictError(
                f"The appeal window closed {Config.APPEAL_WINDOW_DAYS} days after resolution",
                code=ErrorCodes.APPEAL_NOT_ALLOWED,
                details={"dispute_id": dispute.id, "deadline": deadline.isoformat()},
            )

    @service_operation
    async def review_appeal(
        self, dispute_id: str, actor_id: str, decision, review_notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        APPROVED reopens the dispute in arbitration and discards the prior
        resolution. Only revision_required resolutions, which moved no funds,
        can be reopened. Money already released or refunded is never clawed
        back, so approving an appeal against a release, refund or split fails
        with APPEAL_NOT_ALLOWED and the appeal can only be rejected.
        REJECTED leaves the resolution standing.
        """
        try:
            outcome = AppealStatus.parse(decision)
        except ValueError as e:
            raise ValidationError(str(e), code=ErrorCodes.INVALID_INPUT) from e
        if outcome == AppealStatus.PENDING:
            raise ValidationError("Appeal decision must be approved or rejected", code=ErrorCodes.INVALID_INPUT)
        review_notes = InputValidator.validate_text("Review notes", review_notes, required=False)
        now = self._now()

        with self._session() as session:
            actor = self._get_user(session, actor_id)
            self._require_role(actor, STAFF_ROLES, "Reviewing an appeal")
            dispute = self._get_dispute(session, dispute_id)
            appeal = dispute.appeal
            if appeal is None or appeal.status != AppealStatus.PENDING.value:
                raise StateConflictError(
                    "No pending appeal on this dispute", details={"dispute_id": dispute_id}
                )

            if outcome == AppealStatus.APPROVED:
                self._reopen_dispute(session, dispute, actor_id)

            appeal.status = outcome.value
            appeal.reviewed_by_id = actor_id
            appeal.review_notes = review_notes
            appeal.reviewed_at = now
            self._add_timeline(dispute, f"appeal_{outcome.value}", actor_id, review_notes)
            dispute.updated_at = now
            session.flush()
            snapshot = dispute_to_dict(dispute)

        logger.info(f"📣 Appeal on dispute {dispute_id} {outcome.value} by {actor_id}")
        self.dispatcher.notify(
            snapshot["project_id"], "appeal-reviewed", {"dispute_id": dispute_id, "decision": outcome.value}
        )
        self.dispatcher.audit(
            "APPEAL_REVIEWED", actor_id, "dispute", dispute_id,
            old_values={"appeal": "pending"}, new_values={"appeal": outcome.value, "status": snapshot["status"]},
        )
        return snapshot

    def _reopen_dispute(self, session, dispute: Dispute, actor_id: str):
        if dispute.resolution_funds_moved:
            raise StateConflictError(
                "The resolution already moved funds and cannot be reopened; reject the appeal instead",
                code=ErrorCodes.APPEAL_NOT_ALLOWED,
                details={"dispute_id": dispute.id},
            )
        milestone = dispute.milestone
        project = dispute.project
        self._check_no_open_dispute(session, milestone.id)

        MilestoneStateValidator.ensure_transition(milestone.status, MilestoneStatus.DISPUTED, milestone.id)
        if milestone.payout_in_flight:
            raise StateConflictError(
                "Milestone payout is being processed",
                code=ErrorCodes.OPERATION_IN_FLIGHT,
                details={"milestone_id": milestone.id},
            )
        milestone.status = MilestoneStatus.DISPUTED.value
        if project.status_enum != ProjectStatus.DISPUTED:
            ProjectStateValidator.ensure_transition(project.status, ProjectStatus.DISPUTED, project.id)
            project.status = ProjectStatus.DISPUTED.value

        self._set_status(dispute, DisputeStatus.IN_ARBITRATION)
        dispute.resolution_decision = None
        dispute.resolution_amount_to_freelancer = None
        dispute.resolution_amount_to_client = None
        dispute.resolution_reason = None
        dispute.resolved_by_id = None
        dispute.resolved_at = None
        self._log_activity(
            project, ActivityAction.DISPUTE_REOPENED, actor_id,
            {"dispute_id": dispute.id, "milestone_id": milestone.id},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @service_operation
    async def get_dispute(self, dispute_id: str) -> Dict[str, Any]:
        with self._session() as session:
            return dispute_to_dict(self._get_dispute(session, dispute_id))

    @service_operation
    async def list_user_disputes(self, user_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """Disputes on projects where the user is the client or the freelancer, newest first"""
        wanted = self._parse_status_filter(DisputeStatus, status)
        with self._session() as session:
            self._get_user(session, user_id)
            query = (
                select(Dispute)
                .join(Project, Dispute.project_id == Project.id)
                .where((Project.client_id == user_id) | (Project.freelancer_id == user_id))
            )
            if wanted is not None:
                query = query.where(Dispute.status == wanted.value)
            rows = session.scalars(query.order_by(Dispute.created_at.desc(), Dispute.id)).all()
            return [dispute_to_dict(d) for d in rows]

    @service_operation
    async def get_dispute_report(self, dispute_id: str, actor_id: str) -> Dict[str, Any]:
        """Full dispute record for participants and staff"""
        with self._session() as session:
            dispute = self._get_dispute(session, dispute_id)
            actor = self._get_user(session, actor_id)
            if not dispute.project.is_party(actor_id):
                self._require_role(actor, MEDIATOR_ROLES, "Viewing a dispute report")

            message_count = self._message_count(session, dispute_id)
            target, reasons = self._assess_escalation(dispute, message_count)
            transactions = session.scalars(
                select(Transaction)
                .where(Transaction.dispute_id == dispute_id)
                .order_by(Transaction.created_at, Transaction.id)
            ).all()
            project = dispute.project
            return {
                "dispute": dispute_to_dict(dispute),
                "project": {
                    "id": project.id,
                    "title": project.title,
                    "status": project.status,
                    "client_id": project.client_id,
                    "freelancer_id": project.freelancer_id,
                    "escrow": project.escrow,
                },
                "milestone": milestone_to_dict(dispute.milestone),
                "messages": [
                    {
                        "sender_id": m.sender_id,
                        "content": m.content,
                        "sent_at": isoformat_or_none(m.sent_at),
                    }
                    for m in dispute.messages
                ],
                "transactions": [transaction_to_dict(t) for t in transactions],
                "escalation": {
                    "should_escalate": target is not None,
                    "target_status": target.value if target else None,
                    "reasons": reasons,
                },
            }
