"""
Milestone Escrow Marketplace - Database Schema
==============================================

Schema for the escrow core:
- Projects owning an escrow balance and an ordered list of milestones
- Milestone delivery, approval and release
- Append-only ledger of fund movements with fee breakdowns
- Dispute resolution (fees, automated review, mediation, arbitration, appeal)

Amounts are integers in minor units of their currency (cents, satoshi, wei).
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON,
)
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.types import TypeDecorator

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# COLUMN TYPES
# ============================================================================

class MinorUnitAmount(TypeDecorator):
    """
    Exact integer amount in minor units.

    Wei-scale values overflow BIGINT, so PostgreSQL stores NUMERIC(38, 0) and
    other dialects store the decimal string. Python always sees int.
    """

    impl = String(48)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(38, 0))
        return dialect.type_descriptor(String(48))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Minor-unit amounts must be int, got {type(value).__name__}")
        if dialect.name == "postgresql":
            return Decimal(value)
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class PercentValue(TypeDecorator):
    """Exact fee percentage (NUMERIC on PostgreSQL, string elsewhere)"""

    impl = String(16)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(6, 3))
        return dialect.type_descriptor(String(16))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(str(value))
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(str(value))


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class StatusEnum(Enum):
    """Closed status vocabulary; unknown values are rejected at the boundary"""

    @classmethod
    def parse(cls, value: Any):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown {cls.__name__}: {value!r}")

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class UserRole(StatusEnum):
    CLIENT = "client"
    FREELANCER = "freelancer"
    ADMIN = "admin"
    ARBITRATOR = "arbitrator"
    MEDIATOR = "mediator"


class ProjectStatus(StatusEnum):
    """Project lifecycle states"""
    DRAFT = "draft"
    PENDING_ACCEPTANCE = "pending_acceptance"
    AWAITING_DEPOSIT = "awaiting_deposit"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ARCHIVED = "archived"


class EscrowStatus(StatusEnum):
    """Escrow balance state carried on the project"""
    NOT_DEPOSITED = "not_deposited"
    HELD = "held"
    PARTIALLY_RELEASED = "partially_released"
    RELEASED = "released"
    REFUNDED = "refunded"


class MilestoneStatus(StatusEnum):
    """Milestone lifecycle states"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    DISPUTED = "disputed"


class DisputeStatus(StatusEnum):
    """Dispute lifecycle states"""
    PENDING_FEE = "pending_fee"
    PENDING_REVIEW = "pending_review"
    SELF_RESOLUTION = "self_resolution"
    IN_MEDIATION = "in_mediation"
    IN_ARBITRATION = "in_arbitration"
    RESOLVED = "resolved"

    @classmethod
    def parse(cls, value: Any):
        # Legacy status checks still say "escalated"
        if str(value or "").strip().lower() == "escalated":
            return cls.IN_ARBITRATION
        return super().parse(value)


class DisputeFeeStatus(StatusEnum):
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"


class PartyFeeStatus(StatusEnum):
    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"


class ResolutionDecision(StatusEnum):
    FULL_PAYMENT_TO_FREELANCER = "full_payment_to_freelancer"
    PARTIAL_PAYMENT = "partial_payment"
    FULL_REFUND_TO_CLIENT = "full_refund_to_client"
    REVISION_REQUIRED = "revision_required"


class AppealStatus(StatusEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionType(StatusEnum):
    DEPOSIT = "deposit"
    MILESTONE_RELEASE = "milestone_release"
    DISPUTE_PAYMENT = "dispute_payment"
    DISPUTE_REFUND = "dispute_refund"
    DISPUTE_FEE = "dispute_fee"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class TransactionStatus(StatusEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ActivityAction(StatusEnum):
    """Entries written to a project's activity log"""
    PROJECT_CREATED = "project_created"
    FREELANCER_INVITED = "freelancer_invited"
    INVITATION_ACCEPTED = "invitation_accepted"
    COUNTER_PROPOSALS_SUBMITTED = "counter_proposals_submitted"
    FUNDS_DEPOSITED = "funds_deposited"
    PROJECT_CANCELLED = "project_cancelled"
    ESCROW_REFUNDED = "escrow_refunded"
    PROJECT_ARCHIVED = "project_archived"
    PROJECT_DUPLICATED = "project_duplicated"
    PROJECT_COMPLETED = "project_completed"
    MILESTONE_CREATED = "milestone_created"
    MILESTONE_STARTED = "milestone_started"
    MILESTONE_SUBMITTED = "milestone_submitted"
    MILESTONE_RESUBMITTED = "milestone_resubmitted"
    MILESTONE_APPROVED = "milestone_approved"
    MILESTONE_AUTO_APPROVED = "milestone_auto_approved"
    REVISION_REQUESTED = "revision_requested"
    AUTO_APPROVAL_WARNING_SENT = "auto_approval_warning_sent"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    DISPUTE_REOPENED = "dispute_reopened"


SYSTEM_ACTOR = "SYSTEM"


# ============================================================================
# USERS
# ============================================================================

class User(Base):
    """Marketplace participant; authentication lives outside this service"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CLIENT.value)
    payout_account_id = Column(String(255), nullable=True)
    customer_ref = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_users_role", "role"),
    )

    @property
    def role_enum(self) -> UserRole:
        return UserRole.parse(self.role)

    def __repr__(self):
        return f"<User(id={self.id}, role={self.role})>"


# ============================================================================
# PROJECTS AND MILESTONES
# ============================================================================

class Project(Base):
    """Client project holding the escrow balance for its milestones"""
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(100), nullable=True)

    client_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    freelancer_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    budget = Column(MinorUnitAmount, nullable=False)
    currency = Column(String(10), nullable=False, default="USD")
    deadline = Column(DateTime, nullable=False)
    status = Column(String(32), nullable=False, default=ProjectStatus.DRAFT.value)

    # Escrow balance, minor units of the project currency
    escrow_status = Column(String(32), nullable=False, default=EscrowStatus.NOT_DEPOSITED.value)
    escrow_total_held = Column(MinorUnitAmount, nullable=False, default=0)
    escrow_total_released = Column(MinorUnitAmount, nullable=False, default=0)
    escrow_total_refunded = Column(MinorUnitAmount, nullable=False, default=0)
    escrow_remaining = Column(MinorUnitAmount, nullable=False, default=0)

    # Payment schedule
    client_fee_percent = Column(PercentValue, nullable=False)
    freelancer_fee_percent = Column(PercentValue, nullable=False)
    total_fee_percent = Column(PercentValue, nullable=False)
    auto_approve_days = Column(Integer, nullable=False, default=7)

    # Set while a gateway call for this project is outstanding
    operation_in_flight = Column(String(32), nullable=True)

    counter_proposals = Column(JSON, nullable=True)
    source_project_id = Column(String(36), nullable=True)

    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    version = Column(Integer, nullable=False)

    client = relationship("User", foreign_keys=[client_id])
    freelancer = relationship("User", foreign_keys=[freelancer_id])
    milestones = relationship(
        "Milestone",
        back_populates="project",
        order_by="Milestone.position",
        cascade="all, delete-orphan",
    )
    activities = relationship(
        "ProjectActivity",
        back_populates="project",
        order_by="ProjectActivity.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("auto_approve_days > 0", name="ck_project_auto_approve_days"),
        Index("ix_projects_client", "client_id"),
        Index("ix_projects_freelancer", "freelancer_id"),
        Index("ix_projects_status", "status"),
    )

    @property
    def status_enum(self) -> ProjectStatus:
        return ProjectStatus.parse(self.status)

    @property
    def escrow(self) -> Dict[str, Any]:
        return {
            "status": self.escrow_status,
            "total_held": self.escrow_total_held,
            "total_released": self.escrow_total_released,
            "total_refunded": self.escrow_total_refunded,
            "remaining": self.escrow_remaining,
        }

    @property
    def payment_schedule(self) -> Dict[str, Any]:
        return {
            "client_fee_percent": self.client_fee_percent,
            "freelancer_fee_percent": self.freelancer_fee_percent,
            "total_fee_percent": self.total_fee_percent,
            "auto_approve_days": self.auto_approve_days,
        }

    @property
    def active_milestones(self):
        return [m for m in self.milestones if m.cancelled_at is None]

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.freelancer_id)

    def __repr__(self):
        return f"<Project(id={self.id}, status={self.status}, budget={self.budget} {self.currency})>"


class Milestone(Base):
    """Separately payable unit of project work"""
    __tablename__ = "milestones"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(MinorUnitAmount, nullable=False)
    currency = Column(String(10), nullable=False)
    deadline = Column(DateTime, nullable=True)
    acceptance_criteria = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=MilestoneStatus.PENDING.value)

    deliverables = Column(JSON, nullable=False, default=list)
    submission_notes = Column(Text, nullable=True)
    auto_approved = Column(Boolean, nullable=False, default=False)
    # Set while the release transfer is outstanding
    payout_in_flight = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    auto_approval_warned_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    version = Column(Integer, nullable=False)

    project = relationship("Project", back_populates="milestones")
    revision_history = relationship(
        "MilestoneRevision",
        back_populates="milestone",
        order_by="MilestoneRevision.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_milestones_project", "project_id"),
        Index("ix_milestones_status_submitted", "status", "submitted_at"),
    )

    @property
    def status_enum(self) -> MilestoneStatus:
        return MilestoneStatus.parse(self.status)

    def __repr__(self):
        return f"<Milestone(id={self.id}, status={self.status}, amount={self.amount} {self.currency})>"


class MilestoneRevision(Base):
    """Append-only revision request history"""
    __tablename__ = "milestone_revisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=False)
    requested_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    notes = Column(Text, nullable=False)
    requested_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    milestone = relationship("Milestone", back_populates="revision_history")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "requested_by": self.requested_by,
            "notes": self.notes,
        }


class ProjectActivity(Base):
    """Append-only project activity log"""
    __tablename__ = "project_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    action = Column(String(64), nullable=False)
    performed_by = Column(String(36), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    project = relationship("Project", back_populates="activities")

    __table_args__ = (
        Index("ix_project_activities_project", "project_id"),
    )

    def __repr__(self):
        return f"<ProjectActivity(project_id={self.project_id}, action={self.action}, by={self.performed_by})>"


# ============================================================================
# LEDGER
# ============================================================================

class Transaction(Base):
    """Immutable ledger entry; only status may change after creation"""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=True)

    transaction_type = Column(String(32), nullable=False)
    amount = Column(MinorUnitAmount, nullable=False)
    currency = Column(String(10), nullable=False)
    # None represents the escrow account
    from_user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    to_user_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    status = Column(String(16), nullable=False, default=TransactionStatus.PENDING.value)
    provider = Column(String(64), nullable=True)
    provider_transaction_id = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    fee_client = Column(MinorUnitAmount, nullable=False, default=0)
    fee_freelancer = Column(MinorUnitAmount, nullable=False, default=0)
    fee_platform = Column(MinorUnitAmount, nullable=False, default=0)
    fee_payment_processor = Column(MinorUnitAmount, nullable=False, default=0)
    fee_total = Column(MinorUnitAmount, nullable=False, default=0)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_transactions_project", "project_id"),
        Index("ix_transactions_milestone", "milestone_id"),
        Index("ix_transactions_dispute", "dispute_id"),
        Index("ix_transactions_type_status", "transaction_type", "status"),
    )

    @property
    def fees(self) -> Dict[str, int]:
        return {
            "client": self.fee_client,
            "freelancer": self.fee_freelancer,
            "platform": self.fee_platform,
            "payment_processor": self.fee_payment_processor,
            "total": self.fee_total,
        }

    def __repr__(self):
        return (
            f"<Transaction(type={self.transaction_type}, amount={self.amount} {self.currency}, "
            f"status={self.status})>"
        )


class ReconciliationRecord(Base):
    """Money moved at the gateway but the ledger write failed; needs manual review"""
    __tablename__ = "reconciliation_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(36), nullable=False)
    milestone_id = Column(String(36), nullable=True)
    dispute_id = Column(String(36), nullable=True)
    operation = Column(String(64), nullable=False)
    amount = Column(MinorUnitAmount, nullable=False)
    currency = Column(String(10), nullable=False)
    provider_transaction_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    def __repr__(self):
        return f"<ReconciliationRecord(operation={self.operation}, project_id={self.project_id})>"


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Dispute over a single milestone"""
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=generate_id)
    project_id = Column(String(36), ForeignKey("projects.id"), nullable=False)
    milestone_id = Column(String(36), ForeignKey("milestones.id"), nullable=False)
    raised_by_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(32), nullable=False, default=DisputeStatus.PENDING_FEE.value)
    status_changed_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    # Flat dispute fee, minor units of fee_currency
    fee_per_party = Column(MinorUnitAmount, nullable=False)
    fee_total = Column(MinorUnitAmount, nullable=False)
    fee_currency = Column(String(10), nullable=False)
    fee_status = Column(String(16), nullable=False, default=DisputeFeeStatus.PENDING.value)
    client_fee_status = Column(String(16), nullable=False, default=PartyFeeStatus.UNPAID.value)
    freelancer_fee_status = Column(String(16), nullable=False, default=PartyFeeStatus.UNPAID.value)

    ai_analysis = Column(JSON, nullable=True)

    mediator_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    mediator_assigned_at = Column(DateTime, nullable=True)
    arbitrator_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    arbitrator_assigned_at = Column(DateTime, nullable=True)

    resolution_decision = Column(String(40), nullable=True)
    resolution_amount_to_freelancer = Column(MinorUnitAmount, nullable=True)
    resolution_amount_to_client = Column(MinorUnitAmount, nullable=True)
    resolution_reason = Column(Text, nullable=True)
    resolved_by_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_funds_moved = Column(Boolean, nullable=False, default=False)
    # Set while resolution transfers are outstanding
    resolution_in_flight = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    version = Column(Integer, nullable=False)

    project = relationship("Project")
    milestone = relationship("Milestone")
    evidence = relationship(
        "DisputeEvidence",
        back_populates="dispute",
        order_by="DisputeEvidence.id",
        cascade="all, delete-orphan",
    )
    messages = relationship(
        "DisputeMessage",
        back_populates="dispute",
        order_by="DisputeMessage.id",
        cascade="all, delete-orphan",
    )
    timeline = relationship(
        "DisputeTimelineEntry",
        back_populates="dispute",
        order_by="DisputeTimelineEntry.id",
        cascade="all, delete-orphan",
    )
    appeal = relationship(
        "DisputeAppeal",
        back_populates="dispute",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_disputes_milestone", "milestone_id"),
        Index("ix_disputes_project", "project_id"),
        Index("ix_disputes_status", "status"),
        Index("ix_disputes_raised_by", "raised_by_id", "milestone_id", "created_at"),
    )

    @property
    def status_enum(self) -> DisputeStatus:
        return DisputeStatus.parse(self.status)

    @property
    def dispute_fee(self) -> Dict[str, Any]:
        return {
            "client_fee": self.fee_per_party,
            "freelancer_fee": self.fee_per_party,
            "total_amount": self.fee_total,
            "currency": self.fee_currency,
            "status": self.fee_status,
            "client_status": self.client_fee_status,
            "freelancer_status": self.freelancer_fee_status,
        }

    @property
    def resolution(self) -> Optional[Dict[str, Any]]:
        if not self.resolution_decision:
            return None
        return {
            "decision": self.resolution_decision,
            "amount_to_freelancer": self.resolution_amount_to_freelancer,
            "amount_to_client": self.resolution_amount_to_client,
            "decision_reason": self.resolution_reason,
            "decided_by": self.resolved_by_id,
            "decided_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self):
        return f"<Dispute(id={self.id}, milestone_id={self.milestone_id}, status={self.status})>"


class DisputeEvidence(Base):
    __tablename__ = "dispute_evidence"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False)
    appeal_id = Column(Integer, ForeignKey("dispute_appeals.id"), nullable=True)
    filename = Column(String(255), nullable=False)
    url = Column(Text, nullable=True)
    file_type = Column(String(100), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    uploaded_by_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    uploaded_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="evidence")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "url": self.url,
            "type": self.file_type,
            "size_bytes": self.size_bytes,
            "uploaded_by": self.uploaded_by_id,
            "verified": self.verified,
        }


class DisputeMessage(Base):
    """Messages in dispute mediation, visible to both parties"""
    __tablename__ = "dispute_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    sent_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="messages")

    __table_args__ = (
        Index("ix_dispute_messages_dispute", "dispute_id"),
    )

    def __repr__(self):
        return f"<DisputeMessage(dispute_id={self.dispute_id}, sender_id={self.sender_id})>"


class DisputeTimelineEntry(Base):
    __tablename__ = "dispute_timeline"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False)
    status = Column(String(32), nullable=False)
    action = Column(String(64), nullable=False)
    note = Column(Text, nullable=True)
    actor_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="timeline")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "action": self.action,
            "note": self.note,
            "actor": self.actor_id,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }


class DisputeAppeal(Base):
    """Single permitted appeal against a resolved dispute"""
    __tablename__ = "dispute_appeals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False)
    appellant_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=AppealStatus.PENDING.value)
    previous_resolution = Column(JSON, nullable=True)
    reviewed_by_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    review_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    submitted_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="appeal")
    evidence = relationship("DisputeEvidence", foreign_keys=[DisputeEvidence.appeal_id], viewonly=True)

    __table_args__ = (
        UniqueConstraint("dispute_id", name="uq_dispute_appeals_dispute"),
    )

    def __repr__(self):
        return f"<DisputeAppeal(dispute_id={self.dispute_id}, status={self.status})>"
