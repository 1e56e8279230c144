#!/usr/bin/env python3
"""
Entity State Machines
Closed transition tables for projects, milestones, disputes and ledger entries.
"""

import logging
from typing import Dict, Set, Type

from models import (
    StatusEnum,
    ProjectStatus,
    MilestoneStatus,
    DisputeStatus,
    TransactionStatus,
)
from utils.error_handler import StateConflictError, ErrorCodes

logger = logging.getLogger(__name__)


class StateValidator:
    """Validates state transitions for one entity type"""

    ENTITY: str = "entity"
    STATUS_ENUM: Type[StatusEnum] = StatusEnum
    VALID_TRANSITIONS: Dict[StatusEnum, Set[StatusEnum]] = {}

    @classmethod
    def is_valid_transition(cls, current_status, new_status) -> bool:
        current = cls.STATUS_ENUM.parse(current_status)
        target = cls.STATUS_ENUM.parse(new_status)
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def get_valid_transitions(cls, current_status) -> Set[StatusEnum]:
        return set(cls.VALID_TRANSITIONS.get(cls.STATUS_ENUM.parse(current_status), set()))

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(cls.STATUS_ENUM.parse(status), set())) == 0

    @classmethod
    def ensure_transition(cls, current_status, new_status, entity_id: str = "") -> StatusEnum:
        """Return the parsed target status or raise StateConflictError"""
        if not cls.is_valid_transition(current_status, new_status):
            current = cls.STATUS_ENUM.parse(current_status)
            target = cls.STATUS_ENUM.parse(new_status)
            logger.warning(
                f"🚫 Invalid {cls.ENTITY} transition {current.value} -> {target.value} for {entity_id}"
            )
            raise StateConflictError(
                f"Cannot move {cls.ENTITY} from {current.value} to {target.value}",
                code=ErrorCodes.INVALID_TRANSITION,
                details={
                    "entity": cls.ENTITY,
                    "entity_id": entity_id,
                    "current_status": current.value,
                    "requested_status": target.value,
                },
            )
        return cls.STATUS_ENUM.parse(new_status)


class ProjectStateValidator(StateValidator):
    ENTITY = "project"
    STATUS_ENUM = ProjectStatus
    VALID_TRANSITIONS = {
        ProjectStatus.DRAFT: {ProjectStatus.PENDING_ACCEPTANCE, ProjectStatus.CANCELLED},
        ProjectStatus.PENDING_ACCEPTANCE: {ProjectStatus.AWAITING_DEPOSIT, ProjectStatus.CANCELLED},
        ProjectStatus.AWAITING_DEPOSIT: {ProjectStatus.ACTIVE, ProjectStatus.CANCELLED},
        ProjectStatus.ACTIVE: {
            ProjectStatus.DISPUTED,
            ProjectStatus.COMPLETED,
            ProjectStatus.CANCELLED,
        },
        # Reserved status; no operation places a project on hold
        ProjectStatus.ON_HOLD: set(),
        ProjectStatus.DISPUTED: {ProjectStatus.ACTIVE, ProjectStatus.COMPLETED},
        ProjectStatus.COMPLETED: {ProjectStatus.ARCHIVED},
        ProjectStatus.CANCELLED: {ProjectStatus.ARCHIVED},
        ProjectStatus.ARCHIVED: set(),
    }


class MilestoneStateValidator(StateValidator):
    ENTITY = "milestone"
    STATUS_ENUM = MilestoneStatus
    VALID_TRANSITIONS = {
        MilestoneStatus.PENDING: {MilestoneStatus.IN_PROGRESS},
        MilestoneStatus.IN_PROGRESS: {MilestoneStatus.SUBMITTED, MilestoneStatus.DISPUTED},
        MilestoneStatus.SUBMITTED: {
            MilestoneStatus.APPROVED,
            MilestoneStatus.REVISION_REQUESTED,
            MilestoneStatus.DISPUTED,
        },
        MilestoneStatus.REVISION_REQUESTED: {MilestoneStatus.SUBMITTED, MilestoneStatus.DISPUTED},
        # Resolution outcomes; a refunded milestone stays DISPUTED
        MilestoneStatus.DISPUTED: {MilestoneStatus.APPROVED, MilestoneStatus.REVISION_REQUESTED},
        MilestoneStatus.APPROVED: set(),
    }

    DISPUTABLE = {
        MilestoneStatus.IN_PROGRESS,
        MilestoneStatus.SUBMITTED,
        MilestoneStatus.REVISION_REQUESTED,
    }
    ACTIVE_WORK = DISPUTABLE


class DisputeStateValidator(StateValidator):
    ENTITY = "dispute"
    STATUS_ENUM = DisputeStatus
    VALID_TRANSITIONS = {
        DisputeStatus.PENDING_FEE: {DisputeStatus.PENDING_REVIEW},
        DisputeStatus.PENDING_REVIEW: {DisputeStatus.SELF_RESOLUTION, DisputeStatus.IN_MEDIATION},
        DisputeStatus.SELF_RESOLUTION: {
            DisputeStatus.IN_MEDIATION,
            DisputeStatus.IN_ARBITRATION,
            DisputeStatus.RESOLVED,
        },
        DisputeStatus.IN_MEDIATION: {DisputeStatus.IN_ARBITRATION, DisputeStatus.RESOLVED},
        DisputeStatus.IN_ARBITRATION: {DisputeStatus.RESOLVED},
        # Approved appeal reopens arbitration once
        DisputeStatus.RESOLVED: {DisputeStatus.IN_ARBITRATION},
    }

    OPEN_STATES = {
        DisputeStatus.PENDING_FEE,
        DisputeStatus.PENDING_REVIEW,
        DisputeStatus.SELF_RESOLUTION,
        DisputeStatus.IN_MEDIATION,
        DisputeStatus.IN_ARBITRATION,
    }

    @classmethod
    def is_terminal_state(cls, status) -> bool:
        # RESOLVED only leaves via the appeal path
        return cls.STATUS_ENUM.parse(status) == DisputeStatus.RESOLVED


class TransactionStateValidator(StateValidator):
    ENTITY = "transaction"
    STATUS_ENUM = TransactionStatus
    VALID_TRANSITIONS = {
        TransactionStatus.PENDING: {TransactionStatus.COMPLETED, TransactionStatus.FAILED},
        TransactionStatus.COMPLETED: set(),
        TransactionStatus.FAILED: set(),
    }
