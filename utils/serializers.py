"""Plain-dict snapshots of ORM entities, built while the session is still open"""

from typing import Any, Dict

from models import Project, Milestone, Transaction, Dispute, ProjectActivity
from utils.datetime_helpers import isoformat_or_none


def activity_to_dict(activity: ProjectActivity) -> Dict[str, Any]:
    return {
        "action": activity.action,
        "performed_by": activity.performed_by,
        "details": dict(activity.details or {}),
        "timestamp": isoformat_or_none(activity.created_at),
    }


def milestone_to_dict(milestone: Milestone) -> Dict[str, Any]:
    return {
        "id": milestone.id,
        "project_id": milestone.project_id,
        "position": milestone.position,
        "title": milestone.title,
        "description": milestone.description,
        "amount": milestone.amount,
        "currency": milestone.currency,
        "deadline": isoformat_or_none(milestone.deadline),
        "acceptance_criteria": milestone.acceptance_criteria,
        "status": milestone.status,
        "deliverables": list(milestone.deliverables or []),
        "submission_notes": milestone.submission_notes,
        "revision_history": [revision.to_dict() for revision in milestone.revision_history],
        "auto_approved": milestone.auto_approved,
        "started_at": isoformat_or_none(milestone.started_at),
        "submitted_at": isoformat_or_none(milestone.submitted_at),
        "approved_at": isoformat_or_none(milestone.approved_at),
        "cancelled_at": isoformat_or_none(milestone.cancelled_at),
        "version": milestone.version,
    }


def project_to_dict(project: Project, include_activity: bool = True) -> Dict[str, Any]:
    data = {
        "id": project.id,
        "title": project.title,
        "description": project.description,
        "category": project.category,
        "client_id": project.client_id,
        "freelancer_id": project.freelancer_id,
        "budget": project.budget,
        "currency": project.currency,
        "deadline": isoformat_or_none(project.deadline),
        "status": project.status,
        "escrow": project.escrow,
        "payment_schedule": project.payment_schedule,
        "milestones": [milestone_to_dict(m) for m in project.milestones],
        "counter_proposals": project.counter_proposals,
        "source_project_id": project.source_project_id,
        "created_at": isoformat_or_none(project.created_at),
        "updated_at": isoformat_or_none(project.updated_at),
        "version": project.version,
    }
    if include_activity:
        data["activity_log"] = [activity_to_dict(a) for a in project.activities]
    return data


def transaction_to_dict(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "project_id": txn.project_id,
        "milestone_id": txn.milestone_id,
        "dispute_id": txn.dispute_id,
        "type": txn.transaction_type,
        "amount": txn.amount,
        "currency": txn.currency,
        "from": txn.from_user_id,
        "to": txn.to_user_id,
        "status": txn.status,
        "provider": txn.provider,
        "provider_transaction_id": txn.provider_transaction_id,
        "fees": txn.fees,
        "created_at": isoformat_or_none(txn.created_at),
    }


def dispute_to_dict(dispute: Dispute) -> Dict[str, Any]:
    appeal = dispute.appeal
    return {
        "id": dispute.id,
        "project_id": dispute.project_id,
        "milestone_id": dispute.milestone_id,
        "raised_by": dispute.raised_by_id,
        "reason": dispute.reason,
        "status": dispute.status,
        "evidence": [e.to_dict() for e in dispute.evidence],
        "dispute_fee": dispute.dispute_fee,
        "ai_analysis": dispute.ai_analysis,
        "mediator_id": dispute.mediator_id,
        "mediator_assigned_at": isoformat_or_none(dispute.mediator_assigned_at),
        "arbitrator_id": dispute.arbitrator_id,
        "resolution": dispute.resolution,
        "message_count": len(dispute.messages),
        "timeline": [entry.to_dict() for entry in dispute.timeline],
        "appeal": None if appeal is None else {
            "appellant_id": appeal.appellant_id,
            "reason": appeal.reason,
            "status": appeal.status,
            "previous_resolution": appeal.previous_resolution,
            "reviewed_by": appeal.reviewed_by_id,
            "review_notes": appeal.review_notes,
            "submitted_at": isoformat_or_none(appeal.submitted_at),
            "reviewed_at": isoformat_or_none(appeal.reviewed_at),
        },
        "created_at": isoformat_or_none(dispute.created_at),
        "version": dispute.version,
    }
