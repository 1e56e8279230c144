"""
Dispute workflow tests

Covers fee collection, automated routing, mediation, escalation,
arbitration with fund movement, appeals and the dispute report.
"""

import asyncio
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import select

from database import managed_session
from models import Dispute, Milestone, ReconciliationRecord, UserRole
from utils.error_handler import (
    AuthorizationError,
    ErrorCodes,
    ExternalServiceError,
    StateConflictError,
    ValidationError,
)

DISPUTE_REASON = "Delivered blog does not match the agreed design"


@pytest.fixture
def raised_dispute(container, users, active_project):
    """Funded project with its 40000-cent milestone in progress and disputed by the client"""

    async def factory(index=1):
        project = await active_project()
        milestone_id = project["milestones"][index]["id"]
        (await container.milestones.start_milestone(milestone_id, users["freelancer"])).unwrap()
        dispute = (await container.disputes.create_dispute(
            milestone_id, users["client"], DISPUTE_REASON,
            evidence=[{"filename": "brief.pdf", "size_bytes": 4096}],
        )).unwrap()
        return project, milestone_id, dispute

    return factory


@pytest.fixture
def funded_dispute(container, users, raised_dispute):
    """Both dispute fees paid; the automated review has run"""

    async def factory(index=1):
        project, milestone_id, dispute = await raised_dispute(index)
        (await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")).unwrap()
        reviewed = (await container.disputes.process_dispute_fee(dispute["id"], users["freelancer"], "pm_fl")).unwrap()
        return project, milestone_id, reviewed

    return factory


@pytest.fixture
def arbitrated_dispute(container, users, funded_dispute):
    async def factory(index=1):
        project, milestone_id, dispute = await funded_dispute(index)
        assigned = (await container.disputes.assign_arbitrator(dispute["id"], users["admin"], users["arbitrator"])).unwrap()
        return project, milestone_id, assigned

    return factory


class TestCreateDispute:
    @pytest.mark.asyncio
    async def test_raise_dispute_freezes_milestone(self, container, users, raised_dispute):
        project, milestone_id, dispute = await raised_dispute()

        assert dispute["status"] == "pending_fee"
        assert dispute["raised_by"] == users["client"]
        assert dispute["evidence"][0]["filename"] == "brief.pdf"
        assert dispute["timeline"][0]["action"] == "dispute_raised"
        assert dispute["dispute_fee"]["client_fee"] == 2500
        assert dispute["dispute_fee"]["freelancer_fee"] == 2500
        assert dispute["dispute_fee"]["total_amount"] == 5000
        assert dispute["dispute_fee"]["currency"] == "USD"

        current = (await container.projects.get_project(project["id"])).unwrap()
        assert current["status"] == "disputed"
        assert current["milestones"][1]["status"] == "disputed"
        assert current["activity_log"][-1]["details"]["previous_status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_pending_milestone_cannot_be_disputed(self, container, users, active_project):
        project = await active_project()
        result = await container.disputes.create_dispute(project["milestones"][0]["id"], users["client"], DISPUTE_REASON)
        assert isinstance(result.error, StateConflictError)

    @pytest.mark.asyncio
    async def test_only_parties_raise_disputes(self, container, users, active_project):
        project = await active_project()
        milestone_id = project["milestones"][0]["id"]
        await container.milestones.start_milestone(milestone_id, users["freelancer"])

        result = await container.disputes.create_dispute(milestone_id, users["admin"], DISPUTE_REASON)
        assert isinstance(result.error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_reason_length_validated(self, container, users, active_project):
        project = await active_project()
        milestone_id = project["milestones"][0]["id"]
        await container.milestones.start_milestone(milestone_id, users["freelancer"])

        result = await container.disputes.create_dispute(milestone_id, users["client"], "bad")
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_dangerous_evidence_rejected(self, container, users, active_project):
        project = await active_project()
        milestone_id = project["milestones"][0]["id"]
        await container.milestones.start_milestone(milestone_id, users["freelancer"])

        result = await container.disputes.create_dispute(
            milestone_id, users["client"], DISPUTE_REASON, evidence=[{"filename": "proof.exe", "size_bytes": 10}]
        )
        assert result.error.code == ErrorCodes.FILE_REJECTED

    @pytest.mark.asyncio
    async def test_one_open_dispute_per_milestone(self, container, users, raised_dispute):
        _, milestone_id, _ = await raised_dispute()
        result = await container.disputes.create_dispute(milestone_id, users["freelancer"], DISPUTE_REASON)
        assert result.error.code == ErrorCodes.DUPLICATE_DISPUTE

    @pytest.mark.asyncio
    async def test_raise_cooldown(self, container, users, arbitrated_dispute, clock):
        _, milestone_id, dispute = await arbitrated_dispute()
        (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "revision_required", decision_reason="Fix the blog layout"
        )).unwrap()

        again = await container.disputes.create_dispute(milestone_id, users["client"], DISPUTE_REASON)
        assert again.error.code == ErrorCodes.RATE_LIMITED

        clock.advance(hours=25)
        later = await container.disputes.create_dispute(milestone_id, users["client"], DISPUTE_REASON)
        assert later.success


class TestDisputeFees:
    """Both parties pay before review begins"""

    @pytest.mark.asyncio
    async def test_review_starts_only_after_both_fees(self, container, users, raised_dispute, mock_gateway, mock_advisor):
        project, _, dispute = await raised_dispute()

        after_client = (await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")).unwrap()
        assert after_client["status"] == "pending_fee"
        assert after_client["dispute_fee"]["status"] == "partially_paid"
        assert after_client["dispute_fee"]["client_status"] == "paid"
        assert after_client["dispute_fee"]["freelancer_status"] == "unpaid"
        mock_advisor.analyze_dispute.assert_not_called()
        assert mock_gateway.create_deposit_intent.call_args.kwargs["amount"] == Decimal("25.00")

        after_both = (await container.disputes.process_dispute_fee(dispute["id"], users["freelancer"], "pm_fl")).unwrap()
        assert after_both["dispute_fee"]["status"] == "paid"
        # Advisor confidence of 55 routes to a human mediator
        assert after_both["status"] == "in_mediation"
        actions = [t["action"] for t in after_both["timeline"]]
        assert actions.index("fees_complete") < actions.index("automated_review")
        assert mock_advisor.analyze_dispute.await_count == 1

        fees = [
            t for t in (await container.projects.list_transactions(project["id"])).unwrap()
            if t["type"] == "dispute_fee"
        ]
        assert [(t["amount"], t["from"]) for t in fees] == [(2500, users["client"]), (2500, users["freelancer"])]

    @pytest.mark.asyncio
    async def test_paying_twice_is_a_noop(self, container, users, raised_dispute, mock_gateway):
        _, _, dispute = await raised_dispute()
        charges_before = mock_gateway.create_deposit_intent.await_count

        await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")
        repeat = (await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")).unwrap()

        assert repeat["dispute_fee"]["client_status"] == "paid"
        assert mock_gateway.create_deposit_intent.await_count == charges_before + 1

    @pytest.mark.asyncio
    async def test_fee_charge_failure_leaves_party_unpaid(self, container, users, raised_dispute, mock_gateway):
        _, _, dispute = await raised_dispute()
        mock_gateway.create_deposit_intent.side_effect = RuntimeError("insufficient funds")

        result = await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")

        assert isinstance(result.error, ExternalServiceError)
        current = (await container.disputes.get_dispute(dispute["id"])).unwrap()
        assert current["dispute_fee"]["client_status"] == "unpaid"

    @pytest.mark.asyncio
    async def test_high_confidence_routes_to_self_resolution(self, container, funded_dispute, mock_advisor):
        mock_advisor.analyze_dispute.return_value = {
            "confidence_score": {"freelancer": 12, "client": 88},
            "recommended_resolution": "full_refund_to_client",
            "key_issues": ["missing pages"],
            "reasoning": "Deliverables omit agreed scope",
        }

        _, _, dispute = await funded_dispute()

        assert dispute["status"] == "self_resolution"
        assert dispute["ai_analysis"]["confidence_score"] == {"freelancer": 12, "client": 88}
        assert dispute["ai_analysis"]["recommended_resolution"] == "full_refund_to_client"

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, container, funded_dispute, mock_advisor):
        mock_advisor.analyze_dispute.return_value = {"confidence_score": {"freelancer": 80, "client": 20}}
        _, _, dispute = await funded_dispute()
        assert dispute["status"] == "in_mediation"

    @pytest.mark.asyncio
    async def test_advisor_failure_routes_to_mediation(self, container, funded_dispute, mock_advisor):
        mock_advisor.analyze_dispute.side_effect = TimeoutError("model timeout")

        _, _, dispute = await funded_dispute()

        assert dispute["status"] == "in_mediation"
        assert dispute["ai_analysis"] is None
        assert dispute["timeline"][-1]["note"] == "Advisor unavailable"

    @pytest.mark.asyncio
    async def test_stuck_review_can_be_rerun_by_staff(self, container, users, funded_dispute, session_factory):
        _, _, dispute = await funded_dispute()
        # Simulate a crash between fee settlement and routing
        with managed_session(session_factory) as session:
            session.get(Dispute, dispute["id"]).status = "pending_review"

        denied = await container.disputes.run_automated_review(dispute["id"], users["freelancer"])
        assert isinstance(denied.error, AuthorizationError)

        reviewed = (await container.disputes.run_automated_review(dispute["id"], users["arbitrator"])).unwrap()
        assert reviewed["status"] == "in_mediation"

        again = await container.disputes.run_automated_review(dispute["id"], users["arbitrator"])
        assert isinstance(again.error, StateConflictError)


class TestMediationAndEscalation:
    @pytest.mark.asyncio
    async def test_mediator_takes_self_resolution_dispute(self, container, users, funded_dispute, mock_advisor):
        mock_advisor.analyze_dispute.return_value = {"confidence_score": {"freelancer": 95, "client": 5}}
        _, _, dispute = await funded_dispute()

        assigned = (await container.disputes.assign_mediator(dispute["id"], users["mediator"])).unwrap()

        assert assigned["status"] == "in_mediation"
        assert assigned["mediator_id"] == users["mediator"]
        assert assigned["mediator_assigned_at"] is not None

    @pytest.mark.asyncio
    async def test_parties_cannot_mediate(self, container, users, funded_dispute):
        _, _, dispute = await funded_dispute()
        result = await container.disputes.assign_mediator(dispute["id"], users["client"])
        assert isinstance(result.error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_messages_beyond_threshold_escalate(self, container, users, funded_dispute, notification_sink):
        _, _, dispute = await funded_dispute()
        senders = [users["client"], users["freelancer"]]

        for i in range(10):
            posted = (await container.disputes.post_message(dispute["id"], senders[i % 2], f"Point {i}")).unwrap()
        assert posted["status"] == "in_mediation"
        assert posted["message_count"] == 10

        escalated = (await container.disputes.post_message(dispute["id"], users["client"], "One more point")).unwrap()
        assert escalated["status"] == "in_arbitration"
        assert escalated["timeline"][-1]["note"] == "message_threshold"

        await container.dispatcher.drain()
        events = [c.args[1] for c in notification_sink.notify.call_args_list]
        assert "dispute-escalated" in events

    @pytest.mark.asyncio
    async def test_outsiders_cannot_post(self, container, users, funded_dispute, make_user):
        _, _, dispute = await funded_dispute()
        outsider = make_user(UserRole.CLIENT)
        result = await container.disputes.post_message(dispute["id"], outsider, "Hello")
        assert isinstance(result.error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_assigned_mediator_can_post(self, container, users, funded_dispute):
        _, _, dispute = await funded_dispute()
        await container.disputes.assign_mediator(dispute["id"], users["mediator"])
        posted = (await container.disputes.post_message(dispute["id"], users["mediator"], "Let's review the brief")).unwrap()
        assert posted["message_count"] == 1

    @pytest.mark.asyncio
    async def test_mediation_timeout_escalates_on_sweep(self, container, users, funded_dispute, clock):
        _, _, dispute = await funded_dispute()
        await container.disputes.assign_mediator(dispute["id"], users["mediator"])

        clock.advance(hours=23)
        advice = (await container.disputes.evaluate_escalation(dispute["id"])).unwrap()
        assert advice["should_escalate"] is False
        assert (await container.disputes.process_escalations())["escalated"] == 0

        clock.advance(hours=2)
        advice = (await container.disputes.evaluate_escalation(dispute["id"])).unwrap()
        assert advice["should_escalate"] is True
        assert advice["target_status"] == "in_arbitration"
        assert advice["reasons"] == ["mediation_timeout"]
        # Evaluation alone changes nothing
        assert (await container.disputes.get_dispute(dispute["id"])).unwrap()["status"] == "in_mediation"

        stats = await container.disputes.process_escalations()
        assert stats == {"checked": 1, "escalated": 1, "failed": 0}
        assert (await container.disputes.get_dispute(dispute["id"])).unwrap()["status"] == "in_arbitration"

    @pytest.mark.asyncio
    async def test_stale_self_resolution_moves_to_mediation(self, container, funded_dispute, mock_advisor, clock):
        mock_advisor.analyze_dispute.return_value = {"confidence_score": {"freelancer": 90, "client": 10}}
        _, _, dispute = await funded_dispute()

        clock.advance(hours=71)
        early = (await container.disputes.check_mediation_escalation(dispute["id"])).unwrap()
        assert early["escalated"] is False

        clock.advance(hours=2)
        result = (await container.disputes.check_mediation_escalation(dispute["id"])).unwrap()
        assert result["escalated"] is True
        assert result["reasons"] == ["self_resolution_timeout"]
        assert result["dispute"]["status"] == "in_mediation"


class TestResolution:
    """Binding decisions and the fund movements they trigger"""

    @pytest.mark.asyncio
    async def test_partial_payment_amounts_must_match_milestone(self, container, users, arbitrated_dispute, mock_gateway):
        project, milestone_id, dispute = await arbitrated_dispute()
        assert dispute["status"] == "in_arbitration"

        rejected = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "partial_payment",
            amount_to_freelancer=29000, amount_to_client=10000, decision_reason="Split the difference",
        )
        assert isinstance(rejected.error, ValidationError)
        assert rejected.error.code == ErrorCodes.INVALID_AMOUNT
        mock_gateway.transfer_to_freelancer.assert_not_called()

        resolved = (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "partial_payment",
            amount_to_freelancer=30000, amount_to_client=10000, decision_reason="Split the difference",
        )).unwrap()

        assert resolved["status"] == "resolved"
        assert resolved["resolution"]["amount_to_freelancer"] == 30000
        assert resolved["resolution"]["amount_to_client"] == 10000
        assert resolved["resolution"]["decided_by"] == users["arbitrator"]
        assert mock_gateway.transfer_to_freelancer.call_args.kwargs["amount"] == Decimal("300.00")
        assert mock_gateway.refund_to_client.call_args.kwargs["amount"] == Decimal("100.00")

        current = (await container.projects.get_project(project["id"])).unwrap()
        assert current["status"] == "active"
        assert current["milestones"][1]["status"] == "approved"
        escrow = current["escrow"]
        assert escrow["total_released"] == 30000
        assert escrow["total_refunded"] == 10000
        assert escrow["remaining"] == 60000
        assert escrow["total_held"] == escrow["total_released"] + escrow["remaining"]

        movements = [
            t for t in (await container.projects.list_transactions(project["id"])).unwrap()
            if t["type"] in ("dispute_payment", "dispute_refund")
        ]
        assert [(t["type"], t["amount"], t["fees"]["total"]) for t in movements] == [
            ("dispute_payment", 30000, 0),
            ("dispute_refund", 10000, 0),
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "decision,to_freelancer,to_client",
        [
            ("full_payment_to_freelancer", 30000, 10000),
            ("full_refund_to_client", 10000, 30000),
            ("partial_payment", 40000, 0),
            ("revision_required", 40000, 0),
            ("split_it", 20000, 20000),
        ],
    )
    async def test_amounts_must_fit_decision(self, container, users, arbitrated_dispute, decision, to_freelancer, to_client):
        _, _, dispute = await arbitrated_dispute()
        result = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], decision,
            amount_to_freelancer=to_freelancer, amount_to_client=to_client, decision_reason="Decision",
        )
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_full_refund_completes_otherwise_settled_project(self, container, users, active_project, mock_gateway):
        project = await active_project()
        first, second = (m["id"] for m in project["milestones"])
        await container.milestones.start_milestone(first, users["freelancer"])
        await container.milestones.submit_milestone(first, users["freelancer"], notes="Done")
        await container.milestones.approve_milestone(first, users["client"])
        await container.milestones.start_milestone(second, users["freelancer"])
        dispute = (await container.disputes.create_dispute(second, users["client"], DISPUTE_REASON)).unwrap()
        await container.disputes.process_dispute_fee(dispute["id"], users["client"], "pm_card")
        await container.disputes.process_dispute_fee(dispute["id"], users["freelancer"], "pm_fl")
        await container.disputes.assign_arbitrator(dispute["id"], users["admin"], users["arbitrator"])
        transfers_before = mock_gateway.transfer_to_freelancer.await_count

        resolved = (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_refund_to_client",
            amount_to_client=40000, decision_reason="Nothing delivered",
        )).unwrap()

        assert resolved["resolution"]["decision"] == "full_refund_to_client"
        assert mock_gateway.transfer_to_freelancer.await_count == transfers_before
        current = (await container.projects.get_project(project["id"])).unwrap()
        assert current["milestones"][1]["status"] == "disputed"
        assert current["status"] == "completed"
        assert current["escrow"]["remaining"] == 0
        assert current["escrow"]["total_refunded"] == 40000
        assert current["escrow"]["total_released"] == 60000

    @pytest.mark.asyncio
    async def test_refunded_milestone_cannot_be_reworked_for_payment(self, container, users, arbitrated_dispute):
        project, milestone_id, dispute = await arbitrated_dispute()
        (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_refund_to_client",
            amount_to_client=40000, decision_reason="Nothing delivered",
        )).unwrap()

        resubmitted = await container.milestones.submit_milestone(milestone_id, users["freelancer"], notes="Delivered now")
        approved = await container.milestones.approve_milestone(milestone_id, users["client"])

        assert isinstance(resubmitted.error, StateConflictError)
        assert isinstance(approved.error, StateConflictError)
        current = (await container.projects.get_project(project["id"])).unwrap()
        assert current["status"] == "active"
        assert current["milestones"][1]["status"] == "disputed"
        assert current["escrow"]["remaining"] == 60000

    @pytest.mark.asyncio
    async def test_revision_required_moves_no_funds(self, container, users, arbitrated_dispute, mock_gateway):
        project, milestone_id, dispute = await arbitrated_dispute()

        resolved = (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "revision_required", decision_reason="Redo the blog templates"
        )).unwrap()

        assert resolved["status"] == "resolved"
        mock_gateway.transfer_to_freelancer.assert_not_called()
        mock_gateway.refund_to_client.assert_not_called()
        current = (await container.projects.get_project(project["id"])).unwrap()
        milestone = current["milestones"][1]
        assert milestone["status"] == "revision_requested"
        assert milestone["revision_history"][-1]["notes"] == "Redo the blog templates"
        assert current["status"] == "active"
        assert current["escrow"]["remaining"] == 100000

        resubmitted = await container.milestones.submit_milestone(milestone_id, users["freelancer"], notes="Redone")
        assert resubmitted.value["status"] == "submitted"

    @pytest.mark.asyncio
    async def test_only_arbitrator_or_admin_resolves(self, container, users, arbitrated_dispute):
        _, _, dispute = await arbitrated_dispute()
        result = await container.disputes.resolve_dispute(
            dispute["id"], users["client"], "full_refund_to_client", amount_to_client=40000, decision_reason="Mine"
        )
        assert isinstance(result.error, AuthorizationError)

        mediator_attempt = await container.disputes.resolve_dispute(
            dispute["id"], users["mediator"], "full_refund_to_client", amount_to_client=40000, decision_reason="Mine"
        )
        assert isinstance(mediator_attempt.error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_admin_resolves_from_mediation(self, container, users, funded_dispute):
        _, _, dispute = await funded_dispute()
        resolved = (await container.disputes.resolve_dispute(
            dispute["id"], users["admin"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Work matches the brief",
        )).unwrap()
        assert resolved["resolution"]["decided_by"] == users["admin"]

    @pytest.mark.asyncio
    async def test_cannot_resolve_before_fees(self, container, users, raised_dispute):
        _, _, dispute = await raised_dispute()
        result = await container.disputes.resolve_dispute(
            dispute["id"], users["admin"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Early",
        )
        assert isinstance(result.error, StateConflictError)

    @pytest.mark.asyncio
    async def test_assign_arbitrator_requires_admin_and_arbitrator(self, container, users, funded_dispute):
        _, _, dispute = await funded_dispute()

        by_mediator = await container.disputes.assign_arbitrator(dispute["id"], users["mediator"], users["arbitrator"])
        assert isinstance(by_mediator.error, AuthorizationError)

        wrong_target = await container.disputes.assign_arbitrator(dispute["id"], users["admin"], users["mediator"])
        assert isinstance(wrong_target.error, AuthorizationError)

    @pytest.mark.asyncio
    async def test_concurrent_resolutions_move_funds_once(self, container, users, arbitrated_dispute, mock_gateway):
        _, _, dispute = await arbitrated_dispute()

        results = await asyncio.gather(*[
            container.disputes.resolve_dispute(
                dispute["id"], users["arbitrator"], "full_payment_to_freelancer",
                amount_to_freelancer=40000, decision_reason="Accepted",
            )
            for _ in range(2)
        ])

        assert sum(r.success for r in results) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error.code == ErrorCodes.OPERATION_IN_FLIGHT
        assert mock_gateway.transfer_to_freelancer.await_count == 1

    @pytest.mark.asyncio
    async def test_payout_failure_releases_resolution_claim(self, container, users, arbitrated_dispute, mock_gateway):
        _, _, dispute = await arbitrated_dispute()
        mock_gateway.transfer_to_freelancer.side_effect = RuntimeError("payout rail down")

        failed = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Accepted",
        )
        assert isinstance(failed.error, ExternalServiceError)
        assert (await container.disputes.get_dispute(dispute["id"])).unwrap()["status"] == "in_arbitration"

        mock_gateway.transfer_to_freelancer.side_effect = None
        mock_gateway.transfer_to_freelancer.return_value = {"id": "tr_retry", "status": "succeeded"}
        retried = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Accepted",
        )
        assert retried.success

    @pytest.mark.asyncio
    async def test_refund_failure_after_payout_needs_reconciliation(
        self, container, users, arbitrated_dispute, mock_gateway, session_factory
    ):
        _, milestone_id, dispute = await arbitrated_dispute()
        mock_gateway.refund_to_client.side_effect = RuntimeError("refund rejected")

        result = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "partial_payment",
            amount_to_freelancer=30000, amount_to_client=10000, decision_reason="Split",
        )

        assert result.error.code == ErrorCodes.RECONCILIATION_REQUIRED
        with managed_session(session_factory) as session:
            record = session.scalars(select(ReconciliationRecord)).one()
            assert record.operation == "dispute_resolution"
            assert record.dispute_id == dispute["id"]
            assert record.amount == 30000
            assert session.get(Milestone, milestone_id).status == "disputed"

        retry = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "partial_payment",
            amount_to_freelancer=30000, amount_to_client=10000, decision_reason="Split",
        )
        assert retry.error.code == ErrorCodes.OPERATION_IN_FLIGHT

    @pytest.mark.asyncio
    async def test_ledger_failure_flags_reconciliation(self, container, users, arbitrated_dispute, monkeypatch):
        _, _, dispute = await arbitrated_dispute()
        monkeypatch.setattr(container.ledger, "record_dispute_payment", Mock(side_effect=RuntimeError("db gone")))

        result = await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Accepted",
        )

        assert result.error.code == ErrorCodes.RECONCILIATION_REQUIRED
        current = (await container.disputes.get_dispute(dispute["id"])).unwrap()
        assert current["status"] == "in_arbitration"
        assert current["resolution"] is None


class TestAppeals:
    async def _resolve_with_revision(self, container, users, arbitrated_dispute):
        project, milestone_id, dispute = await arbitrated_dispute()
        (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "revision_required", decision_reason="Redo templates"
        )).unwrap()
        return project, milestone_id, dispute

    @pytest.mark.asyncio
    async def test_approved_appeal_reopens_arbitration(self, container, users, arbitrated_dispute):
        project, milestone_id, dispute = await self._resolve_with_revision(container, users, arbitrated_dispute)

        appealed = (await container.disputes.submit_appeal(
            dispute["id"], users["freelancer"], "The templates matched the approved mockups",
            evidence=[{"filename": "mockups.png", "size_bytes": 2048}],
        )).unwrap()
        assert appealed["appeal"]["status"] == "pending"
        assert appealed["appeal"]["previous_resolution"]["decision"] == "revision_required"

        reviewed = (await container.disputes.review_appeal(
            dispute["id"], users["admin"], "approved", review_notes="Mockups support the freelancer"
        )).unwrap()

        assert reviewed["status"] == "in_arbitration"
        assert reviewed["resolution"] is None
        assert reviewed["appeal"]["status"] == "approved"
        current = (await container.projects.get_project(project["id"])).unwrap()
        assert current["status"] == "disputed"
        assert current["milestones"][1]["status"] == "disputed"
        assert current["activity_log"][-1]["action"] == "dispute_reopened"

        # Re-resolving is allowed, a second appeal is not
        (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], "full_payment_to_freelancer",
            amount_to_freelancer=40000, decision_reason="Work accepted on appeal",
        )).unwrap()
        second = await container.disputes.submit_appeal(dispute["id"], users["client"], "I still disagree with this")
        assert second.error.code == ErrorCodes.APPEAL_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_rejected_appeal_keeps_resolution(self, container, users, arbitrated_dispute):
        _, _, dispute = await self._resolve_with_revision(container, users, arbitrated_dispute)
        await container.disputes.submit_appeal(dispute["id"], users["freelancer"], "The templates matched the brief")

        reviewed = (await container.disputes.review_appeal(dispute["id"], users["arbitrator"], "rejected")).unwrap()

        assert reviewed["status"] == "resolved"
        assert reviewed["resolution"]["decision"] == "revision_required"
        assert reviewed["appeal"]["status"] == "rejected"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "decision,amounts",
        [
            ("full_payment_to_freelancer", {"amount_to_freelancer": 40000}),
            ("full_refund_to_client", {"amount_to_client": 40000}),
            ("partial_payment", {"amount_to_freelancer": 30000, "amount_to_client": 10000}),
        ],
    )
    async def test_funds_moved_resolution_cannot_reopen(self, container, users, arbitrated_dispute, decision, amounts):
        _, _, dispute = await arbitrated_dispute()
        (await container.disputes.resolve_dispute(
            dispute["id"], users["arbitrator"], decision, decision_reason="Ruling on delivery", **amounts
        )).unwrap()
        await container.disputes.submit_appeal(dispute["id"], users["client"], "The blog was never delivered")

        approved = await container.disputes.review_appeal(dispute["id"], users["admin"], "approved")
        assert approved.error.code == ErrorCodes.APPEAL_NOT_ALLOWED

        rejected = (await container.disputes.review_appeal(dispute["id"], users["admin"], "rejected")).unwrap()
        assert rejected["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_appeal_window(self, container, users, arbitrated_dispute, clock):
        _, _, dispute = await self._resolve_with_revision(container, users, arbitrated_dispute)
        clock.advance(days=15)

        result = await container.disputes.submit_appeal(dispute["id"], users["freelancer"], "Late appeal about templates")
        assert result.error.code == ErrorCodes.APPEAL_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_unresolved_dispute_cannot_be_appealed(self, container, users, funded_dispute):
        _, _, dispute = await funded_dispute()
        result = await container.disputes.submit_appeal(dispute["id"], users["client"], "Appealing too early here")
        assert result.error.code == ErrorCodes.APPEAL_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_parties_cannot_review_appeals(self, container, users, arbitrated_dispute):
        _, _, dispute = await self._resolve_with_revision(container, users, arbitrated_dispute)
        await container.disputes.submit_appeal(dispute["id"], users["freelancer"], "The templates matched the brief")

        result = await container.disputes.review_appeal(dispute["id"], users["client"], "rejected")
        assert isinstance(result.error, AuthorizationError)


class TestDisputeReport:
    @pytest.mark.asyncio
    async def test_report_for_staff_and_parties(self, container, users, funded_dispute, make_user):
        project, milestone_id, dispute = await funded_dispute()
        await container.disputes.post_message(dispute["id"], users["client"], "Please see the brief")

        report = (await container.disputes.get_dispute_report(dispute["id"], users["mediator"])).unwrap()

        assert report["dispute"]["id"] == dispute["id"]
        assert report["project"]["id"] == project["id"]
        assert report["milestone"]["id"] == milestone_id
        assert report["messages"][0]["content"] == "Please see the brief"
        assert [t["type"] for t in report["transactions"]] == ["dispute_fee", "dispute_fee"]
        assert report["escalation"]["should_escalate"] is False

        assert (await container.disputes.get_dispute_report(dispute["id"], users["freelancer"])).success
        outsider = make_user(UserRole.FREELANCER)
        denied = await container.disputes.get_dispute_report(dispute["id"], outsider)
        assert isinstance(denied.error, AuthorizationError)


class TestListUserDisputes:
    @pytest.mark.asyncio
    async def test_both_parties_see_the_dispute(self, container, users, raised_dispute, make_user):
        project, _, dispute = await raised_dispute()
        outsider = make_user(UserRole.CLIENT)

        for party in (users["client"], users["freelancer"]):
            listed = (await container.disputes.list_user_disputes(party)).unwrap()
            assert [d["id"] for d in listed] == [dispute["id"]]
            assert listed[0]["project_id"] == project["id"]
        assert (await container.disputes.list_user_disputes(outsider)).unwrap() == []
        assert (await container.disputes.list_user_disputes(users["arbitrator"])).unwrap() == []

    @pytest.mark.asyncio
    async def test_status_filter(self, container, users, raised_dispute):
        _, _, dispute = await raised_dispute()

        pending = (await container.disputes.list_user_disputes(users["client"], status="pending_fee")).unwrap()
        resolved = (await container.disputes.list_user_disputes(users["client"], status="resolved")).unwrap()
        bad = await container.disputes.list_user_disputes(users["client"], status="closed")

        assert [d["id"] for d in pending] == [dispute["id"]]
        assert resolved == []
        assert isinstance(bad.error, ValidationError)
