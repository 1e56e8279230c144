"""
Ledger / Transaction Recorder
Append-only record of every fund movement plus the escrow balance arithmetic
that must stay in step with it.

Every method that takes a session writes inside the caller's transaction so
the ledger entry commits atomically with the status transition it mirrors.
"""

import logging
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from database import managed_session
from models import (
    Project,
    Milestone,
    Dispute,
    Transaction,
    TransactionType,
    TransactionStatus,
    EscrowStatus,
    ReconciliationRecord,
)
from services.interfaces import GatewayResult
from utils.currency import format_amount
from utils.error_handler import StateConflictError, ValidationError, NotFoundError, ErrorCodes
from utils.fee_calculator import FeeBreakdown, ReleaseAmounts
from utils.state_machines import TransactionStateValidator

logger = logging.getLogger(__name__)


class LedgerService:
    """Records transactions and keeps project escrow totals balanced"""

    def __init__(self, provider_name: str = "payment_gateway"):
        self.provider_name = provider_name

    # ------------------------------------------------------------------
    # Escrow balance
    # ------------------------------------------------------------------

    @staticmethod
    def verify_escrow_balance(project: Project):
        """totalHeld == totalReleased + remaining must hold after every mutation"""
        held = project.escrow_total_held
        released = project.escrow_total_released
        remaining = project.escrow_remaining
        if held != released + remaining or remaining < 0:
            logger.critical(
                f"🚨 ESCROW_IMBALANCE project={project.id} held={held} released={released} remaining={remaining}"
            )
            raise StateConflictError(
                "Escrow balance does not reconcile",
                code=ErrorCodes.ESCROW_IMBALANCE,
                details={
                    "project_id": project.id,
                    "total_held": held,
                    "total_released": released,
                    "remaining": remaining,
                },
            )

    @staticmethod
    def _refresh_escrow_status(project: Project):
        if project.escrow_remaining > 0:
            status = (
                EscrowStatus.PARTIALLY_RELEASED
                if project.escrow_total_released > 0
                else EscrowStatus.HELD
            )
        elif project.escrow_total_released > 0:
            status = EscrowStatus.RELEASED
        else:
            status = EscrowStatus.REFUNDED
        project.escrow_status = status.value

    @classmethod
    def ensure_available(cls, project: Project, amount: int):
        if amount > project.escrow_remaining:
            raise StateConflictError(
                f"Escrow holds {project.escrow_remaining} but {amount} is required",
                code=ErrorCodes.INSUFFICIENT_ESCROW,
                details={"project_id": project.id, "remaining": project.escrow_remaining, "required": amount},
            )

    @classmethod
    def apply_deposit(cls, project: Project, amount: int):
        project.escrow_total_held = amount
        project.escrow_total_released = 0
        project.escrow_total_refunded = 0
        project.escrow_remaining = amount
        project.escrow_status = EscrowStatus.HELD.value
        cls.verify_escrow_balance(project)

    @classmethod
    def apply_release(cls, project: Project, amount: int):
        """Funds leave escrow to the freelancer"""
        cls.ensure_available(project, amount)
        project.escrow_total_released += amount
        project.escrow_remaining -= amount
        cls._refresh_escrow_status(project)
        cls.verify_escrow_balance(project)

    @classmethod
    def apply_refund(cls, project: Project, amount: int):
        """
        Funds return to the client. They are no longer held, so the held total
        shrinks with the remainder and the balance identity is preserved.
        """
        cls.ensure_available(project, amount)
        project.escrow_total_held -= amount
        project.escrow_total_refunded += amount
        project.escrow_remaining -= amount
        cls._refresh_escrow_status(project)
        cls.verify_escrow_balance(project)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def record(
        self,
        session: Session,
        *,
        project_id: str,
        transaction_type: TransactionType,
        amount: int,
        currency: str,
        from_user_id: Optional[str],
        to_user_id: Optional[str],
        fees: FeeBreakdown = FeeBreakdown(),
        milestone_id: Optional[str] = None,
        dispute_id: Optional[str] = None,
        gateway_result: Optional[GatewayResult] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        description: Optional[str] = None,
    ) -> Transaction:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ValidationError(f"Invalid ledger amount: {amount!r}", code=ErrorCodes.INVALID_AMOUNT)
        if fees.total != fees.client + fees.freelancer:
            raise ValidationError(
                "Fee total must equal client fee plus freelancer fee",
                code=ErrorCodes.INVALID_AMOUNT,
                details=fees.to_dict(),
            )

        txn = Transaction(
            project_id=project_id,
            milestone_id=milestone_id,
            dispute_id=dispute_id,
            transaction_type=transaction_type.value,
            amount=amount,
            currency=currency,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            status=status.value,
            provider=self.provider_name if gateway_result else None,
            provider_transaction_id=gateway_result.id if gateway_result else None,
            description=description,
            fee_client=fees.client,
            fee_freelancer=fees.freelancer,
            fee_platform=fees.platform,
            fee_payment_processor=fees.payment_processor,
            fee_total=fees.total,
        )
        session.add(txn)
        session.flush()
        logger.info(
            f"📒 Ledger {transaction_type.value}: {format_amount(amount, currency)} "
            f"project={project_id} txn={txn.id}"
        )
        return txn

    def record_deposit(
        self, session: Session, project: Project, fees: FeeBreakdown, gateway_result: GatewayResult
    ) -> Transaction:
        return self.record(
            session,
            project_id=project.id,
            transaction_type=TransactionType.DEPOSIT,
            amount=project.budget,
            currency=project.currency,
            from_user_id=project.client_id,
            to_user_id=None,
            fees=fees,
            gateway_result=gateway_result,
            description=f"Escrow deposit for project {project.title}",
        )

    def record_milestone_release(
        self,
        session: Session,
        project: Project,
        milestone: Milestone,
        release: ReleaseAmounts,
        gateway_result: GatewayResult,
    ) -> Transaction:
        if release.net_amount + release.fees.freelancer != milestone.amount:
            raise StateConflictError(
                "Release split does not add up to the milestone amount",
                code=ErrorCodes.ESCROW_IMBALANCE,
                details={"milestone_id": milestone.id},
            )
        return self.record(
            session,
            project_id=project.id,
            milestone_id=milestone.id,
            transaction_type=TransactionType.MILESTONE_RELEASE,
            amount=release.net_amount,
            currency=milestone.currency,
            from_user_id=None,
            to_user_id=project.freelancer_id,
            fees=release.fees,
            gateway_result=gateway_result,
            description=f"Payment for milestone: {milestone.title}",
        )

    def record_dispute_payment(
        self, session: Session, dispute: Dispute, milestone: Milestone, amount: int,
        to_user_id: str, gateway_result: GatewayResult,
    ) -> Transaction:
        return self.record(
            session,
            project_id=dispute.project_id,
            milestone_id=milestone.id,
            dispute_id=dispute.id,
            transaction_type=TransactionType.DISPUTE_PAYMENT,
            amount=amount,
            currency=milestone.currency,
            from_user_id=None,
            to_user_id=to_user_id,
            gateway_result=gateway_result,
            description=f"Dispute resolution payment for milestone: {milestone.title}",
        )

    def record_dispute_refund(
        self, session: Session, dispute: Dispute, milestone: Milestone, amount: int,
        to_user_id: str, gateway_result: GatewayResult,
    ) -> Transaction:
        return self.record(
            session,
            project_id=dispute.project_id,
            milestone_id=milestone.id,
            dispute_id=dispute.id,
            transaction_type=TransactionType.DISPUTE_REFUND,
            amount=amount,
            currency=milestone.currency,
            from_user_id=None,
            to_user_id=to_user_id,
            gateway_result=gateway_result,
            description=f"Dispute resolution refund for milestone: {milestone.title}",
        )

    def record_refund(
        self, session: Session, project: Project, amount: int, gateway_result: GatewayResult
    ) -> Transaction:
        return self.record(
            session,
            project_id=project.id,
            transaction_type=TransactionType.REFUND,
            amount=amount,
            currency=project.currency,
            from_user_id=None,
            to_user_id=project.client_id,
            gateway_result=gateway_result,
            description=f"Escrow refund on cancellation of project {project.title}",
        )

    def record_dispute_fee(
        self, session: Session, dispute: Dispute, payer_id: str, gateway_result: GatewayResult
    ) -> Transaction:
        return self.record(
            session,
            project_id=dispute.project_id,
            milestone_id=dispute.milestone_id,
            dispute_id=dispute.id,
            transaction_type=TransactionType.DISPUTE_FEE,
            amount=dispute.fee_per_party,
            currency=dispute.fee_currency,
            from_user_id=payer_id,
            to_user_id=None,
            gateway_result=gateway_result,
            description=f"Dispute fee for dispute {dispute.id}",
        )

    def transition_status(
        self,
        session: Session,
        transaction_id: str,
        expected: TransactionStatus,
        new_status: TransactionStatus,
    ) -> bool:
        """The only in-place ledger mutation, applied as one conditional update"""
        TransactionStateValidator.ensure_transition(expected, new_status, transaction_id)
        result = session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == expected.value)
            .values(status=new_status.value)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            if session.get(Transaction, transaction_id) is None:
                raise NotFoundError(
                    f"Transaction {transaction_id} not found", code=ErrorCodes.TRANSACTION_NOT_FOUND
                )
            raise StateConflictError(
                f"Transaction {transaction_id} is no longer {expected.value}",
                code=ErrorCodes.CONCURRENT_MODIFICATION,
            )
        logger.info(f"📒 Transaction {transaction_id}: {expected.value} -> {new_status.value}")
        return True

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def flag_for_reconciliation(
        self,
        session_factory: sessionmaker,
        *,
        operation: str,
        project_id: str,
        amount: int,
        currency: str,
        error: BaseException,
        gateway_result: Optional[GatewayResult] = None,
        milestone_id: Optional[str] = None,
        dispute_id: Optional[str] = None,
    ) -> StateConflictError:
        """
        Money moved at the gateway but the ledger commit failed. Persist a
        reconciliation record in its own transaction and return the error the
        workflow should surface. The in-flight marker stays set, so the
        operation cannot be retried into a second payout.
        """
        provider_id = gateway_result.id if gateway_result else None
        logger.critical(
            f"🚨 RECONCILIATION_REQUIRED {operation} project={project_id} milestone={milestone_id} "
            f"dispute={dispute_id} amount={amount} {currency} provider_txn={provider_id}: {error}"
        )
        try:
            with managed_session(session_factory) as session:
                session.add(
                    ReconciliationRecord(
                        project_id=project_id,
                        milestone_id=milestone_id,
                        dispute_id=dispute_id,
                        operation=operation,
                        amount=amount,
                        currency=currency,
                        provider_transaction_id=provider_id,
                        error=f"{type(error).__name__}: {error}",
                    )
                )
        except Exception as record_error:
            logger.critical(
                f"🚨 Could not persist reconciliation record for {operation} project={project_id}: {record_error}",
                exc_info=True,
            )

        return StateConflictError(
            "Funds were transferred but the ledger could not be updated; flagged for manual reconciliation",
            code=ErrorCodes.RECONCILIATION_REQUIRED,
            details={
                "operation": operation,
                "project_id": project_id,
                "milestone_id": milestone_id,
                "dispute_id": dispute_id,
                "provider_transaction_id": provider_id,
            },
        )
