"""Fee calculation utilities for milestone escrow transactions"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, Optional

from config import Config
from utils.currency import split_fee, to_decimal, to_minor_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    """Ledger fee record, all values in minor units of the transaction currency"""

    client: int = 0
    freelancer: int = 0
    platform: int = 0
    payment_processor: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ReleaseAmounts:
    """Result of splitting a milestone amount at release time"""

    milestone_amount: int
    freelancer_fee: int
    net_amount: int
    net_decimal: Decimal
    fees: FeeBreakdown


@dataclass(frozen=True)
class DisputeFeeQuote:
    per_party_fee: int
    total_amount: int
    currency: str


class FeeCalculator:
    """Handles all fee-related calculations with exact minor-unit arithmetic"""

    @classmethod
    def default_schedule(cls, auto_approve_days: Optional[int] = None) -> Dict[str, object]:
        client = Config.CLIENT_FEE_PERCENT
        freelancer = Config.FREELANCER_FEE_PERCENT
        return {
            "client_fee_percent": client,
            "freelancer_fee_percent": freelancer,
            "total_fee_percent": client + freelancer,
            "auto_approve_days": auto_approve_days or Config.DEFAULT_AUTO_APPROVE_DAYS,
        }

    @classmethod
    def calculate_deposit_fees(cls, budget: int, client_fee_percent: Decimal) -> FeeBreakdown:
        """Client fee charged on top of the contract value at deposit time"""
        client_fee = split_fee(budget, client_fee_percent)
        return FeeBreakdown(
            client=client_fee,
            freelancer=0,
            platform=client_fee,
            payment_processor=0,
            total=client_fee,
        )

    @classmethod
    def calculate_release_amounts(
        cls,
        milestone_amount: int,
        currency: str,
        client_fee_percent: Decimal,
        freelancer_fee_percent: Decimal,
    ) -> ReleaseAmounts:
        """
        Split a milestone amount into the freelancer payout and the freelancer fee.

        The net amount is derived by subtraction so that
        net_amount + freelancer_fee == milestone_amount holds exactly.
        The client fee is recomputed on the milestone amount for audit only; it
        was collected at deposit.
        """
        freelancer_fee = split_fee(milestone_amount, freelancer_fee_percent)
        net_amount = milestone_amount - freelancer_fee
        client_fee = split_fee(milestone_amount, client_fee_percent)
        fees = FeeBreakdown(
            client=client_fee,
            freelancer=freelancer_fee,
            platform=client_fee + freelancer_fee,
            payment_processor=0,
            total=client_fee + freelancer_fee,
        )
        return ReleaseAmounts(
            milestone_amount=milestone_amount,
            freelancer_fee=freelancer_fee,
            net_amount=net_amount,
            net_decimal=to_decimal(net_amount, currency),
            fees=fees,
        )

    @classmethod
    def calculate_dispute_fee(cls, milestone_amount: int, milestone_currency: str) -> DisputeFeeQuote:
        """
        Flat per-party dispute fee tiered by the milestone's nominal value.

        Tiers compare the milestone amount in major units of its own currency
        against the configured thresholds; the fee itself is charged in
        Config.DISPUTE_FEE_CURRENCY.
        """
        nominal = to_decimal(milestone_amount, milestone_currency)
        fee_major = Config.DISPUTE_FEE_TIERS[-1][1]
        for upper_bound, tier_fee in Config.DISPUTE_FEE_TIERS:
            if upper_bound is None or nominal < upper_bound:
                fee_major = tier_fee
                break

        fee_currency = Config.DISPUTE_FEE_CURRENCY
        per_party = to_minor_units(fee_major, fee_currency)
        logger.debug(
            f"Dispute fee tier for {nominal} {milestone_currency}: {fee_major} {fee_currency} per party"
        )
        return DisputeFeeQuote(
            per_party_fee=per_party,
            total_amount=per_party * 2,
            currency=fee_currency,
        )
