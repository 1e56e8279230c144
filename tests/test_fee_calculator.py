"""
FEE MODEL TESTS
Deposit fee, release split and dispute fee tiers, all in integer minor units.
"""

from decimal import Decimal

import pytest

from config import Config
from utils.fee_calculator import FeeCalculator


class TestDepositFees:
    def test_client_fee_on_budget(self):
        fees = FeeCalculator.calculate_deposit_fees(100000, Decimal("1.9"))
        assert fees.client == 1900
        assert fees.freelancer == 0
        assert fees.total == fees.client + fees.freelancer
        assert fees.platform == fees.total

    def test_default_schedule(self):
        schedule = FeeCalculator.default_schedule()
        assert schedule["client_fee_percent"] == Decimal("1.9")
        assert schedule["freelancer_fee_percent"] == Decimal("3.6")
        assert schedule["total_fee_percent"] == Decimal("5.5")
        assert schedule["auto_approve_days"] == Config.DEFAULT_AUTO_APPROVE_DAYS
        assert FeeCalculator.default_schedule(3)["auto_approve_days"] == 3


class TestReleaseAmounts:
    """net + freelancer fee == milestone amount, exactly"""

    def test_sixty_thousand_cent_release(self):
        release = FeeCalculator.calculate_release_amounts(60000, "USD", Decimal("1.9"), Decimal("3.6"))
        assert release.freelancer_fee == 2160
        assert release.net_amount == 57840
        assert release.net_decimal == Decimal("578.40")
        assert release.fees.freelancer == 2160
        assert release.fees.total == release.fees.client + release.fees.freelancer

    @pytest.mark.parametrize("amount", [1, 99, 5001, 123457, 99999999])
    def test_split_is_exact(self, amount):
        release = FeeCalculator.calculate_release_amounts(amount, "USD", Decimal("1.9"), Decimal("3.6"))
        assert release.net_amount + release.freelancer_fee == amount

    def test_wei_release(self):
        amount = 2 * 10 ** 18
        release = FeeCalculator.calculate_release_amounts(amount, "ETH", Decimal("1.9"), Decimal("3.6"))
        assert release.freelancer_fee == 72 * 10 ** 15
        assert release.net_decimal == Decimal("1.928")


class TestDisputeFeeTiers:
    @pytest.mark.parametrize(
        "milestone_amount,per_party",
        [
            (40000, 2500),      # $400
            (49999, 2500),      # $499.99
            (50000, 3500),      # $500
            (199999, 3500),     # $1999.99
            (200000, 5000),     # $2000
            (10000000, 5000),
        ],
    )
    def test_usd_tiers(self, milestone_amount, per_party):
        quote = FeeCalculator.calculate_dispute_fee(milestone_amount, "USD")
        assert quote.per_party_fee == per_party
        assert quote.total_amount == per_party * 2
        assert quote.currency == "USD"

    def test_tier_uses_nominal_value_in_milestone_currency(self):
        # 0.5 BTC is below the 500 threshold nominally
        assert FeeCalculator.calculate_dispute_fee(50000000, "BTC").per_party_fee == 2500
        # 100000 JPY is above 2000 nominally
        assert FeeCalculator.calculate_dispute_fee(100000, "JPY").per_party_fee == 5000
