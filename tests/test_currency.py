"""Minor-unit conversion across fiat and crypto currencies"""

from decimal import Decimal

import pytest

from utils.currency import (
    SUPPORTED_CURRENCIES,
    UnsupportedCurrencyError,
    decimal_places,
    format_amount,
    split_fee,
    to_decimal,
    to_minor_units,
)


class TestMinorUnits:
    """Decimal <-> integer minor unit conversion"""

    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            (Decimal("12.345"), "USD", 1235),
            ("1000.50", "EUR", 100050),
            ("1500", "JPY", 1500),
            ("0.00000001", "BTC", 1),
            ("1", "ETH", 10 ** 18),
            (Decimal("-1.005"), "USD", -101),
        ],
    )
    def test_to_minor_units(self, amount, currency, expected):
        assert to_minor_units(amount, currency) == expected

    def test_float_input_avoids_binary_artifacts(self):
        assert to_minor_units(0.1 + 0.2, "USD") == 30

    @pytest.mark.parametrize("currency", SUPPORTED_CURRENCIES)
    @pytest.mark.parametrize("minor", [0, 1, 123456789, 10 ** 30])
    def test_round_trip_is_exact(self, currency, minor):
        assert to_minor_units(to_decimal(minor, currency), currency) == minor

    def test_to_decimal_scales_by_currency(self):
        assert to_decimal(57840, "USD") == Decimal("578.40")
        assert to_decimal(2500, "JPY") == Decimal("2500")
        assert to_decimal(150000000, "BTC") == Decimal("1.5")

    def test_to_decimal_rejects_non_integers(self):
        with pytest.raises(TypeError):
            to_decimal(12.5, "USD")
        with pytest.raises(TypeError):
            to_decimal(True, "USD")

    def test_unsupported_currency(self):
        with pytest.raises(UnsupportedCurrencyError):
            decimal_places("DOGE")
        with pytest.raises(UnsupportedCurrencyError):
            to_minor_units("1", "XYZ")

    def test_currency_codes_are_case_insensitive(self):
        assert decimal_places("usd") == 2
        assert decimal_places(" eth ") == 18


class TestSplitFee:
    def test_platform_fee_examples(self):
        assert split_fee(100000, Decimal("1.9")) == 1900
        assert split_fee(60000, Decimal("3.6")) == 2160

    def test_ties_round_away_from_zero(self):
        # 25 * 2% = 0.5
        assert split_fee(25, Decimal("2")) == 1
        # 12 * 2.5% = 0.3
        assert split_fee(12, "2.5") == 0

    def test_wei_scale_amounts_stay_exact(self):
        amount = 3 * 10 ** 18
        assert split_fee(amount, Decimal("3.6")) == 108 * 10 ** 15


def test_format_amount():
    assert format_amount(123456, "USD") == "$1,234.56"
    assert format_amount(150000000, "BTC") == "₿1.50000000"
