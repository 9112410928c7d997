"""
Quote calculator tests: conversion, fee clamping, limits and quantization.

Run with: pytest tests/test_quote_calculator.py -v
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from config import Config
from services.quote_calculator import QuoteCalculator, quantize_fiat, quantize_token, to_decimal
from services.settlement_errors import ValidationError


@pytest.fixture
def calculator():
    return QuoteCalculator(
        onramp_rates={"APT": Decimal("0.1"), "USDC": Decimal("0.012")},
        offramp_rates={"APT": Decimal("10")},
    )


class TestOnrampQuotes:
    """Fiat in, tokens out"""

    def test_token_amount_is_fiat_times_rate(self, calculator):
        quote = calculator.quote_onramp("100", "APT")
        assert quote.token_amount == Decimal("10.00000000")
        assert quote.fiat_amount == Decimal("100.00")
        assert quote.conversion_rate == Decimal("0.1")

    def test_fee_is_charged_on_top(self, calculator):
        quote = calculator.quote_onramp("1000", "APT")
        # 0.5% of 1000 = 5
        assert quote.platform_fee == Decimal("5.00")
        assert quote.total_payable == Decimal("1005.00")
        assert quote.token_amount == Decimal("100.00000000")

    def test_fee_clamped_to_minimum_and_maximum(self, calculator):
        assert calculator.quote_onramp("10", "APT").platform_fee == Config.ONRAMP_FEE_MIN
        assert calculator.quote_onramp("100000", "APT").platform_fee == Config.ONRAMP_FEE_MAX

    def test_network_fee_added_to_total(self, calculator):
        quote = calculator.quote_onramp("100", "APT", network_fee=Decimal("0.456"))
        assert quote.network_fee == Decimal("0.46")
        assert quote.total_payable == quote.gross_fiat + quote.platform_fee + quote.gateway_fee + Decimal("0.46")

    def test_limits_enforced(self, calculator):
        with pytest.raises(ValidationError):
            calculator.quote_onramp("9.99", "APT")
        with pytest.raises(ValidationError):
            calculator.quote_onramp("100000.01", "APT")

    @pytest.mark.parametrize("amount", ["-5", "0", "abc", None, "NaN", "Infinity", True])
    def test_invalid_amounts_rejected(self, calculator, amount):
        with pytest.raises(ValidationError):
            calculator.quote_onramp(amount, "APT")

    def test_unknown_asset_rejected(self, calculator):
        with pytest.raises(ValidationError, match="Unsupported"):
            calculator.quote_onramp("100", "DOGE")

    def test_asset_type_case_insensitive(self, calculator):
        assert calculator.quote_onramp("100", "apt").asset_type == "APT"

    def test_token_amount_quantized_half_up(self):
        calculator = QuoteCalculator(onramp_rates={"APT": Decimal("0.0000000015")}, offramp_rates={})
        with patch.object(Config, "ONRAMP_MIN_FIAT", Decimal("1")):
            quote = calculator.quote_onramp("10", "APT")
        # 10 x 0.0000000015 = 0.000000015 -> 0.00000002
        assert quote.token_amount == Decimal("0.00000002")


class TestOfframpQuotes:
    """Tokens in, fiat out"""

    def test_gross_fee_and_net(self, calculator):
        quote = calculator.quote_offramp("10", "APT")
        assert quote.gross_fiat == Decimal("100.00")
        # 2.5% of 100 = 2.50, clamped up to the 5.00 minimum
        assert quote.platform_fee == Decimal("5.00")
        assert quote.net_fiat == Decimal("95.00")
        assert quote.token_amount == Decimal("10.00000000")

    def test_net_below_minimum_rejected(self, calculator):
        # 0.9 APT -> 9.00 gross, 5.00 fee, 4.00 net
        with pytest.raises(ValidationError, match="below the minimum"):
            calculator.quote_offramp("0.9", "APT")

    def test_token_limits(self, calculator):
        with pytest.raises(ValidationError):
            calculator.quote_offramp("0.001", "APT")
        with pytest.raises(ValidationError):
            calculator.quote_offramp("1000.1", "APT")

    def test_asset_without_offramp_rate_rejected(self, calculator):
        with pytest.raises(ValidationError, match="not enabled"):
            calculator.quote_offramp("10", "USDC")

    def test_quote_dispatches_on_direction(self, calculator):
        assert calculator.quote("on_ramp", "100", "APT").direction == "on_ramp"
        assert calculator.quote("off_ramp", "10", "APT").direction == "off_ramp"
        with pytest.raises(ValidationError):
            calculator.quote("sideways", "10", "APT")


class TestEstimatesAndTables:

    def test_network_fee_estimate_native(self, calculator):
        estimate = calculator.estimate_network_fee("APT", 100)
        # 100 x 2000 / 1e8 = 0.002 APT, / 0.1 APT per INR = 0.02 INR
        assert estimate["native_fee"] == "0.00200000"
        assert estimate["fiat_fee"] == "0.02"

    def test_network_fee_estimate_scaled_for_non_native(self, calculator):
        estimate = calculator.estimate_network_fee("USDC", 100)
        assert estimate["estimated_gas_units"] == 3000
        assert estimate["native_fee"] == "0.00300000"

    def test_rates_and_limits_are_strings(self, calculator):
        rates = calculator.rates()
        assert rates["onramp"]["APT"] == "0.1"
        assert rates["fiat_currency"] == Config.FIAT_CURRENCY
        limits = calculator.limits()
        assert limits["onramp"]["supported_assets"] == ["APT", "USDC"]
        assert limits["offramp"]["min_net_payout"] == str(Config.OFFRAMP_MIN_NET_PAYOUT)


class TestHelpers:

    def test_quantizers(self):
        assert quantize_fiat(Decimal("1.005")) == Decimal("1.01")
        assert quantize_token(Decimal("0.123456785")) == Decimal("0.12345679")

    def test_float_input_keeps_printed_value(self):
        assert to_decimal(0.1) == Decimal("0.1")
