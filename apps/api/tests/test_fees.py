"""Tests for the fee calculator."""

import random
from decimal import Decimal

import pytest

from market_api.errors import OutOfRange, ValidationError
from market_api.fees.calculator import FeeCalculator, amount_to_drops, drops_to_amount
from market_api.settings import Settings


@pytest.fixture
def calculator(settings) -> FeeCalculator:
    return FeeCalculator(settings)


class TestFeeSplit:
    """Platform fee and seller revenue always add up to the price."""

    def test_hundred_splits_thirty_seventy(self, calculator):
        fees = calculator.compute_fees(Decimal("100"))
        assert fees.platform_fee == Decimal("30")
        assert fees.seller_revenue == Decimal("70")
        assert fees.total_drops == 100_000_000

    def test_randomized_prices_sum_exactly(self, calculator, settings):
        rng = random.Random(20261018)
        min_drops = amount_to_drops(settings.min_price)
        max_drops = amount_to_drops(settings.max_price)
        prices = [min_drops, max_drops, min_drops + 1, max_drops - 1]
        prices += [rng.randint(min_drops, max_drops) for _ in range(1000 - len(prices))]

        for total_drops in prices:
            fees = calculator.compute_fees_for_drops(total_drops)
            assert fees.platform_fee_drops + fees.seller_revenue_drops == total_drops
            assert fees.platform_fee + fees.seller_revenue == fees.total
            assert fees.seller_revenue_drops >= 0
            assert fees.platform_fee_drops >= 0

    def test_rounding_surplus_goes_to_platform(self, calculator):
        fees = calculator.compute_fees_for_drops(100_000_001)
        assert fees.seller_revenue_drops == 70_000_000
        assert fees.platform_fee_drops == 30_000_001

    def test_boundaries_accepted(self, calculator, settings):
        assert calculator.compute_fees(settings.min_price).total == settings.min_price
        assert calculator.compute_fees(settings.max_price).total == settings.max_price

    def test_string_and_int_prices(self, calculator):
        assert calculator.compute_fees("12.5").seller_revenue == Decimal("8.75")
        assert calculator.compute_fees(10).platform_fee == Decimal("3")

    def test_amounts_render_as_strings(self, calculator):
        assert calculator.compute_fees(Decimal("1")).as_amounts() == {
            "total": "1.000000",
            "platform_fee": "0.300000",
            "seller_revenue": "0.700000",
        }


class TestFeeValidation:
    """Out-of-range and malformed prices."""

    @pytest.mark.parametrize("price", [Decimal("0"), Decimal("-1"), Decimal("0.09"), Decimal("10000.000001")])
    def test_out_of_range(self, calculator, price):
        with pytest.raises(OutOfRange):
            calculator.compute_fees(price)

    def test_out_of_range_is_validation_error(self, calculator):
        with pytest.raises(ValidationError):
            calculator.compute_fees(Decimal("0"))

    @pytest.mark.parametrize("price", ["abc", "NaN", "Infinity", True])
    def test_malformed(self, calculator, price):
        with pytest.raises(ValidationError):
            calculator.compute_fees(price)

    def test_sub_unit_precision_rejected(self):
        with pytest.raises(ValidationError):
            amount_to_drops(Decimal("1.0000001"))

    def test_drops_roundtrip_value(self):
        assert drops_to_amount(1) == Decimal("0.000001")


class TestFeeSettings:
    """Global split validation happens at startup."""

    def test_split_must_sum_to_one(self):
        settings = Settings(platform_fee_ratio=Decimal("0.3"), seller_revenue_ratio=Decimal("0.6"))
        with pytest.raises(ValueError, match="sum to 1.0"):
            settings.validate_fee_split()

    def test_ratio_bounds(self):
        settings = Settings(platform_fee_ratio=Decimal("-0.1"), seller_revenue_ratio=Decimal("1.1"))
        with pytest.raises(ValueError):
            settings.validate_fee_split()

    def test_default_split_is_valid(self):
        Settings().validate_fee_split()

    def test_zero_platform_fee(self):
        settings = Settings(platform_fee_ratio=Decimal("0"), seller_revenue_ratio=Decimal("1"))
        settings.validate_fee_split()
        fees = FeeCalculator(settings).compute_fees(Decimal("5"))
        assert fees.platform_fee_drops == 0
        assert fees.seller_revenue_drops == fees.total_drops
