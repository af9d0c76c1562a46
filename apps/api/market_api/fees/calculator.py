"""Fee calculation with a single global platform/seller split."""

from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from market_api.errors import OutOfRange, ValidationError
from market_api.settings import Settings, get_settings

PriceLike = Union[Decimal, int, str, float]


class FeeBreakdown(BaseModel):
    """Fee split for one price, in the smallest payment unit.

    platform_fee_drops + seller_revenue_drops == total_drops always holds.
    """

    model_config = ConfigDict(frozen=True)

    total_drops: int
    platform_fee_drops: int
    seller_revenue_drops: int
    decimals: int = 6

    @property
    def total(self) -> Decimal:
        return drops_to_amount(self.total_drops, self.decimals)

    @property
    def platform_fee(self) -> Decimal:
        return drops_to_amount(self.platform_fee_drops, self.decimals)

    @property
    def seller_revenue(self) -> Decimal:
        return drops_to_amount(self.seller_revenue_drops, self.decimals)

    def as_amounts(self) -> dict:
        """Decimal amounts as strings, for API responses."""
        return {
            "total": str(self.total),
            "platform_fee": str(self.platform_fee),
            "seller_revenue": str(self.seller_revenue),
        }


def drops_to_amount(drops: int, decimals: int = 6) -> Decimal:
    """Convert smallest units to a decimal amount."""
    unit = Decimal(1).scaleb(-decimals)
    return (Decimal(drops) * unit).quantize(unit)


def amount_to_drops(amount: PriceLike, decimals: int = 6) -> int:
    """Convert a decimal amount to smallest units, rejecting sub-unit precision."""
    value = _as_decimal(amount)
    unit = Decimal(1).scaleb(-decimals)
    quantized = value.quantize(unit, rounding=ROUND_FLOOR)
    if quantized != value:
        raise ValidationError(
            f"Amount {value} has more precision than the payment unit ({unit})"
        )
    return int(quantized.scaleb(decimals))


def _as_decimal(value: PriceLike) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Price must be a number")
    try:
        # Floats go through str() so 0.1 stays 0.1 instead of its binary expansion
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"Price is not a valid number: {value!r}") from e
    if not result.is_finite():
        raise ValidationError(f"Price must be finite, got {value!r}")
    return result


class FeeCalculator:
    """Split a price into platform fee and seller revenue.

    Works in integer smallest units so the split is exact. Seller revenue is
    rounded down and any rounding surplus goes to the platform fee.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize fee calculator."""
        self.settings = settings or get_settings()
        self.decimals = self.settings.payment_unit_decimals
        self.seller_ratio = Decimal(self.settings.seller_revenue_ratio)
        self.min_price = Decimal(self.settings.min_price)
        self.max_price = Decimal(self.settings.max_price)

    def compute_fees(self, price: PriceLike) -> FeeBreakdown:
        """Compute fees for a price expressed in whole payment units."""
        value = _as_decimal(price)
        if value <= 0 or value < self.min_price or value > self.max_price:
            raise OutOfRange(
                f"Price {value} is outside the allowed range [{self.min_price}, {self.max_price}]",
                details={"min_price": str(self.min_price), "max_price": str(self.max_price)},
            )
        return self.compute_fees_for_drops(amount_to_drops(value, self.decimals))

    def compute_fees_for_drops(self, total_drops: int) -> FeeBreakdown:
        """Compute fees for a price already expressed in smallest units."""
        total = drops_to_amount(total_drops, self.decimals)
        if total_drops <= 0 or total < self.min_price or total > self.max_price:
            raise OutOfRange(
                f"Price {total} is outside the allowed range [{self.min_price}, {self.max_price}]",
                details={"min_price": str(self.min_price), "max_price": str(self.max_price)},
            )
        seller_revenue = int(
            (Decimal(total_drops) * self.seller_ratio).to_integral_value(rounding=ROUND_FLOOR)
        )
        return FeeBreakdown(
            total_drops=total_drops,
            platform_fee_drops=total_drops - seller_revenue,
            seller_revenue_drops=seller_revenue,
            decimals=self.decimals,
        )


def compute_fees(price: PriceLike, settings: Optional[Settings] = None) -> FeeBreakdown:
    """Compute fees using process-wide settings."""
    return FeeCalculator(settings).compute_fees(price)
