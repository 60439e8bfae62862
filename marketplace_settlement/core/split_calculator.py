"""
Revenue split between platform, seller and referring affiliate.

All amounts are integers in minor currency units. Each derived quantity is
rounded exactly once (ROUND_HALF_UP); the seller's share is obtained by
subtraction so ``platform_fee + seller_net == gross_amount`` holds for every
valid input.

Affiliate commission is carved out of the platform fee, never added on top:
a referred sale costs the seller exactly what an unreferred one does.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Union

from .errors import InvalidAmount, InvalidPercentage
from .fee_tiers import fee_percent

Percentage = Union[int, float, Decimal, str]

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class Split:
    """Result of a split computation."""

    gross_amount: int
    fee_percent: int
    platform_fee: int
    affiliate_commission: int
    seller_net: int

    @property
    def application_fee_amount(self) -> int:
        """Slice withheld at the processor: platform fee plus affiliate commission."""
        return self.platform_fee + self.affiliate_commission


def round_half_up(value: Decimal) -> int:
    """Round to the nearest minor unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage_of(amount: int, percent: Decimal) -> int:
    """``round_half_up(amount * percent / 100)``"""
    return round_half_up(Decimal(amount) * percent / _HUNDRED)


def validate_amount(amount: Any, allow_zero: bool = True) -> int:
    """
    Validate a minor-unit amount.

    Raises:
        InvalidAmount: If the amount is not an integer, is fractional, or is out of range
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(
            "Amount must be an integer number of minor currency units",
            amount=str(amount),
        )
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(
            "Amount must be positive" if not allow_zero else "Amount must not be negative",
            amount=amount,
        )
    return amount


def validate_percentage(percent: Any) -> Decimal:
    """
    Parse a percentage into a Decimal in [0, 100].

    Raises:
        InvalidPercentage: If the value is not numeric or out of range
    """
    if percent is None:
        return Decimal("0")
    if isinstance(percent, bool):
        raise InvalidPercentage("Percentage must be numeric", percent=str(percent))
    try:
        value = Decimal(str(percent))
    except (InvalidOperation, ValueError):
        raise InvalidPercentage("Percentage must be numeric", percent=str(percent))
    if not value.is_finite() or value < 0 or value > _HUNDRED:
        raise InvalidPercentage("Percentage must be between 0 and 100", percent=str(percent))
    return value


def compute_split(
    gross_amount: int,
    level: Any,
    affiliate_commission_percent: Percentage = 0,
) -> Split:
    """
    Split a gross amount for a seller level.

    Args:
        gross_amount: Sale price in minor units (non-negative int)
        level: Seller level (1-5); unknown levels pay the level-1 rate
        affiliate_commission_percent: Share of gross redirected to a promoter

    Returns:
        Split: platform fee, affiliate commission (<= platform fee) and seller net

    Raises:
        InvalidAmount: If gross_amount is negative or not an integer
        InvalidPercentage: If the commission percentage is outside [0, 100]
    """
    gross_amount = validate_amount(gross_amount)
    commission_percent = validate_percentage(affiliate_commission_percent)

    percent = fee_percent(level)
    platform_fee = percentage_of(gross_amount, Decimal(percent))

    affiliate_commission = 0
    if commission_percent > 0:
        affiliate_commission = min(
            percentage_of(gross_amount, commission_percent), platform_fee
        )

    return Split(
        gross_amount=gross_amount,
        fee_percent=percent,
        platform_fee=platform_fee,
        affiliate_commission=affiliate_commission,
        seller_net=gross_amount - platform_fee,
    )
