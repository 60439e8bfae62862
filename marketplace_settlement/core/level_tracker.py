"""
Level progression from cumulative settled earnings.

The level is a high-water mark: it is recomputed after every balance-affecting
settlement transition and only ever moves up. A refund that lowers cumulative
earnings never demotes a seller.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from .fee_tiers import LEVELS, MIN_LEVEL, LevelTier, get_tier, is_valid_level
from .split_calculator import round_half_up


@dataclass(frozen=True)
class LevelProgress:
    """Progress of a seller towards the next tier."""

    level: int
    name: str
    fee_percent: int
    next_level: Optional[int]
    next_level_name: Optional[str]
    amount_to_next: int
    progress_percent: int


def recompute_level(cumulative_earnings: int) -> int:
    """
    Level for a cumulative earnings total.

    ``cumulative_earnings`` is in minor units (cents), like every amount in
    the ledger: EUR 100.00 is 10_000. Thresholds: < 10 000 -> 1,
    < 50 000 -> 2, < 200 000 -> 3, < 1 000 000 -> 4, otherwise 5.
    """
    level = MIN_LEVEL
    for tier in LEVELS:
        if cumulative_earnings >= tier.min_earnings:
            level = tier.level
    return level


def apply_level(current_level: Any, cumulative_earnings: int) -> int:
    """
    New stored level after a balance-affecting transition.

    Returns max(current, recomputed) so the level never decreases. A malformed
    stored level is replaced by the recomputed one.
    """
    recomputed = recompute_level(cumulative_earnings)
    if not is_valid_level(current_level):
        return recomputed
    return max(current_level, recomputed)


def next_tier(level: Any) -> Optional[LevelTier]:
    tier = get_tier(level)
    index = LEVELS.index(tier) + 1
    return LEVELS[index] if index < len(LEVELS) else None


def level_progress(cumulative_earnings: int, level: Any) -> LevelProgress:
    """
    Progress towards the next level.

    Earnings can sit below the current tier's minimum after refunds; progress
    is clamped to [0, 100] in that case. Halves round up.
    """
    tier = get_tier(level)
    upcoming = next_tier(tier.level)

    if upcoming is None:
        return LevelProgress(
            level=tier.level,
            name=tier.name,
            fee_percent=tier.fee_percent,
            next_level=None,
            next_level_name=None,
            amount_to_next=0,
            progress_percent=100,
        )

    progress_range = upcoming.min_earnings - tier.min_earnings
    current_progress = cumulative_earnings - tier.min_earnings
    percent = round_half_up(Decimal(current_progress * 100) / Decimal(progress_range))

    return LevelProgress(
        level=tier.level,
        name=tier.name,
        fee_percent=tier.fee_percent,
        next_level=upcoming.level,
        next_level_name=upcoming.name,
        amount_to_next=max(upcoming.min_earnings - cumulative_earnings, 0),
        progress_percent=min(max(percent, 0), 100),
    )
