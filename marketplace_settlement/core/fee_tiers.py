"""
Seller tier table: level -> platform fee percentage.

Fixed table:
    Level 1 (Starter)      29%
    Level 2 (Rising Star)  20%
    Level 3 (Creator)      15%
    Level 4 (Pro)          12%
    Level 5 (Elite)         9%

Unknown levels (0, negative, None, anything outside 1..5) are charged the
level-1 rate. Malformed level data must never lower the fee.
"""
from dataclasses import dataclass
from typing import Any, Dict, Tuple


@dataclass(frozen=True)
class LevelTier:
    """One seller tier. ``min_earnings`` is in minor currency units."""

    level: int
    name: str
    min_earnings: int
    fee_percent: int


LEVELS: Tuple[LevelTier, ...] = (
    LevelTier(level=1, name="Starter", min_earnings=0, fee_percent=29),
    LevelTier(level=2, name="Rising Star", min_earnings=10_000, fee_percent=20),
    LevelTier(level=3, name="Creator", min_earnings=50_000, fee_percent=15),
    LevelTier(level=4, name="Pro", min_earnings=200_000, fee_percent=12),
    LevelTier(level=5, name="Elite", min_earnings=1_000_000, fee_percent=9),
)

MIN_LEVEL = LEVELS[0].level
MAX_LEVEL = LEVELS[-1].level

_FEE_BY_LEVEL: Dict[int, int] = {tier.level: tier.fee_percent for tier in LEVELS}
_FALLBACK_FEE_PERCENT = _FEE_BY_LEVEL[MIN_LEVEL]


def is_valid_level(level: Any) -> bool:
    # bool is an int subclass; True must not read as level 1
    return isinstance(level, int) and not isinstance(level, bool) and level in _FEE_BY_LEVEL


def fee_percent(level: Any) -> int:
    """
    Platform fee percentage for a seller level.

    Args:
        level: Seller level, expected 1..5

    Returns:
        int: Fee percentage; the level-1 rate for anything unrecognized
    """
    if not is_valid_level(level):
        return _FALLBACK_FEE_PERCENT
    return _FEE_BY_LEVEL[level]


def get_tier(level: Any) -> LevelTier:
    """Tier for a level, falling back to level 1 like ``fee_percent``."""
    if not is_valid_level(level):
        return LEVELS[0]
    return LEVELS[level - MIN_LEVEL]
