"""Tests for level progression."""
import pytest

from marketplace_settlement.core.level_tracker import (
    apply_level,
    level_progress,
    next_tier,
    recompute_level,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "earnings,expected",
    [
        (0, 1),
        (9_999, 1),
        (10_000, 2),
        (49_999, 2),
        (50_000, 3),
        (199_999, 3),
        (200_000, 4),
        (999_999, 4),
        (1_000_000, 5),
        (50_000_000, 5),
    ],
)
def test_recompute_level_thresholds(earnings: int, expected: int) -> None:
    assert recompute_level(earnings) == expected


@pytest.mark.unit
def test_recompute_level_takes_minor_units() -> None:
    # EUR 100.00 reaches level 2; the bare euro figure does not
    assert recompute_level(100_00) == 2
    assert recompute_level(100) == 1


@pytest.mark.unit
class TestApplyLevel:
    def test_promotes(self) -> None:
        assert apply_level(1, 60_000) == 3

    def test_never_demotes(self) -> None:
        assert apply_level(4, 0) == 4
        assert apply_level(3, 10_000) == 3

    @pytest.mark.parametrize("stored", [0, 99, None])
    def test_malformed_stored_level_is_replaced(self, stored: object) -> None:
        assert apply_level(stored, 12_000) == 2


@pytest.mark.unit
class TestLevelProgress:
    def test_halfway_to_next_level(self) -> None:
        progress = level_progress(5_000, 1)

        assert progress.level == 1
        assert progress.fee_percent == 29
        assert progress.next_level == 2
        assert progress.next_level_name == "Rising Star"
        assert progress.amount_to_next == 5_000
        assert progress.progress_percent == 50

    @pytest.mark.parametrize("earnings,expected", [(50, 1), (250, 3), (450, 5)])
    def test_progress_halves_round_up(self, earnings: int, expected: int) -> None:
        assert level_progress(earnings, 1).progress_percent == expected

    def test_top_level(self) -> None:
        progress = level_progress(2_000_000, 5)

        assert progress.next_level is None
        assert progress.amount_to_next == 0
        assert progress.progress_percent == 100

    def test_earnings_below_tier_after_refund(self) -> None:
        progress = level_progress(0, 3)

        assert progress.level == 3
        assert progress.progress_percent == 0
        assert progress.amount_to_next == 200_000

    def test_next_tier_of_top_level(self) -> None:
        assert next_tier(5) is None
        assert next_tier(1).level == 2
