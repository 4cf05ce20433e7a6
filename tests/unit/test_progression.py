"""Level curve and tier thresholds."""

import pytest

from ttg.gamification.progression import (
    LEVEL_THRESHOLDS,
    MAX_LEVEL,
    TIER_THRESHOLDS,
    advance_tier,
    compute_level,
    points_for_level,
    tier_for_points,
)


class TestLevelCurve:
    """Each level costs 100 * level^1.5 more than the last."""

    def test_level_1_at_zero(self):
        info = compute_level(0)
        assert info.level == 1
        assert info.next_level_threshold == 100

    def test_level_2_at_100(self):
        assert compute_level(99).level == 1
        assert compute_level(100).level == 2

    def test_level_3_at_382(self):
        assert points_for_level(2) == 282
        assert compute_level(381).level == 2
        info = compute_level(382)
        assert info.level == 3
        assert info.points_into_level == 0

    def test_points_into_level(self):
        info = compute_level(150)
        assert info.level == 2
        assert info.points_into_level == 50
        assert info.points_for_level == 282
        assert info.next_level_threshold == 382

    def test_thresholds_strictly_increase(self):
        steps = LEVEL_THRESHOLDS[1:]
        assert all(a < b for a, b in zip(steps, steps[1:]))

    def test_max_level(self):
        info = compute_level(10**9)
        assert info.level == MAX_LEVEL
        assert info.next_level_threshold == LEVEL_THRESHOLDS[MAX_LEVEL]
        assert info.points_for_level == 1

    @pytest.mark.parametrize("level", [2, 5, 10, 50])
    def test_level_starts_exactly_at_threshold(self, level):
        assert compute_level(LEVEL_THRESHOLDS[level]).level == level
        assert compute_level(LEVEL_THRESHOLDS[level] - 1).level == level - 1


class TestTiers:
    @pytest.mark.parametrize(
        "earned,tier",
        [(0, "bronze"), (749, "bronze"), (750, "silver"), (3000, "gold"), (10000, "platinum"),
         (30000, "diamond"), (100000, "onyx"), (10**7, "onyx")],
    )
    def test_tier_for_points(self, earned, tier):
        assert tier_for_points(earned) == tier

    def test_custom_thresholds(self):
        thresholds = {**TIER_THRESHOLDS, "silver": 10}
        assert tier_for_points(10, thresholds) == "silver"

    def test_advance_never_goes_backward(self):
        assert advance_tier("gold", 0) == "gold"
        assert advance_tier("silver", 3500) == "gold"

    def test_unknown_current_tier_is_replaced(self):
        assert advance_tier("wood", 800) == "silver"
