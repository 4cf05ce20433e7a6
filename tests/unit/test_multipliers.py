"""Multiplier table lookups."""

from datetime import datetime, timedelta, timezone

import pytest

from ttg.gamification import multipliers


class TestLabelTables:
    """Difficulty and priority lookups are case-insensitive and total."""

    def test_known_difficulty(self):
        assert multipliers.difficulty_multiplier("High") == 1.5
        assert multipliers.difficulty_multiplier(" expert ") == 2.5

    def test_unknown_difficulty_is_neutral(self):
        assert multipliers.difficulty_multiplier("legendary") == 1.0
        assert multipliers.difficulty_multiplier(None) == 1.0

    def test_priority(self):
        assert multipliers.priority_multiplier("low") == 0.9
        assert multipliers.priority_multiplier("CRITICAL") == 2.0
        assert multipliers.priority_multiplier("") == 1.0


class TestStreakMultiplier:
    @pytest.mark.parametrize(
        "days,expected",
        [
            (0, 1.0),
            (2, 1.0),
            (3, 1.1),
            (6, 1.1),
            (7, 1.25),
            (10, 1.25),
            (14, 1.5),
            (30, 2.0),
            (99, 2.5),
            (100, 3.0),
            (365, 4.0),
            (5000, 4.0),
        ],
    )
    def test_breakpoints(self, days, expected):
        assert multipliers.streak_multiplier(days) == expected

    def test_negative_clamps_to_first_bucket(self):
        assert multipliers.streak_multiplier(-4) == 1.0


class TestFocusMultiplier:
    @pytest.mark.parametrize(
        "minutes,expected",
        [(None, 0.5), (0, 0.5), (14.9, 0.5), (15, 1.0), (45, 1.25), (60, 1.5), (90, 1.75), (240, 2.0)],
    )
    def test_breakpoints(self, minutes, expected):
        assert multipliers.focus_multiplier(minutes) == expected


class TestCompletionTiming:
    """Early/late against the due date, then the time of day."""

    NOON = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)

    def test_midday_without_due_date_is_neutral(self):
        assert multipliers.completion_timing_multiplier(self.NOON) == 1.0

    def test_early_by_a_full_day(self):
        due = self.NOON + timedelta(hours=24)
        assert multipliers.completion_timing_multiplier(self.NOON, due) == pytest.approx(1.2)

    def test_less_than_a_day_early_is_on_time(self):
        due = self.NOON + timedelta(hours=23)
        assert multipliers.completion_timing_multiplier(self.NOON, due) == 1.0

    def test_late(self):
        due = self.NOON - timedelta(minutes=1)
        assert multipliers.completion_timing_multiplier(self.NOON, due) == pytest.approx(0.7)

    def test_early_morning(self):
        at = self.NOON.replace(hour=8, minute=59)
        assert multipliers.completion_timing_multiplier(at) == pytest.approx(1.15)

    def test_late_night(self):
        at = self.NOON.replace(hour=22)
        assert multipliers.completion_timing_multiplier(at) == pytest.approx(1.10)

    def test_bonuses_multiply(self):
        at = self.NOON.replace(hour=7)
        due = at + timedelta(days=3)
        assert multipliers.completion_timing_multiplier(at, due) == pytest.approx(1.2 * 1.15)

    def test_naive_due_date_against_aware_completion(self):
        due = (self.NOON - timedelta(hours=1)).replace(tzinfo=None)
        assert multipliers.completion_timing_multiplier(self.NOON, due) == pytest.approx(0.7)


class TestCollaboration:
    def test_not_collaborative(self):
        assert multipliers.collaboration_multiplier(False, 4) == 1.0

    @pytest.mark.parametrize("count,expected", [(None, 1.3), (1, 1.3), (2, 1.3), (3, 1.4), (4, 1.5), (5, 1.6), (12, 1.6)])
    def test_participant_buckets(self, count, expected):
        assert multipliers.collaboration_multiplier(True, count) == expected


class TestConsistency:
    def test_weekly(self):
        assert multipliers.weekly_consistency_multiplier(0.0) == 1.0
        assert multipliers.weekly_consistency_multiplier(4 / 7) == 1.1
        assert multipliers.weekly_consistency_multiplier(1.0) == 1.5

    def test_monthly(self):
        assert multipliers.monthly_consistency_multiplier(0.49) == 1.0
        assert multipliers.monthly_consistency_multiplier(0.8) == 1.3
        assert multipliers.monthly_consistency_multiplier(0.95) == 1.5

    def test_ratio_is_clamped(self):
        assert multipliers.weekly_consistency_multiplier(3.0) == 1.5
        assert multipliers.monthly_consistency_multiplier(-1.0) == 1.0
