"""
Tests for win detection, streak bookkeeping and streak breaks.

Small recurring purchases are coffee at 4.50; fillers are 60.00 groceries
so they never count toward the behavior.
"""
from datetime import timedelta

import pytest

from nudge.services.types import BehaviorType, StreakBreakReason, UserState, WinType
from nudge.services.wins import (
    RelapseSeverity,
    StreakBreak,
    apply_streak_break,
    celebrate_win,
    detect_relapse,
    detect_streak_break,
    detect_win,
    detect_win_with_streak_check,
    record_win,
)

from conftest import filler_transactions, make_tx

_SR = BehaviorType.small_recurring


def _weeks(now, previous: int, current: int, fillers: int = 12):
    """`previous` coffees 8-13 days ago, `current` coffees in the last week."""
    txs = filler_transactions(now, fillers)
    for i in range(previous):
        txs.append(make_tx(f"p{i}", now - timedelta(days=8 + i % 6, hours=i)))
    for i in range(current):
        txs.append(make_tx(f"c{i}", now - timedelta(days=1 + i % 6, hours=i)))
    return txs


@pytest.fixture()
def coached(profile):
    profile.last_active_behavior = _SR
    return profile


class TestDetectWin:
    def test_pattern_break(self, coached, now):
        result = detect_win(coached, _weeks(now, 6, 2), now)
        assert result.win_type == WinType.pattern_break
        assert result.behavior == _SR
        assert result.improvement_percent == pytest.approx(66.7)

    def test_improvement(self, coached, now):
        result = detect_win(coached, _weeks(now, 6, 4), now)
        assert result.win_type == WinType.improvement

    def test_silent_win(self, coached, now):
        result = detect_win(coached, _weeks(now, 10, 8), now)
        assert result.win_type == WinType.silent_win
        assert result.is_silent

    def test_no_drop_no_win(self, coached, now):
        assert detect_win(coached, _weeks(now, 4, 4), now) is None

    def test_small_baseline_is_not_a_pattern_break(self, coached, now):
        assert detect_win(coached, _weeks(now, 2, 0), now) is None

    def test_never_coached(self, profile, now):
        assert detect_win(profile, _weeks(now, 6, 0), now) is None

    def test_too_few_transactions(self, coached, now):
        assert detect_win(coached, _weeks(now, 6, 0, fillers=0), now) is None

    def test_one_win_per_interval(self, coached, now):
        coached.last_win_at = now - timedelta(days=3)
        assert detect_win(coached, _weeks(now, 6, 0), now) is None

    def test_streak_milestone(self, coached, now):
        coached.current_streak = 7
        result = detect_win(coached, filler_transactions(now, 14), now)
        assert result.win_type == WinType.streak_milestone
        assert result.streak_days == 7

    def test_milestone_rewarded_once_per_streak(self, coached, now):
        coached.current_streak = 7
        coached.last_milestone = 7
        assert detect_win(coached, filler_transactions(now, 14), now) is None


class TestRecordAndCelebrate:
    def test_record_stamps_profile(self, coached, now):
        result = detect_win(coached, _weeks(now, 6, 2), now)
        win = record_win("user-1", coached, result, now)
        assert not win.celebrated
        assert coached.last_win_at == now
        assert coached.last_win_behavior == _SR
        assert coached.current_streak == 0

    def test_silent_win_is_stored_celebrated(self, coached, now):
        result = detect_win(coached, _weeks(now, 10, 8), now)
        win = record_win("user-1", coached, result, now)
        assert win.celebrated
        assert win.celebrated_at == now

    def test_celebrate_grows_streak(self, profile):
        for _ in range(3):
            celebrate_win(profile)
        assert profile.current_streak == 3
        assert profile.total_wins == 3
        assert profile.longest_streak == 3

    def test_longest_survives_break(self, profile, now):
        for _ in range(4):
            celebrate_win(profile)
        apply_streak_break(profile, StreakBreak(StreakBreakReason.inactivity, 4, now))
        celebrate_win(profile)
        assert profile.current_streak == 1
        assert profile.longest_streak == 4
        assert profile.longest_streak >= profile.current_streak


class TestRelapse:
    def _won(self, profile, now):
        profile.last_active_behavior = _SR
        profile.last_win_behavior = _SR
        profile.last_win_at = now - timedelta(days=10)
        profile.current_streak = 5
        return profile

    def test_moderate(self, profile, now):
        check = detect_relapse(self._won(profile, now), _weeks(now, 2, 3), now)
        assert check.severity == RelapseSeverity.moderate

    def test_severe(self, profile, now):
        check = detect_relapse(self._won(profile, now), _weeks(now, 2, 4), now)
        assert check.severity == RelapseSeverity.severe

    def test_outside_relapse_window(self, profile, now):
        self._won(profile, now).last_win_at = now - timedelta(days=40)
        assert detect_relapse(profile, _weeks(now, 2, 4), now).severity == RelapseSeverity.none

    def test_relapse_breaks_streak(self, profile, now):
        streak_break = detect_streak_break(self._won(profile, now), _weeks(now, 2, 3), now)
        assert streak_break.reason == StreakBreakReason.behavior_relapse
        assert streak_break.previous_streak == 5
        apply_streak_break(profile, streak_break)
        assert profile.current_streak == 0
        assert profile.streak_break_reason == StreakBreakReason.behavior_relapse
        assert streak_break.message == "Streak paused. Old habits crept back."

    def test_severe_regression(self, profile, now):
        streak_break = detect_streak_break(self._won(profile, now), _weeks(now, 2, 4), now)
        assert streak_break.reason == StreakBreakReason.severe_regression

    def test_withdrawal_breaks_first(self, profile, now):
        self._won(profile, now).user_state = UserState.WITHDRAWN
        streak_break = detect_streak_break(profile, _weeks(now, 2, 4), now)
        assert streak_break.reason == StreakBreakReason.withdrawal_triggered

    def test_reentering_active(self, profile, now):
        self._won(profile, now)
        profile.user_state = UserState.ACTIVE
        profile.active_behavior = _SR
        profile.state_changed_at = now - timedelta(days=1)
        streak_break = detect_streak_break(profile, _weeks(now, 3, 3), now)
        assert streak_break.reason == StreakBreakReason.behavior_relapse

    def test_inactivity(self, profile, now):
        self._won(profile, now)
        stale = [make_tx(f"s{i}", now - timedelta(days=8 + i), amount=60.0) for i in range(5)]
        streak_break = detect_streak_break(profile, stale, now)
        assert streak_break.reason == StreakBreakReason.inactivity

    def test_no_streak_nothing_to_break(self, profile, now):
        assert detect_streak_break(profile, [], now) is None


class TestCombinedCheck:
    def test_break_wins_over_win(self, profile, now):
        profile.last_active_behavior = _SR
        profile.last_win_behavior = _SR
        profile.last_win_at = now - timedelta(days=10)
        profile.current_streak = 5
        check = detect_win_with_streak_check("user-1", profile, _weeks(now, 2, 3), now)
        assert check.win_result is None
        assert check.streak_break.reason == StreakBreakReason.behavior_relapse

    def test_user_mismatch(self, profile, now):
        with pytest.raises(ValueError):
            detect_win_with_streak_check("someone-else", profile, [], now)
