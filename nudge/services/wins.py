"""
Win / Streak Tracker.

Wins
----
Measured on the behavior the user was last coached on
(`profile.last_active_behavior`), comparing matching transactions in the last
7 days against the 7 days before:

  pattern_break    : drop >= pattern_break_threshold (50%) with a baseline of
                     at least `pattern_break_min_baseline` matches
  improvement      : drop >= win_improvement_threshold (30%)
  silent_win       : drop >= silent_win_threshold (10%); stored already
                     celebrated, never surfaced, never moves the streak
  streak_milestone : current streak sits on a milestone (7/14/30/60/90) not
                     yet rewarded during this streak

At most one win per `win_min_interval_days`; at least
`min_transactions_for_win` transactions are required.

Streak breaks (only when current_streak > 0)
-------------------------------------------
  WITHDRAWN                                   -> withdrawal_triggered
  severe relapse (>= +100% week over week)    -> severe_regression
  moderate relapse (>= +50%)                  -> behavior_relapse
  the won-over behavior re-entered ACTIVE     -> behavior_relapse
  no transaction for streak_inactivity_days   -> inactivity

A break takes precedence over a win in the same check.

Celebrating (`celebrate_win`) is the only place the streak grows; the engine
calls it once per win id.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.services.detection import matches_behavior
from nudge.services.messages import select_streak_break_message, select_win_message
from nudge.services.profile import BehavioralProfile
from nudge.services.types import (
    BehavioralWin,
    BehaviorType,
    StreakBreakReason,
    Transaction,
    UserState,
    WinType,
)

_DEFAULT_CONFIG = EngineConfig()
_WEEK = timedelta(days=7)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

class RelapseSeverity(str, enum.Enum):
    none = "none"
    mild = "mild"
    moderate = "moderate"
    severe = "severe"


@dataclass(frozen=True)
class RelapseCheck:
    severity: RelapseSeverity
    increase_percent: float
    behavior: Optional[BehaviorType] = None


@dataclass
class WinResult:
    win_type: WinType
    behavior: BehaviorType
    message: str
    improvement_percent: Optional[float] = None
    streak_days: Optional[int] = None

    @property
    def is_silent(self) -> bool:
        return self.win_type == WinType.silent_win


@dataclass
class StreakBreak:
    reason: StreakBreakReason
    previous_streak: int
    broken_at: datetime

    @property
    def message(self) -> str:
        return select_streak_break_message(self.reason, self.previous_streak)


@dataclass
class WinCheck:
    win_result: Optional[WinResult]
    streak_break: Optional[StreakBreak] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _week_over_week(
    behavior: BehaviorType,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig,
) -> tuple[int, int]:
    """(previous week matches, current week matches)."""
    previous = current = 0
    for tx in transactions:
        if not matches_behavior(behavior, tx, config):
            continue
        age = now - tx.occurred_at
        if timedelta(0) <= age < _WEEK:
            current += 1
        elif _WEEK <= age < 2 * _WEEK:
            previous += 1
    return previous, current


def detect_relapse(
    profile: BehavioralProfile,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> RelapseCheck:
    behavior = profile.last_win_behavior or profile.last_active_behavior
    if behavior is None or profile.last_win_at is None:
        return RelapseCheck(RelapseSeverity.none, 0.0)
    if now - profile.last_win_at > timedelta(days=config.relapse_window_days):
        return RelapseCheck(RelapseSeverity.none, 0.0, behavior)

    previous, current = _week_over_week(behavior, transactions, now, config)
    if current <= previous:
        return RelapseCheck(RelapseSeverity.none, 0.0, behavior)
    increase = (current - previous) / max(previous, 1)
    percent = round(increase * 100, 1)
    if increase >= config.relapse_severe:
        return RelapseCheck(RelapseSeverity.severe, percent, behavior)
    if increase >= config.relapse_moderate:
        return RelapseCheck(RelapseSeverity.moderate, percent, behavior)
    if increase >= config.relapse_mild:
        return RelapseCheck(RelapseSeverity.mild, percent, behavior)
    return RelapseCheck(RelapseSeverity.none, percent, behavior)


# ---------------------------------------------------------------------------
# Streak breaks
# ---------------------------------------------------------------------------

def detect_streak_break(
    profile: BehavioralProfile,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> Optional[StreakBreak]:
    if profile.current_streak <= 0:
        return None

    def _break(reason: StreakBreakReason) -> StreakBreak:
        return StreakBreak(reason, profile.current_streak, now)

    if profile.user_state == UserState.WITHDRAWN:
        return _break(StreakBreakReason.withdrawal_triggered)

    relapse = detect_relapse(profile, transactions, now, config)
    if relapse.severity == RelapseSeverity.severe:
        return _break(StreakBreakReason.severe_regression)
    if relapse.severity == RelapseSeverity.moderate:
        return _break(StreakBreakReason.behavior_relapse)

    if reentered_active(profile):
        return _break(StreakBreakReason.behavior_relapse)

    inactivity = timedelta(days=config.streak_inactivity_days)
    if not any(now - tx.occurred_at < inactivity for tx in transactions):
        return _break(StreakBreakReason.inactivity)
    return None


def reentered_active(profile: BehavioralProfile) -> bool:
    """The behavior the last win was about became ACTIVE again after that win."""
    return (
        profile.user_state == UserState.ACTIVE
        and profile.last_win_at is not None
        and profile.active_behavior is not None
        and profile.active_behavior == profile.last_win_behavior
        and profile.state_changed_at is not None
        and profile.state_changed_at > profile.last_win_at
    )


def apply_streak_break(profile: BehavioralProfile, streak_break: StreakBreak) -> None:
    profile.current_streak = 0
    profile.last_milestone = 0
    profile.streak_broken_at = streak_break.broken_at
    profile.streak_break_reason = streak_break.reason


# ---------------------------------------------------------------------------
# Wins
# ---------------------------------------------------------------------------

def detect_win(
    profile: BehavioralProfile,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> Optional[WinResult]:
    behavior = profile.last_active_behavior
    if behavior is None:
        return None
    if profile.last_win_at is not None and now - profile.last_win_at < timedelta(
        days=config.win_min_interval_days
    ):
        return None
    if len(transactions) < config.min_transactions_for_win:
        return None

    previous, current = _week_over_week(behavior, transactions, now, config)
    if previous >= config.pattern_break_min_baseline:
        drop = (previous - current) / previous
        percent = round(drop * 100, 1)
        if drop >= config.pattern_break_threshold:
            win_type = WinType.pattern_break
        elif drop >= config.win_improvement_threshold:
            win_type = WinType.improvement
        elif drop >= config.silent_win_threshold:
            win_type = WinType.silent_win
        else:
            win_type = None
        if win_type is not None:
            return WinResult(
                win_type=win_type,
                behavior=behavior,
                message=select_win_message(win_type),
                improvement_percent=percent,
            )

    streak = profile.current_streak
    if streak in config.streak_milestones and streak > profile.last_milestone:
        return WinResult(
            win_type=WinType.streak_milestone,
            behavior=behavior,
            message=select_win_message(WinType.streak_milestone, streak),
            streak_days=streak,
        )
    return None


def detect_win_with_streak_check(
    user_id: str,
    profile: BehavioralProfile,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> WinCheck:
    if profile.user_id != user_id:
        raise ValueError(f"profile belongs to {profile.user_id}, not {user_id}")
    streak_break = detect_streak_break(profile, transactions, now, config)
    if streak_break is not None:
        return WinCheck(win_result=None, streak_break=streak_break)
    return WinCheck(win_result=detect_win(profile, transactions, now, config))


def record_win(
    user_id: str, profile: BehavioralProfile, result: WinResult, now: datetime
) -> BehavioralWin:
    """Build the persisted win and stamp the profile's win bookkeeping."""
    profile.last_win_at = now
    profile.last_win_behavior = result.behavior
    if result.win_type == WinType.streak_milestone and result.streak_days:
        profile.last_milestone = result.streak_days
    return BehavioralWin(
        id=str(uuid.uuid4()),
        user_id=user_id,
        behavior_type=result.behavior,
        win_type=result.win_type,
        message=result.message,
        created_at=now,
        streak_days=result.streak_days,
        improvement_percent=result.improvement_percent,
        celebrated=result.is_silent,
        celebrated_at=now if result.is_silent else None,
    )


def celebrate_win(profile: BehavioralProfile) -> None:
    profile.total_wins += 1
    profile.current_streak += 1
    profile.longest_streak = max(profile.longest_streak, profile.current_streak)
