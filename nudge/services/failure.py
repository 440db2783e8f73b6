"""
Failure Handler — negative feedback turns into longer silences.

  USER_IGNORED       ignores inside the rolling window (`failure_window_days`)
                     are counted; from `ignore_escalate_threshold` the cooldown
                     becomes base x ignore_factor^count (capped), at
                     `ignore_withdraw_threshold` the user is WITHDRAWN for
                     `withdrawal_days`.
  USER_DISMISSED     same shape with the gentler dismiss thresholds / factor.
  USER_ANNOYED       straight to WITHDRAWN for `annoyance_withdrawal_days`.
  USER_CHURNING      back to a clean OBSERVING profile.
  CONFIDENCE_DROPPED short reduce-frequency cooldown.

An engaged response is not a failure: `handle_engagement` halves both
lifetime counters and clears the windowed timestamps.

`handle_failure` decides, `calculate_new_state` turns the decision into a
partial profile update; neither mutates the profile.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.services.profile import BehavioralProfile
from nudge.services.types import (
    BehaviorType,
    InterventionRecord,
    UserResponse,
    UserState,
)

_DEFAULT_CONFIG = EngineConfig()
_ANNOYANCE_WINDOW = timedelta(hours=24)


class FailureKind(str, enum.Enum):
    USER_IGNORED = "USER_IGNORED"
    USER_DISMISSED = "USER_DISMISSED"
    USER_ANNOYED = "USER_ANNOYED"
    USER_CHURNING = "USER_CHURNING"
    CONFIDENCE_DROPPED = "CONFIDENCE_DROPPED"


class FailureAction(str, enum.Enum):
    maintain = "maintain"
    extend_cooldown = "extend_cooldown"
    reduce_frequency = "reduce_frequency"
    withdraw = "withdraw"
    reset_to_observing = "reset_to_observing"


@dataclass
class FailureResponse:
    kind: FailureKind
    action: FailureAction
    reason: str
    count: int = 0
    duration: Optional[timedelta] = None


def _in_window(stamps: Sequence[datetime], now: datetime, window: timedelta) -> list[datetime]:
    return [t for t in stamps if now - t <= window]


def _escalate(
    kind: FailureKind,
    count: int,
    escalate_at: int,
    withdraw_at: int,
    factor: float,
    config: EngineConfig,
) -> FailureResponse:
    if count >= withdraw_at:
        return FailureResponse(
            kind, FailureAction.withdraw,
            f"{count} in {config.failure_window_days}d reached withdraw threshold {withdraw_at}",
            count, timedelta(days=config.withdrawal_days),
        )
    if count >= escalate_at:
        hours = config.cooldown_base_hours * factor ** count
        duration = timedelta(hours=min(hours, config.cooldown_max_hours))
        return FailureResponse(
            kind, FailureAction.extend_cooldown,
            f"{count} in {config.failure_window_days}d, cooldown escalated",
            count, duration,
        )
    return FailureResponse(kind, FailureAction.maintain, "below escalation threshold", count)


def handle_failure(
    kind: FailureKind,
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> FailureResponse:
    window = config.failure_window
    if kind == FailureKind.USER_IGNORED:
        count = len(_in_window(profile.recent_ignored_at, now, window)) + 1
        return _escalate(
            kind, count,
            config.ignore_escalate_threshold, config.ignore_withdraw_threshold,
            config.cooldown_ignore_factor, config,
        )
    if kind == FailureKind.USER_DISMISSED:
        count = len(_in_window(profile.recent_dismissed_at, now, window)) + 1
        return _escalate(
            kind, count,
            config.dismiss_escalate_threshold, config.dismiss_withdraw_threshold,
            config.cooldown_dismiss_factor, config,
        )
    if kind == FailureKind.USER_ANNOYED:
        return FailureResponse(
            kind, FailureAction.withdraw, "annoyance detected",
            duration=timedelta(days=config.annoyance_withdrawal_days),
        )
    if kind == FailureKind.USER_CHURNING:
        return FailureResponse(kind, FailureAction.reset_to_observing, "user churning")
    if kind == FailureKind.CONFIDENCE_DROPPED:
        return FailureResponse(
            kind, FailureAction.reduce_frequency, "confidence dropped",
            duration=timedelta(hours=config.reduce_frequency_hours),
        )
    raise ValueError(f"Unknown failure kind: {kind!r}")


def _enter(profile: BehavioralProfile, state: UserState, now: datetime) -> dict[str, Any]:
    update: dict[str, Any] = {
        "user_state": state,
        "active_behavior": None,
        "active_behavior_intensity": 0.0,
    }
    if profile.user_state != state:
        update["state_changed_at"] = now
    return update


def calculate_new_state(
    profile: BehavioralProfile,
    response: FailureResponse,
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> dict[str, Any]:
    """Partial profile update for `response`; apply with `profile.apply()`."""
    window = config.failure_window
    update: dict[str, Any] = {}

    if response.kind == FailureKind.USER_IGNORED:
        update["ignored_interventions"] = profile.ignored_interventions + 1
        update["recent_ignored_at"] = [*_in_window(profile.recent_ignored_at, now, window), now]
    elif response.kind == FailureKind.USER_DISMISSED:
        update["dismissed_count"] = profile.dismissed_count + 1
        update["recent_dismissed_at"] = [*_in_window(profile.recent_dismissed_at, now, window), now]

    action = response.action
    if action == FailureAction.withdraw:
        update.update(_enter(profile, UserState.WITHDRAWN, now))
        update["withdrawal_ends_at"] = now + response.duration
        update["cooldown_ends_at"] = None

    elif action in (FailureAction.extend_cooldown, FailureAction.reduce_frequency):
        withdrawn = (
            profile.user_state == UserState.WITHDRAWN
            and profile.withdrawal_ends_at is not None
            and profile.withdrawal_ends_at > now
        )
        if not withdrawn:
            update.update(_enter(profile, UserState.COOLDOWN, now))
            ends_at = now + response.duration
            if profile.cooldown_ends_at is not None and profile.cooldown_ends_at > ends_at:
                ends_at = profile.cooldown_ends_at
            update["cooldown_ends_at"] = ends_at

    elif action == FailureAction.reset_to_observing:
        update.update(_enter(profile, UserState.OBSERVING, now))
        update.update({
            "cooldown_ends_at": None,
            "withdrawal_ends_at": None,
            "confidence": {b: 0.0 for b in BehaviorType},
            "ignored_interventions": 0,
            "dismissed_count": 0,
            "recent_ignored_at": [],
            "recent_dismissed_at": [],
        })

    return update


def handle_engagement(profile: BehavioralProfile) -> dict[str, Any]:
    """Positive signal: decay the escalation inputs toward zero."""
    return {
        "ignored_interventions": profile.ignored_interventions // 2,
        "dismissed_count": profile.dismissed_count // 2,
        "recent_ignored_at": [],
        "recent_dismissed_at": [],
    }


def detect_annoyance(
    recent_interventions: Sequence[InterventionRecord],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> bool:
    """Rapid-fire dismissals inside 24h read as annoyance, not a single miss."""
    dismissals = [
        r for r in recent_interventions
        if r.user_response == UserResponse.dismissed
        and r.responded_at is not None
        and now - r.responded_at <= _ANNOYANCE_WINDOW
    ]
    return len(dismissals) >= config.annoyance_dismissals
