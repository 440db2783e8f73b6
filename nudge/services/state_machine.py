"""
State Machine — OBSERVING → ACTIVE → COOLDOWN → (WITHDRAWN) → OBSERVING.

Events
------
  TRANSACTION
    COOLDOWN / WITHDRAWN : back to OBSERVING once the timer has expired, then
                           detections are evaluated in the same pass;
                           otherwise the state is kept.
    OBSERVING            : ACTIVE when a behavior's confidence reaches its
                           threshold (highest confidence wins, ties go to
                           the behavior declared first).
    ACTIVE               : back to OBSERVING when the active behavior's
                           confidence falls below the deactivation threshold,
                           otherwise intensity is refreshed.
  INTERVENTION_DELIVERED
    ACTIVE               : COOLDOWN, timer = escalated cooldown duration.
    anything else        : no-op.

WITHDRAWN is only ever entered by the failure handler. Expiry is lazy: no
timer fires on its own, the next TRANSACTION notices it.

`evaluate_transition` is pure; `apply_transition` writes the result onto the
profile.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from nudge.core.config import EngineConfig
from nudge.services.profile import BehavioralProfile
from nudge.services.types import BehaviorType, StateEvent, UserState

_DEFAULT_CONFIG = EngineConfig()
_MAX_ESCALATION_STEPS = 32


@dataclass
class StateTransition:
    previous_state: UserState
    new_state: UserState
    active_behavior: Optional[BehaviorType]
    intensity: float
    reason: str
    cooldown_ends_at: Optional[datetime] = None
    withdrawal_ends_at: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return self.previous_state != self.new_state


def cooldown_duration(
    profile: BehavioralProfile, config: EngineConfig = _DEFAULT_CONFIG
) -> timedelta:
    """Base cooldown escalated by lifetime ignores and dismissals, capped."""
    # Lifetime counters grow without bound; the cap is reached long before this
    ignored = min(profile.ignored_interventions, _MAX_ESCALATION_STEPS)
    dismissed = min(profile.dismissed_count, _MAX_ESCALATION_STEPS)
    hours = (
        config.cooldown_base_hours
        * config.cooldown_ignore_factor ** ignored
        * config.cooldown_dismiss_factor ** dismissed
    )
    return timedelta(hours=min(hours, config.cooldown_max_hours))


def _pick_behavior(
    confidences: dict[BehaviorType, float], config: EngineConfig
) -> Optional[tuple[BehaviorType, float]]:
    eligible = [
        (b, confidences.get(b, 0.0))
        for b in BehaviorType
        if confidences.get(b, 0.0) >= config.threshold_for(b)
    ]
    if not eligible:
        return None
    # max() keeps the first of equal keys, i.e. declaration order
    return max(eligible, key=lambda pair: pair[1])


def _on_transaction(
    profile: BehavioralProfile, now: datetime, config: EngineConfig
) -> StateTransition:
    previous = profile.user_state
    cooldown_ends_at = profile.cooldown_ends_at
    withdrawal_ends_at = profile.withdrawal_ends_at
    state = previous
    reason = ""

    if state == UserState.COOLDOWN:
        if cooldown_ends_at is not None and cooldown_ends_at > now:
            return StateTransition(
                previous, previous, None, 0.0, "cooldown_active",
                cooldown_ends_at, withdrawal_ends_at,
            )
        state, reason, cooldown_ends_at = UserState.OBSERVING, "cooldown_expired", None

    elif state == UserState.WITHDRAWN:
        if withdrawal_ends_at is not None and withdrawal_ends_at > now:
            return StateTransition(
                previous, previous, None, 0.0, "withdrawal_active",
                cooldown_ends_at, withdrawal_ends_at,
            )
        state, reason, withdrawal_ends_at = UserState.OBSERVING, "withdrawal_expired", None

    elif state == UserState.ACTIVE:
        behavior = profile.active_behavior
        if behavior is not None:
            confidence = profile.confidence.get(behavior, 0.0)
            if confidence >= config.deactivation_threshold:
                return StateTransition(
                    previous, UserState.ACTIVE, behavior, confidence, "still_active",
                    cooldown_ends_at, withdrawal_ends_at,
                )
            return StateTransition(
                previous, UserState.OBSERVING, None, 0.0, "confidence_dropped",
                cooldown_ends_at, withdrawal_ends_at,
            )
        # ACTIVE without a behavior is never written; re-detect from scratch
        state, reason = UserState.OBSERVING, "missing_active_behavior"

    picked = _pick_behavior(profile.confidence, config)
    if picked is None:
        return StateTransition(
            previous, state, None, 0.0, reason or "below_threshold",
            cooldown_ends_at, withdrawal_ends_at,
        )
    behavior, confidence = picked
    detected = f"behavior_detected:{behavior.value}"
    return StateTransition(
        previous, UserState.ACTIVE, behavior, confidence,
        f"{reason}+{detected}" if reason else detected,
        cooldown_ends_at, withdrawal_ends_at,
    )


def _on_intervention_delivered(
    profile: BehavioralProfile, now: datetime, config: EngineConfig
) -> StateTransition:
    previous = profile.user_state
    if previous != UserState.ACTIVE:
        return StateTransition(
            previous, previous, profile.active_behavior, profile.active_behavior_intensity,
            "not_active", profile.cooldown_ends_at, profile.withdrawal_ends_at,
        )
    return StateTransition(
        previous, UserState.COOLDOWN, None, 0.0, "intervention_delivered",
        cooldown_ends_at=now + cooldown_duration(profile, config),
        withdrawal_ends_at=profile.withdrawal_ends_at,
    )


def evaluate_transition(
    profile: BehavioralProfile,
    event: StateEvent,
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> StateTransition:
    if event == StateEvent.TRANSACTION:
        return _on_transaction(profile, now, config)
    if event == StateEvent.INTERVENTION_DELIVERED:
        return _on_intervention_delivered(profile, now, config)
    raise ValueError(f"Unknown state event: {event!r}")


def apply_transition(
    profile: BehavioralProfile, transition: StateTransition, now: datetime
) -> None:
    if transition.changed:
        profile.state_changed_at = now
    profile.user_state = transition.new_state
    if transition.new_state == UserState.ACTIVE:
        profile.active_behavior = transition.active_behavior
        profile.active_behavior_intensity = transition.intensity
        profile.last_active_behavior = transition.active_behavior
    else:
        profile.active_behavior = None
        profile.active_behavior_intensity = 0.0
    profile.cooldown_ends_at = transition.cooldown_ends_at
    profile.withdrawal_ends_at = transition.withdrawal_ends_at


def reset_transition(profile: BehavioralProfile) -> StateTransition:
    """Explicit user reset: OBSERVING with every timer cleared."""
    return StateTransition(
        previous_state=profile.user_state,
        new_state=UserState.OBSERVING,
        active_behavior=None,
        intensity=0.0,
        reason="user_reset",
    )
