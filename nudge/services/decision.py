"""
Decision Gate Pipeline.

Gates run in a fixed order and stop at the first failure; the failing gate's
identifier is returned as `blocked_by`:

  1. entitlement : user setting on, and the global switch on (override access
                   bypasses the global switch only)
  2. state       : OBSERVING and WITHDRAWN never intervene
  3. cooldown    : COOLDOWN state, or any cooldown / withdrawal timer still
                   in the future
  4. confidence  : active intensity >= the behavior's threshold
  5. frequency   : daily and weekly caps
  6. repetition  : same behavior + intervention type not delivered within
                   `repeat_spacing_hours`
  7. moment      : the triggering moment is eligible for the active behavior
  8. context     : quiet hours, then any injected contextual gates

Every gate is a pure predicate over the context, so identical inputs always
produce the same `blocked_by`. Counter rollover is the caller's job and
happens before the pipeline runs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.services.moments import BehavioralMoment, is_moment_eligible
from nudge.services.profile import BehavioralProfile
from nudge.services.types import (
    BehaviorType,
    InterventionRecord,
    InterventionType,
    MomentType,
    UserState,
)


class Gate:
    ENTITLEMENT = "entitlement"
    STATE = "state"
    COOLDOWN = "cooldown"
    CONFIDENCE = "confidence"
    FREQUENCY = "frequency"
    REPETITION = "repetition"
    MOMENT = "moment"
    CONTEXT = "context"


GATE_ORDER: tuple[str, ...] = (
    Gate.ENTITLEMENT,
    Gate.STATE,
    Gate.COOLDOWN,
    Gate.CONFIDENCE,
    Gate.FREQUENCY,
    Gate.REPETITION,
    Gate.MOMENT,
    Gate.CONTEXT,
)

# Moments that describe an entrenched pattern rather than a single purchase
_PATTERN_MOMENTS = frozenset({
    MomentType.REPEAT_PURCHASE,
    MomentType.HABITUAL_TIME,
    MomentType.STRESS_CLUSTER,
    MomentType.COLLAPSE_START,
})


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class DecisionContext:
    profile: BehavioralProfile
    behavioral_moment: BehavioralMoment
    recent_interventions: Sequence[InterventionRecord]
    now: datetime
    has_override: bool = False
    config: EngineConfig = field(default_factory=EngineConfig)
    # Each returns a blocking reason, or None to let the decision through
    context_gates: Sequence[Callable[["DecisionContext"], Optional[str]]] = ()


@dataclass
class DecisionResult:
    should_intervene: bool
    reason: str
    confidence: float
    intervention_type: Optional[InterventionType] = None
    behavior: Optional[BehaviorType] = None
    blocked_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def select_intervention_type(
    moment_type: Optional[MomentType], last_type: Optional[InterventionType]
) -> InterventionType:
    """Relapse gets reinforcement; pattern moments alternate reflection and mirror."""
    if moment_type == MomentType.RELAPSE_AFTER_IMPROVEMENT:
        return InterventionType.reinforcement
    if moment_type in _PATTERN_MOMENTS:
        if last_type == InterventionType.pattern_reflection:
            return InterventionType.immediate_mirror
        return InterventionType.pattern_reflection
    return InterventionType.immediate_mirror


def in_quiet_hours(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """End-exclusive window that may wrap midnight; disabled when unset."""
    if start is None or end is None or start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


def _last_type_for(
    behavior: BehaviorType, recent: Sequence[InterventionRecord]
) -> Optional[InterventionType]:
    same = [r for r in recent if r.behavior == behavior]
    if not same:
        return None
    return max(same, key=lambda r: r.delivered_at).intervention_type


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def make_decision(ctx: DecisionContext) -> DecisionResult:
    profile, config, now = ctx.profile, ctx.config, ctx.now
    confidence = profile.active_behavior_intensity

    def blocked(gate: str, reason: str) -> DecisionResult:
        return DecisionResult(
            should_intervene=False,
            reason=reason,
            confidence=confidence,
            behavior=profile.active_behavior,
            blocked_by=gate,
        )

    # 1. entitlement
    if not profile.intervention_enabled:
        return blocked(Gate.ENTITLEMENT, "interventions_disabled_by_user")
    if not config.interventions_enabled and not ctx.has_override:
        return blocked(Gate.ENTITLEMENT, "interventions_disabled_globally")

    # 2. state
    if profile.user_state in (UserState.OBSERVING, UserState.WITHDRAWN):
        return blocked(Gate.STATE, f"state_{profile.user_state.value.lower()}")

    # 3. cooldown / withdrawal timers
    if profile.user_state == UserState.COOLDOWN:
        return blocked(Gate.COOLDOWN, "cooldown_active")
    if profile.cooldown_ends_at is not None and profile.cooldown_ends_at > now:
        return blocked(Gate.COOLDOWN, "cooldown_timer_pending")
    if profile.withdrawal_ends_at is not None and profile.withdrawal_ends_at > now:
        return blocked(Gate.COOLDOWN, "withdrawal_timer_pending")

    behavior = profile.active_behavior
    if behavior is None:
        return blocked(Gate.STATE, "no_active_behavior")

    # 4. confidence
    threshold = config.threshold_for(behavior)
    if confidence < threshold:
        return blocked(Gate.CONFIDENCE, f"intensity_{confidence:.2f}_below_{threshold:.2f}")

    # 5. frequency caps
    if profile.interventions_today >= config.max_interventions_per_day:
        return blocked(Gate.FREQUENCY, "daily_cap_reached")
    if profile.interventions_this_week >= config.max_interventions_per_week:
        return blocked(Gate.FREQUENCY, "weekly_cap_reached")

    # 6. repetition
    moment = ctx.behavioral_moment
    intervention_type = select_intervention_type(
        moment.moment_type, _last_type_for(behavior, ctx.recent_interventions)
    )
    spacing = timedelta(hours=config.repeat_spacing_hours)
    for record in ctx.recent_interventions:
        if (
            record.behavior == behavior
            and record.intervention_type == intervention_type
            and now - record.delivered_at < spacing
        ):
            return blocked(Gate.REPETITION, f"{intervention_type.value}_repeated_too_soon")

    # 7. moment relevance
    if not moment.is_moment or not is_moment_eligible(behavior, moment.moment_type):
        return blocked(Gate.MOMENT, moment.reason or "not_a_moment")

    # 8. context
    if in_quiet_hours(now.hour, config.quiet_hours_start, config.quiet_hours_end):
        return blocked(Gate.CONTEXT, "quiet_hours")
    for gate in ctx.context_gates:
        reason = gate(ctx)
        if reason:
            return blocked(Gate.CONTEXT, reason)

    return DecisionResult(
        should_intervene=True,
        reason=f"{behavior.value}:{moment.moment_type.value}",
        confidence=confidence,
        intervention_type=intervention_type,
        behavior=behavior,
    )
