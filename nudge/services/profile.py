"""
BehavioralProfile — the single per-user record the engine owns.

The profile is a plain dataclass. Repositories persist it through its JSON
form (`to_dict` / `from_dict`); the round trip is lossless, including the
order of `confidence_history`.

Public API
----------
create_default_profile(user_id, now)  -> BehavioralProfile
BehavioralProfile.to_dict()           -> dict (JSON-safe)
BehavioralProfile.from_dict(data)     -> BehavioralProfile
BehavioralProfile.apply(update)       -> None   (partial update from the failure handler)
BehavioralProfile.roll_over_counters(now)
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional

from nudge.services.types import BehaviorType, StreakBreakReason, UserState


# ---------------------------------------------------------------------------
# Default seasonal multipliers (>1.0 means spending normally runs higher)
# ---------------------------------------------------------------------------

DEFAULT_MONTHLY_FACTORS: dict[int, float] = {
    1: 0.9, 2: 0.95, 3: 1.0, 4: 1.0, 5: 1.0, 6: 1.05,
    7: 1.05, 8: 1.05, 9: 1.0, 10: 1.0, 11: 1.15, 12: 1.3,
}
DEFAULT_WEEKDAY_FACTORS: dict[int, float] = {
    0: 0.9, 1: 0.9, 2: 0.95, 3: 1.0, 4: 1.1, 5: 1.2, 6: 1.1,
}


def _zero_confidences() -> dict[BehaviorType, float]:
    return {b: 0.0 for b in BehaviorType}


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Nested value types
# ---------------------------------------------------------------------------

@dataclass
class ConfidenceSnapshot:
    timestamp: datetime
    confidences: dict[BehaviorType, float]
    detected: dict[BehaviorType, bool]

    def to_dict(self) -> dict:
        return {
            "timestamp": _dt(self.timestamp),
            "confidences": {b.value: v for b, v in self.confidences.items()},
            "detected": {b.value: v for b, v in self.detected.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConfidenceSnapshot":
        return cls(
            timestamp=_parse_dt(data["timestamp"]),
            confidences={BehaviorType(k): float(v) for k, v in data["confidences"].items()},
            detected={BehaviorType(k): bool(v) for k, v in data["detected"].items()},
        )


@dataclass
class SeasonalFactors:
    monthly: dict[int, float] = field(default_factory=lambda: dict(DEFAULT_MONTHLY_FACTORS))
    weekday: dict[int, float] = field(default_factory=lambda: dict(DEFAULT_WEEKDAY_FACTORS))
    last_calibrated_at: Optional[datetime] = None
    calibrated_on_transactions: int = 0

    def to_dict(self) -> dict:
        return {
            "monthly": {str(k): v for k, v in self.monthly.items()},
            "weekday": {str(k): v for k, v in self.weekday.items()},
            "last_calibrated_at": _dt(self.last_calibrated_at),
            "calibrated_on_transactions": self.calibrated_on_transactions,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SeasonalFactors":
        return cls(
            monthly={int(k): float(v) for k, v in data.get("monthly", {}).items()},
            weekday={int(k): float(v) for k, v in data.get("weekday", {}).items()},
            last_calibrated_at=_parse_dt(data.get("last_calibrated_at")),
            calibrated_on_transactions=int(data.get("calibrated_on_transactions", 0)),
        )


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

@dataclass
class BehavioralProfile:
    user_id: str
    created_at: datetime
    updated_at: datetime

    # State machine
    user_state: UserState = UserState.OBSERVING
    active_behavior: Optional[BehaviorType] = None
    active_behavior_intensity: float = 0.0
    state_changed_at: Optional[datetime] = None
    last_active_behavior: Optional[BehaviorType] = None

    # Confidence store
    confidence: dict[BehaviorType, float] = field(default_factory=_zero_confidences)
    confidence_history: list[ConfidenceSnapshot] = field(default_factory=list)
    last_detected_at: dict[BehaviorType, datetime] = field(default_factory=dict)
    seasonal_factors: SeasonalFactors = field(default_factory=SeasonalFactors)
    last_evaluated_at: Optional[datetime] = None
    evaluation_count: int = 0

    # Timers and caps
    cooldown_ends_at: Optional[datetime] = None
    withdrawal_ends_at: Optional[datetime] = None
    interventions_today: int = 0
    interventions_this_week: int = 0
    counters_reset_at: Optional[datetime] = None
    last_intervention_at: Optional[datetime] = None
    intervention_enabled: bool = True

    # Failure handling
    ignored_interventions: int = 0
    dismissed_count: int = 0
    recent_ignored_at: list[datetime] = field(default_factory=list)
    recent_dismissed_at: list[datetime] = field(default_factory=list)

    # Wins and streaks
    total_wins: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_milestone: int = 0
    streak_broken_at: Optional[datetime] = None
    streak_break_reason: Optional[StreakBreakReason] = None
    last_win_at: Optional[datetime] = None
    last_win_behavior: Optional[BehaviorType] = None

    # End-of-month signal inputs (0..1, supplied by the budgets feature)
    budget_adherence_early_month: Optional[float] = None
    budget_adherence_current: Optional[float] = None

    # Message rotation: last variant index chosen per behavior
    message_rotation: dict[BehaviorType, int] = field(default_factory=dict)

    # ---------------------------------------------------------------------

    def apply(self, update: dict[str, Any]) -> None:
        """Apply a partial update; unknown keys are a programming error."""
        names = {f.name for f in fields(self)}
        for key, value in update.items():
            if key not in names:
                raise AttributeError(f"BehavioralProfile has no field {key!r}")
            setattr(self, key, value)

    def roll_over_counters(self, now: datetime) -> None:
        """Reset the daily / weekly intervention counters when their period ended."""
        last = self.counters_reset_at
        if last is None:
            self.counters_reset_at = now
            return
        if now.date() == last.date():
            return
        self.interventions_today = 0
        if now.isocalendar()[:2] != last.isocalendar()[:2]:
            self.interventions_this_week = 0
        self.counters_reset_at = now

    # --- JSON form -------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "created_at": _dt(self.created_at),
            "updated_at": _dt(self.updated_at),
            "user_state": self.user_state.value,
            "active_behavior": self.active_behavior.value if self.active_behavior else None,
            "active_behavior_intensity": self.active_behavior_intensity,
            "state_changed_at": _dt(self.state_changed_at),
            "last_active_behavior": (
                self.last_active_behavior.value if self.last_active_behavior else None
            ),
            "confidence": {b.value: v for b, v in self.confidence.items()},
            "confidence_history": [s.to_dict() for s in self.confidence_history],
            "last_detected_at": {b.value: _dt(v) for b, v in self.last_detected_at.items()},
            "seasonal_factors": self.seasonal_factors.to_dict(),
            "last_evaluated_at": _dt(self.last_evaluated_at),
            "evaluation_count": self.evaluation_count,
            "cooldown_ends_at": _dt(self.cooldown_ends_at),
            "withdrawal_ends_at": _dt(self.withdrawal_ends_at),
            "interventions_today": self.interventions_today,
            "interventions_this_week": self.interventions_this_week,
            "counters_reset_at": _dt(self.counters_reset_at),
            "last_intervention_at": _dt(self.last_intervention_at),
            "intervention_enabled": self.intervention_enabled,
            "ignored_interventions": self.ignored_interventions,
            "dismissed_count": self.dismissed_count,
            "recent_ignored_at": [_dt(t) for t in self.recent_ignored_at],
            "recent_dismissed_at": [_dt(t) for t in self.recent_dismissed_at],
            "total_wins": self.total_wins,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_milestone": self.last_milestone,
            "streak_broken_at": _dt(self.streak_broken_at),
            "streak_break_reason": (
                self.streak_break_reason.value if self.streak_break_reason else None
            ),
            "last_win_at": _dt(self.last_win_at),
            "last_win_behavior": self.last_win_behavior.value if self.last_win_behavior else None,
            "budget_adherence_early_month": self.budget_adherence_early_month,
            "budget_adherence_current": self.budget_adherence_current,
            "message_rotation": {b.value: i for b, i in self.message_rotation.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BehavioralProfile":
        def _behavior(value: Optional[str]) -> Optional[BehaviorType]:
            return BehaviorType(value) if value else None

        confidence = _zero_confidences()
        confidence.update({BehaviorType(k): float(v) for k, v in data.get("confidence", {}).items()})
        reason = data.get("streak_break_reason")

        return cls(
            user_id=data["user_id"],
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            user_state=UserState(data.get("user_state", UserState.OBSERVING.value)),
            active_behavior=_behavior(data.get("active_behavior")),
            active_behavior_intensity=float(data.get("active_behavior_intensity", 0.0)),
            state_changed_at=_parse_dt(data.get("state_changed_at")),
            last_active_behavior=_behavior(data.get("last_active_behavior")),
            confidence=confidence,
            confidence_history=[
                ConfidenceSnapshot.from_dict(s) for s in data.get("confidence_history", [])
            ],
            last_detected_at={
                BehaviorType(k): _parse_dt(v)
                for k, v in data.get("last_detected_at", {}).items() if v
            },
            seasonal_factors=SeasonalFactors.from_dict(data.get("seasonal_factors", {}))
            if data.get("seasonal_factors") else SeasonalFactors(),
            last_evaluated_at=_parse_dt(data.get("last_evaluated_at")),
            evaluation_count=int(data.get("evaluation_count", 0)),
            cooldown_ends_at=_parse_dt(data.get("cooldown_ends_at")),
            withdrawal_ends_at=_parse_dt(data.get("withdrawal_ends_at")),
            interventions_today=int(data.get("interventions_today", 0)),
            interventions_this_week=int(data.get("interventions_this_week", 0)),
            counters_reset_at=_parse_dt(data.get("counters_reset_at")),
            last_intervention_at=_parse_dt(data.get("last_intervention_at")),
            intervention_enabled=bool(data.get("intervention_enabled", True)),
            ignored_interventions=int(data.get("ignored_interventions", 0)),
            dismissed_count=int(data.get("dismissed_count", 0)),
            recent_ignored_at=[_parse_dt(t) for t in data.get("recent_ignored_at", [])],
            recent_dismissed_at=[_parse_dt(t) for t in data.get("recent_dismissed_at", [])],
            total_wins=int(data.get("total_wins", 0)),
            current_streak=int(data.get("current_streak", 0)),
            longest_streak=int(data.get("longest_streak", 0)),
            last_milestone=int(data.get("last_milestone", 0)),
            streak_broken_at=_parse_dt(data.get("streak_broken_at")),
            streak_break_reason=StreakBreakReason(reason) if reason else None,
            last_win_at=_parse_dt(data.get("last_win_at")),
            last_win_behavior=_behavior(data.get("last_win_behavior")),
            budget_adherence_early_month=data.get("budget_adherence_early_month"),
            budget_adherence_current=data.get("budget_adherence_current"),
            message_rotation={
                BehaviorType(k): int(v) for k, v in data.get("message_rotation", {}).items()
            },
        )


def create_default_profile(user_id: str, now: datetime) -> BehavioralProfile:
    """Fresh profile: OBSERVING, every confidence at zero."""
    return BehavioralProfile(
        user_id=user_id,
        created_at=now,
        updated_at=now,
        state_changed_at=now,
        counters_reset_at=now,
    )
