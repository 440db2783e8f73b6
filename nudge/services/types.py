"""
Closed vocabularies and plain record types shared by the engine services.

Everything here is a `str` enum or a plain dataclass: no ORM, no Pydantic.
Enum values are the wire/storage strings.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class BehaviorType(str, enum.Enum):
    # Declaration order is the tie-break order for equal confidences.
    small_recurring = "small_recurring"
    stress_spending = "stress_spending"
    end_of_month = "end_of_month"


class UserState(str, enum.Enum):
    OBSERVING = "OBSERVING"
    ACTIVE = "ACTIVE"
    COOLDOWN = "COOLDOWN"
    WITHDRAWN = "WITHDRAWN"


class InterventionType(str, enum.Enum):
    immediate_mirror = "immediate_mirror"
    pattern_reflection = "pattern_reflection"
    reinforcement = "reinforcement"


class UserResponse(str, enum.Enum):
    engaged = "engaged"
    dismissed = "dismissed"
    ignored = "ignored"


class WinType(str, enum.Enum):
    pattern_break = "pattern_break"
    improvement = "improvement"
    streak_milestone = "streak_milestone"
    silent_win = "silent_win"


class StreakBreakReason(str, enum.Enum):
    behavior_relapse = "behavior_relapse"
    inactivity = "inactivity"
    user_reset = "user_reset"
    severe_regression = "severe_regression"
    withdrawal_triggered = "withdrawal_triggered"


class MomentType(str, enum.Enum):
    REPEAT_PURCHASE = "REPEAT_PURCHASE"
    HABITUAL_TIME = "HABITUAL_TIME"
    IMPULSE_CHAIN = "IMPULSE_CHAIN"
    PAYDAY_SURGE = "PAYDAY_SURGE"
    BOREDOM_BROWSE = "BOREDOM_BROWSE"
    LATE_NIGHT_COMFORT = "LATE_NIGHT_COMFORT"
    POST_WORK_RELEASE = "POST_WORK_RELEASE"
    STRESS_CLUSTER = "STRESS_CLUSTER"
    CATEGORY_BINGE = "CATEGORY_BINGE"
    FIRST_BREACH = "FIRST_BREACH"
    COLLAPSE_START = "COLLAPSE_START"
    WEEKEND_SPLURGE = "WEEKEND_SPLURGE"
    RELAPSE_AFTER_IMPROVEMENT = "RELAPSE_AFTER_IMPROVEMENT"


class StateEvent(str, enum.Enum):
    TRANSACTION = "TRANSACTION"
    INTERVENTION_DELIVERED = "INTERVENTION_DELIVERED"


class TransactionType(str, enum.Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


# Categories treated as comfort spending by the stress signals.
COMFORT_CATEGORIES: frozenset[str] = frozenset({
    "food_dining",
    "food_delivery",
    "entertainment",
    "shopping",
    "coffee",
    "coffee_drinks",
    "alcohol",
    "fast_food",
    "snacks",
    "streaming",
    "gaming",
    "delivery",
    "takeout",
})


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Transaction:
    id: str
    amount: float
    category: str
    occurred_at: datetime
    tx_type: TransactionType = TransactionType.expense

    @property
    def is_expense(self) -> bool:
        return self.tx_type == TransactionType.expense


@dataclass
class InterventionRecord:
    """Append-only log entry for a delivered intervention."""
    id: str
    user_id: str
    behavior: BehaviorType
    intervention_type: InterventionType
    message_key: str
    message_content: str
    delivered_at: datetime
    confidence: float = 0.0
    transaction_id: Optional[str] = None
    moment_type: Optional[MomentType] = None
    reason: str = ""
    user_response: Optional[UserResponse] = None
    responded_at: Optional[datetime] = None


@dataclass
class BehavioralWin:
    id: str
    user_id: str
    behavior_type: BehaviorType
    win_type: WinType
    message: str
    created_at: datetime
    streak_days: Optional[int] = None
    improvement_percent: Optional[float] = None
    celebrated: bool = False
    celebrated_at: Optional[datetime] = None


@dataclass
class StateTransitionRecord:
    """Audit row written for every state change the engine persists."""
    user_id: str
    from_state: UserState
    to_state: UserState
    trigger: str
    reason: str
    created_at: datetime
    active_behavior: Optional[BehaviorType] = None
    confidence: Optional[float] = None


@dataclass
class ExperimentEvent:
    user_id: str
    event_name: str
    occurred_at: datetime
    experiment_id: Optional[str] = None
    variant_id: Optional[str] = None
    properties: dict = field(default_factory=dict)
