"""
Behavioral moment detection — is *this* transaction a teachable moment?

A moment is only looked for when a behavior is ACTIVE, and it must be one of
the moment types eligible for that behavior (see `MOMENT_ELIGIBILITY`).
`RELAPSE_AFTER_IMPROVEMENT` is eligible for every behavior: it fires when the
previously improved behavior climbs back within the relapse window.

Public API
----------
detect_behavioral_moment(transaction, profile, recent_transactions, now, config)
    -> BehavioralMoment
is_moment_eligible(behavior, moment_type) -> bool
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.services.detection import in_hour_window, matches_small_recurring
from nudge.services.profile import BehavioralProfile
from nudge.services.types import (
    COMFORT_CATEGORIES,
    BehaviorType,
    MomentType,
    Transaction,
    TransactionType,
)
from nudge.services.wins import RelapseSeverity, detect_relapse

_DEFAULT_CONFIG = EngineConfig()

MOMENT_ELIGIBILITY: dict[BehaviorType, frozenset[MomentType]] = {
    BehaviorType.small_recurring: frozenset({
        MomentType.REPEAT_PURCHASE,
        MomentType.HABITUAL_TIME,
        MomentType.IMPULSE_CHAIN,
        MomentType.PAYDAY_SURGE,
        MomentType.BOREDOM_BROWSE,
    }),
    BehaviorType.stress_spending: frozenset({
        MomentType.LATE_NIGHT_COMFORT,
        MomentType.POST_WORK_RELEASE,
        MomentType.STRESS_CLUSTER,
        MomentType.CATEGORY_BINGE,
    }),
    BehaviorType.end_of_month: frozenset({
        MomentType.FIRST_BREACH,
        MomentType.COLLAPSE_START,
        MomentType.WEEKEND_SPLURGE,
    }),
}

# Signal shapes
_IMPULSE_CHAIN_WINDOW = timedelta(hours=2)
_IMPULSE_CHAIN_MIN = 3
_HABITUAL_LOOKBACK = timedelta(days=14)
_HABITUAL_MIN_DAYS = 2
_REPEAT_LOOKBACK = timedelta(days=7)
_REPEAT_MIN_PRIOR = 2
_PAYDAY_LOOKBACK = timedelta(days=3)
_PAYDAY_MIN_INCOME = 500.0
_PAYDAY_MIN_EXPENSES = 3
_BROWSE_WINDOW = timedelta(hours=2)
_BROWSE_MAX_AMOUNT = 20.0
_BROWSE_MIN_PURCHASES = 2
_BROWSE_MIN_CATEGORIES = 2
# Daytime lull and early evening
_IDLE_HOURS = ((10, 16), (20, 22))
_CLUSTER_WINDOW = timedelta(hours=24)
_CLUSTER_MIN = 3
_BINGE_WINDOW = timedelta(hours=72)
_BINGE_MIN = 4
_COLLAPSE_RATE_RATIO = 1.5
_BREACH_RATE_RATIO = 1.2
_ADHERENCE_COLLAPSE_DROP = 0.25
_SPLURGE_MULTIPLIER = 2.0


@dataclass(frozen=True)
class BehavioralMoment:
    is_moment: bool
    moment_type: Optional[MomentType]
    confidence: float
    reason: str


def is_moment_eligible(behavior: BehaviorType, moment_type: Optional[MomentType]) -> bool:
    if moment_type is None:
        return False
    if moment_type == MomentType.RELAPSE_AFTER_IMPROVEMENT:
        return True
    return moment_type in MOMENT_ELIGIBILITY[behavior]


# ---------------------------------------------------------------------------
# Per-behavior detectors (return a moment type + reason, or None)
# ---------------------------------------------------------------------------

def _payday_surge(
    tx: Transaction, history: Sequence[Transaction]
) -> Optional[tuple[MomentType, str]]:
    paydays = [
        t.occurred_at for t in history
        if t.tx_type == TransactionType.income
        and abs(t.amount) >= _PAYDAY_MIN_INCOME
        and tx.occurred_at - t.occurred_at <= _PAYDAY_LOOKBACK
    ]
    if not paydays:
        return None
    payday = max(paydays)
    since = [t for t in history if t.is_expense and t.occurred_at > payday]
    if len(since) < _PAYDAY_MIN_EXPENSES:
        return None
    spent = sum(abs(t.amount) for t in since)
    return MomentType.PAYDAY_SURGE, f"{spent:.0f} spent across {len(since)} purchases since payday"


def _boredom_browse(
    tx: Transaction, history: Sequence[Transaction]
) -> Optional[tuple[MomentType, str]]:
    hour = tx.occurred_at.hour
    if not any(in_hour_window(hour, start, end) for start, end in _IDLE_HOURS):
        return None
    browsing = [
        t for t in history
        if t.is_expense
        and abs(t.amount) < _BROWSE_MAX_AMOUNT
        and tx.occurred_at - t.occurred_at <= _BROWSE_WINDOW
    ]
    categories = {t.category for t in browsing}
    if len(browsing) >= _BROWSE_MIN_PURCHASES and len(categories) >= _BROWSE_MIN_CATEGORIES:
        return (
            MomentType.BOREDOM_BROWSE,
            f"{len(browsing)} small purchases across {len(categories)} categories",
        )
    return None


def _small_recurring_moment(
    tx: Transaction, history: Sequence[Transaction], config: EngineConfig
) -> Optional[tuple[MomentType, str]]:
    if not tx.is_expense:
        return None
    # Any purchase right after a large deposit counts, whatever its size
    surge = _payday_surge(tx, history)
    if surge is not None:
        return surge
    if not matches_small_recurring(tx, config):
        return None

    browse = _boredom_browse(tx, history)
    if browse is not None:
        return browse
    small = [t for t in history if matches_small_recurring(t, config)]

    chain = [t for t in small if tx.occurred_at - t.occurred_at <= _IMPULSE_CHAIN_WINDOW]
    if len(chain) + 1 >= _IMPULSE_CHAIN_MIN:
        return MomentType.IMPULSE_CHAIN, f"{len(chain) + 1} small purchases within 2h"

    same_hour_days = {
        t.occurred_at.date()
        for t in small
        if tx.occurred_at - t.occurred_at <= _HABITUAL_LOOKBACK
        and t.occurred_at.date() != tx.occurred_at.date()
        and abs(t.occurred_at.hour - tx.occurred_at.hour) <= 1
    }
    if len(same_hour_days) >= _HABITUAL_MIN_DAYS:
        return MomentType.HABITUAL_TIME, f"same hour on {len(same_hour_days)} other days"

    repeats = [
        t for t in small
        if t.category == tx.category and tx.occurred_at - t.occurred_at <= _REPEAT_LOOKBACK
    ]
    if len(repeats) >= _REPEAT_MIN_PRIOR:
        return MomentType.REPEAT_PURCHASE, f"{len(repeats) + 1} '{tx.category}' purchases this week"
    return None


def _stress_moment(
    tx: Transaction, history: Sequence[Transaction], config: EngineConfig
) -> Optional[tuple[MomentType, str]]:
    if not tx.is_expense or tx.category not in COMFORT_CATEGORIES:
        return None
    comfort = [t for t in history if t.is_expense and t.category in COMFORT_CATEGORIES]

    cluster = [t for t in comfort if tx.occurred_at - t.occurred_at <= _CLUSTER_WINDOW]
    if len(cluster) + 1 >= _CLUSTER_MIN:
        return MomentType.STRESS_CLUSTER, f"{len(cluster) + 1} comfort purchases within 24h"

    binge = [
        t for t in comfort
        if t.category == tx.category and tx.occurred_at - t.occurred_at <= _BINGE_WINDOW
    ]
    if len(binge) + 1 >= _BINGE_MIN:
        return MomentType.CATEGORY_BINGE, f"{len(binge) + 1} '{tx.category}' purchases within 72h"

    hour = tx.occurred_at.hour
    if in_hour_window(hour, config.late_night_start_hour, config.late_night_end_hour):
        return MomentType.LATE_NIGHT_COMFORT, f"comfort purchase at {hour:02d}h"
    if in_hour_window(hour, config.post_work_start_hour, config.post_work_end_hour):
        return MomentType.POST_WORK_RELEASE, f"comfort purchase after work at {hour:02d}h"
    return None


def _end_of_month_moment(
    tx: Transaction,
    history: Sequence[Transaction],
    profile: BehavioralProfile,
    config: EngineConfig,
) -> Optional[tuple[MomentType, str]]:
    start_day = config.end_of_month_start_day
    if not tx.is_expense or tx.occurred_at.day < start_day:
        return None

    early = profile.budget_adherence_early_month
    current = profile.budget_adherence_current
    if early is not None and current is not None and early - current >= _ADHERENCE_COLLAPSE_DROP:
        return MomentType.COLLAPSE_START, f"budget adherence fell from {early:.2f} to {current:.2f}"

    month = [
        t for t in history
        if t.is_expense
        and (t.occurred_at.year, t.occurred_at.month) == (tx.occurred_at.year, tx.occurred_at.month)
    ]
    early_total = sum(abs(t.amount) for t in month if t.occurred_at.day < start_day)
    if early_total > 0:
        late_total = abs(tx.amount) + sum(
            abs(t.amount) for t in month if t.occurred_at.day >= start_day
        )
        early_rate = early_total / (start_day - 1)
        late_rate = late_total / (tx.occurred_at.day - start_day + 1)
        ratio = late_rate / early_rate
        if ratio >= _COLLAPSE_RATE_RATIO:
            return MomentType.COLLAPSE_START, f"daily spend {ratio:.1f}x the early-month pace"
        if ratio >= _BREACH_RATE_RATIO:
            return MomentType.FIRST_BREACH, f"daily spend {ratio:.1f}x the early-month pace"

    if tx.occurred_at.weekday() >= 5:
        amounts = [abs(t.amount) for t in history if t.is_expense]
        if amounts and abs(tx.amount) >= _SPLURGE_MULTIPLIER * (sum(amounts) / len(amounts)):
            return MomentType.WEEKEND_SPLURGE, "weekend purchase at twice the usual size"
    return None


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

def detect_behavioral_moment(
    transaction: Transaction,
    profile: BehavioralProfile,
    recent_transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> BehavioralMoment:
    behavior = profile.active_behavior
    if behavior is None:
        return BehavioralMoment(False, None, 0.0, "no_active_behavior")

    confidence = profile.confidence.get(behavior, 0.0)
    history = [
        t for t in recent_transactions
        if t.id != transaction.id and t.occurred_at <= transaction.occurred_at
    ]

    relapse = detect_relapse(profile, [*history, transaction], now, config)
    if relapse.severity in (RelapseSeverity.moderate, RelapseSeverity.severe):
        return BehavioralMoment(
            True, MomentType.RELAPSE_AFTER_IMPROVEMENT, confidence,
            f"{relapse.severity.value} relapse: +{relapse.increase_percent:.0f}% week over week",
        )

    if behavior == BehaviorType.small_recurring:
        found = _small_recurring_moment(transaction, history, config)
    elif behavior == BehaviorType.stress_spending:
        found = _stress_moment(transaction, history, config)
    else:
        found = _end_of_month_moment(transaction, history, profile, config)

    if found is None:
        return BehavioralMoment(False, None, confidence, "no_matching_moment")
    moment_type, reason = found
    return BehavioralMoment(True, moment_type, confidence, reason)
