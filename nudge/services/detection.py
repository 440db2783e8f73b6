"""
Detector Adapter — the boundary between raw transactions and confidences.

The engine only depends on `DetectorAdapter.run_all_detection`, which must be
a pure function of its inputs. `HeuristicDetector` is a small reference
implementation so the service works end to end; production deployments can
inject a stronger detector without touching the engine.

The `matches_*` predicates are shared with moment detection and win tracking
so all three agree on what "a small recurring purchase" means.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional, Protocol, Sequence

from nudge.core.config import EngineConfig
from nudge.services.confidence import apply_seasonal_adjustment, clamp_confidence
from nudge.services.profile import SeasonalFactors
from nudge.services.types import COMFORT_CATEGORIES, BehaviorType, Transaction

_MIN_SIGNAL_MATCHES = 3


@dataclass(frozen=True)
class DetectionOutcome:
    confidence: float
    detected: bool


class DetectorAdapter(Protocol):
    def run_all_detection(
        self,
        transactions: Sequence[Transaction],
        existing_confidences: Mapping[BehaviorType, float],
        seasonal_factors: Optional[SeasonalFactors] = None,
    ) -> dict[BehaviorType, DetectionOutcome]:
        ...


# ---------------------------------------------------------------------------
# Shared behavior predicates
# ---------------------------------------------------------------------------

def in_hour_window(hour: int, start: int, end: int) -> bool:
    """Inclusive hour window that may wrap past midnight (21..2)."""
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


def is_stress_hour(tx: Transaction, config: EngineConfig) -> bool:
    hour = tx.occurred_at.hour
    return (
        in_hour_window(hour, config.late_night_start_hour, config.late_night_end_hour)
        or in_hour_window(hour, config.post_work_start_hour, config.post_work_end_hour)
    )


def matches_small_recurring(tx: Transaction, config: EngineConfig) -> bool:
    return tx.is_expense and 0 < abs(tx.amount) <= config.small_transaction_max


def matches_stress_spending(tx: Transaction, config: EngineConfig) -> bool:
    return tx.is_expense and tx.category in COMFORT_CATEGORIES and is_stress_hour(tx, config)


def matches_end_of_month(tx: Transaction, config: EngineConfig) -> bool:
    return tx.is_expense and tx.occurred_at.day >= config.end_of_month_start_day


def matches_behavior(behavior: BehaviorType, tx: Transaction, config: EngineConfig) -> bool:
    if behavior == BehaviorType.small_recurring:
        return matches_small_recurring(tx, config)
    if behavior == BehaviorType.stress_spending:
        return matches_stress_spending(tx, config)
    return matches_end_of_month(tx, config)


# ---------------------------------------------------------------------------
# Reference detector
# ---------------------------------------------------------------------------

class HeuristicDetector:
    """Share-of-spend heuristics, smoothed against the previous confidence."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def _small_recurring_signal(self, expenses: Sequence[Transaction]) -> float:
        small = [t for t in expenses if matches_small_recurring(t, self.config)]
        per_category = Counter(t.category for t in small)
        repeated = [t for t in small if per_category[t.category] >= 2]
        if len(repeated) < _MIN_SIGNAL_MATCHES:
            return 0.0
        return min(1.0, 2.0 * len(repeated) / len(expenses))

    def _stress_signal(self, expenses: Sequence[Transaction]) -> float:
        hits = [t for t in expenses if matches_stress_spending(t, self.config)]
        if len(hits) < _MIN_SIGNAL_MATCHES:
            return 0.0
        return min(1.0, 2.5 * len(hits) / len(expenses))

    def _end_of_month_signal(self, expenses: Sequence[Transaction]) -> float:
        late = [t for t in expenses if matches_end_of_month(t, self.config)]
        total = sum(abs(t.amount) for t in expenses)
        if len(late) < _MIN_SIGNAL_MATCHES or total <= 0:
            return 0.0
        late_share = sum(abs(t.amount) for t in late) / total
        # Days from the start day through a 30-day month end
        expected_share = (31 - self.config.end_of_month_start_day) / 30
        return max(0.0, min(1.0, late_share / expected_share - 1.0))

    def run_all_detection(
        self,
        transactions: Sequence[Transaction],
        existing_confidences: Mapping[BehaviorType, float],
        seasonal_factors: Optional[SeasonalFactors] = None,
    ) -> dict[BehaviorType, DetectionOutcome]:
        if not transactions:
            return {
                b: DetectionOutcome(existing_confidences.get(b, 0.0), False)
                for b in BehaviorType
            }
        reference = max(t.occurred_at for t in transactions)
        since = reference - timedelta(days=self.config.detection_window_days)
        expenses = [t for t in transactions if t.is_expense and t.occurred_at >= since]

        raw = {
            BehaviorType.small_recurring: 0.0,
            BehaviorType.stress_spending: 0.0,
            BehaviorType.end_of_month: 0.0,
        }
        if expenses:
            raw[BehaviorType.small_recurring] = self._small_recurring_signal(expenses)
            raw[BehaviorType.stress_spending] = self._stress_signal(expenses)
            raw[BehaviorType.end_of_month] = self._end_of_month_signal(expenses)

        smoothing = self.config.confidence_smoothing
        outcomes: dict[BehaviorType, DetectionOutcome] = {}
        for behavior, signal in raw.items():
            adjusted = apply_seasonal_adjustment(signal, seasonal_factors, reference, self.config)
            previous = existing_confidences.get(behavior, 0.0)
            confidence = clamp_confidence(
                smoothing * previous + (1 - smoothing) * adjusted, self.config
            )
            outcomes[behavior] = DetectionOutcome(
                confidence=round(confidence, 4),
                detected=adjusted >= self.config.threshold_for(behavior),
            )
        return outcomes
