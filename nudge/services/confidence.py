"""
Confidence Store — bounded per-behavior confidence, history and seasonality.

Rules
-----
  * Confidence lives in [0, ceiling]; the ceiling is < 1.0 so the engine is
    never "certain" about a behavior.
  * Behaviors that were not detected in a pass decay linearly per elapsed day.
  * History is append-only, keeps at most `history_max_entries` snapshots and
    refuses entries closer than `history_min_interval_hours` to the last one.
  * Seasonal factors divide raw confidence so that spending that is normal for
    the month / weekday (December, Saturdays) does not look like a pattern.
    They are recalibrated at most every `seasonal_calibration_days` and only
    when at least `seasonal_min_transactions` arrived since the last run.

Public API
----------
clamp_confidence(value, config)
decay_confidence(value, days, config)
append_history(history, snapshot, config)        -> list[ConfidenceSnapshot]
confidence_trend(history, behavior)              -> "increasing" | "decreasing" | "stable"
seasonal_factor(factors, when, config)           -> float
apply_seasonal_adjustment(confidence, factors, when, config) -> float
needs_recalibration(factors, transactions, now, config)      -> bool
calibrate_seasonal_factors(transactions, existing, now, config) -> SeasonalFactors
"""
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.services.profile import ConfidenceSnapshot, SeasonalFactors
from nudge.services.types import BehaviorType, Transaction

_DEFAULT_CONFIG = EngineConfig()

_MONTHLY_BOUNDS = (0.7, 1.5)
_WEEKDAY_BOUNDS = (0.8, 1.4)
_TREND_WINDOW = 5
_TREND_TOLERANCE = 0.1


# ---------------------------------------------------------------------------
# Bounds and decay
# ---------------------------------------------------------------------------

def clamp_confidence(value: float, config: EngineConfig = _DEFAULT_CONFIG) -> float:
    return max(0.0, min(config.confidence_ceiling, value))


def decay_confidence(
    value: float, days: float, config: EngineConfig = _DEFAULT_CONFIG
) -> float:
    if days <= 0:
        return clamp_confidence(value, config)
    return clamp_confidence(value - config.confidence_decay_per_day * days, config)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

def append_history(
    history: Sequence[ConfidenceSnapshot],
    snapshot: ConfidenceSnapshot,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> list[ConfidenceSnapshot]:
    """Return a new history list; the input is left untouched."""
    result = list(history)
    if result:
        spacing = timedelta(hours=config.history_min_interval_hours)
        if snapshot.timestamp - result[-1].timestamp < spacing:
            return result
    result.append(snapshot)
    if len(result) > config.history_max_entries:
        result = result[-config.history_max_entries:]
    return result


def confidence_trend(history: Sequence[ConfidenceSnapshot], behavior: BehaviorType) -> str:
    values = [s.confidences.get(behavior, 0.0) for s in history]
    recent = values[-_TREND_WINDOW:]
    previous = values[-2 * _TREND_WINDOW:-_TREND_WINDOW]
    if not recent or not previous:
        return "stable"
    recent_avg = sum(recent) / len(recent)
    previous_avg = sum(previous) / len(previous)
    if previous_avg == 0:
        return "increasing" if recent_avg > 0 else "stable"
    change = (recent_avg - previous_avg) / previous_avg
    if change > _TREND_TOLERANCE:
        return "increasing"
    if change < -_TREND_TOLERANCE:
        return "decreasing"
    return "stable"


# ---------------------------------------------------------------------------
# Seasonality
# ---------------------------------------------------------------------------

def is_holiday_period(when: datetime | date) -> bool:
    """Nov 15 through Jan 5 inclusive."""
    if when.month == 12:
        return True
    if when.month == 11 and when.day >= 15:
        return True
    return when.month == 1 and when.day <= 5


def seasonal_factor(
    factors: SeasonalFactors, when: datetime, config: EngineConfig = _DEFAULT_CONFIG
) -> float:
    factor = factors.monthly.get(when.month, 1.0) * factors.weekday.get(when.weekday(), 1.0)
    if is_holiday_period(when):
        factor *= config.holiday_boost
    return factor


def apply_seasonal_adjustment(
    confidence: float,
    factors: Optional[SeasonalFactors],
    when: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> float:
    if factors is None:
        return clamp_confidence(confidence, config)
    factor = seasonal_factor(factors, when, config)
    if factor <= 0:
        return clamp_confidence(confidence, config)
    return clamp_confidence(confidence / factor, config)


def needs_recalibration(
    factors: SeasonalFactors,
    transactions: Sequence[Transaction],
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> bool:
    last = factors.last_calibrated_at
    if last is not None and now - last < timedelta(days=config.seasonal_calibration_days):
        return False
    fresh = [t for t in transactions if last is None or t.occurred_at > last]
    return len(fresh) >= config.seasonal_min_transactions


def _ratios(
    daily_totals: dict[date, float],
    key,
    bounds: tuple[float, float],
) -> dict[int, float]:
    overall = sum(daily_totals.values()) / len(daily_totals)
    grouped: dict[int, list[float]] = defaultdict(list)
    for day, total in daily_totals.items():
        grouped[key(day)].append(total)
    low, high = bounds
    return {
        k: round(max(low, min(high, (sum(v) / len(v)) / overall)), 4)
        for k, v in grouped.items()
    }


def calibrate_seasonal_factors(
    transactions: Sequence[Transaction],
    existing: SeasonalFactors,
    now: datetime,
    config: EngineConfig = _DEFAULT_CONFIG,
) -> SeasonalFactors:
    """
    Rebuild factors from observed average daily spend per month and weekday.
    Periods with no data keep their previous factor.
    """
    daily_totals: dict[date, float] = defaultdict(float)
    for tx in transactions:
        if tx.is_expense:
            daily_totals[tx.occurred_at.date()] += abs(tx.amount)

    monthly = dict(existing.monthly)
    weekday = dict(existing.weekday)
    if daily_totals and sum(daily_totals.values()) > 0:
        monthly.update(_ratios(daily_totals, lambda d: d.month, _MONTHLY_BOUNDS))
        weekday.update(_ratios(daily_totals, lambda d: d.weekday(), _WEEKDAY_BOUNDS))

    return SeasonalFactors(
        monthly=monthly,
        weekday=weekday,
        last_calibrated_at=now,
        calibrated_on_transactions=len(transactions),
    )
