"""
Tests for the confidence store: bounds, decay, bounded history, trends and
seasonal calibration.
"""
from datetime import datetime, timedelta, timezone

from nudge.core.config import EngineConfig
from nudge.services.confidence import (
    append_history,
    apply_seasonal_adjustment,
    calibrate_seasonal_factors,
    clamp_confidence,
    confidence_trend,
    decay_confidence,
    is_holiday_period,
    needs_recalibration,
    seasonal_factor,
)
from nudge.services.profile import ConfidenceSnapshot, SeasonalFactors
from nudge.services.types import BehaviorType

from conftest import make_tx

_SR = BehaviorType.small_recurring


def _snap(when, value):
    return ConfidenceSnapshot(timestamp=when, confidences={_SR: value}, detected={_SR: False})


class TestBounds:
    def test_ceiling_below_one(self):
        assert clamp_confidence(1.4) == 0.95

    def test_floor_at_zero(self):
        assert clamp_confidence(-0.2) == 0.0

    def test_decay_is_linear_per_day(self):
        assert abs(decay_confidence(0.8, 5) - 0.7) < 1e-9

    def test_decay_never_negative(self):
        assert decay_confidence(0.1, 30) == 0.0

    def test_no_elapsed_time_no_decay(self):
        assert decay_confidence(0.6, 0) == 0.6


class TestHistory:
    def test_keeps_at_most_max_entries(self, now):
        history = []
        for i in range(40):
            history = append_history(history, _snap(now + timedelta(hours=5 * i), 0.1))
        assert len(history) == 30
        assert history[-1].timestamp == now + timedelta(hours=5 * 39)

    def test_entries_too_close_are_refused(self, now):
        history = append_history([], _snap(now, 0.1))
        history = append_history(history, _snap(now + timedelta(hours=1), 0.2))
        assert len(history) == 1

    def test_input_list_is_not_mutated(self, now):
        original = [_snap(now, 0.1)]
        result = append_history(original, _snap(now + timedelta(hours=6), 0.2))
        assert len(original) == 1
        assert len(result) == 2


class TestTrend:
    def _history(self, now, values):
        return [_snap(now + timedelta(hours=5 * i), v) for i, v in enumerate(values)]

    def test_increasing(self, now):
        assert confidence_trend(self._history(now, [0.2] * 5 + [0.5] * 5), _SR) == "increasing"

    def test_decreasing(self, now):
        assert confidence_trend(self._history(now, [0.6] * 5 + [0.3] * 5), _SR) == "decreasing"

    def test_too_short_is_stable(self, now):
        assert confidence_trend(self._history(now, [0.2, 0.9]), _SR) == "stable"


class TestSeasonality:
    def test_holiday_window(self):
        assert is_holiday_period(datetime(2026, 11, 15))
        assert is_holiday_period(datetime(2026, 12, 31))
        assert is_holiday_period(datetime(2027, 1, 5))
        assert not is_holiday_period(datetime(2027, 1, 6))
        assert not is_holiday_period(datetime(2026, 11, 14))

    def test_december_saturday_factor(self):
        factors = SeasonalFactors()
        saturday = datetime(2026, 12, 5, tzinfo=timezone.utc)
        expected = factors.monthly[12] * factors.weekday[5] * 1.2
        assert abs(seasonal_factor(factors, saturday) - expected) < 1e-9

    def test_adjustment_discounts_seasonal_highs(self):
        saturday = datetime(2026, 12, 5, tzinfo=timezone.utc)
        assert apply_seasonal_adjustment(0.8, SeasonalFactors(), saturday) < 0.8

    def test_adjustment_without_factors_only_clamps(self, now):
        assert apply_seasonal_adjustment(0.99, None, now) == 0.95


class TestCalibration:
    def _year_of_spend(self, now):
        return [
            make_tx(f"t{i}", now - timedelta(days=i), amount=30.0, category="groceries")
            for i in range(120)
        ]

    def test_needs_enough_fresh_transactions(self, now):
        assert needs_recalibration(SeasonalFactors(), self._year_of_spend(now), now)
        assert not needs_recalibration(SeasonalFactors(), self._year_of_spend(now)[:50], now)

    def test_not_before_interval(self, now):
        recent = SeasonalFactors(last_calibrated_at=now - timedelta(days=10))
        assert not needs_recalibration(recent, self._year_of_spend(now), now)

    def test_calibration_stamps_and_clamps(self, now):
        txs = self._year_of_spend(now)
        txs.append(make_tx("big", now - timedelta(days=1), amount=5000.0, category="travel"))
        result = calibrate_seasonal_factors(txs, SeasonalFactors(), now, EngineConfig())
        assert result.last_calibrated_at == now
        assert result.calibrated_on_transactions == len(txs)
        assert all(0.7 <= f <= 1.5 for f in result.monthly.values())
        assert all(0.8 <= f <= 1.4 for f in result.weekday.values())

    def test_months_without_data_keep_previous_factor(self, now):
        txs = self._year_of_spend(now)
        result = calibrate_seasonal_factors(txs, SeasonalFactors(), now)
        # 120 days back from March never reaches July
        assert result.monthly[7] == SeasonalFactors().monthly[7]
