"""
Tests for behavioral moment detection.
"""
from datetime import datetime, timedelta, timezone

import pytest

from nudge.services.moments import detect_behavioral_moment, is_moment_eligible
from nudge.services.types import BehaviorType, MomentType, Transaction, TransactionType, UserState

from conftest import make_tx

_SR = BehaviorType.small_recurring
_SS = BehaviorType.stress_spending
_EOM = BehaviorType.end_of_month


@pytest.fixture()
def activate(profile):
    def _activate(behavior):
        profile.user_state = UserState.ACTIVE
        profile.active_behavior = behavior
        profile.active_behavior_intensity = 0.9
        profile.confidence[behavior] = 0.9
        return profile
    return _activate


class TestEligibility:
    def test_relapse_is_always_eligible(self):
        for behavior in BehaviorType:
            assert is_moment_eligible(behavior, MomentType.RELAPSE_AFTER_IMPROVEMENT)

    def test_cross_behavior_moment_rejected(self):
        assert not is_moment_eligible(_SS, MomentType.REPEAT_PURCHASE)
        assert not is_moment_eligible(_SR, None)

    def test_payday_and_browsing_belong_to_small_recurring(self):
        assert is_moment_eligible(_SR, MomentType.PAYDAY_SURGE)
        assert is_moment_eligible(_SR, MomentType.BOREDOM_BROWSE)
        assert not is_moment_eligible(_SS, MomentType.PAYDAY_SURGE)


class TestSmallRecurring:
    def test_impulse_chain(self, activate, now):
        history = [make_tx(f"h{i}", now - timedelta(minutes=30 * (i + 1))) for i in range(2)]
        tx = make_tx("t", now)
        moment = detect_behavioral_moment(tx, activate(_SR), history, now)
        assert moment.moment_type == MomentType.IMPULSE_CHAIN

    def test_habitual_time(self, activate, now):
        history = [make_tx(f"h{i}", now - timedelta(days=i + 1)) for i in range(2)]
        moment = detect_behavioral_moment(make_tx("t", now), activate(_SR), history, now)
        assert moment.moment_type == MomentType.HABITUAL_TIME

    def test_repeat_purchase(self, activate, now):
        history = [
            make_tx("h1", (now - timedelta(days=1)).replace(hour=7)),
            make_tx("h2", (now - timedelta(days=2)).replace(hour=16)),
        ]
        moment = detect_behavioral_moment(make_tx("t", now), activate(_SR), history, now)
        assert moment.moment_type == MomentType.REPEAT_PURCHASE

    def test_large_purchase_is_no_moment(self, activate, now):
        moment = detect_behavioral_moment(
            make_tx("t", now, amount=80.0), activate(_SR), [], now
        )
        assert not moment.is_moment
        assert moment.reason == "no_matching_moment"

    def _payday(self, at, amount=1500.0):
        return Transaction(
            id="salary", amount=amount, category="salary", occurred_at=at,
            tx_type=TransactionType.income,
        )

    def test_payday_surge(self, activate, now):
        history = [self._payday(now - timedelta(days=1))] + [
            make_tx(f"h{i}", now - timedelta(hours=20 - i), amount=35.0, category=c)
            for i, c in enumerate(["dining", "shopping", "entertainment"])
        ]
        tx = make_tx("t", now, amount=120.0, category="shopping")
        moment = detect_behavioral_moment(tx, activate(_SR), history, now)
        assert moment.moment_type == MomentType.PAYDAY_SURGE
        assert moment.reason == "105 spent across 3 purchases since payday"

    def test_small_deposit_is_no_payday(self, activate, now):
        history = [self._payday(now - timedelta(days=1), amount=200.0)] + [
            make_tx(f"h{i}", now - timedelta(hours=20 - i), amount=35.0) for i in range(3)
        ]
        tx = make_tx("t", now, amount=120.0, category="shopping")
        assert not detect_behavioral_moment(tx, activate(_SR), history, now).is_moment

    def test_old_payday_is_ignored(self, activate, now):
        history = [self._payday(now - timedelta(days=5))] + [
            make_tx(f"h{i}", now - timedelta(days=4 - i), amount=35.0) for i in range(3)
        ]
        tx = make_tx("t", now, amount=120.0, category="shopping")
        assert not detect_behavioral_moment(tx, activate(_SR), history, now).is_moment

    def test_boredom_browse(self, activate, now):
        idle = now.replace(hour=14)
        history = [
            make_tx("h1", idle - timedelta(minutes=50), amount=8.0, category="shopping"),
            make_tx("h2", idle - timedelta(minutes=20), amount=6.0, category="entertainment"),
        ]
        moment = detect_behavioral_moment(make_tx("t", idle), activate(_SR), history, idle)
        assert moment.moment_type == MomentType.BOREDOM_BROWSE
        assert moment.reason == "2 small purchases across 2 categories"

    def test_browsing_outside_idle_hours_is_a_chain(self, activate, now):
        busy = now.replace(hour=18)
        history = [
            make_tx("h1", busy - timedelta(minutes=50), amount=8.0, category="shopping"),
            make_tx("h2", busy - timedelta(minutes=20), amount=6.0, category="entertainment"),
        ]
        moment = detect_behavioral_moment(make_tx("t", busy), activate(_SR), history, busy)
        assert moment.moment_type == MomentType.IMPULSE_CHAIN


class TestStress:
    def test_late_night(self, activate, now):
        late = now.replace(hour=22)
        tx = make_tx("t", late, category="food_delivery")
        moment = detect_behavioral_moment(tx, activate(_SS), [], late)
        assert moment.is_moment
        assert moment.moment_type == MomentType.LATE_NIGHT_COMFORT

    def test_post_work(self, activate, now):
        evening = now.replace(hour=18)
        tx = make_tx("t", evening, category="takeout")
        assert detect_behavioral_moment(tx, activate(_SS), [], evening).moment_type == (
            MomentType.POST_WORK_RELEASE
        )

    def test_cluster(self, activate, now):
        history = [
            make_tx(f"h{i}", now - timedelta(hours=3 * (i + 1)), category="shopping")
            for i in range(2)
        ]
        tx = make_tx("t", now, category="entertainment")
        assert detect_behavioral_moment(tx, activate(_SS), history, now).moment_type == (
            MomentType.STRESS_CLUSTER
        )

    def test_binge(self, activate, now):
        # Spread past 24h so they do not read as a cluster
        history = [
            make_tx(f"h{i}", now - timedelta(hours=hours), category="gaming")
            for i, hours in enumerate((26, 50, 70))
        ]
        tx = make_tx("t", now, category="gaming")
        assert detect_behavioral_moment(tx, activate(_SS), history, now).moment_type == (
            MomentType.CATEGORY_BINGE
        )

    def test_non_comfort_category(self, activate, now):
        late = now.replace(hour=22)
        moment = detect_behavioral_moment(make_tx("t", late, category="rent"), activate(_SS), [], late)
        assert not moment.is_moment


class TestEndOfMonth:
    _LATE = datetime(2026, 3, 25, 12, tzinfo=timezone.utc)

    def _early(self, total):
        return [
            make_tx(f"e{i}", datetime(2026, 3, 2 + i, 12, tzinfo=timezone.utc),
                    amount=total / 4, category="groceries")
            for i in range(4)
        ]

    def test_adherence_collapse(self, activate):
        profile = activate(_EOM)
        profile.budget_adherence_early_month = 0.9
        profile.budget_adherence_current = 0.5
        tx = make_tx("t", self._LATE, amount=30.0, category="shopping")
        moment = detect_behavioral_moment(tx, profile, [], self._LATE)
        assert moment.moment_type == MomentType.COLLAPSE_START

    def test_spending_rate_collapse(self, activate):
        tx = make_tx("t", self._LATE, amount=100.0, category="shopping")
        moment = detect_behavioral_moment(tx, activate(_EOM), self._early(200.0), self._LATE)
        assert moment.moment_type == MomentType.COLLAPSE_START

    def test_first_breach(self, activate):
        tx = make_tx("t", self._LATE, amount=65.0, category="shopping")
        moment = detect_behavioral_moment(tx, activate(_EOM), self._early(200.0), self._LATE)
        assert moment.moment_type == MomentType.FIRST_BREACH

    def test_weekend_splurge(self, activate):
        saturday = datetime(2026, 3, 28, 15, tzinfo=timezone.utc)
        history = [
            make_tx(f"h{i}", datetime(2026, 2, 3 + i, 12, tzinfo=timezone.utc), amount=20.0)
            for i in range(5)
        ]
        tx = make_tx("t", saturday, amount=100.0, category="shopping")
        moment = detect_behavioral_moment(tx, activate(_EOM), history, saturday)
        assert moment.moment_type == MomentType.WEEKEND_SPLURGE

    def test_early_month_is_no_moment(self, activate, now):
        tx = make_tx("t", now, amount=500.0, category="shopping")
        assert not detect_behavioral_moment(tx, activate(_EOM), [], now).is_moment


class TestRelapseMoment:
    def test_relapse_after_improvement(self, activate, now):
        profile = activate(_SR)
        profile.last_win_behavior = _SR
        profile.last_win_at = now - timedelta(days=9)
        history = [
            make_tx("p1", now - timedelta(days=9, hours=3)),
            make_tx("p2", now - timedelta(days=10, hours=5)),
            make_tx("c1", now - timedelta(days=2, hours=4)),
            make_tx("c2", now - timedelta(days=4, hours=6)),
        ]
        moment = detect_behavioral_moment(make_tx("t", now), profile, history, now)
        assert moment.moment_type == MomentType.RELAPSE_AFTER_IMPROVEMENT


class TestNoActiveBehavior:
    def test_observing_has_no_moment(self, profile, now):
        moment = detect_behavioral_moment(make_tx("t", now), profile, [], now)
        assert not moment.is_moment
        assert moment.reason == "no_active_behavior"
