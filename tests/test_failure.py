"""
Tests for the failure handler: ignore / dismiss escalation, withdrawal,
annoyance detection and the engagement reward.
"""
from datetime import timedelta

from nudge.services.failure import (
    FailureAction,
    FailureKind,
    calculate_new_state,
    detect_annoyance,
    handle_engagement,
    handle_failure,
)
from nudge.services.types import (
    BehaviorType,
    InterventionRecord,
    InterventionType,
    UserResponse,
    UserState,
)


def _dismissed(now, i, hours_ago):
    return InterventionRecord(
        id=f"i-{i}",
        user_id="user-1",
        behavior=BehaviorType.small_recurring,
        intervention_type=InterventionType.immediate_mirror,
        message_key="sr_im_05",
        message_content="Back again.",
        delivered_at=now - timedelta(hours=hours_ago + 1),
        user_response=UserResponse.dismissed,
        responded_at=now - timedelta(hours=hours_ago),
    )


class TestIgnored:
    def test_first_ignore_escalates_cooldown(self, profile, now):
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        assert response.action == FailureAction.extend_cooldown
        assert response.count == 1
        assert response.duration == timedelta(hours=24)

    def test_second_ignore_in_window_withdraws(self, profile, now):
        profile.recent_ignored_at = [now - timedelta(days=2)]
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        assert response.action == FailureAction.withdraw
        assert response.duration == timedelta(days=7)

    def test_old_ignores_fall_out_of_window(self, profile, now):
        profile.recent_ignored_at = [now - timedelta(days=8)]
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        assert response.action == FailureAction.extend_cooldown

    def test_update_records_the_ignore(self, profile, now):
        profile.recent_ignored_at = [now - timedelta(days=8)]
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        update = calculate_new_state(profile, response, now)
        assert update["ignored_interventions"] == 1
        assert update["recent_ignored_at"] == [now]
        assert update["user_state"] == UserState.COOLDOWN
        assert update["cooldown_ends_at"] == now + timedelta(hours=24)

    def test_two_ignores_end_withdrawn(self, profile, now):
        for offset in (timedelta(0), timedelta(hours=30)):
            at = now + offset
            profile.apply(calculate_new_state(
                profile, handle_failure(FailureKind.USER_IGNORED, profile, at), at
            ))
        assert profile.user_state == UserState.WITHDRAWN
        assert profile.withdrawal_ends_at == now + timedelta(hours=30) + timedelta(days=7)
        assert profile.cooldown_ends_at is None
        assert profile.ignored_interventions == 2


class TestDismissed:
    def test_single_dismissal_maintains(self, profile, now):
        response = handle_failure(FailureKind.USER_DISMISSED, profile, now)
        assert response.action == FailureAction.maintain
        update = calculate_new_state(profile, response, now)
        assert update["dismissed_count"] == 1
        assert "user_state" not in update

    def test_second_dismissal_escalates(self, profile, now):
        profile.recent_dismissed_at = [now - timedelta(days=1)]
        response = handle_failure(FailureKind.USER_DISMISSED, profile, now)
        assert response.action == FailureAction.extend_cooldown
        assert response.duration == timedelta(hours=12 * 1.5 ** 2)

    def test_third_dismissal_withdraws(self, profile, now):
        profile.recent_dismissed_at = [now - timedelta(days=2), now - timedelta(days=1)]
        response = handle_failure(FailureKind.USER_DISMISSED, profile, now)
        assert response.action == FailureAction.withdraw


class TestCooldownMonotonicity:
    def test_longer_existing_cooldown_is_kept(self, profile, now):
        profile.user_state = UserState.COOLDOWN
        profile.cooldown_ends_at = now + timedelta(hours=60)
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        update = calculate_new_state(profile, response, now)
        assert update["cooldown_ends_at"] == now + timedelta(hours=60)

    def test_active_withdrawal_is_not_downgraded(self, profile, now):
        profile.user_state = UserState.WITHDRAWN
        profile.withdrawal_ends_at = now + timedelta(days=3)
        response = handle_failure(FailureKind.USER_IGNORED, profile, now)
        assert response.action == FailureAction.extend_cooldown
        profile.apply(calculate_new_state(profile, response, now))
        assert profile.user_state == UserState.WITHDRAWN
        assert profile.withdrawal_ends_at == now + timedelta(days=3)


class TestOtherFailures:
    def test_annoyed_withdraws_longer(self, profile, now):
        response = handle_failure(FailureKind.USER_ANNOYED, profile, now)
        profile.apply(calculate_new_state(profile, response, now))
        assert profile.user_state == UserState.WITHDRAWN
        assert profile.withdrawal_ends_at == now + timedelta(days=14)

    def test_churning_resets(self, profile, now):
        profile.user_state = UserState.COOLDOWN
        profile.cooldown_ends_at = now + timedelta(hours=5)
        profile.confidence[BehaviorType.stress_spending] = 0.8
        profile.ignored_interventions = 4
        response = handle_failure(FailureKind.USER_CHURNING, profile, now)
        profile.apply(calculate_new_state(profile, response, now))
        assert profile.user_state == UserState.OBSERVING
        assert profile.cooldown_ends_at is None
        assert profile.ignored_interventions == 0
        assert all(c == 0.0 for c in profile.confidence.values())

    def test_confidence_drop_reduces_frequency(self, profile, now):
        response = handle_failure(FailureKind.CONFIDENCE_DROPPED, profile, now)
        assert response.action == FailureAction.reduce_frequency
        update = calculate_new_state(profile, response, now)
        assert update["cooldown_ends_at"] == now + timedelta(hours=24)


class TestEngagement:
    def test_halves_counters_and_clears_windows(self, profile, now):
        profile.ignored_interventions = 3
        profile.dismissed_count = 5
        profile.recent_ignored_at = [now]
        profile.apply(handle_engagement(profile))
        assert profile.ignored_interventions == 1
        assert profile.dismissed_count == 2
        assert profile.recent_ignored_at == []


class TestAnnoyance:
    def test_three_quick_dismissals(self, now):
        records = [_dismissed(now, i, hours_ago=i) for i in range(3)]
        assert detect_annoyance(records, now)

    def test_two_is_not_enough(self, now):
        records = [_dismissed(now, i, hours_ago=i) for i in range(2)]
        assert not detect_annoyance(records, now)

    def test_spread_out_dismissals(self, now):
        records = [_dismissed(now, i, hours_ago=20 * i) for i in range(3)]
        assert not detect_annoyance(records, now)
