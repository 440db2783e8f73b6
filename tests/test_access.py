"""
Tests for the override access policy and the engine config built from settings.
"""
import pytest

from nudge.core.config import EngineConfig, Settings
from nudge.services.access import NoOverridePolicy, SettingsAccessPolicy


class TestSettingsAccessPolicy:
    def test_allow_list(self):
        policy = SettingsAccessPolicy(override_user_ids={"qa-1"})
        assert policy.has_override_access("qa-1")
        assert not policy.has_override_access("user-1")

    def test_dev_mode_grants_everyone(self):
        assert SettingsAccessPolicy(dev_mode=True).has_override_access("anyone")

    def test_from_settings(self):
        settings = Settings(OVERRIDE_USER_IDS="qa-1, qa-2", APP_ENV="production")
        policy = SettingsAccessPolicy.from_settings(settings)
        assert policy.has_override_access("qa-2")
        assert not policy.has_override_access("user-1")

    def test_dev_override_ignored_outside_development(self):
        settings = Settings(DEV_MODE_OVERRIDE=True, APP_ENV="production")
        assert not SettingsAccessPolicy.from_settings(settings).has_override_access("user-1")
        settings = Settings(DEV_MODE_OVERRIDE=True, APP_ENV="development")
        assert SettingsAccessPolicy.from_settings(settings).has_override_access("user-1")


class TestNoOverridePolicy:
    def test_never_grants(self):
        assert not NoOverridePolicy().has_override_access("qa-1")


class TestEngineConfigFromSettings:
    def test_env_values_flow_into_engine(self):
        settings = Settings(THRESHOLD_STRESS_SPENDING=0.8, MAX_INTERVENTIONS_PER_DAY=2)
        config = settings.engine_config()
        assert config.threshold_for("stress_spending") == 0.8
        assert config.max_interventions_per_day == 2
        assert config.cooldown_max_hours == 72.0

    def test_every_tuning_knob_is_exposed(self):
        config = Settings(
            ANNOYANCE_DISMISSALS=4,
            REDUCE_FREQUENCY_HOURS=36.0,
            SILENT_WIN_THRESHOLD=0.05,
            WIN_MIN_INTERVAL_DAYS=3,
            RELAPSE_SEVERE=1.5,
            STREAK_MILESTONES="10, 5",
            SMALL_TRANSACTION_MAX=25.0,
            LATE_NIGHT_START_HOUR=22,
            POST_WORK_END_HOUR=19,
            END_OF_MONTH_START_DAY=25,
        ).engine_config()
        assert config.annoyance_dismissals == 4
        assert config.reduce_frequency_hours == 36.0
        assert config.silent_win_threshold == 0.05
        assert config.win_min_interval_days == 3
        assert config.relapse_severe == 1.5
        assert config.streak_milestones == (5, 10)
        assert config.small_transaction_max == 25.0
        assert config.late_night_start_hour == 22
        assert config.post_work_end_hour == 19
        assert config.end_of_month_start_day == 25

    @pytest.mark.parametrize("start_day", [0, 1, 29])
    def test_month_start_day_out_of_range_is_rejected(self, start_day):
        with pytest.raises(ValueError):
            Settings(END_OF_MONTH_START_DAY=start_day).engine_config()

    def test_hour_out_of_range_is_rejected(self):
        with pytest.raises(ValueError):
            EngineConfig(late_night_start_hour=24)
