"""
Application settings and the engine tuning knobs derived from them.

Every numeric constant the engine relies on (thresholds, cooldowns, caps,
windows) is read from the environment / `.env` so deployments can tune the
engine without a code change. Pure service code never touches `Settings`
directly; it receives a frozen `EngineConfig` built by `Settings.engine_config()`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class EngineConfig:
    # Evaluation
    min_transactions: int = 10
    detection_window_days: int = 30

    # Confidence store
    confidence_ceiling: float = 0.95
    confidence_decay_per_day: float = 0.02
    confidence_smoothing: float = 0.7
    history_max_entries: int = 30
    history_min_interval_hours: float = 4.0
    seasonal_calibration_days: int = 90
    seasonal_min_transactions: int = 90
    holiday_boost: float = 1.2

    # State machine
    behavior_thresholds: dict[str, float] = field(default_factory=lambda: {
        "small_recurring": 0.6,
        "stress_spending": 0.7,
        "end_of_month": 0.65,
    })
    deactivation_threshold: float = 0.5
    cooldown_base_hours: float = 12.0
    cooldown_max_hours: float = 72.0
    cooldown_ignore_factor: float = 2.0
    cooldown_dismiss_factor: float = 1.5

    # Decision gates
    interventions_enabled: bool = True
    max_interventions_per_day: int = 1
    max_interventions_per_week: int = 5
    repeat_spacing_hours: float = 48.0
    quiet_hours_start: Optional[int] = None
    quiet_hours_end: Optional[int] = None
    message_recent_memory: int = 5

    # Failure handler
    failure_window_days: int = 7
    ignore_escalate_threshold: int = 1
    ignore_withdraw_threshold: int = 2
    dismiss_escalate_threshold: int = 2
    dismiss_withdraw_threshold: int = 3
    withdrawal_days: int = 7
    annoyance_withdrawal_days: int = 14
    annoyance_dismissals: int = 3
    reduce_frequency_hours: float = 24.0

    # Wins and streaks
    pattern_break_threshold: float = 0.5
    win_improvement_threshold: float = 0.3
    silent_win_threshold: float = 0.1
    pattern_break_min_baseline: int = 3
    min_transactions_for_win: int = 14
    win_min_interval_days: int = 7
    streak_milestones: tuple[int, ...] = (7, 14, 30, 60, 90)
    relapse_window_days: int = 30
    relapse_mild: float = 0.3
    relapse_moderate: float = 0.5
    relapse_severe: float = 1.0
    streak_inactivity_days: int = 7

    # Behavior signal shapes
    small_transaction_max: float = 15.0
    late_night_start_hour: int = 21
    late_night_end_hour: int = 2
    post_work_start_hour: int = 17
    post_work_end_hour: int = 20
    end_of_month_start_day: int = 21

    def __post_init__(self):
        # Early-month pace is averaged over the days before the start day
        if not 2 <= self.end_of_month_start_day <= 28:
            raise ValueError(
                f"end_of_month_start_day must be within 2..28, got {self.end_of_month_start_day}"
            )
        for name in ("late_night_start_hour", "late_night_end_hour",
                     "post_work_start_hour", "post_work_end_hour"):
            if not 0 <= getattr(self, name) <= 23:
                raise ValueError(f"{name} must be an hour of the day, got {getattr(self, name)}")

    def threshold_for(self, behavior: str) -> float:
        # str-enum members hash and compare equal to their values
        return self.behavior_thresholds[behavior]

    @property
    def cooldown_base(self) -> timedelta:
        return timedelta(hours=self.cooldown_base_hours)

    @property
    def cooldown_max(self) -> timedelta:
        return timedelta(hours=self.cooldown_max_hours)

    @property
    def failure_window(self) -> timedelta:
        return timedelta(days=self.failure_window_days)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "postgresql://nudge:nudge@db:5432/nudge"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Comma-separated allowed origins, or "*" to allow all.
    CORS_ORIGINS: str = "*"

    # Access policy: comma-separated user ids that bypass the global switch.
    OVERRIDE_USER_IDS: str = ""
    # Grants override access to everyone while APP_ENV == "development".
    DEV_MODE_OVERRIDE: bool = False

    INTERVENTIONS_ENABLED: bool = True
    MIN_TRANSACTIONS_FOR_EVALUATION: int = 10

    CONFIDENCE_CEILING: float = 0.95
    CONFIDENCE_DECAY_PER_DAY: float = 0.02
    CONFIDENCE_SMOOTHING: float = 0.7
    HISTORY_MAX_ENTRIES: int = 30
    HISTORY_MIN_INTERVAL_HOURS: float = 4.0
    DETECTION_WINDOW_DAYS: int = 30
    HOLIDAY_BOOST: float = 1.2

    THRESHOLD_SMALL_RECURRING: float = 0.6
    THRESHOLD_STRESS_SPENDING: float = 0.7
    THRESHOLD_END_OF_MONTH: float = 0.65
    DEACTIVATION_THRESHOLD: float = 0.5

    COOLDOWN_BASE_HOURS: float = 12.0
    COOLDOWN_MAX_HOURS: float = 72.0
    COOLDOWN_IGNORE_FACTOR: float = 2.0
    COOLDOWN_DISMISS_FACTOR: float = 1.5

    MAX_INTERVENTIONS_PER_DAY: int = 1
    MAX_INTERVENTIONS_PER_WEEK: int = 5
    REPEAT_SPACING_HOURS: float = 48.0
    QUIET_HOURS_START: Optional[int] = None
    QUIET_HOURS_END: Optional[int] = None
    MESSAGE_RECENT_MEMORY: int = 5

    FAILURE_WINDOW_DAYS: int = 7
    IGNORE_ESCALATE_THRESHOLD: int = 1
    IGNORE_WITHDRAW_THRESHOLD: int = 2
    DISMISS_ESCALATE_THRESHOLD: int = 2
    DISMISS_WITHDRAW_THRESHOLD: int = 3
    WITHDRAWAL_DAYS: int = 7
    ANNOYANCE_WITHDRAWAL_DAYS: int = 14
    ANNOYANCE_DISMISSALS: int = 3
    REDUCE_FREQUENCY_HOURS: float = 24.0

    WIN_IMPROVEMENT_THRESHOLD: float = 0.3
    PATTERN_BREAK_THRESHOLD: float = 0.5
    SILENT_WIN_THRESHOLD: float = 0.1
    PATTERN_BREAK_MIN_BASELINE: int = 3
    MIN_TRANSACTIONS_FOR_WIN: int = 14
    WIN_MIN_INTERVAL_DAYS: int = 7
    # Comma-separated streak lengths that earn a milestone win
    STREAK_MILESTONES: str = "7,14,30,60,90"
    RELAPSE_MILD: float = 0.3
    RELAPSE_MODERATE: float = 0.5
    RELAPSE_SEVERE: float = 1.0
    RELAPSE_WINDOW_DAYS: int = 30
    STREAK_INACTIVITY_DAYS: int = 7
    SEASONAL_CALIBRATION_DAYS: int = 90
    SEASONAL_MIN_TRANSACTIONS: int = 90

    SMALL_TRANSACTION_MAX: float = 15.0
    LATE_NIGHT_START_HOUR: int = 21
    LATE_NIGHT_END_HOUR: int = 2
    POST_WORK_START_HOUR: int = 17
    POST_WORK_END_HOUR: int = 20
    END_OF_MONTH_START_DAY: int = 21

    @property
    def cors_origins_list(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def override_user_ids(self) -> frozenset[str]:
        return frozenset(u.strip() for u in self.OVERRIDE_USER_IDS.split(",") if u.strip())

    @property
    def streak_milestones(self) -> tuple[int, ...]:
        return tuple(sorted(int(m) for m in self.STREAK_MILESTONES.split(",") if m.strip()))

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            min_transactions=self.MIN_TRANSACTIONS_FOR_EVALUATION,
            detection_window_days=self.DETECTION_WINDOW_DAYS,
            confidence_ceiling=self.CONFIDENCE_CEILING,
            confidence_decay_per_day=self.CONFIDENCE_DECAY_PER_DAY,
            confidence_smoothing=self.CONFIDENCE_SMOOTHING,
            history_max_entries=self.HISTORY_MAX_ENTRIES,
            history_min_interval_hours=self.HISTORY_MIN_INTERVAL_HOURS,
            seasonal_calibration_days=self.SEASONAL_CALIBRATION_DAYS,
            seasonal_min_transactions=self.SEASONAL_MIN_TRANSACTIONS,
            holiday_boost=self.HOLIDAY_BOOST,
            behavior_thresholds={
                "small_recurring": self.THRESHOLD_SMALL_RECURRING,
                "stress_spending": self.THRESHOLD_STRESS_SPENDING,
                "end_of_month": self.THRESHOLD_END_OF_MONTH,
            },
            deactivation_threshold=self.DEACTIVATION_THRESHOLD,
            cooldown_base_hours=self.COOLDOWN_BASE_HOURS,
            cooldown_max_hours=self.COOLDOWN_MAX_HOURS,
            cooldown_ignore_factor=self.COOLDOWN_IGNORE_FACTOR,
            cooldown_dismiss_factor=self.COOLDOWN_DISMISS_FACTOR,
            interventions_enabled=self.INTERVENTIONS_ENABLED,
            max_interventions_per_day=self.MAX_INTERVENTIONS_PER_DAY,
            max_interventions_per_week=self.MAX_INTERVENTIONS_PER_WEEK,
            repeat_spacing_hours=self.REPEAT_SPACING_HOURS,
            quiet_hours_start=self.QUIET_HOURS_START,
            quiet_hours_end=self.QUIET_HOURS_END,
            message_recent_memory=self.MESSAGE_RECENT_MEMORY,
            failure_window_days=self.FAILURE_WINDOW_DAYS,
            ignore_escalate_threshold=self.IGNORE_ESCALATE_THRESHOLD,
            ignore_withdraw_threshold=self.IGNORE_WITHDRAW_THRESHOLD,
            dismiss_escalate_threshold=self.DISMISS_ESCALATE_THRESHOLD,
            dismiss_withdraw_threshold=self.DISMISS_WITHDRAW_THRESHOLD,
            withdrawal_days=self.WITHDRAWAL_DAYS,
            annoyance_withdrawal_days=self.ANNOYANCE_WITHDRAWAL_DAYS,
            annoyance_dismissals=self.ANNOYANCE_DISMISSALS,
            reduce_frequency_hours=self.REDUCE_FREQUENCY_HOURS,
            win_improvement_threshold=self.WIN_IMPROVEMENT_THRESHOLD,
            silent_win_threshold=self.SILENT_WIN_THRESHOLD,
            pattern_break_min_baseline=self.PATTERN_BREAK_MIN_BASELINE,
            min_transactions_for_win=self.MIN_TRANSACTIONS_FOR_WIN,
            win_min_interval_days=self.WIN_MIN_INTERVAL_DAYS,
            streak_milestones=self.streak_milestones,
            pattern_break_threshold=self.PATTERN_BREAK_THRESHOLD,
            relapse_window_days=self.RELAPSE_WINDOW_DAYS,
            relapse_mild=self.RELAPSE_MILD,
            relapse_moderate=self.RELAPSE_MODERATE,
            relapse_severe=self.RELAPSE_SEVERE,
            streak_inactivity_days=self.STREAK_INACTIVITY_DAYS,
            small_transaction_max=self.SMALL_TRANSACTION_MAX,
            late_night_start_hour=self.LATE_NIGHT_START_HOUR,
            late_night_end_hour=self.LATE_NIGHT_END_HOUR,
            post_work_start_hour=self.POST_WORK_START_HOUR,
            post_work_end_hour=self.POST_WORK_END_HOUR,
            end_of_month_start_day=self.END_OF_MONTH_START_DAY,
        )


settings = Settings()
