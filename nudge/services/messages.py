"""
Message catalog and the Message Selector.

Messages are short observations (a dozen words at most): they mirror what
happened, they never advise. Each variant belongs to one behavior and one
intervention type; variants with `moment_types` only apply to those moments,
variants without are generic.

Selection order for (behavior, intervention type, moment):
  1. an applicable moment-specific variant not in recent memory
  2. an applicable generic variant not in recent memory
  3. every applicable variant is recent -> the least recently used one
Within each tier the walk starts just after the last chosen variant index so
repeated selections rotate through the catalog.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from nudge.services.types import BehaviorType, InterventionType, MomentType, StreakBreakReason, WinType

_SR = BehaviorType.small_recurring
_SS = BehaviorType.stress_spending
_EOM = BehaviorType.end_of_month
_IM = InterventionType.immediate_mirror
_PR = InterventionType.pattern_reflection
_RF = InterventionType.reinforcement


@dataclass(frozen=True)
class MessageVariant:
    key: str
    behavior: BehaviorType
    intervention_type: InterventionType
    template: str
    moment_types: tuple[MomentType, ...] = ()


@dataclass(frozen=True)
class SelectedMessage:
    key: str
    template: str
    variant_index: int


INTERVENTION_MESSAGES: tuple[MessageVariant, ...] = (
    # Small recurring / immediate mirror
    MessageVariant("sr_im_01", _SR, _IM, "Same spot as yesterday.", (MomentType.REPEAT_PURCHASE,)),
    MessageVariant("sr_im_02", _SR, _IM, "Your regular order.", (MomentType.REPEAT_PURCHASE, MomentType.HABITUAL_TIME)),
    MessageVariant("sr_im_03", _SR, _IM, "Right on schedule.", (MomentType.HABITUAL_TIME,)),
    MessageVariant("sr_im_04", _SR, _IM, "Three quick ones in a row.", (MomentType.IMPULSE_CHAIN,)),
    MessageVariant("sr_im_05", _SR, _IM, "Back again."),
    MessageVariant("sr_im_06", _SR, _IM, "A small one. Familiar."),
    # Small recurring / pattern reflection
    MessageVariant("sr_pr_01", _SR, _PR, "Several this week. One category.", (MomentType.REPEAT_PURCHASE,)),
    MessageVariant("sr_pr_02", _SR, _PR, "Same hour, most days.", (MomentType.HABITUAL_TIME,)),
    MessageVariant("sr_pr_03", _SR, _PR, "Little amounts, stacking up."),
    MessageVariant("sr_pr_04", _SR, _PR, "A ritual by now."),
    # Small recurring / reinforcement
    MessageVariant("sr_rf_01", _SR, _RF, "It was quiet for a while."),
    MessageVariant("sr_rf_02", _SR, _RF, "The streak was real. Still is."),
    MessageVariant("sr_rf_03", _SR, _RF, "You changed this once already."),
    # Small recurring / payday and idle browsing
    MessageVariant("ps_im_01", _SR, _IM, "Fresh funds.", (MomentType.PAYDAY_SURGE,)),
    MessageVariant("ps_im_02", _SR, _IM, "Payday energy.", (MomentType.PAYDAY_SURGE,)),
    MessageVariant("ps_pr_01", _SR, _PR, "Money came. Money going.", (MomentType.PAYDAY_SURGE,)),
    MessageVariant("bb_im_01", _SR, _IM, "Passing time.", (MomentType.BOREDOM_BROWSE,)),
    MessageVariant("bb_im_02", _SR, _IM, "Idle hands.", (MomentType.BOREDOM_BROWSE,)),
    MessageVariant("bb_pr_01", _SR, _PR, "Browsing became buying.", (MomentType.BOREDOM_BROWSE,)),

    # Stress spending / immediate mirror
    MessageVariant("ss_im_01", _SS, _IM, "Late one tonight.", (MomentType.LATE_NIGHT_COMFORT,)),
    MessageVariant("ss_im_02", _SS, _IM, "Long day, then this.", (MomentType.POST_WORK_RELEASE,)),
    MessageVariant("ss_im_03", _SS, _IM, "Another one tonight.", (MomentType.STRESS_CLUSTER,)),
    MessageVariant("ss_im_04", _SS, _IM, "Same category, again.", (MomentType.CATEGORY_BINGE,)),
    MessageVariant("ss_im_05", _SS, _IM, "A comfort buy."),
    MessageVariant("ss_im_06", _SS, _IM, "Letting off steam."),
    # Stress spending / pattern reflection
    MessageVariant("ss_pr_01", _SS, _PR, "Most nights this week. Similar hour.", (MomentType.LATE_NIGHT_COMFORT,)),
    MessageVariant("ss_pr_02", _SS, _PR, "After work, most days lately.", (MomentType.POST_WORK_RELEASE,)),
    MessageVariant("ss_pr_03", _SS, _PR, "Several close together. A cluster.", (MomentType.STRESS_CLUSTER,)),
    MessageVariant("ss_pr_04", _SS, _PR, "Stressful weeks show up here."),
    MessageVariant("ss_pr_05", _SS, _PR, "Comfort categories, late hours."),
    # Stress spending / reinforcement
    MessageVariant("ss_rf_01", _SS, _RF, "Evenings were calmer recently."),
    MessageVariant("ss_rf_02", _SS, _RF, "You handled last week differently."),
    MessageVariant("ss_rf_03", _SS, _RF, "That quiet stretch counted."),

    # End of month / immediate mirror
    MessageVariant("eom_im_01", _EOM, _IM, "Last stretch of the month.", (MomentType.FIRST_BREACH, MomentType.COLLAPSE_START)),
    MessageVariant("eom_im_02", _EOM, _IM, "Weekend, bigger than usual.", (MomentType.WEEKEND_SPLURGE,)),
    MessageVariant("eom_im_03", _EOM, _IM, "Late in the month."),
    MessageVariant("eom_im_04", _EOM, _IM, "The calendar again."),
    # End of month / pattern reflection
    MessageVariant("eom_pr_01", _EOM, _PR, "Steady start. Faster now.", (MomentType.FIRST_BREACH,)),
    MessageVariant("eom_pr_02", _EOM, _PR, "Same slide as last month.", (MomentType.COLLAPSE_START,)),
    MessageVariant("eom_pr_03", _EOM, _PR, "Month ends look alike."),
    MessageVariant("eom_pr_04", _EOM, _PR, "The budget holds, then it doesn't."),
    # End of month / reinforcement
    MessageVariant("eom_rf_01", _EOM, _RF, "Last month's ending held up."),
    MessageVariant("eom_rf_02", _EOM, _RF, "You've finished a month steady before."),
    MessageVariant("eom_rf_03", _EOM, _RF, "The final week went fine last time."),
)


WIN_MESSAGES: dict[str, str] = {
    WinType.pattern_break.value: "The pattern broke this week.",
    WinType.improvement.value: "Less of it than last week.",
    WinType.silent_win.value: "Slightly quieter week.",
    WinType.streak_milestone.value: "Another milestone.",
    "streak_7": "Seven in a row.",
    "streak_14": "Two weeks of wins.",
    "streak_30": "Thirty wins running.",
    "streak_60": "Sixty. That's a habit now.",
    "streak_90": "Ninety. A different pattern.",
}


STREAK_BREAK_MESSAGES: dict[str, tuple[str, ...]] = {
    StreakBreakReason.behavior_relapse.value: (
        "{streak} win streak ended. The pattern returned.",
        "Streak paused. Old habits crept back.",
    ),
    StreakBreakReason.inactivity.value: (
        "{streak} win streak paused. Quiet lately.",
        "Streak reset after a quiet stretch.",
    ),
    StreakBreakReason.user_reset.value: (
        "Profile reset. Fresh start.",
        "Starting over from zero.",
    ),
    StreakBreakReason.severe_regression.value: (
        "{streak} win streak broken. A big step back.",
        "A big step back. It can be rebuilt.",
    ),
    StreakBreakReason.withdrawal_triggered.value: (
        "Taking a break from feedback.",
        "Stepping back for now.",
    ),
}


def variants_for(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    catalog: Sequence[MessageVariant] = INTERVENTION_MESSAGES,
) -> list[MessageVariant]:
    return [
        v for v in catalog
        if v.behavior == behavior and v.intervention_type == intervention_type
    ]


def select_message(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    moment_type: Optional[MomentType],
    recent_message_keys: Sequence[str],
    last_variant_index: Optional[int] = None,
    catalog: Sequence[MessageVariant] = INTERVENTION_MESSAGES,
) -> Optional[SelectedMessage]:
    """
    `recent_message_keys` is newest first. Returns None only when the catalog
    has no variant for this behavior / type / moment at all.
    """
    combo = variants_for(behavior, intervention_type, catalog)
    applicable = [
        (index, variant)
        for index, variant in enumerate(combo)
        if not variant.moment_types or moment_type in variant.moment_types
    ]
    if not applicable:
        return None

    start = last_variant_index + 1 if last_variant_index is not None else 0
    rotated = sorted(applicable, key=lambda pair: (pair[0] - start) % len(combo))

    recent = list(recent_message_keys)
    unused = [pair for pair in rotated if pair[1].key not in recent]
    specific = [pair for pair in unused if pair[1].moment_types]
    if specific:
        index, variant = specific[0]
    elif unused:
        index, variant = unused[0]
    else:
        # All recent: the one seen longest ago sits deepest in the list
        index, variant = max(rotated, key=lambda pair: recent.index(pair[1].key))
    return SelectedMessage(key=variant.key, template=variant.template, variant_index=index)


def select_win_message(win_type: WinType, streak_days: Optional[int] = None) -> str:
    if win_type == WinType.streak_milestone and streak_days:
        milestone = WIN_MESSAGES.get(f"streak_{streak_days}")
        if milestone:
            return milestone
    return WIN_MESSAGES[win_type.value]


def select_streak_break_message(reason: StreakBreakReason, previous_streak: int) -> str:
    """The streak length picks the variant, so the same break reads the same way twice."""
    pool = STREAK_BREAK_MESSAGES.get(reason.value, ("Streak ended.",))
    return pool[previous_streak % len(pool)].format(streak=previous_streak)
