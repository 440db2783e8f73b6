"""
BehavioralEngine — orchestrates one user's behavioral profile.

Every public operation follows the same shape:
  1. load the persisted profile (never a cached copy)
  2. compute the complete new profile in memory
  3. persist once: every write of the operation (profile, intervention or
     win record, audit rows) commits in one `unit_of_work`
  4. emit analytics only after the commit

If any write fails the caller gets a `PersistenceError`, nothing of the
operation is stored and no intervention is presented. A retry therefore runs
again from the last committed profile: a response or a celebration is never
marked done without the profile update it caused.

Public API
----------
get_or_create_profile(user_id, now)
evaluate_behaviors(user_id, transactions, now)                    -> EvaluationResult
process_transaction(user_id, transaction, recent_transactions, now) -> ProcessResult
respond_to_intervention(user_id, intervention_id, response, now)  -> ResponseResult
check_for_wins(user_id, transactions, now)                        -> WinCheckResult
dismiss_win(user_id, win_id, now)                                 -> BehavioralProfile
list_uncelebrated_wins(user_id)                                   -> list[BehavioralWin]
list_recent_interventions(user_id, limit)                         -> list[InterventionRecord]
reset_profile(user_id, now)                                       -> BehavioralProfile
set_interventions_enabled(user_id, enabled, now)                  -> BehavioralProfile
set_budget_adherence(user_id, early_month, current, now)          -> BehavioralProfile
get_context(user_id, now)                                         -> BehavioralContext
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from nudge.core.config import EngineConfig
from nudge.core.errors import (
    InterventionNotFoundError,
    PersistenceError,
    ResponseAlreadyRecordedError,
    WinNotFoundError,
)
from nudge.services import confidence as confidence_store
from nudge.services.access import AccessPolicy, NoOverridePolicy
from nudge.services.decision import DecisionContext, DecisionResult, make_decision
from nudge.services.detection import DetectionOutcome, DetectorAdapter
from nudge.services.events import ACTIVE_EXPERIMENTS, EventName, EventSink, Experiment, assign_variants
from nudge.services.failure import (
    FailureKind,
    FailureResponse,
    calculate_new_state,
    detect_annoyance,
    handle_engagement,
    handle_failure,
)
from nudge.services.messages import SelectedMessage, select_message
from nudge.services.moments import BehavioralMoment, detect_behavioral_moment
from nudge.services.profile import BehavioralProfile, ConfidenceSnapshot, create_default_profile
from nudge.services.repository import ProfileRepository
from nudge.services.state_machine import (
    StateTransition,
    apply_transition,
    evaluate_transition,
    reset_transition,
)
from nudge.services.types import (
    BehavioralWin,
    BehaviorType,
    InterventionRecord,
    InterventionType,
    MomentType,
    StateEvent,
    StateTransitionRecord,
    StreakBreakReason,
    Transaction,
    UserResponse,
    UserState,
)
from nudge.services.wins import (
    StreakBreak,
    WinResult,
    apply_streak_break,
    celebrate_win,
    detect_win_with_streak_check,
    reentered_active,
    record_win,
)

logger = logging.getLogger(__name__)

MomentDetector = Callable[..., BehavioralMoment]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class Intervention:
    """What the UI shows. Only built after the record is persisted."""
    id: str
    behavior: BehaviorType
    intervention_type: InterventionType
    message_key: str
    message: str
    confidence: float
    transaction_id: Optional[str]
    reason: str
    moment_type: Optional[MomentType] = None


@dataclass
class EvaluationResult:
    ran: bool
    reason: str
    profile: BehavioralProfile
    detections: dict[BehaviorType, DetectionOutcome] = field(default_factory=dict)
    transition: Optional[StateTransition] = None
    streak_break: Optional[StreakBreak] = None


@dataclass
class ProcessResult:
    decision: DecisionResult
    profile: BehavioralProfile
    evaluation: EvaluationResult
    moment: Optional[BehavioralMoment] = None
    intervention: Optional[Intervention] = None


@dataclass
class ResponseResult:
    profile: BehavioralProfile
    response: UserResponse
    failure: Optional[FailureResponse] = None


@dataclass
class WinCheckResult:
    profile: BehavioralProfile
    win: Optional[BehavioralWin] = None
    streak_break: Optional[StreakBreak] = None


@dataclass
class BehavioralContext:
    """Snapshot handed to the AI chat so it can speak to current patterns."""
    user_id: str
    user_state: UserState
    active_behavior: Optional[BehaviorType]
    intensity: float
    confidences: dict[BehaviorType, float]
    trends: dict[BehaviorType, str]
    in_cooldown: bool
    current_streak: int
    longest_streak: int
    total_wins: int
    pending_wins: int
    summary: str


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BehavioralEngine:
    def __init__(
        self,
        repository: ProfileRepository,
        detector: DetectorAdapter,
        access_policy: Optional[AccessPolicy] = None,
        event_sink: Optional[EventSink] = None,
        config: Optional[EngineConfig] = None,
        experiments: Sequence[Experiment] = ACTIVE_EXPERIMENTS,
        moment_detector: MomentDetector = detect_behavioral_moment,
        context_gates: Sequence[Callable[[DecisionContext], Optional[str]]] = (),
    ):
        self.repository = repository
        self.detector = detector
        self.access_policy = access_policy or NoOverridePolicy()
        # An empty sink is falsy (it defines __len__)
        self.event_sink = event_sink if event_sink is not None else EventSink()
        self.config = config or EngineConfig()
        self.experiments = tuple(experiments)
        self.moment_detector = moment_detector
        self.context_gates = tuple(context_gates)

    # --- persistence helpers ---------------------------------------------

    def _load(self, user_id: str, now: datetime) -> BehavioralProfile:
        profile = self.repository.get_profile(user_id)
        if profile is None:
            profile = create_default_profile(user_id, now)
            logger.info("created behavioral profile for %s", user_id)
        return profile

    def _save(
        self,
        profile: BehavioralProfile,
        now: datetime,
        transitions: Sequence[tuple[str, StateTransition]] = (),
    ) -> None:
        profile.updated_at = now
        try:
            with self.repository.unit_of_work("save_profile", profile.user_id):
                self.repository.save_profile(profile)
                for trigger, transition in transitions:
                    if not transition.changed:
                        continue
                    self.repository.append_transition(StateTransitionRecord(
                        user_id=profile.user_id,
                        from_state=transition.previous_state,
                        to_state=transition.new_state,
                        trigger=trigger,
                        reason=transition.reason,
                        created_at=now,
                        active_behavior=transition.active_behavior,
                        confidence=transition.intensity,
                    ))
        except PersistenceError:
            logger.error("profile for %s not saved; next call starts from stored state", profile.user_id)
            raise

    def _emit(self, user_id: str, event_name: str, now: datetime, **properties) -> None:
        self.event_sink.emit(
            user_id, event_name, now,
            experiments=assign_variants(user_id, self.experiments),
            **properties,
        )

    def get_or_create_profile(self, user_id: str, now: datetime) -> BehavioralProfile:
        return self._load(user_id, now)

    # --- evaluation -------------------------------------------------------

    def _update_confidences(
        self,
        profile: BehavioralProfile,
        transactions: Sequence[Transaction],
        now: datetime,
    ) -> dict[BehaviorType, DetectionOutcome]:
        if confidence_store.needs_recalibration(
            profile.seasonal_factors, transactions, now, self.config
        ):
            profile.seasonal_factors = confidence_store.calibrate_seasonal_factors(
                transactions, profile.seasonal_factors, now, self.config
            )
            logger.info("recalibrated seasonal factors for %s", profile.user_id)

        try:
            outcomes = self.detector.run_all_detection(
                transactions, dict(profile.confidence), profile.seasonal_factors
            )
        except Exception:
            logger.exception("detector failed for %s; confidences unchanged", profile.user_id)
            return {}

        elapsed_days = 0.0
        if profile.last_evaluated_at is not None:
            elapsed_days = max(0.0, (now - profile.last_evaluated_at).total_seconds() / 86400)

        for behavior in BehaviorType:
            outcome = outcomes.get(behavior)
            if outcome is None:
                continue
            if outcome.detected:
                profile.confidence[behavior] = confidence_store.clamp_confidence(
                    outcome.confidence, self.config
                )
                profile.last_detected_at[behavior] = now
            else:
                profile.confidence[behavior] = confidence_store.decay_confidence(
                    outcome.confidence, elapsed_days, self.config
                )

        profile.confidence_history = confidence_store.append_history(
            profile.confidence_history,
            ConfidenceSnapshot(
                timestamp=now,
                confidences=dict(profile.confidence),
                detected={b: bool(outcomes[b].detected) for b in BehaviorType if b in outcomes},
            ),
            self.config,
        )
        return outcomes

    def _evaluate(
        self,
        profile: BehavioralProfile,
        transactions: Sequence[Transaction],
        now: datetime,
    ) -> EvaluationResult:
        """Mutates `profile`; the caller persists."""
        profile.roll_over_counters(now)
        if len(transactions) < self.config.min_transactions:
            return EvaluationResult(
                ran=False,
                reason=f"insufficient_data:{len(transactions)}<{self.config.min_transactions}",
                profile=profile,
            )

        detections = self._update_confidences(profile, transactions, now)
        profile.last_evaluated_at = now
        profile.evaluation_count += 1

        transition = evaluate_transition(profile, StateEvent.TRANSACTION, now, self.config)
        apply_transition(profile, transition, now)
        if transition.changed:
            logger.info(
                "%s: %s -> %s (%s)", profile.user_id,
                transition.previous_state.value, transition.new_state.value, transition.reason,
            )

        streak_break = None
        if profile.current_streak > 0 and transition.changed and reentered_active(profile):
            streak_break = StreakBreak(
                StreakBreakReason.behavior_relapse, profile.current_streak, now
            )
            apply_streak_break(profile, streak_break)
            logger.info("%s: streak broken (%s)", profile.user_id, streak_break.reason.value)

        return EvaluationResult(
            ran=True,
            reason=transition.reason,
            profile=profile,
            detections=detections,
            transition=transition,
            streak_break=streak_break,
        )

    def evaluate_behaviors(
        self, user_id: str, transactions: Sequence[Transaction], now: datetime
    ) -> EvaluationResult:
        profile = self._load(user_id, now)
        result = self._evaluate(profile, transactions, now)
        if not result.ran:
            return result
        self._save(profile, now, [(StateEvent.TRANSACTION.value, result.transition)])
        return result

    # --- transaction → intervention --------------------------------------

    def _select(
        self, profile: BehavioralProfile, decision: DecisionResult, moment: BehavioralMoment
    ) -> Optional[SelectedMessage]:
        recent_keys = [
            r.message_key
            for r in self.repository.list_recent_interventions(
                profile.user_id, limit=self.config.message_recent_memory
            )
        ]
        return select_message(
            decision.behavior,
            decision.intervention_type,
            moment.moment_type,
            recent_keys,
            last_variant_index=profile.message_rotation.get(decision.behavior),
        )

    def process_transaction(
        self,
        user_id: str,
        transaction: Transaction,
        recent_transactions: Sequence[Transaction],
        now: datetime,
    ) -> ProcessResult:
        profile = self._load(user_id, now)
        window = [t for t in recent_transactions if t.id != transaction.id]
        window.append(transaction)

        evaluation = self._evaluate(profile, window, now)
        if not evaluation.ran:
            return ProcessResult(
                decision=DecisionResult(
                    should_intervene=False,
                    reason=evaluation.reason,
                    confidence=profile.active_behavior_intensity,
                ),
                profile=profile,
                evaluation=evaluation,
            )

        moment = self.moment_detector(transaction, profile, window, now, self.config)
        recent = self.repository.list_recent_interventions(user_id)
        decision = make_decision(DecisionContext(
            profile=profile,
            behavioral_moment=moment,
            recent_interventions=recent,
            now=now,
            has_override=self.access_policy.has_override_access(user_id),
            config=self.config,
            context_gates=self.context_gates,
        ))

        transitions = [(StateEvent.TRANSACTION.value, evaluation.transition)]
        intervention = None
        selected = None
        if decision.should_intervene:
            selected = self._select(profile, decision, moment)
            if selected is None:
                logger.warning(
                    "no message variant for %s/%s/%s", decision.behavior.value,
                    decision.intervention_type.value, moment.moment_type,
                )
                decision = DecisionResult(
                    should_intervene=False,
                    reason="no_message_variant",
                    confidence=decision.confidence,
                    behavior=decision.behavior,
                )
        else:
            logger.debug("%s: no intervention (%s: %s)", user_id, decision.blocked_by, decision.reason)

        with self.repository.unit_of_work("process_transaction", user_id):
            if selected is not None:
                intervention, delivered = self._deliver(
                    profile, decision, moment, selected, transaction, now
                )
                transitions.append((StateEvent.INTERVENTION_DELIVERED.value, delivered))
            self._save(profile, now, transitions)
        if intervention is not None:
            self._emit(
                user_id, EventName.INTERVENTION_SHOWN, now,
                intervention_id=intervention.id,
                behavior=intervention.behavior.value,
                intervention_type=intervention.intervention_type.value,
                message_key=intervention.message_key,
            )
        return ProcessResult(
            decision=decision,
            profile=profile,
            evaluation=evaluation,
            moment=moment,
            intervention=intervention,
        )

    def _deliver(
        self,
        profile: BehavioralProfile,
        decision: DecisionResult,
        moment: BehavioralMoment,
        selected: SelectedMessage,
        transaction: Transaction,
        now: datetime,
    ) -> tuple[Intervention, StateTransition]:
        record = InterventionRecord(
            id=str(uuid.uuid4()),
            user_id=profile.user_id,
            behavior=decision.behavior,
            intervention_type=decision.intervention_type,
            message_key=selected.key,
            message_content=selected.template,
            delivered_at=now,
            confidence=decision.confidence,
            transaction_id=transaction.id,
            moment_type=moment.moment_type,
            reason=decision.reason,
        )
        try:
            self.repository.append_intervention(record)
        except PersistenceError:
            logger.error("intervention for %s not recorded; not presenting it", profile.user_id)
            raise

        delivered = evaluate_transition(
            profile, StateEvent.INTERVENTION_DELIVERED, now, self.config
        )
        apply_transition(profile, delivered, now)
        profile.interventions_today += 1
        profile.interventions_this_week += 1
        profile.last_intervention_at = now
        profile.message_rotation[decision.behavior] = selected.variant_index
        logger.info(
            "%s: intervention %s (%s) delivered, cooldown until %s",
            profile.user_id, record.message_key, record.intervention_type.value,
            profile.cooldown_ends_at.isoformat() if profile.cooldown_ends_at else None,
        )

        return Intervention(
            id=record.id,
            behavior=record.behavior,
            intervention_type=record.intervention_type,
            message_key=record.message_key,
            message=record.message_content,
            confidence=record.confidence,
            transaction_id=record.transaction_id,
            reason=record.reason,
            moment_type=record.moment_type,
        ), delivered

    # --- responses --------------------------------------------------------

    def respond_to_intervention(
        self, user_id: str, intervention_id: str, response: UserResponse, now: datetime
    ) -> ResponseResult:
        record = self.repository.get_intervention(intervention_id)
        if record is None or record.user_id != user_id:
            raise InterventionNotFoundError(intervention_id)
        if record.user_response is not None:
            raise ResponseAlreadyRecordedError(intervention_id, record.user_response.value)

        # The stored response is the idempotency key, so it commits with the profile
        with self.repository.unit_of_work("respond_to_intervention", user_id):
            self.repository.set_intervention_response(intervention_id, response, now)
            result, event_name = self._apply_response(user_id, response, now)
        self._emit(
            user_id, event_name, now,
            intervention_id=intervention_id, behavior=record.behavior.value,
        )
        return result

    def _apply_response(
        self,
        user_id: str,
        response: UserResponse,
        now: datetime,
    ) -> tuple[ResponseResult, str]:
        profile = self._load(user_id, now)
        previous_state = profile.user_state
        failure: Optional[FailureResponse] = None

        if response == UserResponse.engaged:
            profile.apply(handle_engagement(profile))
            event_name = EventName.INTERVENTION_ENGAGED
        else:
            kind = (
                FailureKind.USER_IGNORED if response == UserResponse.ignored
                else FailureKind.USER_DISMISSED
            )
            failure = handle_failure(kind, profile, now, self.config)
            profile.apply(calculate_new_state(profile, failure, now, self.config))

            if kind == FailureKind.USER_DISMISSED and detect_annoyance(
                self.repository.list_recent_interventions(user_id), now, self.config
            ):
                failure = handle_failure(FailureKind.USER_ANNOYED, profile, now, self.config)
                profile.apply(calculate_new_state(profile, failure, now, self.config))

            event_name = (
                EventName.INTERVENTION_IGNORED if response == UserResponse.ignored
                else EventName.INTERVENTION_DISMISSED
            )
            logger.info(
                "%s: %s -> %s (%s)", user_id, kind.value, failure.action.value, failure.reason
            )

        if profile.user_state == UserState.WITHDRAWN and profile.current_streak > 0:
            apply_streak_break(profile, StreakBreak(
                StreakBreakReason.withdrawal_triggered, profile.current_streak, now
            ))

        transition = StateTransition(
            previous_state=previous_state,
            new_state=profile.user_state,
            active_behavior=profile.active_behavior,
            intensity=profile.active_behavior_intensity,
            reason=failure.reason if failure else "engaged",
            cooldown_ends_at=profile.cooldown_ends_at,
            withdrawal_ends_at=profile.withdrawal_ends_at,
        )
        self._save(profile, now, [(f"USER_{response.value.upper()}", transition)])
        return ResponseResult(profile=profile, response=response, failure=failure), event_name

    # --- wins -------------------------------------------------------------

    def check_for_wins(
        self, user_id: str, transactions: Sequence[Transaction], now: datetime
    ) -> WinCheckResult:
        profile = self._load(user_id, now)
        check = detect_win_with_streak_check(user_id, profile, transactions, now, self.config)

        if check.streak_break is not None:
            apply_streak_break(profile, check.streak_break)
            logger.info("%s: streak broken (%s)", user_id, check.streak_break.reason.value)
            self._save(profile, now)
            return WinCheckResult(profile=profile, streak_break=check.streak_break)

        result: Optional[WinResult] = check.win_result
        if result is None:
            return WinCheckResult(profile=profile)

        win = record_win(user_id, profile, result, now)
        with self.repository.unit_of_work("check_for_wins", user_id):
            self.repository.append_win(win)
            self._save(profile, now)
        self._emit(
            user_id, EventName.WIN_DETECTED, now,
            win_id=win.id, win_type=win.win_type.value, behavior=win.behavior_type.value,
        )
        logger.info("%s: %s win for %s", user_id, win.win_type.value, win.behavior_type.value)
        return WinCheckResult(profile=profile, win=win)

    def dismiss_win(self, user_id: str, win_id: str, now: datetime) -> BehavioralProfile:
        """Celebrate a win. A win already celebrated leaves the profile untouched."""
        win = self.repository.get_win(win_id)
        if win is None or win.user_id != user_id:
            raise WinNotFoundError(win_id)
        profile = self._load(user_id, now)
        if win.celebrated:
            return profile

        celebrate_win(profile)
        with self.repository.unit_of_work("dismiss_win", user_id):
            self.repository.mark_win_celebrated(win_id, now)
            self._save(profile, now)
        self._emit(user_id, EventName.WIN_CELEBRATED, now, win_id=win_id)
        return profile

    def list_uncelebrated_wins(self, user_id: str) -> list[BehavioralWin]:
        return self.repository.list_uncelebrated_wins(user_id)

    def list_recent_interventions(self, user_id: str, limit: int = 20) -> list[InterventionRecord]:
        return self.repository.list_recent_interventions(user_id, limit=limit)

    # --- settings and reset ----------------------------------------------

    def reset_profile(self, user_id: str, now: datetime) -> BehavioralProfile:
        profile = self._load(user_id, now)
        transition = reset_transition(profile)
        apply_transition(profile, transition, now)
        profile.apply({
            "ignored_interventions": 0,
            "dismissed_count": 0,
            "recent_ignored_at": [],
            "recent_dismissed_at": [],
        })
        if profile.current_streak > 0:
            apply_streak_break(profile, StreakBreak(
                StreakBreakReason.user_reset, profile.current_streak, now
            ))
        self._save(profile, now, [("USER_RESET", transition)])
        logger.info("%s: profile reset", user_id)
        return profile

    def set_interventions_enabled(
        self, user_id: str, enabled: bool, now: datetime
    ) -> BehavioralProfile:
        profile = self._load(user_id, now)
        profile.intervention_enabled = enabled
        self._save(profile, now)
        return profile

    def set_budget_adherence(
        self,
        user_id: str,
        early_month: Optional[float],
        current: Optional[float],
        now: datetime,
    ) -> BehavioralProfile:
        """Only the values given are replaced."""
        profile = self._load(user_id, now)
        if early_month is not None:
            profile.budget_adherence_early_month = early_month
        if current is not None:
            profile.budget_adherence_current = current
        self._save(profile, now)
        return profile

    # --- context ----------------------------------------------------------

    def get_context(self, user_id: str, now: datetime) -> BehavioralContext:
        profile = self._load(user_id, now)
        pending = self.repository.list_uncelebrated_wins(user_id)
        trends = {
            b: confidence_store.confidence_trend(profile.confidence_history, b)
            for b in BehaviorType
        }
        in_cooldown = profile.user_state == UserState.COOLDOWN or (
            profile.cooldown_ends_at is not None and profile.cooldown_ends_at > now
        )

        parts = [f"State: {profile.user_state.value}."]
        if profile.active_behavior is not None:
            parts.append(
                f"Active pattern: {profile.active_behavior.value.replace('_', ' ')} "
                f"({profile.active_behavior_intensity:.0%})."
            )
        notable = [
            f"{b.value.replace('_', ' ')} {c:.0%} ({trends[b]})"
            for b, c in profile.confidence.items()
            if c >= self.config.deactivation_threshold
        ]
        if notable:
            parts.append("Watching: " + ", ".join(notable) + ".")
        if profile.current_streak:
            parts.append(f"Win streak: {profile.current_streak}.")

        return BehavioralContext(
            user_id=user_id,
            user_state=profile.user_state,
            active_behavior=profile.active_behavior,
            intensity=profile.active_behavior_intensity,
            confidences=dict(profile.confidence),
            trends=trends,
            in_cooldown=in_cooldown,
            current_streak=profile.current_streak,
            longest_streak=profile.longest_streak,
            total_wins=profile.total_wins,
            pending_wins=len(pending),
            summary=" ".join(parts),
        )
