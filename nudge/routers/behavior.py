"""
Behavioral engine router.

GET  /behavior/{user_id}/profile                        — current profile (created on first use)
GET  /behavior/{user_id}/context                        — behavioral context for the AI chat
POST /behavior/{user_id}/evaluate                       — detection pass over a transaction window
POST /behavior/{user_id}/transactions                   — new transaction → maybe an intervention
GET  /behavior/{user_id}/interventions                  — recent interventions, newest first
POST /behavior/{user_id}/interventions/{id}/response    — engaged / dismissed / ignored
POST /behavior/{user_id}/wins/check                     — win + streak-break check
GET  /behavior/{user_id}/wins                           — wins not celebrated yet
POST /behavior/{user_id}/wins/{id}/celebrate            — celebrate (idempotent)
POST /behavior/{user_id}/reset                          — explicit user reset
PUT  /behavior/{user_id}/settings                       — intervention switch, budget adherence

Analytics produced by a request are drained after the response is sent.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query
from sqlalchemy.orm import Session, sessionmaker

from nudge.core.config import settings
from nudge.db.base import get_db, get_session_factory
from nudge.schemas.behavior import (
    BehavioralContextResponse,
    DecisionResponse,
    DetectionOut,
    EvaluateRequest,
    EvaluationResponse,
    InterventionListResponse,
    InterventionOut,
    InterventionRecordResponse,
    InterventionResponseRequest,
    InterventionResponseResult,
    ProcessTransactionResponse,
    ProfileResponse,
    SettingsUpdateRequest,
    TransactionIn,
    TransactionRequest,
    WinCheckRequest,
    WinCheckResponse,
    WinListResponse,
    WinResponse,
)
from nudge.schemas.common import ErrorResponse
from nudge.services.access import SettingsAccessPolicy
from nudge.services.detection import HeuristicDetector
from nudge.services.engine import BehavioralEngine
from nudge.services.events import SqlExperimentTracker, event_sink
from nudge.services.profile import BehavioralProfile
from nudge.services.repository import SqlProfileRepository
from nudge.services.types import BehavioralWin, InterventionRecord, Transaction

router = APIRouter(prefix="/behavior", tags=["behavior"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_engine(db: Session = Depends(get_db)) -> BehavioralEngine:
    config = settings.engine_config()
    return BehavioralEngine(
        repository=SqlProfileRepository(db),
        detector=HeuristicDetector(config),
        access_policy=SettingsAccessPolicy.from_settings(settings),
        event_sink=event_sink,
        config=config,
    )


def drain_events(session_factory: sessionmaker) -> None:
    db = session_factory()
    try:
        event_sink.drain(SqlExperimentTracker(db))
    finally:
        db.close()


def _now(as_of: Optional[datetime] = None) -> datetime:
    if as_of is None:
        return datetime.now(tz=timezone.utc)
    if as_of.tzinfo is None:
        return as_of.replace(tzinfo=timezone.utc)
    return as_of


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _to_transaction(tx: TransactionIn) -> Transaction:
    occurred_at = tx.occurred_at
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return Transaction(
        id=tx.id,
        amount=tx.amount,
        category=tx.category,
        occurred_at=occurred_at,
        tx_type=tx.tx_type,
    )


def _profile_response(profile: BehavioralProfile) -> ProfileResponse:
    return ProfileResponse(
        user_id=profile.user_id,
        user_state=profile.user_state.value,
        active_behavior=profile.active_behavior.value if profile.active_behavior else None,
        active_behavior_intensity=profile.active_behavior_intensity,
        state_changed_at=profile.state_changed_at,
        confidence={b.value: c for b, c in profile.confidence.items()},
        cooldown_ends_at=profile.cooldown_ends_at,
        withdrawal_ends_at=profile.withdrawal_ends_at,
        interventions_today=profile.interventions_today,
        interventions_this_week=profile.interventions_this_week,
        ignored_interventions=profile.ignored_interventions,
        dismissed_count=profile.dismissed_count,
        total_wins=profile.total_wins,
        current_streak=profile.current_streak,
        longest_streak=profile.longest_streak,
        streak_broken_at=profile.streak_broken_at,
        streak_break_reason=(
            profile.streak_break_reason.value if profile.streak_break_reason else None
        ),
        intervention_enabled=profile.intervention_enabled,
        last_evaluated_at=profile.last_evaluated_at,
        evaluation_count=profile.evaluation_count,
    )


def _record_response(record: InterventionRecord) -> InterventionRecordResponse:
    return InterventionRecordResponse(
        id=record.id,
        behavior=record.behavior.value,
        intervention_type=record.intervention_type.value,
        message_key=record.message_key,
        message_content=record.message_content,
        transaction_id=record.transaction_id,
        moment_type=record.moment_type.value if record.moment_type else None,
        confidence=record.confidence,
        delivered_at=record.delivered_at,
        user_response=record.user_response.value if record.user_response else None,
        responded_at=record.responded_at,
    )


def _win_response(win: BehavioralWin) -> WinResponse:
    return WinResponse(
        id=win.id,
        behavior_type=win.behavior_type.value,
        win_type=win.win_type.value,
        message=win.message,
        streak_days=win.streak_days,
        improvement_percent=win.improvement_percent,
        celebrated=win.celebrated,
        celebrated_at=win.celebrated_at,
        created_at=win.created_at,
    )


_NOT_FOUND = {404: {"model": ErrorResponse, "description": "Unknown id for this user."}}
_STORE_DOWN = {503: {"model": ErrorResponse, "description": "Profile store unavailable; retry."}}


# ---------------------------------------------------------------------------
# Profile and context
# ---------------------------------------------------------------------------

@router.get(
    "/{user_id}/profile",
    response_model=ProfileResponse,
    summary="Current behavioral profile",
    responses=_STORE_DOWN,
)
def get_profile(user_id: str, engine: BehavioralEngine = Depends(get_engine)):
    """Profiles are created with defaults (OBSERVING, all confidences 0) on first use."""
    return _profile_response(engine.get_or_create_profile(user_id, _now()))


@router.get(
    "/{user_id}/context",
    response_model=BehavioralContextResponse,
    summary="Behavioral context for the AI assistant",
    responses=_STORE_DOWN,
)
def get_context(user_id: str, engine: BehavioralEngine = Depends(get_engine)):
    ctx = engine.get_context(user_id, _now())
    return BehavioralContextResponse(
        user_id=ctx.user_id,
        user_state=ctx.user_state.value,
        active_behavior=ctx.active_behavior.value if ctx.active_behavior else None,
        intensity=ctx.intensity,
        confidences={b.value: c for b, c in ctx.confidences.items()},
        trends={b.value: t for b, t in ctx.trends.items()},
        in_cooldown=ctx.in_cooldown,
        current_streak=ctx.current_streak,
        longest_streak=ctx.longest_streak,
        total_wins=ctx.total_wins,
        pending_wins=ctx.pending_wins,
        summary=ctx.summary,
    )


# ---------------------------------------------------------------------------
# Evaluation and transactions
# ---------------------------------------------------------------------------

@router.post(
    "/{user_id}/evaluate",
    response_model=EvaluationResponse,
    summary="Run a detection pass over a transaction window",
    responses=_STORE_DOWN,
)
def evaluate(
    body: EvaluateRequest,
    user_id: str,
    engine: BehavioralEngine = Depends(get_engine),
):
    """
    Recomputes confidences and applies the state machine's TRANSACTION event.
    Fewer than 10 transactions returns `ran: false` and changes nothing.
    """
    result = engine.evaluate_behaviors(
        user_id, [_to_transaction(t) for t in body.transactions], _now(body.as_of)
    )
    return EvaluationResponse(
        ran=result.ran,
        reason=result.reason,
        detections={
            b.value: DetectionOut(confidence=o.confidence, detected=o.detected)
            for b, o in result.detections.items()
        },
        streak_break_reason=result.streak_break.reason.value if result.streak_break else None,
        streak_break_message=result.streak_break.message if result.streak_break else None,
        profile=_profile_response(result.profile),
    )


@router.post(
    "/{user_id}/transactions",
    response_model=ProcessTransactionResponse,
    summary="Evaluate a new transaction and decide on an intervention",
    responses=_STORE_DOWN,
)
def process_transaction(
    body: TransactionRequest,
    background_tasks: BackgroundTasks,
    user_id: str,
    engine: BehavioralEngine = Depends(get_engine),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    When `decision.should_intervene` is true the intervention has already been
    recorded and `intervention` carries the message to show. Otherwise
    `decision.blocked_by` names the first gate that said no.
    """
    result = engine.process_transaction(
        user_id,
        _to_transaction(body.transaction),
        [_to_transaction(t) for t in body.recent_transactions],
        _now(body.as_of),
    )
    background_tasks.add_task(drain_events, session_factory)

    decision = result.decision
    intervention = result.intervention
    return ProcessTransactionResponse(
        decision=DecisionResponse(
            should_intervene=decision.should_intervene,
            reason=decision.reason,
            confidence=decision.confidence,
            intervention_type=(
                decision.intervention_type.value if decision.intervention_type else None
            ),
            behavior=decision.behavior.value if decision.behavior else None,
            blocked_by=decision.blocked_by,
        ),
        moment_type=(
            result.moment.moment_type.value
            if result.moment is not None and result.moment.moment_type else None
        ),
        intervention=InterventionOut(
            id=intervention.id,
            behavior=intervention.behavior.value,
            intervention_type=intervention.intervention_type.value,
            message_key=intervention.message_key,
            message=intervention.message,
            confidence=intervention.confidence,
            transaction_id=intervention.transaction_id,
            moment_type=intervention.moment_type.value if intervention.moment_type else None,
            reason=intervention.reason,
        ) if intervention else None,
        profile=_profile_response(result.profile),
    )


# ---------------------------------------------------------------------------
# Interventions
# ---------------------------------------------------------------------------

@router.get(
    "/{user_id}/interventions",
    response_model=InterventionListResponse,
    summary="Recent interventions (newest first)",
)
def list_interventions(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=100, description="Page size."),
    engine: BehavioralEngine = Depends(get_engine),
):
    items = engine.list_recent_interventions(user_id, limit=limit)
    return InterventionListResponse(
        total=len(items),
        items=[_record_response(r) for r in items],
    )


@router.post(
    "/{user_id}/interventions/{intervention_id}/response",
    response_model=InterventionResponseResult,
    summary="Record the user's response to an intervention",
    responses={
        **_NOT_FOUND,
        409: {"model": ErrorResponse, "description": "A response was already recorded."},
        **_STORE_DOWN,
    },
)
def respond_to_intervention(
    body: InterventionResponseRequest,
    background_tasks: BackgroundTasks,
    user_id: str,
    intervention_id: str = Path(description="Intervention id."),
    engine: BehavioralEngine = Depends(get_engine),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    | Response | Effect |
    |---|---|
    | `engaged`   | halves the ignore / dismiss counters |
    | `ignored`   | escalates the cooldown; the 2nd ignore within 7 days withdraws |
    | `dismissed` | gentler escalation; the 3rd dismissal within 7 days withdraws |
    """
    result = engine.respond_to_intervention(
        user_id, intervention_id, body.response, _now(body.as_of)
    )
    background_tasks.add_task(drain_events, session_factory)
    return InterventionResponseResult(
        response=result.response.value,
        action=result.failure.action.value if result.failure else None,
        profile=_profile_response(result.profile),
    )


# ---------------------------------------------------------------------------
# Wins
# ---------------------------------------------------------------------------

@router.post(
    "/{user_id}/wins/check",
    response_model=WinCheckResponse,
    summary="Detect a win or a streak break",
    responses=_STORE_DOWN,
)
def check_for_wins(
    body: WinCheckRequest,
    background_tasks: BackgroundTasks,
    user_id: str,
    engine: BehavioralEngine = Depends(get_engine),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    result = engine.check_for_wins(
        user_id, [_to_transaction(t) for t in body.transactions], _now(body.as_of)
    )
    background_tasks.add_task(drain_events, session_factory)
    return WinCheckResponse(
        win=_win_response(result.win) if result.win else None,
        streak_break_reason=result.streak_break.reason.value if result.streak_break else None,
        streak_break_message=result.streak_break.message if result.streak_break else None,
        profile=_profile_response(result.profile),
    )


@router.get(
    "/{user_id}/wins",
    response_model=WinListResponse,
    summary="Wins waiting to be celebrated",
)
def list_wins(user_id: str, engine: BehavioralEngine = Depends(get_engine)):
    wins = engine.list_uncelebrated_wins(user_id)
    return WinListResponse(total=len(wins), items=[_win_response(w) for w in wins])


@router.post(
    "/{user_id}/wins/{win_id}/celebrate",
    response_model=ProfileResponse,
    summary="Celebrate a win (idempotent)",
    responses={**_NOT_FOUND, **_STORE_DOWN},
)
def celebrate_win(
    background_tasks: BackgroundTasks,
    user_id: str,
    win_id: str = Path(description="Win id."),
    engine: BehavioralEngine = Depends(get_engine),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Celebrating the same win twice increments the streak only once."""
    profile = engine.dismiss_win(user_id, win_id, _now())
    background_tasks.add_task(drain_events, session_factory)
    return _profile_response(profile)


# ---------------------------------------------------------------------------
# Reset and settings
# ---------------------------------------------------------------------------

@router.post(
    "/{user_id}/reset",
    response_model=ProfileResponse,
    summary="Reset the behavioral profile to OBSERVING",
    responses=_STORE_DOWN,
)
def reset_profile(user_id: str, engine: BehavioralEngine = Depends(get_engine)):
    return _profile_response(engine.reset_profile(user_id, _now()))


@router.put(
    "/{user_id}/settings",
    response_model=ProfileResponse,
    summary="Update intervention settings and budget adherence inputs",
    responses=_STORE_DOWN,
)
def update_settings(
    body: SettingsUpdateRequest,
    user_id: str,
    engine: BehavioralEngine = Depends(get_engine),
):
    now = _now()
    profile = None
    if body.intervention_enabled is not None:
        profile = engine.set_interventions_enabled(user_id, body.intervention_enabled, now)
    if (
        body.budget_adherence_early_month is not None
        or body.budget_adherence_current is not None
    ):
        profile = engine.set_budget_adherence(
            user_id, body.budget_adherence_early_month, body.budget_adherence_current, now
        )
    if profile is None:
        profile = engine.get_or_create_profile(user_id, now)
    return _profile_response(profile)
