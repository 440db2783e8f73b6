"""
ProfileRepository — the engine's only view of persistence.

Two implementations share one contract:
  InMemoryProfileRepository : dict-backed, used in tests and local tooling
  SqlProfileRepository      : SQLAlchemy session

Outside a `unit_of_work` block every write is committed on its own. Inside
one, writes are only flushed and the block commits them together, so an
operation that touches the profile, an intervention and the audit trail is
stored completely or not at all.

Both hand out fresh copies: mutating a returned profile never changes what is
stored until `save_profile` is called. Storage failures surface as
`PersistenceError` so callers see one recoverable error type.
"""
from __future__ import annotations

import abc
import contextlib
import copy
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nudge.core.errors import PersistenceError
from nudge.models.behavioral_profile import BehavioralProfileModel
from nudge.models.behavioral_win import BehavioralWinModel
from nudge.models.intervention import InterventionModel
from nudge.models.state_transition import StateTransitionModel
from nudge.services.profile import BehavioralProfile
from nudge.services.types import (
    BehavioralWin,
    BehaviorType,
    InterventionRecord,
    InterventionType,
    MomentType,
    StateTransitionRecord,
    UserResponse,
    WinType,
)

logger = logging.getLogger(__name__)


class ProfileRepository(abc.ABC):
    _in_unit = False

    @contextlib.contextmanager
    def unit_of_work(self, operation: str, user_id: Optional[str] = None):
        """
        Group the writes of one engine operation into a single commit.

        If anything inside the block raises, none of its writes are kept and
        the next call starts from the last committed state. Nested blocks join
        the outermost one.
        """
        if self._in_unit:
            yield
            return
        self._in_unit = True
        self._begin_unit()
        try:
            yield
        except Exception:
            self._rollback_unit()
            raise
        else:
            self._commit_unit(operation, user_id)
        finally:
            self._in_unit = False

    @abc.abstractmethod
    def _begin_unit(self) -> None: ...

    @abc.abstractmethod
    def _commit_unit(self, operation: str, user_id: Optional[str]) -> None: ...

    @abc.abstractmethod
    def _rollback_unit(self) -> None: ...

    @abc.abstractmethod
    def get_profile(self, user_id: str) -> Optional[BehavioralProfile]: ...

    @abc.abstractmethod
    def save_profile(self, profile: BehavioralProfile) -> None: ...

    @abc.abstractmethod
    def append_intervention(self, record: InterventionRecord) -> None: ...

    @abc.abstractmethod
    def get_intervention(self, intervention_id: str) -> Optional[InterventionRecord]: ...

    @abc.abstractmethod
    def set_intervention_response(
        self, intervention_id: str, response: UserResponse, responded_at: datetime
    ) -> None: ...

    @abc.abstractmethod
    def list_recent_interventions(
        self, user_id: str, limit: int = 20
    ) -> list[InterventionRecord]:
        """Newest first."""

    @abc.abstractmethod
    def append_win(self, win: BehavioralWin) -> None: ...

    @abc.abstractmethod
    def get_win(self, win_id: str) -> Optional[BehavioralWin]: ...

    @abc.abstractmethod
    def mark_win_celebrated(self, win_id: str, celebrated_at: datetime) -> None: ...

    @abc.abstractmethod
    def list_uncelebrated_wins(self, user_id: str) -> list[BehavioralWin]: ...

    @abc.abstractmethod
    def append_transition(self, record: StateTransitionRecord) -> None: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryProfileRepository(ProfileRepository):
    def __init__(self):
        self.profiles: dict[str, dict] = {}
        self.interventions: dict[str, InterventionRecord] = {}
        self.wins: dict[str, BehavioralWin] = {}
        self.transitions: list[StateTransitionRecord] = []
        self._snapshot: Optional[tuple] = None

    # Writes apply immediately; a failed unit restores the snapshot

    def _begin_unit(self) -> None:
        self._snapshot = copy.deepcopy(
            (self.profiles, self.interventions, self.wins, self.transitions)
        )

    def _commit_unit(self, operation: str, user_id: Optional[str]) -> None:
        self._snapshot = None

    def _rollback_unit(self) -> None:
        if self._snapshot is not None:
            self.profiles, self.interventions, self.wins, self.transitions = self._snapshot
            self._snapshot = None

    def get_profile(self, user_id: str) -> Optional[BehavioralProfile]:
        data = self.profiles.get(user_id)
        return BehavioralProfile.from_dict(data) if data is not None else None

    def save_profile(self, profile: BehavioralProfile) -> None:
        self.profiles[profile.user_id] = profile.to_dict()

    def append_intervention(self, record: InterventionRecord) -> None:
        self.interventions[record.id] = copy.deepcopy(record)

    def get_intervention(self, intervention_id: str) -> Optional[InterventionRecord]:
        record = self.interventions.get(intervention_id)
        return copy.deepcopy(record) if record else None

    def set_intervention_response(
        self, intervention_id: str, response: UserResponse, responded_at: datetime
    ) -> None:
        record = self.interventions[intervention_id]
        record.user_response = response
        record.responded_at = responded_at

    def list_recent_interventions(self, user_id: str, limit: int = 20) -> list[InterventionRecord]:
        mine = [r for r in self.interventions.values() if r.user_id == user_id]
        mine.sort(key=lambda r: r.delivered_at, reverse=True)
        return [copy.deepcopy(r) for r in mine[:limit]]

    def append_win(self, win: BehavioralWin) -> None:
        self.wins[win.id] = copy.deepcopy(win)

    def get_win(self, win_id: str) -> Optional[BehavioralWin]:
        win = self.wins.get(win_id)
        return copy.deepcopy(win) if win else None

    def mark_win_celebrated(self, win_id: str, celebrated_at: datetime) -> None:
        win = self.wins[win_id]
        win.celebrated = True
        win.celebrated_at = celebrated_at

    def list_uncelebrated_wins(self, user_id: str) -> list[BehavioralWin]:
        pending = [w for w in self.wins.values() if w.user_id == user_id and not w.celebrated]
        pending.sort(key=lambda w: w.created_at, reverse=True)
        return [copy.deepcopy(w) for w in pending]

    def append_transition(self, record: StateTransitionRecord) -> None:
        self.transitions.append(copy.deepcopy(record))


# ---------------------------------------------------------------------------
# SQLAlchemy
# ---------------------------------------------------------------------------

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _intervention_from_row(row: InterventionModel) -> InterventionRecord:
    return InterventionRecord(
        id=row.id,
        user_id=row.user_id,
        behavior=BehaviorType(row.behavior),
        intervention_type=InterventionType(row.intervention_type),
        message_key=row.message_key,
        message_content=row.message_content,
        delivered_at=_aware(row.delivered_at),
        confidence=row.confidence,
        transaction_id=row.transaction_id,
        moment_type=MomentType(row.moment_type) if row.moment_type else None,
        reason=row.reason,
        user_response=UserResponse(row.user_response) if row.user_response else None,
        responded_at=_aware(row.responded_at),
    )


def _win_from_row(row: BehavioralWinModel) -> BehavioralWin:
    return BehavioralWin(
        id=row.id,
        user_id=row.user_id,
        behavior_type=BehaviorType(row.behavior_type),
        win_type=WinType(row.win_type),
        message=row.message,
        created_at=_aware(row.created_at),
        streak_days=row.streak_days,
        improvement_percent=row.improvement_percent,
        celebrated=row.celebrated,
        celebrated_at=_aware(row.celebrated_at),
    )


class SqlProfileRepository(ProfileRepository):
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, operation: str, user_id: Optional[str] = None) -> None:
        """Commit a single write, or only flush it inside a unit of work."""
        try:
            if self._in_unit:
                self.db.flush()
            else:
                self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("write failed during %s for %s: %s", operation, user_id, exc)
            raise PersistenceError(operation, user_id) from exc

    def _begin_unit(self) -> None:
        pass

    def _commit_unit(self, operation: str, user_id: Optional[str]) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("commit failed during %s for %s: %s", operation, user_id, exc)
            raise PersistenceError(operation, user_id) from exc

    def _rollback_unit(self) -> None:
        self.db.rollback()

    def _read(self, operation: str, fn, user_id: Optional[str] = None):
        try:
            return fn()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("read failed during %s for %s: %s", operation, user_id, exc)
            raise PersistenceError(operation, user_id) from exc

    # --- profiles ---------------------------------------------------------

    def _profile_row(self, user_id: str) -> Optional[BehavioralProfileModel]:
        return (
            self.db.query(BehavioralProfileModel)
            .filter(BehavioralProfileModel.user_id == user_id)
            .first()
        )

    def get_profile(self, user_id: str) -> Optional[BehavioralProfile]:
        row = self._read("get_profile", lambda: self._profile_row(user_id), user_id)
        if row is None:
            return None
        return BehavioralProfile.from_dict(json.loads(row.profile_data))

    def save_profile(self, profile: BehavioralProfile) -> None:
        try:
            row = self._profile_row(profile.user_id)
            if row is None:
                row = BehavioralProfileModel(user_id=profile.user_id)
                self.db.add(row)
            row.user_state = profile.user_state.value
            row.active_behavior = profile.active_behavior.value if profile.active_behavior else None
            row.current_streak = profile.current_streak
            row.profile_data = json.dumps(profile.to_dict())
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError("save_profile", profile.user_id) from exc
        self._commit("save_profile", profile.user_id)

    # --- interventions ----------------------------------------------------

    def append_intervention(self, record: InterventionRecord) -> None:
        self.db.add(InterventionModel(
            id=record.id,
            user_id=record.user_id,
            behavior=record.behavior.value,
            intervention_type=record.intervention_type.value,
            message_key=record.message_key,
            message_content=record.message_content,
            transaction_id=record.transaction_id,
            moment_type=record.moment_type.value if record.moment_type else None,
            confidence=record.confidence,
            reason=record.reason,
            delivered_at=record.delivered_at,
            user_response=record.user_response.value if record.user_response else None,
            responded_at=record.responded_at,
        ))
        self._commit("append_intervention", record.user_id)

    def get_intervention(self, intervention_id: str) -> Optional[InterventionRecord]:
        row = self._read(
            "get_intervention", lambda: self.db.get(InterventionModel, intervention_id)
        )
        return _intervention_from_row(row) if row else None

    def set_intervention_response(
        self, intervention_id: str, response: UserResponse, responded_at: datetime
    ) -> None:
        row = self._read(
            "set_intervention_response", lambda: self.db.get(InterventionModel, intervention_id)
        )
        row.user_response = response.value
        row.responded_at = responded_at
        self._commit("set_intervention_response", row.user_id)

    def list_recent_interventions(self, user_id: str, limit: int = 20) -> list[InterventionRecord]:
        rows = self._read(
            "list_recent_interventions",
            lambda: (
                self.db.query(InterventionModel)
                .filter(InterventionModel.user_id == user_id)
                .order_by(InterventionModel.delivered_at.desc())
                .limit(limit)
                .all()
            ),
            user_id,
        )
        return [_intervention_from_row(r) for r in rows]

    # --- wins -------------------------------------------------------------

    def append_win(self, win: BehavioralWin) -> None:
        self.db.add(BehavioralWinModel(
            id=win.id,
            user_id=win.user_id,
            behavior_type=win.behavior_type.value,
            win_type=win.win_type.value,
            message=win.message,
            streak_days=win.streak_days,
            improvement_percent=win.improvement_percent,
            celebrated=win.celebrated,
            celebrated_at=win.celebrated_at,
            created_at=win.created_at,
        ))
        self._commit("append_win", win.user_id)

    def get_win(self, win_id: str) -> Optional[BehavioralWin]:
        row = self._read("get_win", lambda: self.db.get(BehavioralWinModel, win_id))
        return _win_from_row(row) if row else None

    def mark_win_celebrated(self, win_id: str, celebrated_at: datetime) -> None:
        row = self._read("mark_win_celebrated", lambda: self.db.get(BehavioralWinModel, win_id))
        row.celebrated = True
        row.celebrated_at = celebrated_at
        self._commit("mark_win_celebrated", row.user_id)

    def list_uncelebrated_wins(self, user_id: str) -> list[BehavioralWin]:
        rows = self._read(
            "list_uncelebrated_wins",
            lambda: (
                self.db.query(BehavioralWinModel)
                .filter(
                    BehavioralWinModel.user_id == user_id,
                    BehavioralWinModel.celebrated.is_(False),
                )
                .order_by(BehavioralWinModel.created_at.desc())
                .all()
            ),
            user_id,
        )
        return [_win_from_row(r) for r in rows]

    # --- audit ------------------------------------------------------------

    def append_transition(self, record: StateTransitionRecord) -> None:
        self.db.add(StateTransitionModel(
            user_id=record.user_id,
            from_state=record.from_state.value,
            to_state=record.to_state.value,
            trigger=record.trigger,
            reason=record.reason[:128],
            active_behavior=record.active_behavior.value if record.active_behavior else None,
            confidence=record.confidence,
            created_at=record.created_at,
        ))
        self._commit("append_transition", record.user_id)
