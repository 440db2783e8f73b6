"""
Analytics event sink and experiment tracking.

The engine only ever calls `EventSink.emit`, an in-memory append that cannot
fail. A separate drain (a FastAPI background task in production) hands the
buffered events to an `ExperimentTracker`; tracker failures are logged and
the event is dropped, never re-raised into a decision path.

Experiment variants are assigned deterministically from a hash of
(experiment id, user id), so a user sees the same variant on every device
without any stored assignment.
"""
from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from sqlalchemy.orm import Session

from nudge.models.experiment_event import ExperimentEventModel
from nudge.services.types import ExperimentEvent

logger = logging.getLogger(__name__)


class EventName:
    INTERVENTION_SHOWN = "intervention_shown"
    INTERVENTION_ENGAGED = "intervention_engaged"
    INTERVENTION_DISMISSED = "intervention_dismissed"
    INTERVENTION_IGNORED = "intervention_ignored"
    WIN_DETECTED = "win_detected"
    WIN_CELEBRATED = "win_celebrated"


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Experiment:
    id: str
    variants: tuple[str, ...]


ACTIVE_EXPERIMENTS: tuple[Experiment, ...] = (
    Experiment("message_tone", ("mirror_only", "mirror_with_count")),
    Experiment("cooldown_length", ("base", "extended")),
)


def assign_variant(user_id: str, experiment: Experiment) -> str:
    digest = hashlib.sha256(f"{experiment.id}:{user_id}".encode("utf-8")).hexdigest()
    return experiment.variants[int(digest[:8], 16) % len(experiment.variants)]


def assign_variants(
    user_id: str, experiments: Sequence[Experiment] = ACTIVE_EXPERIMENTS
) -> dict[str, str]:
    return {e.id: assign_variant(user_id, e) for e in experiments}


# ---------------------------------------------------------------------------
# Sink and trackers
# ---------------------------------------------------------------------------

class ExperimentTracker(Protocol):
    def track(self, event: ExperimentEvent) -> None:
        ...


class EventSink:
    """Thread-safe FIFO buffer (deque append / popleft are atomic)."""

    def __init__(self, maxlen: int = 10_000):
        self._events: deque[ExperimentEvent] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._events)

    def emit(
        self,
        user_id: str,
        event_name: str,
        occurred_at: datetime,
        experiments: Optional[dict[str, str]] = None,
        **properties: Any,
    ) -> None:
        if not experiments:
            self._events.append(ExperimentEvent(
                user_id=user_id,
                event_name=event_name,
                occurred_at=occurred_at,
                properties=properties,
            ))
            return
        for experiment_id, variant_id in experiments.items():
            self._events.append(ExperimentEvent(
                user_id=user_id,
                event_name=event_name,
                occurred_at=occurred_at,
                experiment_id=experiment_id,
                variant_id=variant_id,
                properties=properties,
            ))

    def drain(self, tracker: ExperimentTracker) -> int:
        """Deliver everything buffered; returns how many were tracked."""
        delivered = 0
        while True:
            try:
                event = self._events.popleft()
            except IndexError:
                break
            try:
                tracker.track(event)
                delivered += 1
            except Exception:
                logger.warning(
                    "dropping analytics event %s for %s", event.event_name, event.user_id,
                    exc_info=True,
                )
        return delivered


class SqlExperimentTracker:
    def __init__(self, db: Session):
        self.db = db

    def track(self, event: ExperimentEvent) -> None:
        try:
            self.db.add(ExperimentEventModel(
                user_id=event.user_id,
                event_name=event.event_name,
                experiment_id=event.experiment_id,
                variant_id=event.variant_id,
                properties=json.dumps(event.properties, default=str),
                occurred_at=event.occurred_at,
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


# Process-wide buffer shared by every request's engine
event_sink = EventSink()
