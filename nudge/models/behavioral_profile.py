"""
BehavioralProfileModel — one row per user holding the engine's profile.

The full profile lives in `profile_data` as JSON (see
nudge/services/profile.py for the shape). A few fields are mirrored into
columns so operators can query state without decoding JSON; the JSON is the
source of truth.
"""
from datetime import datetime
from sqlalchemy import Integer, String, Text, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column

from nudge.db.base import Base


class BehavioralProfileModel(Base):
    __tablename__ = "behavioral_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    user_state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    active_behavior: Mapped[str | None] = mapped_column(String(32), nullable=True)
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    profile_data: Mapped[str] = mapped_column(
        Text, nullable=False,
        comment="JSON-encoded BehavioralProfile",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
