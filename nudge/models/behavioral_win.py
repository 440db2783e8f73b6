from datetime import datetime
from sqlalchemy import Boolean, Float, Integer, String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from nudge.db.base import Base


class BehavioralWinModel(Base):
    __tablename__ = "behavioral_wins"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    behavior_type: Mapped[str] = mapped_column(String(32), nullable=False)
    win_type: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    streak_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    improvement_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    celebrated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    celebrated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
