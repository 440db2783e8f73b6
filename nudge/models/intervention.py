"""
InterventionModel — append-only log of delivered interventions.

`user_response` is written at most once, after delivery:
  "engaged" | "dismissed" | "ignored"
"""
from datetime import datetime
from sqlalchemy import Float, String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from nudge.db.base import Base


class InterventionModel(Base):
    __tablename__ = "interventions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    behavior: Mapped[str] = mapped_column(String(32), nullable=False)
    intervention_type: Mapped[str] = mapped_column(String(32), nullable=False)
    message_key: Mapped[str] = mapped_column(String(32), nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    moment_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    reason: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    delivered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    user_response: Mapped[str | None] = mapped_column(String(16), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
