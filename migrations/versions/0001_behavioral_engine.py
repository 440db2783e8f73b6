"""behavioral engine schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Tables:
  behavioral_profiles  one row per user, profile JSON in `profile_data`
  interventions        append-only delivery log, response written once
  behavioral_wins      detected wins, `celebrated` flips once
  state_transitions    audit trail of persisted state changes
  experiment_events    analytics drained from the in-memory sink
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "behavioral_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("user_state", sa.String(16), nullable=False),
        sa.Column("active_behavior", sa.String(32), nullable=True),
        sa.Column("current_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("profile_data", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_behavioral_profiles_user_id", "behavioral_profiles", ["user_id"], unique=True)
    op.create_index("ix_behavioral_profiles_user_state", "behavioral_profiles", ["user_state"])

    op.create_table(
        "interventions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("behavior", sa.String(32), nullable=False),
        sa.Column("intervention_type", sa.String(32), nullable=False),
        sa.Column("message_key", sa.String(32), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=False),
        sa.Column("transaction_id", sa.String(64), nullable=True),
        sa.Column("moment_type", sa.String(32), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("reason", sa.String(128), nullable=False, server_default=""),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_response", sa.String(16), nullable=True),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_interventions_user_id", "interventions", ["user_id"])
    op.create_index("ix_interventions_delivered_at", "interventions", ["delivered_at"])

    op.create_table(
        "behavioral_wins",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("behavior_type", sa.String(32), nullable=False),
        sa.Column("win_type", sa.String(32), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("streak_days", sa.Integer(), nullable=True),
        sa.Column("improvement_percent", sa.Float(), nullable=True),
        sa.Column("celebrated", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("celebrated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_behavioral_wins_user_id", "behavioral_wins", ["user_id"])

    op.create_table(
        "state_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("from_state", sa.String(16), nullable=False),
        sa.Column("to_state", sa.String(16), nullable=False),
        sa.Column("trigger", sa.String(32), nullable=False),
        sa.Column("reason", sa.String(128), nullable=False, server_default=""),
        sa.Column("active_behavior", sa.String(32), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_state_transitions_user_id", "state_transitions", ["user_id"])

    op.create_table(
        "experiment_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("event_name", sa.String(64), nullable=False),
        sa.Column("experiment_id", sa.String(64), nullable=True),
        sa.Column("variant_id", sa.String(64), nullable=True),
        sa.Column("properties", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_experiment_events_user_id", "experiment_events", ["user_id"])
    op.create_index("ix_experiment_events_event_name", "experiment_events", ["event_name"])


def downgrade() -> None:
    op.drop_index("ix_experiment_events_event_name", table_name="experiment_events")
    op.drop_index("ix_experiment_events_user_id", table_name="experiment_events")
    op.drop_table("experiment_events")
    op.drop_index("ix_state_transitions_user_id", table_name="state_transitions")
    op.drop_table("state_transitions")
    op.drop_index("ix_behavioral_wins_user_id", table_name="behavioral_wins")
    op.drop_table("behavioral_wins")
    op.drop_index("ix_interventions_delivered_at", table_name="interventions")
    op.drop_index("ix_interventions_user_id", table_name="interventions")
    op.drop_table("interventions")
    op.drop_index("ix_behavioral_profiles_user_state", table_name="behavioral_profiles")
    op.drop_index("ix_behavioral_profiles_user_id", table_name="behavioral_profiles")
    op.drop_table("behavioral_profiles")
