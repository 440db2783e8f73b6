"""
Behavioral engine request / response schemas.

POST /behavior/{user_id}/evaluate                      EvaluateRequest      → EvaluationResponse
POST /behavior/{user_id}/transactions                  TransactionRequest   → ProcessTransactionResponse
POST /behavior/{user_id}/interventions/{id}/response   InterventionResponseRequest → InterventionResponseResult
GET  /behavior/{user_id}/interventions                 → InterventionListResponse
POST /behavior/{user_id}/wins/check                    WinCheckRequest      → WinCheckResponse
GET  /behavior/{user_id}/wins                          → WinListResponse
POST /behavior/{user_id}/wins/{id}/celebrate           → ProfileResponse
GET  /behavior/{user_id}/profile | /reset | /settings  → ProfileResponse
GET  /behavior/{user_id}/context                       → BehavioralContextResponse
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from nudge.services.types import TransactionType, UserResponse


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class TransactionIn(BaseModel):
    id: str = Field(description="Caller's transaction id.", examples=["tx_1042"])
    amount: float = Field(description="Absolute amount in the account currency.", examples=[4.5])
    category: str = Field(description="Category slug.", examples=["coffee"])
    occurred_at: datetime = Field(description="When the transaction happened (ISO-8601, with offset).")
    tx_type: TransactionType = TransactionType.expense


class _AsOf(BaseModel):
    as_of: Optional[datetime] = Field(
        default=None,
        description="Evaluate as of this instant instead of now (backfills, replays).",
    )


class EvaluateRequest(_AsOf):
    transactions: list[TransactionIn] = Field(
        description="Recent transaction window; fewer than 10 is a no-op."
    )


class TransactionRequest(_AsOf):
    transaction: TransactionIn
    recent_transactions: list[TransactionIn] = Field(
        default_factory=list,
        description="Recent window the new transaction is evaluated against.",
    )


class InterventionResponseRequest(_AsOf):
    response: UserResponse = Field(description='"engaged" | "dismissed" | "ignored"')


class WinCheckRequest(_AsOf):
    transactions: list[TransactionIn]


class SettingsUpdateRequest(BaseModel):
    intervention_enabled: Optional[bool] = None
    budget_adherence_early_month: Optional[float] = Field(default=None, ge=0, le=1)
    budget_adherence_current: Optional[float] = Field(default=None, ge=0, le=1)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ProfileResponse(BaseModel):
    user_id: str
    user_state: str = Field(description='"OBSERVING" | "ACTIVE" | "COOLDOWN" | "WITHDRAWN"')
    active_behavior: Optional[str] = None
    active_behavior_intensity: float
    state_changed_at: Optional[datetime] = None
    confidence: dict[str, float]
    cooldown_ends_at: Optional[datetime] = None
    withdrawal_ends_at: Optional[datetime] = None
    interventions_today: int
    interventions_this_week: int
    ignored_interventions: int
    dismissed_count: int
    total_wins: int
    current_streak: int
    longest_streak: int
    streak_broken_at: Optional[datetime] = None
    streak_break_reason: Optional[str] = None
    intervention_enabled: bool
    last_evaluated_at: Optional[datetime] = None
    evaluation_count: int


class DecisionResponse(BaseModel):
    should_intervene: bool
    reason: str
    confidence: float
    intervention_type: Optional[str] = None
    behavior: Optional[str] = None
    blocked_by: Optional[str] = Field(
        default=None,
        description=(
            '"entitlement" | "state" | "cooldown" | "confidence" | '
            '"frequency" | "repetition" | "moment" | "context"'
        ),
    )


class InterventionOut(BaseModel):
    id: str
    behavior: str
    intervention_type: str
    message_key: str
    message: str
    confidence: float
    transaction_id: Optional[str] = None
    moment_type: Optional[str] = None
    reason: str


class DetectionOut(BaseModel):
    confidence: float
    detected: bool


class EvaluationResponse(BaseModel):
    ran: bool
    reason: str
    detections: dict[str, DetectionOut]
    streak_break_reason: Optional[str] = None
    streak_break_message: Optional[str] = None
    profile: ProfileResponse


class ProcessTransactionResponse(BaseModel):
    decision: DecisionResponse
    moment_type: Optional[str] = None
    intervention: Optional[InterventionOut] = None
    profile: ProfileResponse


class InterventionRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    behavior: str
    intervention_type: str
    message_key: str
    message_content: str
    transaction_id: Optional[str] = None
    moment_type: Optional[str] = None
    confidence: float
    delivered_at: datetime
    user_response: Optional[str] = None
    responded_at: Optional[datetime] = None


class InterventionListResponse(BaseModel):
    total: int
    items: list[InterventionRecordResponse]


class InterventionResponseResult(BaseModel):
    response: str
    action: Optional[str] = Field(
        default=None,
        description='Failure handler action, e.g. "extend_cooldown" or "withdraw".',
    )
    profile: ProfileResponse


class WinResponse(BaseModel):
    id: str
    behavior_type: str
    win_type: str
    message: str
    streak_days: Optional[int] = None
    improvement_percent: Optional[float] = None
    celebrated: bool
    celebrated_at: Optional[datetime] = None
    created_at: datetime


class WinListResponse(BaseModel):
    total: int
    items: list[WinResponse]


class WinCheckResponse(BaseModel):
    win: Optional[WinResponse] = None
    streak_break_reason: Optional[str] = None
    streak_break_message: Optional[str] = None
    profile: ProfileResponse


class BehavioralContextResponse(BaseModel):
    user_id: str
    user_state: str
    active_behavior: Optional[str] = None
    intensity: float
    confidences: dict[str, float]
    trends: dict[str, str]
    in_cooldown: bool
    current_streak: int
    longest_streak: int
    total_wins: int
    pending_wins: int
    summary: str
