"""
Error envelope shared by every endpoint, used in `responses=` docs.
"""
from typing import Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Returned for all 4xx/5xx responses."""
    code: str = Field(
        description="Machine-readable code, e.g. PERSISTENCE_ERROR or WIN_NOT_FOUND.",
        examples=["INTERVENTION_NOT_FOUND"],
    )
    message: str
    details: Optional[dict[str, Any]] = None
