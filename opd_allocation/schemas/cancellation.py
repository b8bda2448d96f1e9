from pydantic import BaseModel, Field
from typing import List, Optional

from ..models.token import TokenStatus
from .allocation import TokenResponse


class CancellationRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class CancellationPreview(BaseModel):
    token_id: int
    can_cancel: bool
    hours_until_appointment: float
    refund_percentage: int
    message: str


class CancellationOutcome(BaseModel):
    token: TokenResponse
    status: TokenStatus
    refund_percentage: Optional[int] = None
    hours_until_appointment: Optional[float] = None
    promoted_token_ids: List[int] = []
    message: str


class BulkCancellationOutcome(BaseModel):
    slot_id: int
    cancelled_token_ids: List[int]
    cancelled_count: int
    message: str
