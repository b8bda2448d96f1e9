from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class EmergencyRequest(BaseModel):
    doctor_id: int
    reason: str = Field(..., min_length=1, max_length=2000)
    severity: str = "critical"
    notes: Optional[str] = Field(default=None, max_length=2000)


class CapacityOverrideRequest(BaseModel):
    tier: str
    reason: Optional[str] = Field(default=None, max_length=255)


class CapacityOverrideResponse(BaseModel):
    id: int
    slot_id: int
    tier: str
    previous_capacity: int
    new_capacity: int
    reason: Optional[str] = None
    created_by: int
    created_at: datetime
    reverted_at: Optional[datetime] = None
    reverted_by: Optional[int] = None
    restored_capacity: Optional[int] = None
    promoted_token_ids: List[int] = []

    class Config:
        from_attributes = True
