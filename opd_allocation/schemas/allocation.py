from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum

from ..models.slot import SlotStatus
from ..models.token import TokenSource, TokenStatus
from ..models.waiting import WaitingStatus


class TokenRequest(BaseModel):
    doctor_id: int
    source: TokenSource
    preferred_slot_id: Optional[int] = None
    earliest_time: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=2000)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("earliest_time")
    @classmethod
    def to_naive_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        # Slot times are stored as naive UTC
        if v is not None and v.tzinfo is not None:
            return v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class TokenResponse(BaseModel):
    id: int
    token_number: str
    requester_id: int
    doctor_id: int
    slot_id: Optional[int] = None
    source: TokenSource
    priority_score: int
    status: TokenStatus
    appointment_time: Optional[datetime] = None
    is_reallocation: bool
    original_slot_id: Optional[int] = None
    reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_percentage: Optional[int] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    max_capacity: int
    current_occupancy: int
    available_spots: int
    status: SlotStatus

    class Config:
        from_attributes = True


class WaitingEntryResponse(BaseModel):
    id: int
    requester_id: int
    doctor_id: int
    source: TokenSource
    priority_score: int
    preferred_slot_id: Optional[int] = None
    queue_position: int
    status: WaitingStatus
    allocated_token_id: Optional[int] = None
    expires_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class AdmissionResult(str, Enum):
    ADMITTED = "admitted"
    QUEUED = "queued"


class Displacement(BaseModel):
    token_id: int
    token_number: str
    from_slot_id: int
    to_slot_id: int


class AdmissionOutcome(BaseModel):
    outcome: AdmissionResult
    token: Optional[TokenResponse] = None
    slot_id: Optional[int] = None
    waiting_entry_id: Optional[int] = None
    queue_position: Optional[int] = None
    displaced: List[Displacement] = []
    message: str


class QueuePosition(BaseModel):
    doctor_id: int
    waiting_entry_id: int
    queue_position: int
    estimated_wait_minutes: int


class StatusUpdate(BaseModel):
    status: TokenStatus
    reason: Optional[str] = Field(default=None, max_length=255)


class SlotAvailability(BaseModel):
    doctor_id: int
    total_slots: int
    available_slots: int
    slots: List[SlotResponse]
