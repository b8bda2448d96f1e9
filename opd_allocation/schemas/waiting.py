from pydantic import BaseModel
from typing import List

from .allocation import WaitingEntryResponse


class WaitingList(BaseModel):
    doctor_id: int
    count: int
    entries: List[WaitingEntryResponse]


class ExpirySweepResult(BaseModel):
    expired_count: int
    doctors_renumbered: List[int]
