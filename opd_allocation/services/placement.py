from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..models.slot import Slot
from ..models.token import Token, TokenSource
from ..models.waiting import WaitingEntry
from ..schemas.allocation import Displacement


@dataclass
class Candidate:
    """A request being placed: either fresh, or replayed from a waiting entry."""
    requester_id: int
    doctor_id: int
    source: TokenSource
    priority_score: int
    requested_at: datetime
    earliest_time: datetime
    preferred_slot_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    token_prefix: str = "TKN"

    @classmethod
    def from_waiting(cls, entry: WaitingEntry, now: Optional[datetime] = None) -> "Candidate":
        """Replay a queued request; slots starting before ``now`` are no longer acceptable."""
        earliest_time = entry.earliest_time
        if now is not None and now > earliest_time:
            earliest_time = now
        return cls(
            requester_id=entry.requester_id,
            doctor_id=entry.doctor_id,
            source=entry.source,
            priority_score=entry.priority_score,
            requested_at=entry.created_at,
            earliest_time=earliest_time,
            preferred_slot_id=entry.preferred_slot_id,
            reason=entry.reason,
            notes=entry.notes,
        )


@dataclass
class Placement:
    token: Token
    slot: Slot
    displaced: List[Displacement] = field(default_factory=list)
