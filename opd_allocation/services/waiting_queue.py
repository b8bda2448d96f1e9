"""
Per-doctor waiting queue.

Entries are ranked by priority score (descending) and then by request
creation time (ascending). ``queue_position`` is that rank, 1-based and
dense over the doctor's ``waiting`` entries; every departure renumbers the
remainder.

``WaitingQueue`` holds the primitives and expects the caller to hold the
doctor's critical section. ``WaitingQueueService`` is the public surface
and takes the section itself.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
import logging

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import IntegrityViolation, QueueEntryNotFound
from ..core.locking import doctor_section
from ..models.doctor import Doctor
from ..models.waiting import WaitingEntry, WaitingStatus
from ..schemas.allocation import QueuePosition, WaitingEntryResponse
from ..schemas.waiting import ExpirySweepResult, WaitingList
from . import priority
from .placement import Candidate, Placement

logger = logging.getLogger(__name__)


class WaitingQueue:
    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = datetime.utcnow,
        placer: Optional[Callable[[Candidate], Optional[Placement]]] = None,
    ):
        self.db = db
        self.clock = clock
        self.placer = placer

    def waiting_entries(self, doctor_id: int) -> List[WaitingEntry]:
        """Waiting entries for a doctor, in rank order."""
        entries = self.db.query(WaitingEntry).filter(
            WaitingEntry.doctor_id == doctor_id,
            WaitingEntry.status == WaitingStatus.WAITING,
        ).all()
        return sorted(
            entries,
            key=lambda e: priority.rank_key(e.priority_score, e.created_at, e.id),
        )

    def enqueue(self, candidate: Candidate) -> WaitingEntry:
        """Add a request behind everyone it does not outrank and return its entry."""
        entry = WaitingEntry(
            requester_id=candidate.requester_id,
            doctor_id=candidate.doctor_id,
            source=candidate.source,
            priority_score=candidate.priority_score,
            preferred_slot_id=candidate.preferred_slot_id,
            earliest_time=candidate.earliest_time,
            reason=candidate.reason,
            notes=candidate.notes,
            queue_position=0,
            status=WaitingStatus.WAITING,
            created_at=candidate.requested_at,
            expires_at=candidate.requested_at + timedelta(days=settings.WAITING_EXPIRY_DAYS),
        )
        self.db.add(entry)
        self.db.flush()

        self.renumber(candidate.doctor_id)
        logger.info(
            f"Queued requester {candidate.requester_id} for doctor {candidate.doctor_id} "
            f"at position {entry.queue_position} (score {candidate.priority_score})"
        )
        return entry

    def head(self, doctor_id: int) -> Optional[WaitingEntry]:
        entries = self.waiting_entries(doctor_id)
        return entries[0] if entries else None

    def promote_next(self, doctor_id: int) -> List[WaitingEntry]:
        """
        Admit waiting entries in rank order until one cannot be placed.

        Stops at the first entry that still does not fit instead of looking
        further down the queue, so a lower-ranked entry never jumps ahead.
        """
        if self.placer is None:
            raise RuntimeError("WaitingQueue.promote_next needs a placer")

        self.expire_stale_for_doctor(doctor_id, self.clock())

        promoted = []
        while True:
            entry = self.head(doctor_id)
            if entry is None:
                break

            placement = self.placer(Candidate.from_waiting(entry, now=self.clock()))
            if placement is None:
                break

            entry.status = WaitingStatus.PROMOTED
            entry.allocated_token_id = placement.token.id
            self.db.flush()
            self.renumber(doctor_id)
            promoted.append(entry)
            logger.info(
                f"Promoted waiting entry {entry.id} to token {placement.token.token_number} "
                f"in slot {placement.slot.id}"
            )

        return promoted

    def withdraw(self, entry: WaitingEntry, reason: Optional[str] = None) -> WaitingEntry:
        if entry.status != WaitingStatus.WAITING:
            raise QueueEntryNotFound(f"Waiting entry {entry.id} is no longer waiting")

        entry.status = WaitingStatus.WITHDRAWN
        entry.withdrawal_reason = reason
        self.db.flush()
        self.renumber(entry.doctor_id)
        return entry

    def expire_stale_for_doctor(self, doctor_id: int, now: datetime) -> int:
        """Move entries past their expiry to ``expired``; returns how many moved."""
        stale = self.db.query(WaitingEntry).filter(
            WaitingEntry.doctor_id == doctor_id,
            WaitingEntry.status == WaitingStatus.WAITING,
            WaitingEntry.expires_at < now,
        ).all()
        if not stale:
            return 0

        for entry in stale:
            entry.status = WaitingStatus.EXPIRED
        self.db.flush()
        self.renumber(doctor_id)
        logger.info(f"Expired {len(stale)} waiting entries for doctor {doctor_id}")
        return len(stale)

    def renumber(self, doctor_id: int) -> None:
        """Assign positions 1..N to waiting entries in rank order."""
        entries = self.waiting_entries(doctor_id)
        for position, entry in enumerate(entries, start=1):
            entry.queue_position = position
        self.db.flush()
        self.verify(doctor_id)

    def verify(self, doctor_id: int) -> None:
        positions = sorted(e.queue_position for e in self.waiting_entries(doctor_id))
        if positions != list(range(1, len(positions) + 1)):
            raise IntegrityViolation(
                f"Waiting positions for doctor {doctor_id} are not dense: {positions}"
            )


class WaitingQueueService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock
        self.queue = WaitingQueue(db, clock)

    def queue_position(self, requester_id: int, doctor_id: int) -> QueuePosition:
        """Position and wait estimate for a requester's waiting entry."""
        entry = self.db.query(WaitingEntry).filter(
            WaitingEntry.requester_id == requester_id,
            WaitingEntry.doctor_id == doctor_id,
            WaitingEntry.status == WaitingStatus.WAITING,
        ).order_by(WaitingEntry.queue_position).first()

        if not entry:
            raise QueueEntryNotFound("Requester is not in the waiting queue")

        doctor = self.db.query(Doctor).filter(Doctor.id == doctor_id).first()
        minutes_per_patient = (
            doctor.average_consultation_time
            if doctor and doctor.average_consultation_time
            else settings.DEFAULT_CONSULTATION_MINUTES
        )

        return QueuePosition(
            doctor_id=doctor_id,
            waiting_entry_id=entry.id,
            queue_position=entry.queue_position,
            estimated_wait_minutes=estimate_wait_minutes(entry.queue_position, minutes_per_patient),
        )

    def waiting_list(self, doctor_id: int) -> WaitingList:
        entries = self.db.query(WaitingEntry).filter(
            WaitingEntry.doctor_id == doctor_id,
            WaitingEntry.status == WaitingStatus.WAITING,
        ).order_by(WaitingEntry.queue_position).all()

        return WaitingList(
            doctor_id=doctor_id,
            count=len(entries),
            entries=[WaitingEntryResponse.model_validate(e) for e in entries],
        )

    def get_entry(self, entry_id: int) -> WaitingEntry:
        entry = self.db.query(WaitingEntry).filter(WaitingEntry.id == entry_id).first()
        if not entry:
            raise QueueEntryNotFound(f"Waiting entry {entry_id} not found")
        return entry

    def withdraw(self, entry_id: int, reason: Optional[str] = None) -> WaitingEntryResponse:
        """Take a requester out of the queue and close the gap behind them."""
        doctor_id = self.get_entry(entry_id).doctor_id

        with doctor_section(self.db, doctor_id):
            entry = self.get_entry(entry_id)
            self.queue.withdraw(entry, reason)
            response = WaitingEntryResponse.model_validate(entry)

        logger.info(f"Waiting entry {entry_id} withdrawn from doctor {doctor_id}")
        return response

    def expire_stale(self, now: Optional[datetime] = None) -> ExpirySweepResult:
        """Passive expiry sweep over every doctor with waiting entries."""
        now = now or self.clock()
        doctor_ids = [
            row[0]
            for row in self.db.query(WaitingEntry.doctor_id).filter(
                WaitingEntry.status == WaitingStatus.WAITING,
                WaitingEntry.expires_at < now,
            ).distinct().all()
        ]

        expired = 0
        for doctor_id in sorted(doctor_ids):
            with doctor_section(self.db, doctor_id):
                expired += self.queue.expire_stale_for_doctor(doctor_id, now)

        return ExpirySweepResult(expired_count=expired, doctors_renumbered=sorted(doctor_ids))


def estimate_wait_minutes(queue_position: int, minutes_per_patient: int) -> int:
    return max(0, (queue_position - 1) * minutes_per_patient)
