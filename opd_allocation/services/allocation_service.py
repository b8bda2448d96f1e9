"""
Allocation engine.

Admission order for a request:

1. a named preferred slot, if it belongs to the doctor, starts no earlier
   than the request's earliest acceptable time, and has free capacity;
2. the same preferred slot by displacing its lowest-priority occupant to a
   later slot, when that occupant scores strictly below the request;
3. the doctor's first slot, chronologically from the earliest acceptable
   time, with free capacity;
4. displacement in the chronologically earliest full slot whose lowest
   occupant scores strictly below the request;
5. otherwise the waiting queue.

Every public method runs inside the doctor's critical section.
"""

from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
import logging
import secrets

from sqlalchemy.orm import Session

from ..core.exceptions import DoctorMismatch, IntegrityViolation, SlotNotFound, TokenNotFound
from ..core.locking import doctor_section
from ..models.slot import Slot, SlotStatus
from ..models.token import Token, TokenStatus
from ..schemas.allocation import (
    AdmissionOutcome, AdmissionResult, Displacement, SlotAvailability,
    SlotResponse, TokenRequest, TokenResponse
)
from . import priority
from .placement import Candidate, Placement
from .slot_ledger import SlotLedger
from .waiting_queue import WaitingQueue

logger = logging.getLogger(__name__)


class AllocationService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock
        self.waiting_queue = WaitingQueue(db, clock, placer=self.place)

    def allocate(self, requester_id: int, request: TokenRequest) -> AdmissionOutcome:
        """Admit a request to a slot, or queue it when nothing fits."""
        now = self.clock()
        candidate = Candidate(
            requester_id=requester_id,
            doctor_id=request.doctor_id,
            source=request.source,
            priority_score=priority.score(request.source),
            requested_at=now,
            earliest_time=request.earliest_time or now,
            preferred_slot_id=request.preferred_slot_id,
            reason=request.reason,
            notes=request.notes,
        )

        with doctor_section(self.db, request.doctor_id):
            placement = self.place(candidate)
            if placement is not None:
                return admitted_outcome(placement)

            entry = self.waiting_queue.enqueue(candidate)
            return AdmissionOutcome(
                outcome=AdmissionResult.QUEUED,
                waiting_entry_id=entry.id,
                queue_position=entry.queue_position,
                message=f"No slot available. Added to waiting queue at position {entry.queue_position}",
            )

    def place(self, candidate: Candidate) -> Optional[Placement]:
        """
        Try every admission path for ``candidate`` without queueing it.

        Caller must hold the doctor's section. Returns None when the request
        cannot be admitted anywhere right now.
        """
        preferred = None
        if candidate.preferred_slot_id is not None:
            preferred = self._get_slot(candidate.preferred_slot_id)
            if preferred.doctor_id != candidate.doctor_id:
                raise DoctorMismatch(
                    f"Slot {preferred.id} does not belong to doctor {candidate.doctor_id}"
                )

            if self._acceptable(preferred, candidate):
                if SlotLedger(preferred).has_capacity:
                    return self._admit(candidate, preferred)

                placement = self._displace_into(candidate, preferred)
                if placement is not None:
                    return placement

        slots = [
            slot for slot in self._bookable_slots(candidate.doctor_id)
            if self._acceptable(slot, candidate)
        ]

        for slot in slots:
            if SlotLedger(slot).has_capacity:
                return self._admit(candidate, slot)

        # Never succeeds on its own: a free later slot would already have been taken above
        for slot in slots:
            if preferred is not None and slot.id == preferred.id:
                continue
            placement = self._displace_into(candidate, slot)
            if placement is not None:
                return placement

        return None

    def admit_with_preemption(self, candidate: Candidate, slot: Slot) -> Optional[Placement]:
        """Admit into ``slot`` directly, displacing its lowest occupant if it is full."""
        if SlotLedger(slot).has_capacity:
            return self._admit(candidate, slot)
        return self._displace_into(candidate, slot)

    def get_token(self, token_id: int) -> Token:
        token = self.db.query(Token).filter(Token.id == token_id).first()
        if not token:
            raise TokenNotFound(f"Token {token_id} not found")
        return token

    def slot_availability(self, doctor_id: int, day: Optional[date] = None) -> SlotAvailability:
        """Read-only view of a doctor's bookable slots, optionally limited to one day."""
        query = self.db.query(Slot).filter(
            Slot.doctor_id == doctor_id,
            Slot.status.in_([SlotStatus.OPEN, SlotStatus.FULL]),
        )
        if day is not None:
            start = datetime.combine(day, datetime.min.time())
            query = query.filter(Slot.start_time >= start, Slot.start_time < start + timedelta(days=1))

        slots = query.order_by(Slot.start_time, Slot.id).all()
        return SlotAvailability(
            doctor_id=doctor_id,
            total_slots=len(slots),
            available_slots=sum(1 for s in slots if s.available_spots > 0),
            slots=[SlotResponse.model_validate(s) for s in slots],
        )

    # Internal helpers; all assume the doctor's section is held

    def _get_slot(self, slot_id: int) -> Slot:
        slot = self.db.query(Slot).filter(Slot.id == slot_id).first()
        if not slot:
            raise SlotNotFound(f"Slot {slot_id} not found")
        return slot

    def _bookable_slots(self, doctor_id: int) -> List[Slot]:
        return self.db.query(Slot).filter(
            Slot.doctor_id == doctor_id,
            Slot.status.in_([SlotStatus.OPEN, SlotStatus.FULL]),
        ).order_by(Slot.start_time, Slot.id).all()

    @staticmethod
    def _acceptable(slot: Slot, candidate: Candidate) -> bool:
        return slot.is_bookable and slot.start_time >= candidate.earliest_time

    def _next_free_slot_after(self, slot: Slot) -> Optional[Slot]:
        """First slot of the same doctor strictly after ``slot`` with free capacity."""
        later = False
        for other in self._bookable_slots(slot.doctor_id):
            if other.id == slot.id:
                later = True
                continue
            if later and SlotLedger(other).has_capacity:
                return other
        return None

    def _admit(self, candidate: Candidate, slot: Slot) -> Placement:
        token = self._new_token(candidate, slot)
        SlotLedger(slot).admit(token)
        self.db.flush()

        logger.info(
            f"Admitted token {token.token_number} (score {token.priority_score}) "
            f"to slot {slot.id}"
        )
        return Placement(token=token, slot=slot)

    def _displace_into(self, candidate: Candidate, slot: Slot) -> Optional[Placement]:
        """
        Make room in a full ``slot`` by moving its lowest occupant to a later slot.

        Only an occupant scoring strictly below the candidate may be moved, and
        only when a later slot of the same doctor has free capacity for it.
        Returns None without touching anything when either condition fails.
        """
        ledger = SlotLedger(slot)
        occupant = ledger.lowest_priority_occupant()
        if occupant is None or not priority.outranks(candidate.priority_score, occupant.priority_score):
            return None

        target = self._next_free_slot_after(slot)
        if target is None:
            return None

        if not ledger.release(occupant):
            raise IntegrityViolation(f"Token {occupant.token_number} vanished from slot {slot.id}")
        SlotLedger(target).admit(occupant)

        occupant.slot = target
        occupant.appointment_time = target.start_time
        occupant.is_reallocation = True
        if occupant.original_slot_id is None:
            occupant.original_slot_id = slot.id

        displacement = Displacement(
            token_id=occupant.id,
            token_number=occupant.token_number,
            from_slot_id=slot.id,
            to_slot_id=target.id,
        )
        logger.info(
            f"Displaced token {occupant.token_number} (score {occupant.priority_score}) "
            f"from slot {slot.id} to slot {target.id}"
        )

        placement = self._admit(candidate, slot)
        placement.displaced.append(displacement)
        return placement

    def _new_token(self, candidate: Candidate, slot: Slot) -> Token:
        relocated = (
            candidate.preferred_slot_id is not None
            and candidate.preferred_slot_id != slot.id
        )
        token = Token(
            token_number=generate_token_number(candidate.token_prefix),
            requester_id=candidate.requester_id,
            doctor_id=candidate.doctor_id,
            slot=slot,
            source=candidate.source,
            priority_score=candidate.priority_score,
            status=TokenStatus.ADMITTED,
            appointment_time=slot.start_time,
            earliest_time=candidate.earliest_time,
            reason=candidate.reason,
            notes=candidate.notes,
            is_reallocation=relocated,
            original_slot_id=candidate.preferred_slot_id if relocated else None,
            created_at=candidate.requested_at,
        )
        self.db.add(token)
        self.db.flush()
        return token


def generate_token_number(prefix: str = "TKN") -> str:
    """Human-displayable token number: prefix, UTC timestamp, random suffix."""
    stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S%f")
    return f"{prefix}-{stamp}-{secrets.token_hex(3).upper()}"


def admitted_outcome(placement: Placement) -> AdmissionOutcome:
    return AdmissionOutcome(
        outcome=AdmissionResult.ADMITTED,
        token=TokenResponse.model_validate(placement.token),
        slot_id=placement.slot.id,
        displaced=placement.displaced,
        message=(
            "Token allocated after reallocating a lower-priority token"
            if placement.displaced else "Token allocated successfully"
        ),
    )
