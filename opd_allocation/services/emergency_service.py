"""
Emergency handling.

Two separate mechanisms:

* fast-track admission puts an emergency-scored request into the doctor's
  running slot, displacing the lowest occupant to a later slot when full;
* capacity override is an explicit operator action that raises one slot's
  capacity by a tier multiplier. It is recorded, logged, and only undone by
  an explicit revert. Request scoring never triggers it.
"""

from datetime import datetime
from typing import Callable, Optional
import logging
import math

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    CapacityOverrideConflict, CapacityOverrideNotFound, InvalidSeverity, NoActiveSlotForDoctor,
    ReallocationImpossible, SlotNotFound
)
from ..core.locking import doctor_section
from ..models.capacity_override import CapacityOverride
from ..models.slot import Slot, SlotStatus
from ..models.token import TokenSource
from ..schemas.allocation import AdmissionOutcome
from ..schemas.emergency import CapacityOverrideResponse, EmergencyRequest
from . import priority
from .allocation_service import AllocationService, admitted_outcome
from .placement import Candidate
from .slot_ledger import SlotLedger

logger = logging.getLogger(__name__)


def validate_severity(severity: str) -> str:
    if severity not in settings.EMERGENCY_SEVERITIES:
        raise InvalidSeverity(
            f"Invalid severity '{severity}'. Must be one of: {', '.join(settings.EMERGENCY_SEVERITIES)}"
        )
    return severity


def override_multiplier(tier: str) -> float:
    validate_severity(tier)
    multiplier = settings.CAPACITY_OVERRIDE_MULTIPLIERS.get(tier)
    if multiplier is None:
        raise InvalidSeverity(f"Severity '{tier}' does not allow a capacity override")
    return multiplier


class EmergencyService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock
        self.allocation = AllocationService(db, clock)

    def current_slot(self, doctor_id: int) -> Optional[Slot]:
        """The doctor's bookable slot whose window contains now."""
        now = self.clock()
        return self.db.query(Slot).filter(
            Slot.doctor_id == doctor_id,
            Slot.start_time <= now,
            Slot.end_time > now,
            Slot.status.in_([SlotStatus.OPEN, SlotStatus.FULL]),
        ).order_by(Slot.start_time, Slot.id).first()

    def fast_track_emergency(self, requester_id: int, request: EmergencyRequest) -> AdmissionOutcome:
        """Admit an emergency into the running slot, preempting if it is full."""
        validate_severity(request.severity)

        with doctor_section(self.db, request.doctor_id):
            slot = self.current_slot(request.doctor_id)
            if slot is None:
                raise NoActiveSlotForDoctor(f"No active slot for doctor {request.doctor_id}")

            candidate = Candidate(
                requester_id=requester_id,
                doctor_id=request.doctor_id,
                source=TokenSource.EMERGENCY,
                priority_score=priority.EMERGENCY_SCORE,
                requested_at=self.clock(),
                earliest_time=slot.start_time,
                preferred_slot_id=slot.id,
                reason=request.reason,
                notes=request.notes,
                token_prefix="EMG",
            )

            placement = self.allocation.admit_with_preemption(candidate, slot)
            if placement is None:
                logger.warning(
                    f"Cannot accommodate emergency for doctor {request.doctor_id} "
                    f"in slot {slot.id}: no later slot can take a displaced token"
                )
                raise ReallocationImpossible(
                    "Cannot accommodate emergency - unable to reallocate"
                )

            logger.info(
                f"Emergency ({request.severity}) token {placement.token.token_number} "
                f"fast-tracked into slot {slot.id}"
            )
            outcome = admitted_outcome(placement)
            outcome.message = "Emergency token allocated and fast-tracked"
            return outcome

    def override_capacity(
        self, slot_id: int, tier: str, actor_id: int, reason: Optional[str] = None
    ) -> CapacityOverrideResponse:
        """Raise one slot's capacity by the multiplier of ``tier``."""
        multiplier = override_multiplier(tier)
        doctor_id = self._get_slot(slot_id).doctor_id

        with doctor_section(self.db, doctor_id):
            slot = self._get_slot(slot_id)
            if not slot.is_bookable:
                raise CapacityOverrideConflict(f"Slot {slot_id} is {slot.status.value}")
            if self._active_override(slot_id) is not None:
                raise CapacityOverrideConflict(
                    f"Slot {slot_id} already has an active capacity override"
                )

            previous = slot.max_capacity
            new_capacity = math.ceil(previous * multiplier)
            SlotLedger(slot).set_capacity(new_capacity)

            record = CapacityOverride(
                slot_id=slot_id,
                tier=tier,
                previous_capacity=previous,
                new_capacity=new_capacity,
                reason=reason,
                created_by=actor_id,
                created_at=self.clock(),
            )
            self.db.add(record)
            self.db.flush()

            logger.warning(
                f"Capacity override on slot {slot_id} ({tier}) by {actor_id}: "
                f"{previous} -> {new_capacity}"
            )

            # The new places go to the waiting queue before any newcomer
            promoted = self.allocation.waiting_queue.promote_next(doctor_id)

            response = CapacityOverrideResponse.model_validate(record)
            response.promoted_token_ids = [entry.allocated_token_id for entry in promoted]
            return response

    def revert_capacity_override(self, override_id: int, actor_id: int) -> CapacityOverrideResponse:
        """Undo an override, never dropping capacity below current occupancy."""
        record = self.db.query(CapacityOverride).filter(
            CapacityOverride.id == override_id
        ).first()
        if not record:
            raise CapacityOverrideNotFound(f"Capacity override {override_id} not found")
        doctor_id = self._get_slot(record.slot_id).doctor_id

        with doctor_section(self.db, doctor_id):
            record = self.db.query(CapacityOverride).filter(
                CapacityOverride.id == override_id
            ).first()
            if not record.is_active:
                raise CapacityOverrideConflict(
                    f"Capacity override {override_id} was already reverted"
                )

            slot = self._get_slot(record.slot_id)
            restored = max(record.previous_capacity, slot.current_occupancy)
            SlotLedger(slot).set_capacity(restored)

            record.reverted_at = self.clock()
            record.reverted_by = actor_id
            record.restored_capacity = restored
            self.db.flush()

            logger.warning(
                f"Capacity override {override_id} on slot {slot.id} reverted by {actor_id}: "
                f"{record.new_capacity} -> {restored}"
            )
            return CapacityOverrideResponse.model_validate(record)

    def _get_slot(self, slot_id: int) -> Slot:
        slot = self.db.query(Slot).filter(Slot.id == slot_id).first()
        if not slot:
            raise SlotNotFound(f"Slot {slot_id} not found")
        return slot

    def _active_override(self, slot_id: int) -> Optional[CapacityOverride]:
        return self.db.query(CapacityOverride).filter(
            CapacityOverride.slot_id == slot_id,
            CapacityOverride.reverted_at.is_(None),
        ).first()
