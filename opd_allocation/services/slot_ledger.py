"""
Capacity bookkeeping for a single slot.

The ledger is the only code that touches ``current_occupancy``,
``admitted_tokens`` and the derived ``status`` of a slot. It must be used
inside the owning doctor's critical section; it does not lock on its own.
"""

from typing import Optional
import logging

from ..core.exceptions import CapacityFull, IntegrityViolation
from ..models.slot import Slot, SlotStatus
from ..models.token import Token
from . import priority

logger = logging.getLogger(__name__)


class SlotLedger:
    def __init__(self, slot: Slot):
        self.slot = slot

    @property
    def has_capacity(self) -> bool:
        return self.slot.is_bookable and self.slot.current_occupancy < self.slot.max_capacity

    def contains(self, token: Token) -> bool:
        return any(member.id == token.id for member in self.slot.admitted_tokens)

    def try_admit(self, token: Token) -> bool:
        """Add ``token`` to the slot if it has free capacity."""
        self.verify()
        if not self.has_capacity:
            return False
        if self.contains(token):
            raise IntegrityViolation(
                f"Token {token.token_number} is already admitted to slot {self.slot.id}"
            )

        self.slot.admitted_tokens.append(token)
        self.slot.current_occupancy += 1
        self._recompute_status()
        self.verify()
        return True

    def admit(self, token: Token) -> None:
        """Like ``try_admit`` but raises ``CapacityFull`` instead of returning False."""
        if not self.try_admit(token):
            raise CapacityFull(f"Slot {self.slot.id} has no free capacity")

    def release(self, token: Token) -> bool:
        """Remove ``token`` from the slot. Returns False when it was not a member."""
        self.verify()
        member = next(
            (m for m in self.slot.admitted_tokens if m.id == token.id), None
        )
        if member is None:
            return False

        self.slot.admitted_tokens.remove(member)
        self.slot.current_occupancy -= 1
        self._recompute_status()
        self.verify()
        return True

    def lowest_priority_occupant(self) -> Optional[Token]:
        """
        Occupant that would be displaced first.

        Lowest score wins; among equal scores the most recent arrival goes,
        so earlier arrivals keep their claim. Only tokens still holding an
        active claim are candidates.
        """
        candidates = [t for t in self.slot.admitted_tokens if t.is_active]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda t: priority.displacement_key(t.priority_score, t.created_at, t.id),
        )

    def set_capacity(self, new_capacity: int) -> None:
        """Operator-only capacity change; never below current occupancy."""
        if new_capacity < self.slot.current_occupancy:
            raise ValueError(
                f"Capacity {new_capacity} is below occupancy {self.slot.current_occupancy} "
                f"for slot {self.slot.id}"
            )
        self.slot.max_capacity = new_capacity
        self._recompute_status()
        self.verify()

    def close(self, status: SlotStatus = SlotStatus.CANCELLED) -> None:
        self.slot.status = status

    def verify(self) -> None:
        """Raise ``IntegrityViolation`` if counter, member set and capacity disagree."""
        members = len(self.slot.admitted_tokens)
        if self.slot.current_occupancy != members:
            raise IntegrityViolation(
                f"Slot {self.slot.id} occupancy {self.slot.current_occupancy} "
                f"does not match {members} admitted tokens"
            )
        if self.slot.current_occupancy > self.slot.max_capacity:
            raise IntegrityViolation(
                f"Slot {self.slot.id} occupancy {self.slot.current_occupancy} "
                f"exceeds capacity {self.slot.max_capacity}"
            )

    def _recompute_status(self) -> None:
        # Operator states are sticky
        if self.slot.status in (SlotStatus.CLOSED, SlotStatus.CANCELLED):
            return
        if self.slot.current_occupancy < self.slot.max_capacity:
            self.slot.status = SlotStatus.OPEN
        else:
            self.slot.status = SlotStatus.FULL
