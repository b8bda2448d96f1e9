"""
Cancellation and no-show recovery, plus the rest of the token lifecycle.

Releasing a token and promoting the waiting queue into the freed capacity
happen inside one doctor section and commit together, so a request arriving
concurrently can never claim the freed place ahead of a queued requester.
"""

from datetime import datetime
from typing import Callable, List, Optional
import logging

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    IntegrityViolation, InvalidStatusTransition, RequestNotCancellable, SlotNotFound
)
from ..core.locking import doctor_section
from ..models.slot import Slot, SlotStatus
from ..models.token import ACTIVE_STATUSES, Token, TokenStatus
from ..schemas.allocation import TokenResponse
from ..schemas.cancellation import (
    BulkCancellationOutcome, CancellationOutcome, CancellationPreview
)
from .allocation_service import AllocationService
from .slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

# Forward-only lifecycle
ALLOWED_TRANSITIONS = {
    TokenStatus.ADMITTED: {TokenStatus.CHECKED_IN, TokenStatus.CANCELLED, TokenStatus.NO_SHOW},
    TokenStatus.CHECKED_IN: {TokenStatus.COMPLETED, TokenStatus.CANCELLED},
}


def refund_percentage(hours_until_appointment: float) -> int:
    """Refund tier for a cancellation made this many hours before the appointment."""
    for min_hours, percent in sorted(settings.REFUND_TIERS, reverse=True):
        if hours_until_appointment >= min_hours:
            return percent
    return 0


def hours_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


class CancellationService:
    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock
        self.allocation = AllocationService(db, clock)

    def preview_cancellation(self, token_id: int) -> CancellationPreview:
        """Report whether a token could be cancelled now and what refund would apply."""
        token = self.allocation.get_token(token_id)
        hours = hours_between(token.appointment_time, self.clock())
        can_cancel = token.status in ACTIVE_STATUSES and hours > 0

        if not can_cancel:
            message = "Token cannot be cancelled"
        elif hours < 24:
            message = "Cancellation allowed but a late fee may apply"
        else:
            message = "Cancellation allowed without penalty"

        return CancellationPreview(
            token_id=token.id,
            can_cancel=can_cancel,
            hours_until_appointment=round(hours, 2),
            refund_percentage=refund_percentage(hours) if can_cancel else 0,
            message=message,
        )

    def cancel(self, token_id: int, reason: Optional[str] = None) -> CancellationOutcome:
        """Cancel an active token, free its place and promote the waiting queue."""
        doctor_id = self.allocation.get_token(token_id).doctor_id

        with doctor_section(self.db, doctor_id):
            token = self.allocation.get_token(token_id)
            now = self.clock()

            if token.status not in ACTIVE_STATUSES:
                raise RequestNotCancellable(
                    f"Token {token.token_number} is already {token.status.value}"
                )
            if now >= token.appointment_time:
                raise RequestNotCancellable(
                    f"Appointment for token {token.token_number} has already started"
                )

            hours = hours_between(token.appointment_time, now)
            token.status = TokenStatus.CANCELLED
            token.cancellation_reason = reason
            token.cancelled_at = now
            token.refund_percentage = refund_percentage(hours)

            promoted = self._release_and_promote(token)

            logger.info(
                f"Cancelled token {token.token_number} {hours:.1f}h before appointment, "
                f"refund {token.refund_percentage}%, promoted {len(promoted)}"
            )
            return CancellationOutcome(
                token=TokenResponse.model_validate(token),
                status=token.status,
                refund_percentage=token.refund_percentage,
                hours_until_appointment=round(hours, 2),
                promoted_token_ids=promoted,
                message="Token cancelled and slot reallocated",
            )

    def mark_no_show(self, token_id: int) -> CancellationOutcome:
        """Operator marks an admitted requester who never arrived."""
        doctor_id = self.allocation.get_token(token_id).doctor_id

        with doctor_section(self.db, doctor_id):
            token = self.allocation.get_token(token_id)
            self._check_transition(token, TokenStatus.NO_SHOW)

            token.status = TokenStatus.NO_SHOW
            promoted = self._release_and_promote(token)

            logger.info(f"Token {token.token_number} marked no-show, promoted {len(promoted)}")
            return CancellationOutcome(
                token=TokenResponse.model_validate(token),
                status=token.status,
                promoted_token_ids=promoted,
                message="Marked as no-show and slot reallocated",
            )

    def update_status(
        self, token_id: int, new_status: TokenStatus, reason: Optional[str] = None
    ) -> TokenResponse:
        """Move a token forward through its lifecycle."""
        if new_status == TokenStatus.CANCELLED:
            return self.cancel(token_id, reason).token
        if new_status == TokenStatus.NO_SHOW:
            return self.mark_no_show(token_id).token

        doctor_id = self.allocation.get_token(token_id).doctor_id
        with doctor_section(self.db, doctor_id):
            token = self.allocation.get_token(token_id)
            self._check_transition(token, new_status)

            old_status = token.status
            token.status = new_status
            if new_status == TokenStatus.CHECKED_IN:
                token.checked_in_at = self.clock()
            elif new_status == TokenStatus.COMPLETED:
                token.completed_at = self.clock()

            logger.info(
                f"Token {token.token_number} status updated from {old_status.value} to {new_status.value}"
            )
            return TokenResponse.model_validate(token)

    def bulk_cancel_slot(self, slot_id: int, reason: Optional[str] = None) -> BulkCancellationOutcome:
        """Cancel every active token of a slot and mark the slot cancelled."""
        slot = self.db.query(Slot).filter(Slot.id == slot_id).first()
        if not slot:
            raise SlotNotFound(f"Slot {slot_id} not found")
        doctor_id = slot.doctor_id

        with doctor_section(self.db, doctor_id):
            slot = self.db.query(Slot).filter(Slot.id == slot_id).first()
            ledger = SlotLedger(slot)
            now = self.clock()

            cancelled_ids: List[int] = []
            for token in list(slot.admitted_tokens):
                if not token.is_active:
                    continue
                token.status = TokenStatus.CANCELLED
                token.cancellation_reason = reason
                token.cancelled_at = now
                # Cancelled by the provider, so the requester is refunded in full
                token.refund_percentage = 100
                if not ledger.release(token):
                    raise IntegrityViolation(
                        f"Token {token.token_number} missing from slot {slot.id}"
                    )
                cancelled_ids.append(token.id)

            ledger.close(SlotStatus.CANCELLED)
            self.db.flush()

            logger.info(f"Slot {slot_id} cancelled, {len(cancelled_ids)} tokens cancelled")
            return BulkCancellationOutcome(
                slot_id=slot_id,
                cancelled_token_ids=cancelled_ids,
                cancelled_count=len(cancelled_ids),
                message=f"Slot cancelled. {len(cancelled_ids)} tokens cancelled",
            )

    def _check_transition(self, token: Token, new_status: TokenStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS.get(token.status, set()):
            raise InvalidStatusTransition(
                f"Cannot move token {token.token_number} from {token.status.value} to {new_status.value}"
            )

    def _release_and_promote(self, token: Token) -> List[int]:
        """Release ``token`` from its slot and admit waiting entries into the gap."""
        slot = token.slot
        if slot is None or not SlotLedger(slot).release(token):
            raise IntegrityViolation(
                f"Token {token.token_number} is not admitted to its slot {token.slot_id}"
            )
        self.db.flush()

        promoted = self.allocation.waiting_queue.promote_next(token.doctor_id)
        return [entry.allocated_token_id for entry in promoted]
