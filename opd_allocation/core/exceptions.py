"""
Typed outcomes for the allocation core.

Every class here is an expected business condition except
IntegrityViolation, which signals a bug detected inside a doctor's
critical section. Services raise them; the critical section rolls the
session back, and the API layer maps ``status_code`` onto the response.
"""


class AllocationError(Exception):
    """Base class for recoverable allocation outcomes."""

    code = "allocation_error"
    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)


class SlotNotFound(AllocationError):
    """Slot does not exist."""

    code = "slot_not_found"
    status_code = 404


class DoctorNotFound(AllocationError):
    """Doctor does not exist."""

    code = "doctor_not_found"
    status_code = 404


class TokenNotFound(AllocationError):
    """Token does not exist."""

    code = "token_not_found"
    status_code = 404


class DoctorMismatch(AllocationError):
    """Slot does not belong to the selected doctor."""

    code = "doctor_mismatch"
    status_code = 400


class CapacityFull(AllocationError):
    """Slot has no free capacity."""

    code = "capacity_full"
    status_code = 409


class ReallocationImpossible(AllocationError):
    """No lower-priority occupant could be moved to a later slot."""

    code = "reallocation_impossible"
    status_code = 409


class RequestNotCancellable(AllocationError):
    """Token cannot be cancelled in its current state."""

    code = "request_not_cancellable"
    status_code = 409


class InvalidStatusTransition(AllocationError):
    """Token status can only move forward."""

    code = "invalid_status_transition"
    status_code = 409


class InvalidSeverity(AllocationError):
    """Severity tier is not recognised."""

    code = "invalid_severity"
    status_code = 400


class NoActiveSlotForDoctor(AllocationError):
    """Doctor has no slot running right now."""

    code = "no_active_slot"
    status_code = 409


class QueueEntryNotFound(AllocationError):
    """Requester is not waiting in this queue."""

    code = "queue_entry_not_found"
    status_code = 404


class CapacityOverrideConflict(AllocationError):
    """Slot already carries an active capacity override, or it was already reverted."""

    code = "capacity_override_conflict"
    status_code = 409


class CapacityOverrideNotFound(AllocationError):
    """No capacity override with this id."""

    code = "capacity_override_not_found"
    status_code = 404


class IntegrityViolation(AllocationError):
    """Slot bookkeeping is inconsistent."""

    code = "integrity_violation"
    status_code = 500


__all__ = [
    "AllocationError",
    "SlotNotFound",
    "DoctorNotFound",
    "TokenNotFound",
    "DoctorMismatch",
    "CapacityFull",
    "ReallocationImpossible",
    "RequestNotCancellable",
    "InvalidStatusTransition",
    "InvalidSeverity",
    "NoActiveSlotForDoctor",
    "QueueEntryNotFound",
    "CapacityOverrideConflict",
    "CapacityOverrideNotFound",
    "IntegrityViolation",
]
