"""
Per-doctor critical section.

All mutations of one doctor's slots and waiting queue run inside
``doctor_section``: a process-local lock keyed by doctor id, plus a
``SELECT ... FOR UPDATE`` on the doctor row so that several worker
processes sharing one PostgreSQL database serialize the same way.
SQLite ignores the row lock; the process lock still applies.

The section owns the transaction: it commits when the body returns and
rolls back when it raises, so a release and the promotion it triggers
become visible together or not at all.
"""

from contextlib import contextmanager
from typing import Dict, Iterator
import logging
import threading

from sqlalchemy.orm import Session

from .exceptions import DoctorNotFound, IntegrityViolation

logger = logging.getLogger(__name__)


class DoctorLockRegistry:
    """Hands out one lock per doctor id."""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, doctor_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(doctor_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[doctor_id] = lock
            return lock


doctor_locks = DoctorLockRegistry()


@contextmanager
def doctor_section(
    db: Session,
    doctor_id: int,
    registry: DoctorLockRegistry = doctor_locks,
) -> Iterator["Doctor"]:
    """Serialize every mutation touching ``doctor_id`` and commit them as one unit."""
    from ..models.doctor import Doctor

    lock = registry.lock_for(doctor_id)
    with lock:
        # Start from a clean transaction so earlier reads can't leak stale state in
        db.rollback()
        try:
            doctor = (
                db.query(Doctor)
                .filter(Doctor.id == doctor_id)
                .with_for_update()
                .first()
            )
            if doctor is None:
                raise DoctorNotFound(f"Doctor {doctor_id} not found")

            yield doctor

            db.commit()
        except IntegrityViolation as exc:
            logger.error(f"Integrity violation for doctor {doctor_id}: {exc}")
            db.rollback()
            raise
        except Exception:
            db.rollback()
            raise
