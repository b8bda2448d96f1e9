from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from ...core.database import get_db
from ...core.security import Principal
from ...api.deps import get_current_principal, get_staff_user, get_admin_user, ensure_owner_or_staff
from ...services.waiting_queue import WaitingQueueService
from ...schemas.allocation import WaitingEntryResponse
from ...schemas.waiting import ExpirySweepResult, WaitingList

router = APIRouter(prefix="/waiting", tags=["Waiting Queue"])

@router.get("", response_model=WaitingList)
def get_waiting_list(
    doctor_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Waiting entries for a doctor in queue order (doctor/admin)."""
    return WaitingQueueService(db).waiting_list(doctor_id)

@router.delete("/{entry_id}", response_model=WaitingEntryResponse)
def withdraw_from_queue(
    entry_id: int,
    reason: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Leave the waiting queue."""
    service = WaitingQueueService(db)
    ensure_owner_or_staff(principal, service.get_entry(entry_id).requester_id)
    return service.withdraw(entry_id, reason)

@router.post("/expire", response_model=ExpirySweepResult)
def expire_stale_entries(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_admin_user)
):
    """Run the expiry sweep over all waiting queues (admin)."""
    return WaitingQueueService(db).expire_stale()
