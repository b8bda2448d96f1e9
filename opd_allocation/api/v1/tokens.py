from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import Optional
from datetime import date

from ...core.database import get_db
from ...core.security import Principal
from ...api.deps import get_current_principal, get_staff_user, ensure_owner_or_staff
from ...services.allocation_service import AllocationService
from ...services.cancellation_service import CancellationService
from ...services.waiting_queue import WaitingQueueService
from ...schemas.allocation import (
    AdmissionOutcome, QueuePosition, SlotAvailability,
    StatusUpdate, TokenRequest, TokenResponse
)

router = APIRouter(prefix="/tokens", tags=["Tokens"])

@router.post("", response_model=AdmissionOutcome, status_code=status.HTTP_201_CREATED)
def request_token(
    token_request: TokenRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Request a token; admitted to a slot or placed in the waiting queue."""
    service = AllocationService(db)
    return service.allocate(principal.requester_id, token_request)

@router.get("/availability", response_model=SlotAvailability)
def slot_availability(
    doctor_id: int,
    day: Optional[date] = None,
    db: Session = Depends(get_db)
):
    """Bookable slots for a doctor with remaining capacity."""
    return AllocationService(db).slot_availability(doctor_id, day)

@router.get("/waiting-status", response_model=QueuePosition)
def waiting_status(
    doctor_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Current queue position and estimated wait for the caller."""
    return WaitingQueueService(db).queue_position(principal.requester_id, doctor_id)

@router.get("/{token_id}", response_model=TokenResponse)
def get_token(
    token_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Get token details."""
    token = AllocationService(db).get_token(token_id)
    ensure_owner_or_staff(principal, token.requester_id)
    return TokenResponse.model_validate(token)

@router.patch("/{token_id}/status", response_model=TokenResponse)
def update_token_status(
    token_id: int,
    status_update: StatusUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Move a token forward through its lifecycle (doctor/admin)."""
    service = CancellationService(db)
    return service.update_status(token_id, status_update.status, status_update.reason)
