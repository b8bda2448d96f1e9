from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from ...core.database import get_db
from ...core.security import Principal
from ...api.deps import get_current_principal, get_staff_user, ensure_owner_or_staff
from ...services.cancellation_service import CancellationService
from ...schemas.cancellation import (
    BulkCancellationOutcome, CancellationOutcome, CancellationPreview, CancellationRequest
)

router = APIRouter(prefix="/cancellations", tags=["Cancellations"])

@router.get("/check/{token_id}", response_model=CancellationPreview)
def check_cancellation(
    token_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Check whether a token can be cancelled and the refund that applies."""
    service = CancellationService(db)
    ensure_owner_or_staff(principal, service.allocation.get_token(token_id).requester_id)
    return service.preview_cancellation(token_id)

@router.delete("/{token_id}", response_model=CancellationOutcome)
def cancel_token(
    token_id: int,
    reason: Optional[str] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Cancel a token and hand its place to the waiting queue."""
    service = CancellationService(db)
    ensure_owner_or_staff(principal, service.allocation.get_token(token_id).requester_id)
    return service.cancel(token_id, reason)

@router.post("/no-show/{token_id}", response_model=CancellationOutcome)
def mark_no_show(
    token_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Mark a token as no-show (doctor/admin)."""
    return CancellationService(db).mark_no_show(token_id)

@router.post("/bulk/{slot_id}", response_model=BulkCancellationOutcome)
def bulk_cancel_slot(
    slot_id: int,
    cancellation: CancellationRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Cancel a whole slot, e.g. when the doctor is unavailable (doctor/admin)."""
    return CancellationService(db).bulk_cancel_slot(slot_id, cancellation.reason)
