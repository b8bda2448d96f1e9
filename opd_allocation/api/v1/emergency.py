from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.security import Principal
from ...api.deps import get_current_principal, get_staff_user
from ...services.emergency_service import EmergencyService
from ...schemas.allocation import AdmissionOutcome
from ...schemas.emergency import (
    CapacityOverrideRequest, CapacityOverrideResponse, EmergencyRequest
)

router = APIRouter(prefix="/emergency", tags=["Emergency"])

@router.post("/fast-track", response_model=AdmissionOutcome, status_code=status.HTTP_201_CREATED)
def fast_track_emergency(
    emergency: EmergencyRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal)
):
    """Admit an emergency patient into the doctor's running slot."""
    return EmergencyService(db).fast_track_emergency(principal.requester_id, emergency)

@router.patch("/override/{slot_id}", response_model=CapacityOverrideResponse)
def override_slot_capacity(
    slot_id: int,
    override: CapacityOverrideRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Raise a slot's capacity for an emergency tier (doctor/admin)."""
    service = EmergencyService(db)
    return service.override_capacity(slot_id, override.tier, principal.requester_id, override.reason)

@router.post("/override/{override_id}/revert", response_model=CapacityOverrideResponse)
def revert_slot_capacity(
    override_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_staff_user)
):
    """Undo a capacity override (doctor/admin)."""
    return EmergencyService(db).revert_capacity_override(override_id, principal.requester_id)
