from .doctor import Doctor
from .slot import Slot, SlotStatus, slot_admissions
from .token import Token, TokenSource, TokenStatus
from .waiting import WaitingEntry, WaitingStatus
from .capacity_override import CapacityOverride

__all__ = [
    "Doctor",
    "Slot",
    "SlotStatus",
    "slot_admissions",
    "Token",
    "TokenSource",
    "TokenStatus",
    "WaitingEntry",
    "WaitingStatus",
    "CapacityOverride",
]
