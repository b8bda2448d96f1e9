from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from datetime import datetime
import enum

from ..core.database import Base
from .token import TokenSource

class WaitingStatus(str, enum.Enum):
    WAITING = "waiting"
    PROMOTED = "promoted"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

class WaitingEntry(Base):
    __tablename__ = "waiting_entries"
    
    id = Column(Integer, primary_key=True, index=True)
    requester_id = Column(Integer, nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    
    # Stored preferences, replayed on promotion
    source = Column(SQLEnum(TokenSource), nullable=False)
    priority_score = Column(Integer, nullable=False)
    preferred_slot_id = Column(Integer, ForeignKey("slots.id"), nullable=True)
    earliest_time = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    
    # Dense 1-based rank among waiting entries of the same doctor
    queue_position = Column(Integer, nullable=False)
    status = Column(SQLEnum(WaitingStatus), nullable=False, default=WaitingStatus.WAITING, index=True)
    allocated_token_id = Column(Integer, ForeignKey("tokens.id"), nullable=True)
    withdrawal_reason = Column(String(255), nullable=True)
    
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    def __repr__(self):
        return (
            f"<WaitingEntry(id={self.id}, doctor_id={self.doctor_id}, "
            f"position={self.queue_position}, status='{self.status}')>"
        )
