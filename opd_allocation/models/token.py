from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from ..core.database import Base

class TokenSource(str, enum.Enum):
    EMERGENCY = "emergency"
    PAID_PRIORITY = "paid_priority"
    FOLLOW_UP = "follow_up"
    ONLINE = "online"
    WALK_IN = "walk_in"

class TokenStatus(str, enum.Enum):
    ADMITTED = "admitted"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

# Statuses that still hold a claim on the slot and may be displaced
ACTIVE_STATUSES = (TokenStatus.ADMITTED, TokenStatus.CHECKED_IN)

class Token(Base):
    __tablename__ = "tokens"
    
    id = Column(Integer, primary_key=True, index=True)
    token_number = Column(String(50), unique=True, nullable=False, index=True)
    
    # Relationships
    requester_id = Column(Integer, nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=True, index=True)
    
    # Priority
    source = Column(SQLEnum(TokenSource), nullable=False)
    priority_score = Column(Integer, nullable=False)
    
    # Lifecycle
    status = Column(SQLEnum(TokenStatus), nullable=False, default=TokenStatus.ADMITTED)
    appointment_time = Column(DateTime, nullable=True)
    earliest_time = Column(DateTime, nullable=False)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    
    # Displacement tracking
    is_reallocation = Column(Boolean, default=False, nullable=False)
    original_slot_id = Column(Integer, ForeignKey("slots.id"), nullable=True)
    
    # Terminal details
    cancellation_reason = Column(String(255), nullable=True)
    refund_percentage = Column(Integer, nullable=True)
    checked_in_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    
    # Request creation time, set by the allocation clock; drives FIFO tie-breaks
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    slot = relationship("Slot", foreign_keys=[slot_id])
    
    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES
    
    def __repr__(self):
        return (
            f"<Token(id={self.id}, number='{self.token_number}', slot_id={self.slot_id}, "
            f"score={self.priority_score}, status='{self.status}')>"
        )
