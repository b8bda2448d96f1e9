from sqlalchemy import Column, Integer, ForeignKey, DateTime, Table, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum

from ..core.database import Base

class SlotStatus(str, enum.Enum):
    OPEN = "open"
    FULL = "full"
    CLOSED = "closed"
    CANCELLED = "cancelled"

# Member set of a slot: one row per admitted token
slot_admissions = Table(
    "slot_admissions",
    Base.metadata,
    Column("slot_id", Integer, ForeignKey("slots.id"), primary_key=True),
    Column("token_id", Integer, ForeignKey("tokens.id"), primary_key=True),
)

class Slot(Base):
    __tablename__ = "slots"
    
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)
    
    # Time window
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    
    # Capacity bookkeeping, mutated only through SlotLedger
    max_capacity = Column(Integer, nullable=False, default=10)
    current_occupancy = Column(Integer, nullable=False, default=0)
    status = Column(SQLEnum(SlotStatus), nullable=False, default=SlotStatus.OPEN)
    
    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    # Relationships
    doctor = relationship("Doctor", back_populates="slots")
    admitted_tokens = relationship("Token", secondary=slot_admissions)
    
    @property
    def available_spots(self) -> int:
        return max(0, self.max_capacity - self.current_occupancy)
    
    @property
    def is_bookable(self) -> bool:
        return self.status in (SlotStatus.OPEN, SlotStatus.FULL)
    
    def __repr__(self):
        return (
            f"<Slot(id={self.id}, doctor_id={self.doctor_id}, start='{self.start_time}', "
            f"occupancy={self.current_occupancy}/{self.max_capacity})>"
        )
