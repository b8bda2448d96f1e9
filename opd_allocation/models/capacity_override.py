from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from datetime import datetime

from ..core.database import Base

class CapacityOverride(Base):
    """Audit record of an emergency capacity change on one slot."""
    __tablename__ = "capacity_overrides"
    
    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=False, index=True)
    
    tier = Column(String(20), nullable=False)
    previous_capacity = Column(Integer, nullable=False)
    new_capacity = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    
    # Revert details; an override is active while reverted_at is null
    reverted_at = Column(DateTime, nullable=True)
    reverted_by = Column(Integer, nullable=True)
    restored_capacity = Column(Integer, nullable=True)
    
    @property
    def is_active(self) -> bool:
        return self.reverted_at is None
    
    def __repr__(self):
        return (
            f"<CapacityOverride(id={self.id}, slot_id={self.slot_id}, tier='{self.tier}', "
            f"{self.previous_capacity}->{self.new_capacity})>"
        )
