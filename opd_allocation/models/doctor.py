from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ..core.database import Base

class Doctor(Base):
    __tablename__ = "doctors"
    
    id = Column(Integer, primary_key=True, index=True)
    
    # Professional information
    name = Column(String(200), nullable=False)
    specialization = Column(String(100), nullable=False, default="General")
    
    # Used for waiting time estimates, in minutes
    average_consultation_time = Column(Integer, nullable=False, default=15)
    
    # Availability
    is_available = Column(Boolean, default=True)
    
    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    
    # Relationships
    slots = relationship("Slot", back_populates="doctor", order_by="Slot.start_time")
    
    def __repr__(self):
        return f"<Doctor(id={self.id}, name='{self.name}', specialization='{self.specialization}')>"
