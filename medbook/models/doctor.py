from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean, Float, Numeric, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ..core.database import Base

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

def default_availability() -> dict:
    """Weekly template: weekdays 09:00-17:00, weekends off."""
    return {
        day: {"start": "09:00", "end": "17:00", "is_available": day not in ("saturday", "sunday")}
        for day in WEEKDAYS
    }

class Doctor(Base):
    __tablename__ = "doctors"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)

    # Professional information
    specialization = Column(String(100), nullable=False)
    years_of_experience = Column(Integer, default=0)
    bio = Column(String(1000), nullable=True)

    # Fees
    consultation_fee = Column(Numeric(10, 2), nullable=False)
    video_consultation_fee = Column(Numeric(10, 2), nullable=True)

    # Availability
    availability = Column(JSON, nullable=False, default=default_availability)
    slot_duration = Column(Integer, nullable=False, default=30)
    max_patients_per_slot = Column(Integer, nullable=False, default=1)
    is_accepting_appointments = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)

    # Rating aggregate, written only by the rating service
    rating_average = Column(Float, nullable=False, default=0.0)
    rating_count = Column(Integer, nullable=False, default=0)
    rating_sum = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="doctor")
    slots = relationship("Slot", back_populates="doctor")
    appointments = relationship("Appointment", back_populates="doctor")

    def fee_for(self, appointment_type) -> float:
        """Video fee when one is configured for video visits, else the standard fee."""
        if appointment_type == "video" and self.video_consultation_fee is not None:
            return float(self.video_consultation_fee)
        return float(self.consultation_fee)

    def __repr__(self):
        return f"<Doctor(id={self.id}, user_id={self.user_id}, specialization='{self.specialization}')>"
