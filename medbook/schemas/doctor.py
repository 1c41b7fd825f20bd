from pydantic import BaseModel, Field, field_validator
from typing import Dict, Optional

from ..models.doctor import WEEKDAYS

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"

class DaySchedule(BaseModel):
    start: str = Field(..., pattern=_HHMM)
    end: str = Field(..., pattern=_HHMM)
    is_available: bool = True

class ScheduleUpdate(BaseModel):
    availability: Optional[Dict[str, DaySchedule]] = None
    slot_duration: Optional[int] = Field(None, ge=5, le=240)
    max_patients_per_slot: Optional[int] = Field(None, ge=1)
    is_accepting_appointments: Optional[bool] = None

    @field_validator("availability")
    @classmethod
    def validate_days(cls, v):
        if v is None:
            return v
        unknown = set(v) - set(WEEKDAYS)
        if unknown:
            raise ValueError(f"Unknown weekdays: {sorted(unknown)}")
        for day, schedule in v.items():
            if schedule.start >= schedule.end:
                raise ValueError(f"{day}: start must be before end")
        return v

class DoctorResponse(BaseModel):
    id: int
    user_id: int
    specialization: str
    years_of_experience: int
    bio: Optional[str] = None
    consultation_fee: float
    video_consultation_fee: Optional[float] = None
    availability: Dict[str, DaySchedule]
    slot_duration: int
    max_patients_per_slot: int
    is_accepting_appointments: bool
    is_verified: bool
    rating_average: float
    rating_count: int

    model_config = {"from_attributes": True}

class DoctorVerify(BaseModel):
    is_verified: bool
