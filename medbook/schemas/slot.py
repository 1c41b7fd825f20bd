from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime

_HHMM = r"^([01]\d|2[0-3]):[0-5]\d$"

class SlotTime(BaseModel):
    start_time: str = Field(..., pattern=_HHMM)
    end_time: str = Field(..., pattern=_HHMM)
    max_capacity: Optional[int] = Field(None, ge=1)

class SlotCreate(SlotTime):
    date: date
    max_capacity: int = Field(1, ge=1)

class SlotBulkCreate(BaseModel):
    start_date: date
    end_date: date
    slot_times: Optional[List[SlotTime]] = None

class SlotBlock(BaseModel):
    is_blocked: bool
    reason: Optional[str] = Field(None, max_length=255)

class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    date: date
    start_time: str
    end_time: str
    max_capacity: int
    booked_count: int
    is_available: bool
    is_blocked: bool
    blocked_reason: Optional[str] = None
    lock_expires_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
