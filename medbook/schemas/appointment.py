from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime

from ..models.appointment import AppointmentStatus, AppointmentType, CancelledBy, PaymentStatus

class AppointmentCreate(BaseModel):
    doctor_id: int
    slot_id: int
    appointment_date: Optional[date] = None
    type: AppointmentType = AppointmentType.IN_PERSON
    reason: Optional[str] = Field(None, max_length=500)
    symptoms: Optional[List[str]] = None

class AppointmentCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)

class AppointmentRate(BaseModel):
    score: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)

class PrescriptionCreate(BaseModel):
    document_url: str = Field(..., min_length=1, max_length=500)
    diagnosis: Optional[str] = None

class PrescriptionResponse(BaseModel):
    id: int
    appointment_id: int
    doctor_id: int
    patient_id: int
    diagnosis: Optional[str] = None
    document_url: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    slot_id: Optional[int] = None
    date: date
    start_time: str
    end_time: str
    type: AppointmentType
    status: AppointmentStatus
    reason: Optional[str] = None
    symptoms: Optional[List[str]] = None

    payment_status: PaymentStatus
    payment_amount: float
    payment_currency: str
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    video_room_url: Optional[str] = None
    video_started_at: Optional[datetime] = None
    video_ended_at: Optional[datetime] = None
    video_duration: Optional[int] = None

    rating_score: Optional[int] = None
    rating_review: Optional[str] = None

    cancelled_by: Optional[CancelledBy] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    prescription_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

class BookingResponse(BaseModel):
    appointment: AppointmentResponse
    client_secret: Optional[str] = None

class VideoJoinResponse(BaseModel):
    room_name: str
    room_url: str
    token: str
