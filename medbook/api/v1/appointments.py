from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session
from typing import List, Optional

from ...core.database import get_db
from ...core.security import UserRole
from ...api.deps import (
    booking_rate_limit, get_actor, get_notifier, get_payment_gateway,
    get_video_client, require_role
)
from ...models.appointment import Appointment, AppointmentStatus
from ...models.user import User
from ...schemas.appointment import (
    AppointmentCancel, AppointmentCreate, AppointmentRate, AppointmentResponse,
    BookingResponse, PrescriptionCreate, PrescriptionResponse
)
from ...services.actors import Actor
from ...services.booking_service import BookingService
from ...services.lifecycle import AppointmentLifecycle
from ...services.notification_service import Notifier
from ...services.payment_gateway import PaymentGateway
from ...services.video_service import VideoClient

router = APIRouter(prefix="/appointments", tags=["Appointments"])

def get_lifecycle(
    db: Session = Depends(get_db),
    payments: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
    video: VideoClient = Depends(get_video_client)
) -> AppointmentLifecycle:
    return AppointmentLifecycle(db, payments, notifier=notifier, video=video)

def get_booking_service(
    db: Session = Depends(get_db),
    payments: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier)
) -> BookingService:
    return BookingService(db, payments, notifier=notifier)

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    booking: AppointmentCreate,
    service: BookingService = Depends(get_booking_service),
    current_user: User = Depends(require_role([UserRole.PATIENT])),
    _: None = Depends(booking_rate_limit)
):
    """
    Book a slot. The appointment starts pending with a payment hold; the
    returned client secret completes checkout on the client.
    """
    result = service.book(
        patient_id=current_user.id,
        doctor_id=booking.doctor_id,
        slot_id=booking.slot_id,
        appointment_date=booking.appointment_date,
        appointment_type=booking.type,
        reason=booking.reason,
        symptoms=booking.symptoms,
    )
    return BookingResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        client_secret=result.client_secret,
    )

@router.post("/{appointment_id}/confirm-payment", response_model=AppointmentResponse)
def confirm_payment(
    appointment_id: int,
    service: BookingService = Depends(get_booking_service),
    actor: Actor = Depends(get_actor)
):
    appointment = service.confirm_payment(appointment_id, actor)
    return AppointmentResponse.model_validate(appointment)

@router.get("/my", response_model=List[AppointmentResponse])
def list_my_appointments(
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor)
):
    """Appointments where the caller is the patient or, for doctors, the doctor."""
    if actor.doctor_id is not None:
        query = select(Appointment).where(Appointment.doctor_id == actor.doctor_id)
    else:
        query = select(Appointment).where(Appointment.patient_id == actor.user_id)
    if status_filter is not None:
        query = query.where(Appointment.status == status_filter)

    appointments = db.scalars(
        query.order_by(Appointment.date.desc(), Appointment.start_time.desc())
    )
    return [AppointmentResponse.model_validate(a) for a in appointments]

@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    return AppointmentResponse.model_validate(lifecycle.get_for(appointment_id, actor))

@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    cancel_data: Optional[AppointmentCancel] = None,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    """Cancel, release the slot and give back any payment hold."""
    reason = cancel_data.reason if cancel_data else None
    return AppointmentResponse.model_validate(lifecycle.cancel(appointment_id, actor, reason))

@router.post("/{appointment_id}/complete", response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    return AppointmentResponse.model_validate(lifecycle.complete(appointment_id, actor))

@router.post("/{appointment_id}/start", response_model=AppointmentResponse)
def start_appointment(
    appointment_id: int,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    return AppointmentResponse.model_validate(lifecycle.start(appointment_id, actor))

@router.post("/{appointment_id}/no-show", response_model=AppointmentResponse)
def mark_no_show(
    appointment_id: int,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    return AppointmentResponse.model_validate(lifecycle.mark_no_show(appointment_id, actor))

@router.post("/{appointment_id}/rate", response_model=AppointmentResponse)
def rate_appointment(
    appointment_id: int,
    rating: AppointmentRate,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    appointment = lifecycle.rate(appointment_id, actor, rating.score, rating.review)
    return AppointmentResponse.model_validate(appointment)

@router.post(
    "/{appointment_id}/prescription",
    response_model=PrescriptionResponse,
    status_code=status.HTTP_201_CREATED
)
def attach_prescription(
    appointment_id: int,
    prescription_data: PrescriptionCreate,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    actor: Actor = Depends(get_actor)
):
    prescription = lifecycle.attach_prescription(
        appointment_id, actor, prescription_data.document_url, prescription_data.diagnosis
    )
    return PrescriptionResponse.model_validate(prescription)
