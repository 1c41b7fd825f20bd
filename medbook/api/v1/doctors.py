from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import logging

from ...core.database import get_db
from ...core.exceptions import NotFound
from ...api.deps import get_current_user, get_doctor_actor, require_role
from ...models.doctor import Doctor
from ...models.user import User
from ...core.security import UserRole
from ...schemas.doctor import DoctorResponse, DoctorVerify, ScheduleUpdate
from ...services.actors import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/doctors", tags=["Doctors"])

@router.get("/{doctor_id}", response_model=DoctorResponse)
def get_doctor(
    doctor_id: int,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user)
):
    doctor = db.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")
    return DoctorResponse.model_validate(doctor)

@router.put("/me/schedule", response_model=DoctorResponse)
def update_schedule(
    schedule: ScheduleUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    """Update the weekly template used for bulk slot generation."""
    doctor = db.get(Doctor, actor.doctor_id)

    if schedule.availability is not None:
        availability = dict(doctor.availability or {})
        for day, day_schedule in schedule.availability.items():
            availability[day] = day_schedule.model_dump()
        doctor.availability = availability
    if schedule.slot_duration is not None:
        doctor.slot_duration = schedule.slot_duration
    if schedule.max_patients_per_slot is not None:
        doctor.max_patients_per_slot = schedule.max_patients_per_slot
    if schedule.is_accepting_appointments is not None:
        doctor.is_accepting_appointments = schedule.is_accepting_appointments

    db.commit()
    db.refresh(doctor)

    logger.info(f"Doctor {doctor.id} updated schedule")
    return DoctorResponse.model_validate(doctor)

@router.patch("/{doctor_id}/verify", response_model=DoctorResponse)
def verify_doctor(
    doctor_id: int,
    payload: DoctorVerify,
    db: Session = Depends(get_db),
    admin: User = Depends(require_role([UserRole.ADMIN]))
):
    doctor = db.get(Doctor, doctor_id)
    if doctor is None:
        raise NotFound("Doctor not found")

    doctor.is_verified = payload.is_verified
    db.commit()
    db.refresh(doctor)

    logger.info(f"Admin {admin.email} set doctor {doctor.id} verified={doctor.is_verified}")
    return DoctorResponse.model_validate(doctor)
