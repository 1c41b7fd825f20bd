from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from datetime import date
from typing import List, Optional

from ...core.database import get_db
from ...core.security import UserRole
from ...core.exceptions import NotFound
from ...api.deps import get_current_user, get_doctor_actor, require_role
from ...models.doctor import Doctor
from ...models.user import User
from ...schemas.slot import SlotBlock, SlotBulkCreate, SlotCreate, SlotResponse
from ...services.actors import Actor
from ...services.slot_ledger import SlotLedger

router = APIRouter(prefix="/slots", tags=["Slots"])

@router.get("/doctor/{doctor_id}", response_model=List[SlotResponse])
def list_available_slots(
    doctor_id: int,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Bookable slots for a doctor, next 7 days by default."""
    if db.get(Doctor, doctor_id) is None:
        raise NotFound("Doctor not found")
    slots = SlotLedger(db).list_available(
        doctor_id, start_date, end_date, requester_id=current_user.id
    )
    return [SlotResponse.model_validate(slot) for slot in slots]

@router.get("/my", response_model=List[SlotResponse])
def list_my_slots(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    show_all: bool = Query(False),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    """The calling doctor's own slots; blocked slots only with show_all."""
    slots = SlotLedger(db).list_for_doctor(actor.doctor_id, start_date, end_date, show_all)
    return [SlotResponse.model_validate(slot) for slot in slots]

@router.post("", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
def create_slot(
    slot_data: SlotCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    slot = SlotLedger(db).create_slot(
        actor.doctor_id,
        slot_data.date,
        slot_data.start_time,
        slot_data.end_time,
        slot_data.max_capacity,
    )
    return SlotResponse.model_validate(slot)

@router.post("/bulk", response_model=List[SlotResponse], status_code=status.HTTP_201_CREATED)
def bulk_create_slots(
    bulk_data: SlotBulkCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    """Generate slots from the weekly schedule; existing slots are left as they are."""
    doctor = db.get(Doctor, actor.doctor_id)
    slot_times = [item.model_dump() for item in bulk_data.slot_times] if bulk_data.slot_times else None
    slots = SlotLedger(db).bulk_create(doctor, bulk_data.start_date, bulk_data.end_date, slot_times)
    return [SlotResponse.model_validate(slot) for slot in slots]

@router.patch("/{slot_id}/block", response_model=SlotResponse)
def block_slot(
    slot_id: int,
    block_data: SlotBlock,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    slot = SlotLedger(db).set_blocked(slot_id, actor.doctor_id, block_data.is_blocked, block_data.reason)
    return SlotResponse.model_validate(slot)

@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    slot_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_doctor_actor)
):
    SlotLedger(db).delete_slot(slot_id, actor.doctor_id)

@router.post("/maintenance/expire-locks")
def expire_locks(
    db: Session = Depends(get_db),
    _: User = Depends(require_role([UserRole.ADMIN]))
):
    """Clear lapsed booking leases."""
    cleared = SlotLedger(db).expire_stale_locks()
    db.commit()
    return {"cleared": cleared}
