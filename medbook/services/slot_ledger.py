"""
Slot ledger.

Authoritative record of bookable capacity per doctor per day. Every mutation
of the shared slot row is a single conditional UPDATE/DELETE so concurrent
requests, in any process, are arbitrated by the database rather than by
reading a row and writing it back.

Each patient's hold during the booking handshake is its own row in
slot_leases with its own expiry, so one lapsed or abandoned hold can never be
kept alive by other patients leasing the same slot.

Callers own the transaction: ledger methods never commit, except the slot
management helpers used directly by the slot routes.
"""
import logging
import re
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sqlalchemy import case, delete, insert, null, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import clinic_now, utcnow
from ..core.config import settings
from ..core.exceptions import (
    DuplicateSlot, InvalidRequest, NotFound, SlotHasBookings, SlotUnavailable,
)
from ..models.doctor import Doctor, WEEKDAYS
from ..models.slot import Slot, SlotLease

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def to_minutes(value: str) -> int:
    match = _HHMM.match(value or "")
    if not match:
        raise InvalidRequest(f"Invalid time '{value}', expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def template_times(template: dict, duration: int) -> List[dict]:
    """Consecutive slots of ``duration`` minutes inside a weekday template."""
    if duration <= 0:
        raise InvalidRequest("Slot duration must be positive")
    start = to_minutes(template.get("start"))
    end = to_minutes(template.get("end"))
    times = []
    current = start
    while current + duration <= end:
        times.append({
            "start_time": format_minutes(current),
            "end_time": format_minutes(current + duration),
        })
        current += duration
    return times


class SlotLedger:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # Booking handshake

    def try_acquire(
        self,
        slot_id: int,
        requester_id: int,
        lease: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> Slot:
        """Take a lease on a bookable slot with one compare-and-swap UPDATE."""
        now = now or self.clock()
        lease = lease or timedelta(minutes=settings.SLOT_LOCK_MINUTES)
        expires_at = now + lease

        self._lock_row(slot_id)
        result = self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.is_bookable_for(requester_id, now))
            .values(lock_holder_id=requester_id, locked_at=now, lock_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            if self.db.get(Slot, slot_id) is None:
                raise NotFound("Slot not found")
            logger.info(f"Slot {slot_id} not available for requester {requester_id}")
            raise SlotUnavailable()

        # Re-entry replaces the requester's own lease; lapsed leases are dropped on the way
        self.db.execute(
            delete(SlotLease)
            .where(
                SlotLease.slot_id == slot_id,
                or_(SlotLease.holder_id == requester_id, SlotLease.expires_at <= now),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            insert(SlotLease).values(
                slot_id=slot_id, holder_id=requester_id, acquired_at=now, expires_at=expires_at,
            )
        )

        logger.info(f"Slot {slot_id} leased to {requester_id} until {expires_at}")
        return self.get(slot_id)

    def commit(self, slot_id: int, holder_id: int, now: Optional[datetime] = None) -> None:
        """
        Turn the holder's lease into a booking.

        A holder whose lease lapsed is only let through if the slot is still
        bookable for them, so it can never consume capacity another patient
        is holding.
        """
        now = now or self.clock()

        self._lock_row(slot_id)
        result = self.db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                Slot.booked_count < Slot.max_capacity,
                Slot.can_commit_for(holder_id, now),
            )
            .values(
                booked_count=Slot.booked_count + 1,
                is_available=Slot.booked_count + 1 < Slot.max_capacity,
                **self._clear_mirror_values(holder_id),
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(f"Slot {slot_id} commit rejected for holder {holder_id}: no capacity left for them")
            raise SlotUnavailable("Slot capacity exhausted")

        self.db.execute(
            delete(SlotLease)
            .where(SlotLease.slot_id == slot_id, SlotLease.holder_id == holder_id)
            .execution_options(synchronize_session=False)
        )

    def release_lease(self, slot_id: int, holder_id: int, now: Optional[datetime] = None) -> bool:
        """Give back the holder's own lease after a failed handshake; a lapsed lease is left alone."""
        now = now or self.clock()

        result = self.db.execute(
            delete(SlotLease)
            .where(
                SlotLease.slot_id == slot_id,
                SlotLease.holder_id == holder_id,
                SlotLease.expires_at > now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.info(f"Slot {slot_id} has no live lease for {holder_id}, nothing to release")
            return False

        self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.lock_holder_id == holder_id)
            .values(**self._clear_mirror_values(holder_id))
            .execution_options(synchronize_session=False)
        )
        return True

    def release_booking(self, slot_id: Optional[int]) -> bool:
        """Return one booked unit to the slot after a cancellation."""
        if slot_id is None:
            return False

        result = self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.booked_count > 0)
            .values(booked_count=Slot.booked_count - 1, is_available=True)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            logger.warning(f"Slot {slot_id} had no booking to release")
            return False
        return True

    def expire_stale_locks(self, now: Optional[datetime] = None) -> int:
        """Delete lapsed leases. Reads already ignore them; this keeps the tables tidy."""
        now = now or self.clock()
        result = self.db.execute(
            delete(SlotLease)
            .where(SlotLease.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Slot)
            .where(Slot.lock_expires_at.is_not(None), Slot.lock_expires_at <= now)
            .values(lock_holder_id=None, locked_at=None, lock_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Cleared {result.rowcount} expired slot leases")
        return result.rowcount

    def _lock_row(self, slot_id: int) -> None:
        # Handshakes on one slot queue on its row, so the lease count each one
        # reads includes every lease committed before it. SQLite renders no
        # FOR UPDATE and serializes writers instead.
        self.db.execute(select(Slot.id).where(Slot.id == slot_id).with_for_update()).scalar()

    @staticmethod
    def _clear_mirror_values(holder_id: int) -> dict:
        # Only the holder named in the mirror columns clears them
        mine = Slot.lock_holder_id == holder_id
        return {
            "lock_holder_id": case((mine, null()), else_=Slot.lock_holder_id),
            "locked_at": case((mine, null()), else_=Slot.locked_at),
            "lock_expires_at": case((mine, null()), else_=Slot.lock_expires_at),
        }

    # Reads

    def get(self, slot_id: int) -> Slot:
        slot = self.db.get(Slot, slot_id, populate_existing=True)
        if slot is None:
            raise NotFound("Slot not found")
        return slot

    def list_available(
        self,
        doctor_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        requester_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Slot]:
        """Bookable slots for a doctor; defaults to the next 7 days."""
        now = now or self.clock()
        if start_date is None:
            start_date = clinic_now().date()
        if end_date is None:
            end_date = start_date + timedelta(days=7)

        query = (
            select(Slot)
            .where(
                Slot.doctor_id == doctor_id,
                Slot.date >= start_date,
                Slot.date <= end_date,
                Slot.is_bookable_for(requester_id, now),
            )
            .order_by(Slot.date, Slot.start_time)
        )
        return list(self.db.scalars(query))

    def list_for_doctor(
        self,
        doctor_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        show_all: bool = False,
    ) -> List[Slot]:
        query = select(Slot).where(Slot.doctor_id == doctor_id)
        if start_date is not None:
            query = query.where(Slot.date >= start_date)
        if end_date is not None:
            query = query.where(Slot.date <= end_date)
        if not show_all:
            query = query.where(Slot.is_blocked.is_(False))
        return list(self.db.scalars(query.order_by(Slot.date, Slot.start_time)))

    # Slot management

    def create_slot(
        self,
        doctor_id: int,
        slot_date: date,
        start_time: str,
        end_time: str,
        max_capacity: int = 1,
    ) -> Slot:
        self._validate_window(start_time, end_time, max_capacity)

        slot = Slot(
            doctor_id=doctor_id,
            date=slot_date,
            start_time=start_time,
            end_time=end_time,
            max_capacity=max_capacity,
        )
        self.db.add(slot)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateSlot()

        self.db.refresh(slot)
        return slot

    def bulk_create(
        self,
        doctor: Doctor,
        start_date: date,
        end_date: date,
        slot_times: Optional[Iterable[dict]] = None,
    ) -> List[Slot]:
        """
        Generate slots for every working day in the range.

        Days the weekly template marks unavailable are skipped, and existing
        (doctor, date, start_time) triples are left alone, so re-running the
        same request is a no-op.
        """
        if end_date < start_date:
            raise InvalidRequest("end_date must not be before start_date")

        explicit = list(slot_times) if slot_times else None
        for item in explicit or []:
            self._validate_window(item["start_time"], item["end_time"], item.get("max_capacity") or 1)

        rows = []
        day = start_date
        while day <= end_date:
            template = (doctor.availability or {}).get(WEEKDAYS[day.weekday()]) or {}
            if template.get("is_available"):
                times = explicit or template_times(template, doctor.slot_duration)
                for item in times:
                    rows.append({
                        "doctor_id": doctor.id,
                        "date": day,
                        "start_time": item["start_time"],
                        "end_time": item["end_time"],
                        "max_capacity": item.get("max_capacity") or doctor.max_patients_per_slot or 1,
                        "booked_count": 0,
                        "is_available": True,
                        "is_blocked": False,
                    })
            day += timedelta(days=1)

        if not rows:
            return []

        if self.db.get_bind().dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as insert_ignoring
        else:
            from sqlalchemy.dialects.sqlite import insert as insert_ignoring

        stmt = (
            insert_ignoring(Slot)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["doctor_id", "date", "start_time"])
            .returning(Slot.id)
        )
        created_ids = list(self.db.scalars(stmt))
        self.db.commit()

        logger.info(
            f"Doctor {doctor.id}: created {len(created_ids)} of {len(rows)} slots "
            f"between {start_date} and {end_date}"
        )
        if not created_ids:
            return []
        return list(self.db.scalars(
            select(Slot).where(Slot.id.in_(created_ids)).order_by(Slot.date, Slot.start_time)
        ))

    def delete_slot(self, slot_id: int, doctor_id: int) -> None:
        self.db.execute(
            delete(SlotLease)
            .where(SlotLease.slot_id == slot_id)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(
            delete(Slot)
            .where(Slot.id == slot_id, Slot.doctor_id == doctor_id, Slot.booked_count == 0)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            self.db.rollback()
            slot = self.db.get(Slot, slot_id)
            if slot is None or slot.doctor_id != doctor_id:
                raise NotFound("Slot not found")
            raise SlotHasBookings()

        self.db.commit()

    def set_blocked(self, slot_id: int, doctor_id: int, blocked: bool, reason: Optional[str] = None) -> Slot:
        result = self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.doctor_id == doctor_id)
            .values(is_blocked=blocked, blocked_reason=reason if blocked else None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            raise NotFound("Slot not found")

        self.db.commit()
        return self.get(slot_id)

    @staticmethod
    def _validate_window(start_time: str, end_time: str, max_capacity: int) -> None:
        if to_minutes(start_time) >= to_minutes(end_time):
            raise InvalidRequest("start_time must be before end_time")
        if max_capacity < 1:
            raise InvalidRequest("max_capacity must be at least 1")
