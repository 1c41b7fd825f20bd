import pytest
from datetime import datetime, timedelta

from medbook.core.exceptions import (
    DuplicateSlot, InvalidRequest, NotFound, SlotHasBookings, SlotUnavailable,
)
from medbook.models.doctor import default_availability
from medbook.services.slot_ledger import SlotLedger, template_times

from .factories import future_date, lease_count, make_doctor, make_patients, make_slot, reload_slot

T0 = datetime(2030, 1, 7, 9, 0)
LEASE = timedelta(minutes=5)

class TestLeases:

    def test_acquire_takes_lease(self, db):
        """A free slot is leased to the requester until now + lease."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)

        leased = ledger.try_acquire(slot.id, 42, LEASE, now=T0)
        db.commit()

        assert leased.lock_holder_id == 42
        assert lease_count(db, slot.id) == 1
        assert leased.lock_expires_at == T0 + LEASE

    def test_second_requester_blocked_while_lease_active(self, db):
        """A capacity-1 slot under an active lease is not bookable for anyone else."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()

        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 2, LEASE, now=T0 + timedelta(minutes=1))

    def test_holder_can_reacquire(self, db):
        """Re-entry by the current holder refreshes the lease without taking extra capacity."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()

        leased = ledger.try_acquire(slot.id, 1, LEASE, now=T0 + timedelta(minutes=2))
        db.commit()

        assert lease_count(db, slot.id) == 1
        assert leased.lock_expires_at == T0 + timedelta(minutes=2) + LEASE

    def test_expired_lease_is_ignored(self, db):
        """Once the lease lapses the slot is bookable again without any sweep."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()

        later = T0 + LEASE + timedelta(seconds=1)
        assert [s.id for s in ledger.list_available(doctor.id, slot.date, slot.date, now=later)] == [slot.id]

        leased = ledger.try_acquire(slot.id, 2, LEASE, now=later)
        db.commit()
        assert leased.lock_holder_id == 2
        assert lease_count(db, slot.id) == 1

    def test_unknown_slot(self, db):
        """Acquiring a missing slot is NotFound rather than unavailable."""
        with pytest.raises(NotFound):
            SlotLedger(db).try_acquire(999, 1, LEASE, now=T0)

    def test_blocked_slot_cannot_be_acquired(self, db):
        """Blocked slots are never bookable."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.set_blocked(slot.id, doctor.id, True, "Conference")

        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 1, LEASE, now=T0)

    def test_capacity_two_takes_two_leases(self, db):
        """Two different requesters can hold a capacity-2 slot, a third cannot."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor, capacity=2)
        ledger = SlotLedger(db)

        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        leased = ledger.try_acquire(slot.id, 2, LEASE, now=T0)
        db.commit()
        assert lease_count(db, slot.id) == 2

        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 3, LEASE, now=T0)

    def test_lapsed_lease_not_kept_alive_by_other_holders(self, db):
        """A crashed hold on a capacity-2 slot expires on time even while others keep leasing."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor, capacity=2)
        ledger = SlotLedger(db)

        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()
        ledger.try_acquire(slot.id, 2, LEASE, now=T0 + timedelta(minutes=4))
        ledger.commit(slot.id, 2, now=T0 + timedelta(minutes=4, seconds=30))
        db.commit()

        after_first_lease = T0 + timedelta(minutes=6)
        available = ledger.list_available(doctor.id, slot.date, slot.date, requester_id=3, now=after_first_lease)
        assert [s.id for s in available] == [slot.id]

        leased = ledger.try_acquire(slot.id, 3, LEASE, now=after_first_lease)
        db.commit()
        assert leased.lock_holder_id == 3
        assert lease_count(db, slot.id) == 1

        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 4, LEASE, now=after_first_lease)

    def test_each_lease_keeps_its_own_expiry(self, db):
        """A newer lease on the same slot does not extend an older one."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor, capacity=2)
        ledger = SlotLedger(db)

        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        ledger.try_acquire(slot.id, 2, LEASE, now=T0 + timedelta(minutes=4))
        db.commit()

        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 3, LEASE, now=T0 + timedelta(minutes=4, seconds=30))

        leased = ledger.try_acquire(slot.id, 3, LEASE, now=T0 + LEASE)
        db.commit()
        assert leased.lock_holder_id == 3

class TestCommitAndRelease:

    def test_commit_books_and_clears_lock(self, db):
        """Committing consumes the lease and fills the slot."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        ledger.commit(slot.id, 1, now=T0 + timedelta(minutes=1))
        db.commit()

        slot = reload_slot(db, slot.id)
        assert slot.booked_count == 1
        assert slot.is_available is False
        assert lease_count(db, slot.id) == 0
        assert slot.lock_holder_id is None
        assert slot.lock_expires_at is None

    def test_commit_rejected_when_full(self, db):
        """The commit guard refuses to overbook."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        ledger.commit(slot.id, 1, now=T0)
        db.commit()

        with pytest.raises(SlotUnavailable):
            ledger.commit(slot.id, 2, now=T0)

    def test_release_lease_restores_availability(self, db):
        """A failed handshake gives the hold back without touching bookings."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        assert ledger.release_lease(slot.id, 1, now=T0) is True
        db.commit()

        slot = reload_slot(db, slot.id)
        assert lease_count(db, slot.id) == 0
        assert slot.booked_count == 0
        assert slot.lock_holder_id is None

    def test_lapsed_holder_cannot_release_new_holders_lease(self, db):
        """Releasing after the lease lapsed leaves the next holder's lease in place."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()
        ledger.try_acquire(slot.id, 2, LEASE, now=T0 + timedelta(minutes=5, seconds=30))
        db.commit()

        assert ledger.release_lease(slot.id, 1, now=T0 + timedelta(minutes=6)) is False
        db.commit()

        slot = reload_slot(db, slot.id)
        assert slot.lock_holder_id == 2
        assert lease_count(db, slot.id) == 1
        with pytest.raises(SlotUnavailable):
            ledger.try_acquire(slot.id, 3, LEASE, now=T0 + timedelta(minutes=6, seconds=10))

    def test_lapsed_holder_cannot_commit_over_new_holder(self, db):
        """A commit after the lease lapsed fails while someone else holds the slot."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()
        ledger.try_acquire(slot.id, 2, LEASE, now=T0 + timedelta(minutes=5, seconds=30))
        db.commit()

        with pytest.raises(SlotUnavailable):
            ledger.commit(slot.id, 1, now=T0 + timedelta(minutes=6))
        db.rollback()

        ledger.commit(slot.id, 2, now=T0 + timedelta(minutes=6))
        db.commit()
        slot = reload_slot(db, slot.id)
        assert slot.booked_count == 1
        assert slot.lock_holder_id is None
        assert lease_count(db, slot.id) == 0

    def test_lapsed_holder_commits_when_slot_still_free(self, db):
        """With no competing lease a late commit still books the slot."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        db.commit()

        ledger.commit(slot.id, 1, now=T0 + timedelta(minutes=7))
        db.commit()
        assert reload_slot(db, slot.id).booked_count == 1

    def test_lapsed_holder_cannot_commit_into_blocked_slot(self, db):
        """Blocking the slot stops a late commit but not one under a live lease."""
        doctor = make_doctor(db)
        late = make_slot(db, doctor, start_time="09:00", end_time="09:30")
        live = make_slot(db, doctor, start_time="10:00", end_time="10:30")
        ledger = SlotLedger(db)
        ledger.try_acquire(late.id, 1, LEASE, now=T0)
        ledger.try_acquire(live.id, 2, LEASE, now=T0)
        db.commit()
        ledger.set_blocked(late.id, doctor.id, True, "Leave")
        ledger.set_blocked(live.id, doctor.id, True, "Leave")

        with pytest.raises(SlotUnavailable):
            ledger.commit(late.id, 1, now=T0 + timedelta(minutes=7))
        db.rollback()

        ledger.commit(live.id, 2, now=T0 + timedelta(minutes=1))
        db.commit()
        assert reload_slot(db, live.id).booked_count == 1

    def test_release_booking_is_guarded(self, db):
        """Releasing a booking never drives booked_count below zero."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.try_acquire(slot.id, 1, LEASE, now=T0)
        ledger.commit(slot.id, 1, now=T0)
        db.commit()

        assert ledger.release_booking(slot.id) is True
        assert ledger.release_booking(slot.id) is False
        db.commit()

        slot = reload_slot(db, slot.id)
        assert slot.booked_count == 0
        assert slot.is_available is True

    def test_expire_stale_locks(self, db):
        """The sweep clears only leases that have lapsed."""
        doctor = make_doctor(db)
        stale = make_slot(db, doctor, start_time="09:00", end_time="09:30")
        fresh = make_slot(db, doctor, start_time="10:00", end_time="10:30")
        ledger = SlotLedger(db)
        ledger.try_acquire(stale.id, 1, LEASE, now=T0)
        ledger.try_acquire(fresh.id, 2, LEASE, now=T0 + timedelta(minutes=4))
        db.commit()

        assert ledger.expire_stale_locks(now=T0 + timedelta(minutes=6)) == 1
        db.commit()

        assert reload_slot(db, stale.id).lock_holder_id is None
        assert reload_slot(db, fresh.id).lock_holder_id == 2

class TestSlotManagement:

    def test_create_slot_rejects_duplicates(self, db):
        """(doctor, date, start_time) is unique."""
        doctor = make_doctor(db)
        ledger = SlotLedger(db)
        day = future_date()
        ledger.create_slot(doctor.id, day, "10:00", "10:30")

        with pytest.raises(DuplicateSlot):
            ledger.create_slot(doctor.id, day, "10:00", "10:45")

    def test_create_slot_validates_window(self, db):
        """End must follow start and capacity must be positive."""
        doctor = make_doctor(db)
        ledger = SlotLedger(db)

        with pytest.raises(InvalidRequest):
            ledger.create_slot(doctor.id, future_date(), "11:00", "10:30")
        with pytest.raises(InvalidRequest):
            ledger.create_slot(doctor.id, future_date(), "10:00", "10:30", max_capacity=0)

    def test_template_times(self):
        """A 09:00-10:00 template with 20 minute slots yields three slots."""
        times = template_times({"start": "09:00", "end": "10:00"}, 20)
        assert [t["start_time"] for t in times] == ["09:00", "09:20", "09:40"]
        assert times[-1]["end_time"] == "10:00"

    def test_bulk_create_from_template_is_idempotent(self, db):
        """Bulk generation skips days off and re-running it creates nothing new."""
        doctor = make_doctor(db)
        availability = default_availability()
        availability["monday"] = {"start": "09:00", "end": "10:00", "is_available": True}
        availability["tuesday"] = {"start": "09:00", "end": "10:00", "is_available": False}
        doctor.availability = availability
        doctor.slot_duration = 30
        db.commit()

        monday = datetime(2030, 1, 7).date()
        tuesday = monday + timedelta(days=1)
        ledger = SlotLedger(db)

        created = ledger.bulk_create(doctor, monday, tuesday)
        assert [(s.date, s.start_time) for s in created] == [(monday, "09:00"), (monday, "09:30")]

        assert ledger.bulk_create(doctor, monday, tuesday) == []
        assert len(ledger.list_for_doctor(doctor.id, monday, tuesday)) == 2

    def test_bulk_create_with_explicit_times(self, db):
        """Explicit slot times override the template on working days."""
        doctor = make_doctor(db)
        monday = datetime(2030, 1, 7).date()

        created = SlotLedger(db).bulk_create(doctor, monday, monday, [
            {"start_time": "14:00", "end_time": "14:45", "max_capacity": 3},
        ])

        assert len(created) == 1
        assert created[0].max_capacity == 3

    def test_delete_slot_with_bookings_fails(self, db):
        """Booked slots cannot be deleted; empty ones can."""
        doctor = make_doctor(db)
        booked = make_slot(db, doctor, start_time="09:00", end_time="09:30")
        empty = make_slot(db, doctor, start_time="10:00", end_time="10:30")
        ledger = SlotLedger(db)
        ledger.try_acquire(booked.id, 1, LEASE, now=T0)
        ledger.commit(booked.id, 1, now=T0)
        db.commit()

        with pytest.raises(SlotHasBookings):
            ledger.delete_slot(booked.id, doctor.id)

        ledger.delete_slot(empty.id, doctor.id)
        assert reload_slot(db, empty.id) is None

    def test_other_doctor_cannot_manage_slot(self, db):
        """Slots are only managed by their own doctor."""
        doctor = make_doctor(db)
        other = make_doctor(db, email="other@example.com", last_name="Wilson")
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)

        with pytest.raises(NotFound):
            ledger.delete_slot(slot.id, other.id)
        with pytest.raises(NotFound):
            ledger.set_blocked(slot.id, other.id, True)

    def test_list_for_doctor_hides_blocked(self, db):
        """Blocked slots appear only with show_all."""
        doctor = make_doctor(db)
        slot = make_slot(db, doctor)
        ledger = SlotLedger(db)
        ledger.set_blocked(slot.id, doctor.id, True, "Leave")

        assert ledger.list_for_doctor(doctor.id) == []
        assert [s.id for s in ledger.list_for_doctor(doctor.id, show_all=True)] == [slot.id]

    def test_list_available_excludes_full_slots(self, db):
        """Full slots drop out of the available listing."""
        doctor = make_doctor(db)
        patient, = make_patients(db, 1)
        full = make_slot(db, doctor, start_time="09:00", end_time="09:30")
        open_slot = make_slot(db, doctor, start_time="10:00", end_time="10:30")
        ledger = SlotLedger(db)
        ledger.try_acquire(full.id, patient.id, LEASE, now=T0)
        ledger.commit(full.id, patient.id, now=T0)
        db.commit()

        available = ledger.list_available(doctor.id, full.date, full.date, now=T0)
        assert [s.id for s in available] == [open_slot.id]
