from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, Date, Boolean,
    UniqueConstraint, CheckConstraint, Index, and_, exists, or_, select,
)
from sqlalchemy.ext.hybrid import hybrid_method
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from ..core.database import Base

class SlotLease(Base):
    """One patient's hold on a slot during the booking handshake; each hold expires on its own."""
    __tablename__ = "slot_leases"
    __table_args__ = (
        UniqueConstraint("slot_id", "holder_id", name="uq_slot_lease_holder"),
        Index("ix_slot_lease_slot_expires", "slot_id", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    slot_id = Column(Integer, ForeignKey("slots.id", ondelete="CASCADE"), nullable=False)
    holder_id = Column(Integer, nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    slot = relationship("Slot", back_populates="leases")

    def is_active(self, now):
        return self.expires_at > now

    def __repr__(self):
        return f"<SlotLease(slot_id={self.slot_id}, holder_id={self.holder_id}, expires_at='{self.expires_at}')>"

class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("doctor_id", "date", "start_time", name="uq_slot_doctor_date_start"),
        CheckConstraint("max_capacity >= 1", name="ck_slot_capacity_positive"),
        CheckConstraint("booked_count >= 0 AND booked_count <= max_capacity", name="ck_slot_booked_within_capacity"),
        Index("ix_slot_lock_expires_at", "lock_expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False, index=True)

    # Wall-clock times are doctor-local "HH:MM"
    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)

    # Capacity
    max_capacity = Column(Integer, nullable=False, default=1)
    booked_count = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)

    # Blocking
    is_blocked = Column(Boolean, nullable=False, default=False)
    blocked_reason = Column(String(255), nullable=True)

    # Most recent lease, mirrored from slot_leases for display
    lock_holder_id = Column(Integer, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    doctor = relationship("Doctor", back_populates="slots")
    leases = relationship("SlotLease", back_populates="slot", cascade="all, delete-orphan")

    @hybrid_method
    def holds_by_others(self, requester_id, now):
        """Unexpired leases not belonging to ``requester_id``."""
        return sum(
            1 for lease in self.leases
            if lease.is_active(now) and lease.holder_id != requester_id
        )

    @holds_by_others.expression
    def holds_by_others(cls, requester_id, now):
        query = select(func.count(SlotLease.id)).where(
            SlotLease.slot_id == cls.id,
            SlotLease.expires_at > now,
        )
        if requester_id is not None:
            query = query.where(SlotLease.holder_id != requester_id)
        return query.correlate_except(SlotLease).scalar_subquery()

    @hybrid_method
    def has_lease(self, holder_id, now):
        return any(lease.holder_id == holder_id and lease.is_active(now) for lease in self.leases)

    @has_lease.expression
    def has_lease(cls, holder_id, now):
        return exists().where(
            SlotLease.slot_id == cls.id,
            SlotLease.holder_id == holder_id,
            SlotLease.expires_at > now,
        ).correlate_except(SlotLease)

    @hybrid_method
    def is_bookable_for(self, requester_id, now):
        """The one definition of "bookable right now", shared by reads and the lock CAS."""
        return (
            not self.is_blocked
            and self.booked_count + self.holds_by_others(requester_id, now) < self.max_capacity
        )

    @is_bookable_for.expression
    def is_bookable_for(cls, requester_id, now):
        return and_(
            cls.is_blocked.is_(False),
            cls.booked_count + cls.holds_by_others(requester_id, now) < cls.max_capacity,
        )

    @hybrid_method
    def can_commit_for(self, holder_id, now):
        """A live lease may finish its booking; a lapsed one must still find the slot bookable."""
        if self.booked_count + self.holds_by_others(holder_id, now) >= self.max_capacity:
            return False
        return self.has_lease(holder_id, now) or not self.is_blocked

    @can_commit_for.expression
    def can_commit_for(cls, holder_id, now):
        return and_(
            cls.booked_count + cls.holds_by_others(holder_id, now) < cls.max_capacity,
            or_(cls.has_lease(holder_id, now), cls.is_blocked.is_(False)),
        )

    def __repr__(self):
        return (
            f"<Slot(id={self.id}, doctor_id={self.doctor_id}, date='{self.date}', "
            f"start='{self.start_time}', booked={self.booked_count}/{self.max_capacity})>"
        )
