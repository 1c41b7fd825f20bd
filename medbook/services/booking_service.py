"""
Booking transaction coordinator.

Drives lock slot -> authorize payment hold -> create appointment -> commit
slot to an all-or-nothing outcome. The slot lease and the payment hold live
outside the final database transaction, so each is paired with a
compensating action in a saga and undone in reverse order on any failure.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import settings
from ..core.exceptions import (
    AlreadyProcessed, DoctorUnavailable, NotAuthorized, NotFound,
    PaymentAuthorizationFailed, SlotUnavailable,
)
from ..models.appointment import Appointment, AppointmentType, PaymentStatus
from ..models.doctor import Doctor
from ..models.slot import Slot
from .actors import Actor
from .lifecycle import TRANSITIONS, AppointmentLifecycle, load_appointment, notify_parties
from .notification_service import Notifier
from .payment_gateway import PaymentGateway, PaymentGatewayError, PaymentHold
from .saga import Saga
from .slot_ledger import SlotLedger

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    appointment: Appointment
    client_secret: Optional[str] = None


class BookingService:
    def __init__(
        self,
        db: Session,
        payments: PaymentGateway,
        notifier: Optional[Notifier] = None,
        ledger: Optional[SlotLedger] = None,
        clock: Callable[[], datetime] = utcnow,
        lease: Optional[timedelta] = None,
        currency: str = None,
    ):
        self.db = db
        self.payments = payments
        self.notifier = notifier
        self.clock = clock
        self.ledger = ledger or SlotLedger(db, clock=clock)
        self.lease = lease or timedelta(minutes=settings.SLOT_LOCK_MINUTES)
        self.currency = currency or settings.PAYMENT_CURRENCY

    def book(
        self,
        patient_id: int,
        doctor_id: int,
        slot_id: int,
        appointment_date: Optional[date] = None,
        appointment_type: AppointmentType = AppointmentType.IN_PERSON,
        reason: Optional[str] = None,
        symptoms: Optional[List[str]] = None,
    ) -> BookingResult:
        appointment_type = AppointmentType(appointment_type)

        doctor = self.db.get(Doctor, doctor_id)
        if doctor is None or not doctor.is_verified or not doctor.is_accepting_appointments:
            raise DoctorUnavailable()

        slot = self.db.get(Slot, slot_id)
        if slot is None or slot.doctor_id != doctor.id:
            raise NotFound("Slot not found")
        if appointment_date is not None and appointment_date != slot.date:
            raise SlotUnavailable("Slot is not on the requested date")

        with Saga(f"book slot {slot_id} for patient {patient_id}") as saga:
            slot = self._acquire(slot_id, patient_id)
            saga.on_rollback("release slot lease", lambda: self._release_lease(slot_id, patient_id))

            fee = doctor.fee_for(appointment_type)
            hold = self._authorize(fee, {
                "doctor_id": str(doctor.id),
                "patient_id": str(patient_id),
                "slot_id": str(slot_id),
                "appointment_type": appointment_type.value,
            })
            saga.on_rollback("cancel payment hold", lambda: self.payments.cancel_hold(hold.reference_id))

            appointment = self._persist(
                patient_id, doctor, slot, appointment_type, fee, hold, reason, symptoms,
            )

        logger.info(
            f"Appointment {appointment.id} booked: patient {patient_id}, doctor {doctor_id}, "
            f"slot {slot_id}, {appointment_type.value}, fee {fee}"
        )
        notify_parties(
            self.notifier, self.db, appointment, "appointment", "Appointment requested",
            f"Appointment on {appointment.date} at {appointment.start_time} is awaiting payment.",
        )
        return BookingResult(appointment=appointment, client_secret=hold.client_secret)

    def confirm_payment(self, appointment_id: int, actor: Optional[Actor] = None) -> Appointment:
        """
        Mark the hold as in place and confirm the appointment.

        Called by the patient's client after checkout or by the payment
        webhook; whichever arrives second gets AlreadyProcessed.
        """
        if actor is not None:
            appointment = self._get(appointment_id)
            if not (actor.is_patient_of(appointment) or actor.is_admin):
                raise NotAuthorized()

        transition = TRANSITIONS["confirm"]
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status.in_(transition.sources),
                Appointment.payment_status == PaymentStatus.PENDING,
            )
            .values(status=transition.target, payment_status=PaymentStatus.HELD)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            self._get(appointment_id)
            raise AlreadyProcessed()
        self.db.commit()

        appointment = self._get(appointment_id)
        logger.info(f"Payment confirmed for appointment {appointment_id}")
        notify_parties(
            self.notifier, self.db, appointment, "appointment", "Appointment confirmed",
            f"Your appointment on {appointment.date} at {appointment.start_time} is confirmed.",
        )
        return appointment

    # Webhook entry points

    def confirm_payment_by_reference(self, reference_id: str) -> Optional[Appointment]:
        appointment_id = self._find_by_reference(reference_id)
        if appointment_id is None:
            return None
        try:
            return self.confirm_payment(appointment_id)
        except AlreadyProcessed:
            logger.info(f"Payment {reference_id} already processed, ignoring duplicate confirmation")
            return self._get(appointment_id)

    def fail_payment_by_reference(self, reference_id: str) -> Optional[Appointment]:
        appointment_id = self._find_by_reference(reference_id)
        if appointment_id is None:
            return None
        return self._lifecycle().cancel_for_failed_payment(appointment_id)

    def mark_refunded_by_reference(self, reference_id: str) -> bool:
        appointment_id = self._find_by_reference(reference_id)
        if appointment_id is None:
            return False
        return self._lifecycle().mark_refunded(appointment_id)

    # Saga steps

    def _acquire(self, slot_id: int, patient_id: int) -> Slot:
        try:
            slot = self.ledger.try_acquire(slot_id, patient_id, self.lease)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return slot

    def _release_lease(self, slot_id: int, patient_id: int) -> None:
        self.db.rollback()
        self.ledger.release_lease(slot_id, patient_id)
        self.db.commit()

    def _authorize(self, fee: float, metadata: dict) -> PaymentHold:
        try:
            return self.payments.authorize_hold(fee, metadata)
        except PaymentGatewayError as e:
            logger.warning(f"Payment hold of {fee} refused for slot {metadata['slot_id']}: {e}")
            raise PaymentAuthorizationFailed() from e

    def _persist(self, patient_id, doctor, slot, appointment_type, fee, hold, reason, symptoms) -> Appointment:
        """Insert the appointment and consume the lease in one transaction."""
        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor.id,
            slot_id=slot.id,
            date=slot.date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            type=appointment_type,
            reason=reason,
            symptoms=symptoms,
            payment_status=PaymentStatus.PENDING,
            payment_amount=fee,
            payment_currency=self.currency,
            payment_reference=hold.reference_id,
        )
        try:
            self.db.add(appointment)
            self.db.flush()
            self.ledger.commit(slot.id, patient_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return appointment

    # Lookups

    def _get(self, appointment_id: int) -> Appointment:
        return load_appointment(self.db, appointment_id)

    def _find_by_reference(self, reference_id: Optional[str]) -> Optional[int]:
        if not reference_id:
            return None
        appointment_id = self.db.scalar(
            select(Appointment.id).where(Appointment.payment_reference == reference_id)
        )
        if appointment_id is None:
            logger.warning(f"No appointment for payment reference {reference_id}")
        return appointment_id

    def _lifecycle(self) -> AppointmentLifecycle:
        return AppointmentLifecycle(
            self.db, self.payments, notifier=self.notifier, ledger=self.ledger, clock=self.clock,
        )
