"""
Appointment lifecycle state machine.

    pending -> confirmed -> in-progress -> completed
    pending / confirmed / in-progress -> cancelled
    confirmed -> no-show

completed, cancelled and no-show are terminal. Every transition is applied as
one conditional UPDATE keyed on the current status and the payment status the
caller observed, so of two concurrent callers exactly one moves the row and
the other gets InvalidTransition. Payment side effects run inside the same
open transaction; if the provider call fails the transition is rolled back.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.exceptions import (
    AlreadyProcessed, AlreadyRated, InvalidRequest, InvalidTransition, NotAuthorized,
    NotFound, PaymentProcessingFailed,
)
from ..models.appointment import (
    Appointment, AppointmentStatus, AppointmentType, CancelledBy, PaymentStatus,
)
from ..models.doctor import Doctor
from ..models.prescription import Prescription
from .actors import Actor
from .notification_service import Notifier
from .payment_gateway import PaymentGateway, PaymentGatewayError
from .rating_service import RatingService
from .slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

S = AppointmentStatus
MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Transition:
    sources: FrozenSet[AppointmentStatus]
    target: AppointmentStatus


TRANSITIONS: Dict[str, Transition] = {
    "confirm": Transition(frozenset({S.PENDING}), S.CONFIRMED),
    "start": Transition(frozenset({S.CONFIRMED}), S.IN_PROGRESS),
    "complete": Transition(frozenset({S.CONFIRMED, S.IN_PROGRESS}), S.COMPLETED),
    "cancel": Transition(frozenset({S.PENDING, S.CONFIRMED, S.IN_PROGRESS}), S.CANCELLED),
    "no_show": Transition(frozenset({S.CONFIRMED}), S.NO_SHOW),
}


def load_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id, populate_existing=True)
    if appointment is None:
        raise NotFound("Appointment not found")
    return appointment


def can_transition(status: AppointmentStatus, action: str) -> bool:
    return status in TRANSITIONS[action].sources


def notify_parties(notifier: Optional[Notifier], db: Session, appointment: Appointment,
                   kind: str, title: str, message: str) -> None:
    """Tell the patient and the doctor; delivery problems are logged, never raised."""
    if notifier is None:
        return
    payload = {"title": title, "message": message, "appointment_id": appointment.id}
    try:
        doctor_user_id = db.scalar(select(Doctor.user_id).where(Doctor.id == appointment.doctor_id))
        recipients = [appointment.patient_id, doctor_user_id]
    except Exception as e:
        logger.error(f"Could not resolve recipients for appointment {appointment.id}: {e}")
        recipients = [appointment.patient_id]

    for user_id in recipients:
        if user_id is None:
            continue
        try:
            notifier.notify(user_id, kind, payload)
        except Exception as e:
            logger.error(f"Notification '{kind}' to user {user_id} failed: {e}")


class AppointmentLifecycle:
    def __init__(
        self,
        db: Session,
        payments: PaymentGateway,
        notifier: Optional[Notifier] = None,
        video=None,
        ledger: Optional[SlotLedger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.payments = payments
        self.notifier = notifier
        self.video = video
        self.clock = clock
        self.ledger = ledger or SlotLedger(db, clock=clock)

    def get(self, appointment_id: int) -> Appointment:
        return load_appointment(self.db, appointment_id)

    def get_for(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = self.get(appointment_id)
        if actor.party(appointment) is None:
            raise NotAuthorized()
        return appointment

    # Transitions

    def cancel(self, appointment_id: int, actor: Actor, reason: Optional[str] = None) -> Appointment:
        for _ in range(MAX_ATTEMPTS):
            appointment = self.get(appointment_id)
            party = self._require_party(appointment, actor)
            self._require_source(appointment, "cancel")

            now = self.clock()
            observed = appointment.payment_status
            values = {"cancelled_by": party, "cancellation_reason": reason, "cancelled_at": now}
            settle = None
            if observed == PaymentStatus.HELD:
                values.update(payment_status=PaymentStatus.REFUNDED, refunded_at=now)
                settle = self.payments.cancel_hold
            elif observed == PaymentStatus.PENDING:
                values["payment_status"] = PaymentStatus.VOIDED
                settle = self.payments.cancel_hold

            if not self._apply(appointment, "cancel", observed, values):
                continue

            self.ledger.release_booking(appointment.slot_id)
            self._settle(settle, appointment, "cancel")
            self._commit_after_settle(settle, appointment, "cancel")
            break
        else:
            raise InvalidTransition("Appointment changed concurrently, try again")

        appointment = self.get(appointment_id)
        logger.info(f"Appointment {appointment_id} cancelled by {party.value}")
        notify_parties(
            self.notifier, self.db, appointment, "cancellation", "Appointment cancelled",
            f"Appointment on {appointment.date} at {appointment.start_time} was cancelled.",
        )
        return appointment

    def complete(self, appointment_id: int, actor: Actor) -> Appointment:
        for _ in range(MAX_ATTEMPTS):
            appointment = self.get(appointment_id)
            self._require_party(appointment, actor)
            self._require_source(appointment, "complete")

            now = self.clock()
            observed = appointment.payment_status
            values = {}
            settle = None
            if observed == PaymentStatus.HELD:
                values.update(payment_status=PaymentStatus.CAPTURED, paid_at=now)
                settle = self.payments.capture
            if appointment.video_started_at and not appointment.video_ended_at:
                values.update(
                    video_ended_at=now,
                    video_duration=int((now - appointment.video_started_at).total_seconds()),
                )

            if not self._apply(appointment, "complete", observed, values):
                continue

            self._settle(settle, appointment, "capture")
            self._commit_after_settle(settle, appointment, "capture")
            break
        else:
            raise InvalidTransition("Appointment changed concurrently, try again")

        appointment = self.get(appointment_id)
        logger.info(f"Appointment {appointment_id} completed")
        self._end_video_room(appointment)
        notify_parties(
            self.notifier, self.db, appointment, "appointment", "Appointment completed",
            f"Appointment on {appointment.date} at {appointment.start_time} is complete.",
        )
        return appointment

    def start(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = self.get(appointment_id)
        self._require_doctor_or_admin(appointment, actor)
        if appointment.type != AppointmentType.VIDEO:
            raise InvalidTransition("Only video appointments can be started")
        self._require_source(appointment, "start")

        values = {"video_started_at": self.clock()}
        if not self._apply(appointment, "start", appointment.payment_status, values):
            raise InvalidTransition()
        self.db.commit()

        logger.info(f"Video appointment {appointment_id} started")
        return self.get(appointment_id)

    def mark_no_show(self, appointment_id: int, actor: Actor) -> Appointment:
        """Patient did not attend; a held payment is captured as the no-show charge."""
        for _ in range(MAX_ATTEMPTS):
            appointment = self.get(appointment_id)
            self._require_doctor_or_admin(appointment, actor)
            self._require_source(appointment, "no_show")

            observed = appointment.payment_status
            values = {}
            settle = None
            if observed == PaymentStatus.HELD:
                values.update(payment_status=PaymentStatus.CAPTURED, paid_at=self.clock())
                settle = self.payments.capture

            if not self._apply(appointment, "no_show", observed, values):
                continue

            self._settle(settle, appointment, "capture")
            self._commit_after_settle(settle, appointment, "capture")
            break
        else:
            raise InvalidTransition("Appointment changed concurrently, try again")

        logger.info(f"Appointment {appointment_id} marked as no-show")
        return self.get(appointment_id)

    def rate(self, appointment_id: int, actor: Actor, score: int, review: Optional[str] = None) -> Appointment:
        appointment = self.get(appointment_id)
        if not actor.is_patient_of(appointment):
            raise NotAuthorized("Only the patient can rate this appointment")
        if not isinstance(score, int) or not 1 <= score <= 5:
            raise InvalidRequest("Rating must be between 1 and 5")

        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status == S.COMPLETED,
                Appointment.rating_score.is_(None),
            )
            .values(rating_score=score, rating_review=review, rated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            appointment = self.get(appointment_id)
            if appointment.rating_score is not None:
                raise AlreadyRated()
            raise InvalidTransition("Only completed appointments can be rated")

        try:
            RatingService(self.db).record_rating(appointment.doctor_id, score)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return self.get(appointment_id)

    def attach_prescription(
        self,
        appointment_id: int,
        actor: Actor,
        document_url: str,
        diagnosis: Optional[str] = None,
    ) -> Prescription:
        appointment = self.get(appointment_id)
        self._require_doctor_or_admin(appointment, actor)
        if appointment.status != S.COMPLETED:
            raise InvalidTransition("Prescriptions can only be attached to completed appointments")

        prescription = Prescription(
            appointment_id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            diagnosis=diagnosis,
            document_url=document_url,
        )
        try:
            self.db.add(prescription)
            self.db.flush()
            result = self.db.execute(
                update(Appointment)
                .where(Appointment.id == appointment_id, Appointment.prescription_id.is_(None))
                .values(prescription_id=prescription.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadyProcessed("Prescription already attached")
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AlreadyProcessed("Prescription already attached")
        except Exception:
            self.db.rollback()
            raise

        notify_parties(
            self.notifier, self.db, appointment, "prescription", "Prescription ready",
            f"A prescription for your appointment on {appointment.date} is available.",
        )
        return prescription

    # Payment-provider driven changes

    def cancel_for_failed_payment(self, appointment_id: int) -> Optional[Appointment]:
        """Provider reported the hold failed: cancel as system and free the slot."""
        now = self.clock()
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.status.in_(TRANSITIONS["cancel"].sources),
                Appointment.payment_status == PaymentStatus.PENDING,
            )
            .values(
                status=S.CANCELLED,
                payment_status=PaymentStatus.FAILED,
                cancelled_by=CancelledBy.SYSTEM,
                cancellation_reason="Payment failed",
                cancelled_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            logger.info(f"Ignoring payment failure for appointment {appointment_id}: already settled")
            return None

        appointment = self.get(appointment_id)
        self.ledger.release_booking(appointment.slot_id)
        self.db.commit()

        logger.warning(f"Appointment {appointment_id} cancelled after payment failure")
        notify_parties(
            self.notifier, self.db, appointment, "payment", "Payment failed",
            f"Payment for the appointment on {appointment.date} failed; the booking was cancelled.",
        )
        return appointment

    def mark_refunded(self, appointment_id: int) -> bool:
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment_id,
                Appointment.payment_status.in_([PaymentStatus.HELD, PaymentStatus.CAPTURED]),
            )
            .values(payment_status=PaymentStatus.REFUNDED, refunded_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    # Helpers

    def _apply(self, appointment: Appointment, action: str, observed_payment: PaymentStatus, values: dict) -> bool:
        transition = TRANSITIONS[action]
        result = self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.status.in_(transition.sources),
                Appointment.payment_status == observed_payment,
            )
            .values(status=transition.target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.db.rollback()
            logger.info(f"Appointment {appointment.id} changed before '{action}' applied, reloading")
            return False
        return True

    def _settle(self, action, appointment: Appointment, label: str) -> None:
        if action is None or not appointment.payment_reference:
            return
        try:
            action(appointment.payment_reference)
        except PaymentGatewayError as e:
            self.db.rollback()
            logger.error(f"Payment {label} failed for appointment {appointment.id}: {e}")
            raise PaymentProcessingFailed(f"Payment {label} failed") from e

    def _commit_after_settle(self, action, appointment: Appointment, label: str) -> None:
        appointment_id = appointment.id
        reference = appointment.payment_reference if action is not None else None
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            if reference:
                # The provider call cannot be taken back; the row still shows the old payment status
                logger.error(
                    f"Payment {label} for appointment {appointment_id} succeeded at the provider "
                    f"(reference {reference}) but the status change was not saved"
                )
            raise

    def _end_video_room(self, appointment: Appointment) -> None:
        if self.video is None or not appointment.video_room_name:
            return
        try:
            self.video.end_room(appointment.video_room_name)
        except Exception as e:
            logger.error(f"Failed to end video room {appointment.video_room_name}: {e}")

    @staticmethod
    def _require_party(appointment: Appointment, actor: Actor) -> CancelledBy:
        party = actor.party(appointment)
        if party is None:
            raise NotAuthorized()
        return party

    @staticmethod
    def _require_doctor_or_admin(appointment: Appointment, actor: Actor) -> None:
        if not (actor.is_doctor_of(appointment) or actor.is_admin):
            raise NotAuthorized()

    @staticmethod
    def _require_source(appointment: Appointment, action: str) -> None:
        if not can_transition(appointment.status, action):
            raise InvalidTransition(
                f"Cannot {action.replace('_', ' ')} an appointment that is {appointment.status.value}"
            )
