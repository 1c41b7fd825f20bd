"""
Video consultations.

``DailyVideoClient`` wraps the Daily.co REST API. ``VideoSessionService``
creates the room for a video appointment lazily, the first time a participant
joins inside the allowed window around the scheduled start.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.clock import clinic_now, utcnow
from ..core.config import Settings, settings
from ..core.exceptions import (
    InvalidTransition, NotAuthorized, OutsideVideoWindow,
)
from ..models.appointment import Appointment, AppointmentStatus, AppointmentType
from ..models.user import User
from .actors import Actor
from .lifecycle import load_appointment

logger = logging.getLogger(__name__)


class VideoProviderError(Exception):
    """Raised when the video provider rejects or fails a request."""


@dataclass
class VideoRoom:
    name: str
    url: str


class VideoClient:
    """Interface the booking core depends on."""

    def create_room(self, name: str) -> VideoRoom:
        raise NotImplementedError

    def issue_token(self, room: str, user_id: str, display_name: str, is_host: bool) -> str:
        raise NotImplementedError

    def end_room(self, name: str) -> None:
        raise NotImplementedError


class DailyVideoClient(VideoClient):
    def __init__(self, config: Settings, client: Optional[httpx.Client] = None):
        self.config = config
        self.client = client or httpx.Client(
            base_url=config.DAILY_API_URL,
            headers={"Authorization": f"Bearer {config.DAILY_API_KEY}"},
            timeout=15.0,
        )

    def create_room(self, name: str) -> VideoRoom:
        expires = int(time.time()) + self.config.VIDEO_ROOM_TTL_SECONDS
        response = self.client.post("/rooms", json={
            "name": name,
            "properties": {
                "max_participants": 2,
                "enable_chat": True,
                "enable_screenshare": True,
                "exp": expires,
                "eject_at_room_exp": True,
            },
        })

        # Daily answers 400 when the room already exists
        if response.status_code == 400:
            response = self.client.get(f"/rooms/{name}")

        data = self._json(response, "create room")
        return VideoRoom(name=data["name"], url=data["url"])

    def issue_token(self, room: str, user_id: str, display_name: str, is_host: bool) -> str:
        response = self.client.post("/meeting-tokens", json={
            "properties": {
                "room_name": room,
                "user_name": display_name,
                "user_id": user_id,
                "is_owner": is_host,
                "exp": int(time.time()) + self.config.VIDEO_ROOM_TTL_SECONDS,
            },
        })
        return self._json(response, "issue token")["token"]

    def end_room(self, name: str) -> None:
        response = self.client.delete(f"/rooms/{name}")
        if response.status_code == 404:
            return
        self._json(response, "end room")

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _json(response: httpx.Response, action: str) -> dict:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"Daily.co {action} failed: {e.response.status_code} {e.response.text}")
            raise VideoProviderError(f"Failed to {action}") from e
        return response.json()


class VideoSessionService:
    def __init__(
        self,
        db: Session,
        video: VideoClient,
        config: Settings = settings,
        clock: Optional[Callable[[], datetime]] = None,
        utc_clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.video = video
        self.config = config
        # Clinic wall-clock for the join window, naive UTC for stored timestamps
        self.clock = clock or clinic_now
        self.utc_clock = utc_clock

    def join(self, appointment_id: int, actor: Actor, now: Optional[datetime] = None) -> dict:
        """Room URL and a participant token, creating the room on first join."""
        appointment = load_appointment(self.db, appointment_id)

        if appointment.type != AppointmentType.VIDEO:
            raise InvalidTransition("Not a video appointment")
        is_doctor = actor.is_doctor_of(appointment)
        if not (is_doctor or actor.is_patient_of(appointment)):
            raise NotAuthorized()
        if appointment.status not in (AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS):
            raise InvalidTransition(f"Cannot join an appointment that is {appointment.status.value}")

        self._check_window(appointment, now or self.clock())

        if not appointment.video_room_name:
            room = self.video.create_room(f"{self.config.VIDEO_ROOM_PREFIX}-{appointment.id}")
            self.db.execute(
                update(Appointment)
                .where(Appointment.id == appointment.id, Appointment.video_room_name.is_(None))
                .values(video_room_name=room.name, video_room_url=room.url)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            appointment = load_appointment(self.db, appointment_id)
            logger.info(f"Video room {appointment.video_room_name} ready for appointment {appointment.id}")

        user = self.db.get(User, actor.user_id)
        if is_doctor:
            display_name = f"Dr. {user.last_name}" if user else "Doctor"
        else:
            display_name = user.full_name if user else "Patient"

        token = self.video.issue_token(
            appointment.video_room_name, str(actor.user_id), display_name, is_doctor,
        )
        return {
            "room_name": appointment.video_room_name,
            "room_url": appointment.video_room_url,
            "token": token,
        }

    def end(self, appointment_id: int, actor: Actor) -> Appointment:
        appointment = load_appointment(self.db, appointment_id)
        if not (actor.is_doctor_of(appointment) or actor.is_admin):
            raise NotAuthorized("Only doctors can end sessions")

        if appointment.video_room_name:
            self.video.end_room(appointment.video_room_name)

        ended_at = self.utc_clock()
        values = {"video_ended_at": ended_at}
        if appointment.video_started_at:
            values["video_duration"] = int((ended_at - appointment.video_started_at).total_seconds())
        self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return load_appointment(self.db, appointment_id)

    def _check_window(self, appointment: Appointment, now: datetime) -> None:
        hours, minutes = (int(part) for part in appointment.start_time.split(":"))
        scheduled = datetime.combine(appointment.date, datetime.min.time()).replace(hour=hours, minute=minutes)
        window_start = scheduled - timedelta(minutes=self.config.VIDEO_JOIN_BEFORE_MINUTES)
        window_end = scheduled + timedelta(minutes=self.config.VIDEO_JOIN_AFTER_MINUTES)
        if now < window_start or now > window_end:
            raise OutsideVideoWindow(
                f"Video call only available {self.config.VIDEO_JOIN_BEFORE_MINUTES} min before "
                f"to {self.config.VIDEO_JOIN_AFTER_MINUTES} min after appointment time"
            )
