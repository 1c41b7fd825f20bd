"""
Notification collaborator

Fire-and-forget: records an in-app notification and, when configured, sends
email (SMTP) and SMS (Twilio). Nothing raised here reaches the caller, so a
delivery problem never undoes the appointment change that triggered it.
"""
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from ..core.config import Settings
from ..models.notification import Notification
from ..models.user import User

logger = logging.getLogger(__name__)

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class Notifier:
    """Interface the booking core depends on."""

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class NotificationService(Notifier):
    def __init__(self, session_factory: Callable[[], Session], config: Settings):
        self.session_factory = session_factory
        self.config = config

    def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        title = payload.get("title", kind.capitalize())
        message = payload.get("message", "")
        data = {k: v for k, v in payload.items() if k not in ("title", "message")}

        db = self.session_factory()
        try:
            db.add(Notification(user_id=user_id, kind=kind, title=title, message=message, data=data))
            db.commit()
            user = db.get(User, user_id)
            email = user.email if user else None
            phone = user.phone_number if user else None
        except Exception as e:
            db.rollback()
            logger.error(f"Failed to record {kind} notification for user {user_id}: {e}")
            return
        finally:
            db.close()

        if email:
            self._send_email(email, title, message)
        if phone:
            self._send_sms(phone, f"MedBook: {message}")

    def _send_email(self, to_address: str, subject: str, body: str) -> Optional[bool]:
        if not self.config.SMTP_HOST:
            logger.debug("SMTP not configured, skipping email")
            return None

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.config.EMAIL_FROM_ADDRESS
        msg["To"] = to_address

        try:
            with smtplib.SMTP(self.config.SMTP_HOST, self.config.SMTP_PORT, timeout=10) as server:
                server.starttls()
                if self.config.SMTP_USER and self.config.SMTP_PASSWORD:
                    server.login(self.config.SMTP_USER, self.config.SMTP_PASSWORD)
                server.send_message(msg)
            logger.info(f"Email '{subject}' sent to {to_address}")
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to send email to {to_address}: {e}")
            return False

    def _send_sms(self, to_phone: str, body: str) -> Optional[bool]:
        sid = self.config.TWILIO_ACCOUNT_SID
        if not sid or not self.config.TWILIO_AUTH_TOKEN or not self.config.TWILIO_PHONE_NUMBER:
            logger.debug("Twilio not configured, skipping SMS")
            return None

        try:
            response = httpx.post(
                f"{TWILIO_API_URL}/Accounts/{sid}/Messages.json",
                data={"From": self.config.TWILIO_PHONE_NUMBER, "To": to_phone, "Body": body},
                auth=(sid, self.config.TWILIO_AUTH_TOKEN),
                timeout=10.0,
            )
            response.raise_for_status()
            logger.info(f"SMS sent to {to_phone}: {response.json().get('sid')}")
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {to_phone}: {e}")
            return False
