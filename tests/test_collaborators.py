import json
import smtplib

import httpx
import pytest
import stripe

from medbook.core.config import settings
from medbook.core.database import SessionLocal
from medbook.models.notification import Notification
from medbook.services.notification_service import NotificationService
from medbook.services.payment_gateway import PaymentGatewayError, StripePaymentGateway
from medbook.services.video_service import DailyVideoClient, VideoProviderError

from .factories import make_user

class FakeIntent:
    id = "pi_123"
    client_secret = "pi_123_secret_abc"

class TestStripePaymentGateway:

    def test_authorize_hold_uses_manual_capture(self, monkeypatch):
        """Holds are manual-capture PaymentIntents in the smallest currency unit."""
        captured = {}

        def create(**kwargs):
            captured.update(kwargs)
            return FakeIntent()

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        gateway = StripePaymentGateway("sk_test", currency="usd")

        hold = gateway.authorize_hold(120.5, {"slot_id": "7"})

        assert hold.reference_id == "pi_123"
        assert hold.client_secret == "pi_123_secret_abc"
        assert captured["amount"] == 12050
        assert captured["capture_method"] == "manual"
        assert captured["metadata"] == {"slot_id": "7"}

    def test_provider_error_is_wrapped(self, monkeypatch):
        """Stripe errors surface as PaymentGatewayError."""
        def create(**kwargs):
            raise stripe.StripeError("Your card was declined.")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)

        with pytest.raises(PaymentGatewayError):
            StripePaymentGateway("sk_test").authorize_hold(50, {})

    def test_capture_and_cancel(self, monkeypatch):
        """Capture and cancel are called with the intent id."""
        calls = []
        monkeypatch.setattr(stripe.PaymentIntent, "capture", lambda ref, **kw: calls.append(("capture", ref)))
        monkeypatch.setattr(stripe.PaymentIntent, "cancel", lambda ref, **kw: calls.append(("cancel", ref)))
        gateway = StripePaymentGateway("sk_test")

        gateway.capture("pi_1")
        gateway.cancel_hold("pi_2")

        assert calls == [("capture", "pi_1"), ("cancel", "pi_2")]

    def test_parse_refund_webhook(self, monkeypatch):
        """Refund events are keyed by the charge's payment intent."""
        event = {"type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_9"}}}
        monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig, secret: event)

        parsed = StripePaymentGateway("sk_test", "whsec").parse_webhook(b"{}", "sig")

        assert parsed.type == "charge.refunded"
        assert parsed.reference_id == "pi_9"

    def test_bad_webhook_signature(self, monkeypatch):
        """Signature failures are PaymentGatewayError."""
        def construct_event(payload, sig, secret):
            raise ValueError("Invalid payload")

        monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)

        with pytest.raises(PaymentGatewayError):
            StripePaymentGateway("sk_test", "whsec").parse_webhook(b"not json", "sig")

class TestNotificationService:

    def test_records_in_app_notification(self, db):
        """Every notification is stored for the in-app inbox."""
        user = make_user(db, "patient@example.com")

        NotificationService(SessionLocal, settings).notify(
            user.id, "appointment", {"title": "Booked", "message": "See you soon", "appointment_id": 3}
        )

        stored = db.query(Notification).filter_by(user_id=user.id).one()
        assert stored.title == "Booked"
        assert stored.data == {"appointment_id": 3}

    def test_delivery_failures_are_swallowed(self, db, monkeypatch):
        """SMTP and SMS errors are logged, never raised."""
        user = make_user(db, "patient@example.com", phone_number="+15550001111")
        config = settings.model_copy(update={
            "SMTP_HOST": "smtp.example.com",
            "TWILIO_ACCOUNT_SID": "AC123",
            "TWILIO_AUTH_TOKEN": "token",
            "TWILIO_PHONE_NUMBER": "+15550002222",
        })

        def broken_smtp(*args, **kwargs):
            raise OSError("connection refused")

        def broken_post(*args, **kwargs):
            raise httpx.ConnectError("twilio down")

        monkeypatch.setattr(smtplib, "SMTP", broken_smtp)
        monkeypatch.setattr(httpx, "post", broken_post)

        NotificationService(SessionLocal, config).notify(user.id, "cancellation", {"message": "Cancelled"})

        assert db.query(Notification).filter_by(user_id=user.id).count() == 1

class TestDailyVideoClient:

    def make_client(self, handler):
        http = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://api.daily.co/v1")
        return DailyVideoClient(settings, client=http)

    def test_create_room(self):
        """Rooms are created for two participants."""
        def handler(request):
            body = json.loads(request.content)
            assert body["properties"]["max_participants"] == 2
            return httpx.Response(200, json={"name": body["name"], "url": f"https://x.daily.co/{body['name']}"})

        room = self.make_client(handler).create_room("medbook-1")
        assert room.url == "https://x.daily.co/medbook-1"

    def test_existing_room_is_fetched(self):
        """A 400 on create falls back to reading the existing room."""
        def handler(request):
            if request.method == "POST":
                return httpx.Response(400, json={"error": "invalid-request-error"})
            return httpx.Response(200, json={"name": "medbook-1", "url": "https://x.daily.co/medbook-1"})

        assert self.make_client(handler).create_room("medbook-1").name == "medbook-1"

    def test_end_missing_room_is_ignored(self):
        """Ending a room that is already gone is not an error."""
        client = self.make_client(lambda request: httpx.Response(404, json={}))
        client.end_room("medbook-1")

    def test_provider_failure(self):
        """Server errors become VideoProviderError."""
        client = self.make_client(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(VideoProviderError):
            client.issue_token("medbook-1", "7", "Dr. House", True)
