from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import Optional
import logging

from ...core.database import get_db
from ...api.deps import get_notifier, get_payment_gateway
from ...services.booking_service import BookingService
from ...services.notification_service import Notifier
from ...services.payment_gateway import PaymentGateway, PaymentEvent, PaymentGatewayError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

CONFIRM_EVENTS = ("payment_intent.amount_capturable_updated", "payment_intent.succeeded")

def handle_payment_event(
    db: Session,
    payments: PaymentGateway,
    notifier: Notifier,
    event: PaymentEvent
) -> None:
    """Apply one verified provider event. Blocking: database, provider and notification calls."""
    service = BookingService(db, payments, notifier=notifier)

    if event.type in CONFIRM_EVENTS:
        service.confirm_payment_by_reference(event.reference_id)
    elif event.type == "payment_intent.payment_failed":
        service.fail_payment_by_reference(event.reference_id)
    elif event.type == "charge.refunded":
        service.mark_refunded_by_reference(event.reference_id)
    else:
        logger.info(f"Ignoring payment event {event.type}")

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    payments: PaymentGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier)
):
    """
    Provider callbacks. Deliveries may repeat or race the client's own
    confirmation, so every branch is idempotent.
    """
    payload = await request.body()
    try:
        event = payments.parse_webhook(payload, stripe_signature)
    except PaymentGatewayError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature"
        )

    await run_in_threadpool(handle_payment_event, db, payments, notifier, event)
    return {"received": True}
