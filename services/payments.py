"""Booking payments and translation of verified payment-provider events.

Signature verification happens before anything reaches this module; the
functions here only apply the outcome.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from errors import Conflict, InvalidInput, InvalidState, NotFound
from extensions import db, unit_of_work
from models import (
    EVENT_CANCELLATION,
    EVENT_PURCHASE,
    EVENT_RENEWAL,
    NOTIFY_PAYMENT_RECEIVED,
    PAYMENT_PAID,
    PAYMENT_REFUNDED,
    PAYMENT_UNPAID,
    Booking,
    ProviderSubscription,
)
from services.notifications import notify
from services.subscriptions import apply_payment_event
from utils import as_utc, from_timestamp, safe_int, utc_now

logger = logging.getLogger(__name__)


def _load_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", booking_id=booking_id)
    return booking


def confirm_booking_payment(
    booking_id: int, transaction_id: str, now: Optional[datetime] = None
) -> Booking:
    """Mark a booking PAID.  Independent of the booking's lifecycle status.

    Confirming again with the same transaction is a no-op.
    """
    if not transaction_id:
        raise InvalidInput("Transaction id is required", booking_id=booking_id)
    booking = _load_booking(booking_id)
    if booking.payment_status == PAYMENT_PAID:
        if booking.transaction_id == transaction_id:
            logger.info("Booking %s already paid with %s", booking_id, transaction_id)
            return booking
        raise Conflict("Booking is already paid by another transaction", booking_id=booking_id)
    if booking.payment_status != PAYMENT_UNPAID:
        raise InvalidState("Only unpaid bookings can be paid", booking_id=booking_id, payment_status=booking.payment_status)

    with unit_of_work():
        changed = db.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.payment_status == PAYMENT_UNPAID)
            .values(
                payment_status=PAYMENT_PAID,
                transaction_id=transaction_id,
                paid_at=as_utc(now) or utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed == 1:
            notify(
                booking.provider_id,
                NOTIFY_PAYMENT_RECEIVED,
                "Payment received",
                data={"booking_id": booking_id, "amount": str(booking.total_amount)},
            )
    db.session.refresh(booking)
    if changed != 1 and booking.transaction_id != transaction_id:
        raise Conflict("Booking is already paid by another transaction", booking_id=booking_id)
    logger.info("Booking %s paid (transaction %s)", booking_id, transaction_id)
    return booking


def record_booking_refund(booking_id: int, refund_id: str, now: Optional[datetime] = None) -> Booking:
    """Mark a PAID booking REFUNDED; repeating with the same refund is a no-op."""
    if not refund_id:
        raise InvalidInput("Refund id is required", booking_id=booking_id)
    booking = _load_booking(booking_id)
    if booking.payment_status == PAYMENT_REFUNDED and booking.refund_id == refund_id:
        return booking
    if booking.payment_status != PAYMENT_PAID:
        raise InvalidState("Only paid bookings can be refunded", booking_id=booking_id, payment_status=booking.payment_status)

    with unit_of_work():
        changed = db.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.payment_status == PAYMENT_PAID)
            .values(
                payment_status=PAYMENT_REFUNDED,
                refund_id=refund_id,
                refunded_at=as_utc(now) or utc_now(),
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            raise InvalidState("Booking is no longer paid", booking_id=booking_id)
    db.session.refresh(booking)
    logger.info("Booking %s refunded (%s)", booking_id, refund_id)
    return booking


# ---------------------------------------------------------------------------
# Payment-provider events
# ---------------------------------------------------------------------------

def _subscription_by_external_id(external_id: Optional[str]) -> Optional[ProviderSubscription]:
    if not external_id:
        return None
    return ProviderSubscription.query.filter_by(external_subscription_id=external_id).first()


def _invoice_period_end(invoice: dict) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        end = from_timestamp((lines[0].get("period") or {}).get("end"))
        if end is not None:
            return end
    return from_timestamp(invoice.get("period_end"))


def _booking_id_from(data: dict) -> Optional[int]:
    booking_id = safe_int((data.get("metadata") or {}).get("bookingId"), default=0)
    if booking_id:
        return booking_id
    intent = data.get("payment_intent")
    if intent:
        booking = Booking.query.filter_by(transaction_id=intent).first()
        if booking is not None:
            return booking.id
    return None


def handle_payment_event(event: dict) -> bool:
    """Apply one verified payment-provider event.  Returns False when ignored."""
    event_type = event.get("type", "")
    event_id = event.get("id")
    data = event.get("data", {}).get("object", {})
    metadata = data.get("metadata") or {}

    if event_type == "checkout.session.completed":
        if metadata.get("type") == "subscription":
            provider_id = safe_int(metadata.get("providerId"), default=0)
            if not provider_id:
                raise InvalidInput("Checkout session has no provider", event_id=event_id)
            apply_payment_event(
                provider_id,
                EVENT_PURCHASE,
                plan_tier=metadata.get("plan"),
                period_end=from_timestamp(metadata.get("periodEnd")),
                event_id=event_id,
                external_subscription_id=data.get("subscription"),
            )
        else:
            booking_id = safe_int(metadata.get("bookingId"), default=0)
            if not booking_id:
                raise InvalidInput("Checkout session has no booking", event_id=event_id)
            confirm_booking_payment(booking_id, data.get("payment_intent") or data.get("id"))

    elif event_type == "invoice.paid":
        record = _subscription_by_external_id(data.get("subscription"))
        if record is None:
            logger.warning("invoice.paid for unknown subscription %s", data.get("subscription"))
            return False
        apply_payment_event(
            record.provider_id,
            EVENT_RENEWAL,
            period_end=_invoice_period_end(data),
            event_id=event_id,
        )

    elif event_type == "customer.subscription.deleted":
        record = _subscription_by_external_id(data.get("id"))
        if record is None:
            logger.warning("Deleted subscription %s is not linked to a provider", data.get("id"))
            return False
        apply_payment_event(
            record.provider_id,
            EVENT_CANCELLATION,
            period_end=from_timestamp(data.get("current_period_end")),
            event_id=event_id,
        )

    elif event_type == "payment_intent.succeeded":
        booking_id = safe_int(metadata.get("bookingId"), default=0)
        if not booking_id:
            logger.info("payment_intent %s carries no booking, ignoring", data.get("id"))
            return False
        confirm_booking_payment(booking_id, data.get("id"))

    elif event_type == "charge.refunded":
        booking_id = _booking_id_from(data)
        if booking_id is None:
            logger.warning("Refund for charge %s does not match a booking", data.get("id"))
            return False
        refunds = (data.get("refunds") or {}).get("data") or []
        refund_id = refunds[0].get("id") if refunds else data.get("id")
        record_booking_refund(booking_id, refund_id)

    else:
        logger.info("Ignoring payment event type %s", event_type)
        return False

    logger.info("Handled payment event %s (%s)", event_id, event_type)
    return True
