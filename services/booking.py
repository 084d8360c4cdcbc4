"""Booking lifecycle.

    PENDING --accept--> ONGOING --complete (proof)--> COMPLETED
       |
       +--reject / cancel--> CANCELLED

COMPLETED and CANCELLED are terminal.  Every transition is a conditional
``UPDATE ... WHERE status = <source>`` so that of two concurrent attempts on
the same booking exactly one wins; the loser gets ``InvalidState``.  All
checks run before the first write and each operation is one unit of work.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from flask import current_app
from sqlalchemy import update

from config_models import BookingConfig
from errors import Forbidden, InvalidInput, InvalidProof, InvalidState, NotFound
from extensions import db, unit_of_work
from models import (
    BOOKING_CANCELLED,
    BOOKING_COMPLETED,
    BOOKING_ONGOING,
    BOOKING_PENDING,
    NOTIFY_BOOKING_ACCEPTED,
    NOTIFY_BOOKING_CANCELLED,
    NOTIFY_BOOKING_COMPLETED,
    NOTIFY_BOOKING_REJECTED,
    PAYMENT_UNPAID,
    VALID_BOOKING_STATUSES,
    VALID_PAYMENT_METHODS,
    Booking,
    User,
)
from services.catalog import service_catalog
from services.completion_proof import CompletionProof, new_secret, secrets_match
from services.entitlements import entitlement_checker
from services.notifications import notify
from services.ports import EntitlementChecker, ServiceCatalog
from utils import as_utc, money, parse_datetime, to_decimal, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    BOOKING_PENDING: {BOOKING_ONGOING, BOOKING_CANCELLED},
    BOOKING_ONGOING: {BOOKING_COMPLETED},
    BOOKING_COMPLETED: set(),
    BOOKING_CANCELLED: set(),
}

_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")


def can_transition(source: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def _booking_config() -> BookingConfig:
    return current_app.config["BOOKING_CONFIG"]


def _validate_address(address) -> dict:
    if not isinstance(address, dict):
        raise InvalidInput("Address must contain city, latitude and longitude")
    city = str(address.get("city") or "").strip()
    if len(city) < 2:
        raise InvalidInput("City must be at least 2 characters")
    try:
        latitude = float(address["latitude"])
        longitude = float(address["longitude"])
    except (KeyError, TypeError, ValueError):
        raise InvalidInput("Latitude and longitude are required numbers")
    if not -90 <= latitude <= 90:
        raise InvalidInput("Invalid latitude", latitude=latitude)
    if not -180 <= longitude <= 180:
        raise InvalidInput("Invalid longitude", longitude=longitude)
    return {"city": city, "latitude": latitude, "longitude": longitude}


class BookingService:
    """Booking state machine.

    Depends only on the ``ServiceCatalog`` and ``EntitlementChecker``
    capabilities, which are injected.
    """

    def __init__(self, catalog: ServiceCatalog, entitlements: EntitlementChecker):
        self.catalog = catalog
        self.entitlements = entitlements

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _load(booking_id: int) -> Booking:
        booking = db.session.get(Booking, booking_id)
        if booking is None:
            raise NotFound("Booking not found", booking_id=booking_id)
        return booking

    @staticmethod
    def _require_provider(booking: Booking, provider_id: int, action: str) -> None:
        if booking.provider_id != provider_id:
            raise Forbidden(f"Only the assigned provider can {action} this booking", booking_id=booking.id)

    @staticmethod
    def _require_owner(booking: Booking, owner_id: int, action: str) -> None:
        if booking.customer_id != owner_id:
            raise Forbidden(f"Only the booking owner can {action} this booking", booking_id=booking.id)

    @staticmethod
    def _require_status(booking: Booking, expected: str, action: str) -> None:
        if booking.status != expected:
            raise InvalidState(
                f"Only {expected.lower()} bookings can be {action}",
                booking_id=booking.id,
                status=booking.status,
            )

    @staticmethod
    def _transition(booking: Booking, source: str, target: str, *conditions, **values) -> None:
        """Move *booking* from *source* to *target* iff it is still in *source*."""
        if not can_transition(source, target):
            raise InvalidState(f"{source} -> {target} is not a valid transition", booking_id=booking.id)
        stmt = (
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == source, *conditions)
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount != 1:
            db.session.refresh(booking)
            raise InvalidState(
                f"Booking is no longer {source.lower()}",
                booking_id=booking.id,
                status=booking.status,
            )
        db.session.refresh(booking)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        customer_id: int,
        service_id: int,
        scheduled_at,
        duration,
        address: dict,
        phone_number: str,
        payment_method: str = "STRIPE",
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Create a PENDING, UNPAID booking after the provider's intake check."""
        if db.session.get(User, customer_id) is None:
            raise NotFound("Customer not found", customer_id=customer_id)
        service = self.catalog.get_service(service_id)
        if service is None:
            raise NotFound("Service not found", service_id=service_id)

        now = as_utc(now) or utc_now()
        when = parse_datetime(scheduled_at)
        if when is None:
            raise InvalidInput("Scheduled date is required")
        if when <= now:
            raise InvalidInput("Scheduled date must be in the future", scheduled_at=when)

        cfg = _booking_config()
        hours = to_decimal(duration)
        if hours is not None:
            hours = hours.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if hours is None or hours <= 0:
            raise InvalidInput("Service duration must be greater than 0", duration=duration)
        if hours < to_decimal(cfg.min_duration_hours) or hours > to_decimal(cfg.max_duration_hours):
            raise InvalidInput(
                f"Service duration must be between {cfg.min_duration_hours} and "
                f"{cfg.max_duration_hours} hours",
                duration=duration,
            )
        location = _validate_address(address)
        phone_number = (phone_number or "").strip()
        if not _PHONE_RE.match(phone_number):
            raise InvalidInput("Please provide a valid phone number")
        if payment_method not in VALID_PAYMENT_METHODS:
            raise InvalidInput("Unsupported payment method", payment_method=payment_method)

        total_amount = money(service.rate_by_hour * hours)

        with unit_of_work():
            self.entitlements.reserve_booking_slot(service.provider_id)
            booking = Booking(
                customer_id=customer_id,
                provider_id=service.provider_id,
                service_id=service.id,
                scheduled_at=when,
                city=location["city"],
                latitude=location["latitude"],
                longitude=location["longitude"],
                phone_number=phone_number,
                description=description,
                service_duration=hours,
                total_amount=total_amount,
                status=BOOKING_PENDING,
                payment_method=payment_method,
                payment_status=PAYMENT_UNPAID,
            )
            db.session.add(booking)
        logger.info(
            "Created booking %s: customer=%s provider=%s service=%s total=%s",
            booking.id, customer_id, booking.provider_id, service_id, total_amount,
        )
        return booking

    # ------------------------------------------------------------------
    # Provider / owner transitions
    # ------------------------------------------------------------------

    def accept_by_provider(self, booking_id: int, provider_id: int) -> Booking:
        booking = self._load(booking_id)
        self._require_provider(booking, provider_id, "accept")
        self._require_status(booking, BOOKING_PENDING, "accepted")
        with unit_of_work():
            self._transition(booking, BOOKING_PENDING, BOOKING_ONGOING)
            notify(booking.customer_id, NOTIFY_BOOKING_ACCEPTED, "Booking accepted", data={"booking_id": booking.id})
        logger.info("Booking %s accepted by provider %s", booking_id, provider_id)
        return booking

    def reject_by_provider(self, booking_id: int, provider_id: int) -> Booking:
        booking = self._load(booking_id)
        self._require_provider(booking, provider_id, "reject")
        self._require_status(booking, BOOKING_PENDING, "rejected")
        with unit_of_work():
            self._transition(booking, BOOKING_PENDING, BOOKING_CANCELLED)
            notify(booking.customer_id, NOTIFY_BOOKING_REJECTED, "Booking rejected", data={"booking_id": booking.id})
        logger.info("Booking %s rejected by provider %s", booking_id, provider_id)
        return booking

    def cancel_by_owner(self, booking_id: int, customer_id: int) -> Booking:
        """Owners may only cancel while the booking is still PENDING."""
        booking = self._load(booking_id)
        self._require_owner(booking, customer_id, "cancel")
        self._require_status(booking, BOOKING_PENDING, "cancelled")
        with unit_of_work():
            self._transition(booking, BOOKING_PENDING, BOOKING_CANCELLED)
            notify(booking.provider_id, NOTIFY_BOOKING_CANCELLED, "Booking cancelled", data={"booking_id": booking.id})
        logger.info("Booking %s cancelled by owner %s", booking_id, customer_id)
        return booking

    # ------------------------------------------------------------------
    # Completion proof
    # ------------------------------------------------------------------

    def generate_completion_proof(
        self, booking_id: int, provider_id: int, now: Optional[datetime] = None
    ) -> CompletionProof:
        """Issue a fresh secret for an ONGOING booking; any previous one stops working."""
        booking = self._load(booking_id)
        self._require_provider(booking, provider_id, "generate a completion code for")
        self._require_status(booking, BOOKING_ONGOING, "given a completion code")

        issued_at = as_utc(now) or utc_now()
        secret = new_secret()
        with unit_of_work():
            result = db.session.execute(
                update(Booking)
                .where(Booking.id == booking.id, Booking.status == BOOKING_ONGOING)
                .values(completion_code=secret, completion_issued_at=issued_at, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidState("Booking is no longer ongoing", booking_id=booking.id)
        db.session.refresh(booking)
        logger.info("Issued completion code for booking %s", booking_id)
        return CompletionProof(
            booking_id=booking.id,
            secret=secret,
            provider_id=provider_id,
            issued_at=issued_at,
        )

    def complete_by_owner(
        self, booking_id: int, secret: str, owner_id: int, now: Optional[datetime] = None
    ) -> Booking:
        booking = self._load(booking_id)
        self._require_owner(booking, owner_id, "complete")
        self._require_status(booking, BOOKING_ONGOING, "completed")
        if not secrets_match(booking.completion_code, secret):
            logger.warning("Rejected completion code for booking %s", booking_id)
            raise InvalidProof("Invalid completion code", booking_id=booking.id)

        with unit_of_work():
            result = db.session.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.status == BOOKING_ONGOING,
                    Booking.completion_code == booking.completion_code,
                )
                .values(
                    status=BOOKING_COMPLETED,
                    completed_at=as_utc(now) or utc_now(),
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.refresh(booking)
                if booking.status != BOOKING_ONGOING:
                    raise InvalidState("Booking is no longer ongoing", booking_id=booking.id, status=booking.status)
                raise InvalidProof("Invalid completion code", booking_id=booking.id)
            self.catalog.record_completed_order(booking.service_id)
            notify(
                booking.customer_id,
                NOTIFY_BOOKING_COMPLETED,
                "Booking completed",
                "You can now rate and review the service.",
                data={"booking_id": booking.id},
            )
            notify(booking.provider_id, NOTIFY_BOOKING_COMPLETED, "Booking completed", data={"booking_id": booking.id})
        db.session.refresh(booking)
        logger.info("Booking %s completed by owner %s", booking_id, owner_id)
        return booking

    # ------------------------------------------------------------------
    # Rating
    # ------------------------------------------------------------------

    def rate(
        self,
        booking_id: int,
        owner_id: int,
        rating: int,
        review: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Rate a completed booking once and fold it into the service average."""
        booking = self._load(booking_id)
        self._require_owner(booking, owner_id, "rate")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidInput("Rating must be an integer between 1 and 5", rating=rating)
        self._require_status(booking, BOOKING_COMPLETED, "rated")
        if booking.rating is not None:
            raise InvalidState("Booking has already been rated", booking_id=booking.id)

        with unit_of_work():
            result = db.session.execute(
                update(Booking)
                .where(
                    Booking.id == booking.id,
                    Booking.status == BOOKING_COMPLETED,
                    Booking.rating.is_(None),
                )
                .values(
                    rating=rating,
                    review=(review or "").strip() or None,
                    rated_at=as_utc(now) or utc_now(),
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidState("Booking has already been rated", booking_id=booking.id)
            self.catalog.record_rating(booking.service_id, rating)
        db.session.refresh(booking)
        logger.info("Booking %s rated %s by owner %s", booking_id, rating, owner_id)
        return booking

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking_for_party(self, booking_id: int, user_id: int) -> Booking:
        booking = self._load(booking_id)
        if user_id not in (booking.customer_id, booking.provider_id):
            raise Forbidden("Access denied", booking_id=booking_id)
        return booking

    @staticmethod
    def _paginate(query, status: Optional[str], page: int, per_page: int) -> dict:
        if status is not None:
            if status not in VALID_BOOKING_STATUSES:
                raise InvalidInput("Unknown booking status", status=status)
            query = query.filter(Booking.status == status)
        page = max(1, int(page or 1))
        per_page = max(1, min(int(per_page or 10), 100))
        result = query.paginate(page=page, per_page=per_page, error_out=False)
        return {
            "bookings": result.items,
            "pagination": {
                "page": page,
                "limit": per_page,
                "total": result.total,
                "total_pages": result.pages,
            },
        }

    def list_customer_bookings(
        self, customer_id: int, status: Optional[str] = None, page: int = 1, per_page: int = 10
    ) -> dict:
        query = Booking.query.filter(Booking.customer_id == customer_id).order_by(
            Booking.created_at.desc(), Booking.id.desc()
        )
        return self._paginate(query, status, page, per_page)

    def list_provider_bookings(
        self, provider_id: int, status: Optional[str] = None, page: int = 1, per_page: int = 10
    ) -> dict:
        query = Booking.query.filter(Booking.provider_id == provider_id).order_by(
            Booking.scheduled_at.asc(), Booking.id.asc()
        )
        return self._paginate(query, status, page, per_page)


booking_service = BookingService(service_catalog, entitlement_checker)
