"""SQLAlchemy models and status / plan-tier constants."""

from __future__ import annotations

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_OWNER = "OWNER"
ROLE_PROVIDER = "PROVIDER"
ROLE_ADMIN = "ADMIN"

VALID_ROLES = {ROLE_OWNER, ROLE_PROVIDER, ROLE_ADMIN}

# ---------------------------------------------------------------------------
# Booking lifecycle
# ---------------------------------------------------------------------------

BOOKING_PENDING = "PENDING"
BOOKING_ONGOING = "ONGOING"
BOOKING_COMPLETED = "COMPLETED"
BOOKING_CANCELLED = "CANCELLED"

VALID_BOOKING_STATUSES = {BOOKING_PENDING, BOOKING_ONGOING, BOOKING_COMPLETED, BOOKING_CANCELLED}
TERMINAL_BOOKING_STATUSES = {BOOKING_COMPLETED, BOOKING_CANCELLED}

PAYMENT_UNPAID = "UNPAID"
PAYMENT_PAID = "PAID"
PAYMENT_REFUNDED = "REFUNDED"

VALID_PAYMENT_STATUSES = {PAYMENT_UNPAID, PAYMENT_PAID, PAYMENT_REFUNDED}
VALID_PAYMENT_METHODS = {"STRIPE"}

# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------

PLAN_FREE = "FREE"

EVENT_PURCHASE = "purchase"
EVENT_RENEWAL = "renewal"
EVENT_CANCELLATION = "cancellation"

VALID_PAYMENT_EVENT_KINDS = {EVENT_PURCHASE, EVENT_RENEWAL, EVENT_CANCELLATION}

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

NOTIFY_BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
NOTIFY_BOOKING_REJECTED = "BOOKING_REJECTED"
NOTIFY_BOOKING_CANCELLED = "BOOKING_CANCELLED"
NOTIFY_BOOKING_COMPLETED = "BOOKING_COMPLETED"
NOTIFY_BOOKING_LIMIT_REACHED = "BOOKING_LIMIT_REACHED"
NOTIFY_PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
NOTIFY_SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
NOTIFY_SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
NOTIFY_SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(30))
    role = db.Column(db.String(20), nullable=False, default=ROLE_OWNER)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    subscription = db.relationship(
        "ProviderSubscription", back_populates="provider", uselist=False
    )


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)


class Service(db.Model):
    """A bookable hourly service offered by one provider in one category."""
    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text)
    rate_by_hour = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    ratings_average = db.Column(db.Float, default=0.0, nullable=False)
    ratings_count = db.Column(db.Integer, default=0, nullable=False)
    total_orders = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    provider = db.relationship("User")
    category = db.relationship("Category")


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------

class ProviderSubscription(db.Model):
    """Plan record and usage counters, exactly one per provider."""
    id = db.Column(db.Integer, primary_key=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("user.id"), unique=True, nullable=False)
    current_plan = db.Column(db.String(30), nullable=False, default=PLAN_FREE, index=True)
    plan_expiry_date = db.Column(db.DateTime, index=True)
    active_service_count = db.Column(db.Integer, nullable=False, default=0)
    distinct_category_count = db.Column(db.Integer, nullable=False, default=0)
    bookings_this_month = db.Column(db.Integer, nullable=False, default=0)
    usage_period = db.Column(db.String(7))  # YYYY-MM of the last counter reset
    booking_limit_exceeded = db.Column(db.Boolean, nullable=False, default=False)
    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    cancelled_at = db.Column(db.DateTime)
    cancellation_reason = db.Column(db.String(255))
    external_subscription_id = db.Column(db.String(120), index=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    provider = db.relationship("User", back_populates="subscription")

    __table_args__ = (
        db.CheckConstraint("active_service_count >= 0", name="ck_sub_services_nonneg"),
        db.CheckConstraint("distinct_category_count >= 0", name="ck_sub_categories_nonneg"),
        db.CheckConstraint("bookings_this_month >= 0", name="ck_sub_bookings_nonneg"),
        db.CheckConstraint(
            "distinct_category_count <= active_service_count",
            name="ck_sub_categories_le_services",
        ),
    )


class PaymentEvent(db.Model):
    """Ledger of applied subscription payment events (webhook redelivery guard)."""
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(120), unique=True, nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    kind = db.Column(db.String(30), nullable=False)
    plan_tier = db.Column(db.String(30))
    period_end = db.Column(db.DateTime)
    received_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------

class Booking(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("service.id"), nullable=False)
    scheduled_at = db.Column(db.DateTime, nullable=False)
    city = db.Column(db.String(120), nullable=False)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    phone_number = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text)
    service_duration = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False)
    total_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=BOOKING_PENDING)

    payment_method = db.Column(db.String(30), nullable=False, default="STRIPE")
    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_UNPAID)
    transaction_id = db.Column(db.String(120))
    paid_at = db.Column(db.DateTime)
    refund_id = db.Column(db.String(120))
    refunded_at = db.Column(db.DateTime)

    completion_code = db.Column(db.String(64))
    completion_issued_at = db.Column(db.DateTime)
    completed_at = db.Column(db.DateTime)

    rating = db.Column(db.Integer)
    review = db.Column(db.Text)
    rated_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    customer = db.relationship("User", foreign_keys=[customer_id])
    provider = db.relationship("User", foreign_keys=[provider_id])
    service = db.relationship("Service")

    __table_args__ = (
        db.Index("ix_booking_customer_scheduled", "customer_id", "scheduled_at"),
        db.Index("ix_booking_provider_scheduled", "provider_id", "scheduled_at"),
        db.Index("ix_booking_service_status", "service_id", "status"),
        db.CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_booking_rating"),
    )

    @property
    def address(self) -> dict:
        return {"city": self.city, "latitude": self.latitude, "longitude": self.longitude}


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class Notification(db.Model):
    """In-app notification row; delivery channels are handled elsewhere."""
    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    kind = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(160), nullable=False)
    message = db.Column(db.Text, default="")
    data = db.Column(db.Text)  # JSON string
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=utc_now)
