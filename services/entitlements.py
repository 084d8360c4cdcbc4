"""Entitlement store: per-provider plan records and usage counters.

Reads go through the pure evaluators in ``services.limits``.  Every gated
write re-checks the limit inside a single conditional ``UPDATE`` so that two
concurrent requests can never both slip under a cap.  None of the functions
here commit; they run inside the caller's ``unit_of_work``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func, select, update

from config_models import BillingConfig, PlanLimits
from errors import Forbidden, NotFound
from extensions import db, unit_of_work
from models import (
    NOTIFY_BOOKING_LIMIT_REACHED,
    ROLE_PROVIDER,
    ProviderSubscription,
    Service,
    User,
)
from services.limits import (
    REASON_BOOKING_LIMIT,
    REASON_SERVICE_LIMIT,
    LimitDecision,
    evaluate_booking_intake,
    evaluate_category,
    evaluate_service_creation,
)
from services.notifications import notify
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

# A reservation that loses a race re-reads the record and tries again.
_MAX_RESERVE_ATTEMPTS = 3


# ---------------------------------------------------------------------------
# Plan limits table
# ---------------------------------------------------------------------------

def get_billing_config() -> BillingConfig:
    return current_app.config["BILLING_CONFIG"]


def get_plan_limits(tier: Optional[str]) -> PlanLimits:
    """Return the limits for *tier*, falling back to the default tier."""
    billing = get_billing_config()
    if tier and tier in billing.plans:
        return billing.plans[tier]
    return billing.plans[billing.default_tier]


def list_plans() -> list[dict]:
    plans = sorted(get_billing_config().plans.values(), key=lambda p: (-p.priority, p.price_monthly))
    return [
        {
            "tier": p.tier,
            "name": p.display_name,
            "price_monthly": p.price_monthly,
            "badge": p.badge,
            "priority": p.priority,
            "limits": {
                "max_active_services": p.max_active_services,
                "max_categories": p.max_categories,
                "max_bookings_per_month": p.max_bookings_per_month,
            },
        }
        for p in plans
    ]


# ---------------------------------------------------------------------------
# Plan records
# ---------------------------------------------------------------------------

def _get_provider(provider_id: int) -> User:
    provider = db.session.get(User, provider_id)
    if provider is None:
        raise NotFound("Provider not found", provider_id=provider_id)
    if provider.role != ROLE_PROVIDER:
        raise Forbidden("Only providers have subscription plans", user_id=provider_id)
    return provider


def _find_record(provider_id: int) -> Optional[ProviderSubscription]:
    return ProviderSubscription.query.filter_by(provider_id=provider_id).first()


def ensure_subscription(provider_id: int) -> ProviderSubscription:
    """Return the provider's plan record, creating the default-tier one if absent."""
    _get_provider(provider_id)
    record = _find_record(provider_id)
    if record is None:
        record = ProviderSubscription(
            provider_id=provider_id,
            current_plan=get_billing_config().default_tier,
        )
        db.session.add(record)
        db.session.flush()
        logger.info("Created %s plan record for provider %s", record.current_plan, provider_id)
    return record


def register_provider(name: str, email: str, phone: Optional[str] = None) -> User:
    """Create a provider account together with its default plan record."""
    with unit_of_work():
        provider = User(name=name, email=email, phone=phone, role=ROLE_PROVIDER)
        db.session.add(provider)
        db.session.flush()
        ensure_subscription(provider.id)
    logger.info("Registered provider %s", provider.id)
    return provider


def get_subscription(provider_id: int) -> ProviderSubscription:
    """Return the stored record, or a transient default one (never persisted)."""
    _get_provider(provider_id)
    record = _find_record(provider_id)
    if record is None:
        record = ProviderSubscription(
            provider_id=provider_id,
            current_plan=get_billing_config().default_tier,
            active_service_count=0,
            distinct_category_count=0,
            bookings_this_month=0,
        )
    return record


def provider_uses_category(provider_id: int, category_id: int) -> bool:
    row = (
        db.session.query(Service.id)
        .filter_by(provider_id=provider_id, category_id=category_id, is_active=True)
        .first()
    )
    return row is not None


# ---------------------------------------------------------------------------
# Read-only decisions
# ---------------------------------------------------------------------------

def can_create_service(provider_id: int) -> LimitDecision:
    record = get_subscription(provider_id)
    return evaluate_service_creation(get_plan_limits(record.current_plan), record.active_service_count)


def can_add_category(provider_id: int, category_id: int) -> LimitDecision:
    record = get_subscription(provider_id)
    return evaluate_category(
        get_plan_limits(record.current_plan),
        record.distinct_category_count,
        provider_uses_category(provider_id, category_id),
    )


def can_receive_booking(provider_id: int) -> LimitDecision:
    record = get_subscription(provider_id)
    return evaluate_booking_intake(get_plan_limits(record.current_plan), record.bookings_this_month)


# ---------------------------------------------------------------------------
# Atomic check-and-increment
# ---------------------------------------------------------------------------

def reserve_booking_slot(provider_id: int) -> LimitDecision:
    """Count one booking against the provider's monthly cap, or raise ``LimitExceeded``.

    The increment is guarded by the plan and the counter value observed at
    evaluation time, so a concurrent reservation or plan change makes the
    update miss and the decision is taken again on fresh data.
    """
    for _attempt in range(_MAX_RESERVE_ATTEMPTS):
        record = ensure_subscription(provider_id)
        db.session.refresh(record)
        plan = get_plan_limits(record.current_plan)
        decision = evaluate_booking_intake(plan, record.bookings_this_month)
        if not decision.allowed:
            logger.warning(
                "Booking intake denied: provider=%s plan=%s usage=%s/%s",
                provider_id, plan.tier, decision.current, decision.limit,
            )
            decision.raise_if_denied()

        stmt = update(ProviderSubscription).where(
            ProviderSubscription.id == record.id,
            ProviderSubscription.current_plan == record.current_plan,
        )
        if not PlanLimits.is_unlimited(plan.max_bookings_per_month):
            stmt = stmt.where(ProviderSubscription.bookings_this_month < plan.max_bookings_per_month)
        stmt = stmt.values(
            bookings_this_month=ProviderSubscription.bookings_this_month + 1,
            updated_at=utc_now(),
        ).execution_options(synchronize_session=False)

        if db.session.execute(stmt).rowcount == 1:
            db.session.refresh(record)
            _flag_booking_cap(record, plan)
            return decision
        logger.info("Booking slot reservation for provider %s lost a race, retrying", provider_id)

    record = ensure_subscription(provider_id)
    db.session.refresh(record)
    plan = get_plan_limits(record.current_plan)
    _deny_contended(evaluate_booking_intake(plan, record.bookings_this_month), REASON_BOOKING_LIMIT)


def _deny_contended(decision: LimitDecision, reason: str) -> None:
    """Give up on a reservation that kept losing races."""
    decision.raise_if_denied()
    LimitDecision(**{**decision.to_dict(), "allowed": False, "reason": reason}).raise_if_denied()


def _flag_booking_cap(record: ProviderSubscription, plan: PlanLimits) -> None:
    """Mark the provider as capped the first time the monthly limit is hit."""
    limit = plan.max_bookings_per_month
    if PlanLimits.is_unlimited(limit) or record.bookings_this_month < limit:
        return
    if record.booking_limit_exceeded:
        return
    record.booking_limit_exceeded = True
    notify(
        record.provider_id,
        NOTIFY_BOOKING_LIMIT_REACHED,
        "Booking limit reached",
        data={
            "current_plan": plan.tier,
            "bookings_this_month": record.bookings_this_month,
            "monthly_limit": limit,
        },
    )
    logger.info("Provider %s reached the %s monthly booking limit (%s)", record.provider_id, plan.tier, limit)


def _distinct_category_subquery(provider_id: int):
    return (
        select(func.count(func.distinct(Service.category_id)))
        .where(Service.provider_id == provider_id, Service.is_active.is_(True))
        .scalar_subquery()
    )


def reserve_service_slot(provider_id: int, category_id: int) -> tuple[LimitDecision, LimitDecision]:
    """Count one more active service (and possibly a new category) for the provider.

    Must be followed by ``sync_category_count`` once the service row is
    flushed, in the same unit of work.
    """
    for _attempt in range(_MAX_RESERVE_ATTEMPTS):
        record = ensure_subscription(provider_id)
        db.session.refresh(record)
        plan = get_plan_limits(record.current_plan)
        in_use = provider_uses_category(provider_id, category_id)

        service_decision = evaluate_service_creation(plan, record.active_service_count)
        category_decision = evaluate_category(plan, record.distinct_category_count, in_use)
        for decision in (service_decision, category_decision):
            if not decision.allowed:
                logger.warning(
                    "%s denied: provider=%s plan=%s usage=%s/%s",
                    decision.action, provider_id, plan.tier, decision.current, decision.limit,
                )
                decision.raise_if_denied()

        values = {
            "active_service_count": ProviderSubscription.active_service_count + 1,
            "updated_at": utc_now(),
        }
        stmt = update(ProviderSubscription).where(
            ProviderSubscription.id == record.id,
            ProviderSubscription.current_plan == record.current_plan,
        )
        if not PlanLimits.is_unlimited(plan.max_active_services):
            stmt = stmt.where(ProviderSubscription.active_service_count < plan.max_active_services)
        if not in_use:
            values["distinct_category_count"] = ProviderSubscription.distinct_category_count + 1
            if not PlanLimits.is_unlimited(plan.max_categories):
                stmt = stmt.where(ProviderSubscription.distinct_category_count < plan.max_categories)

        result = db.session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        if result.rowcount == 1:
            db.session.refresh(record)
            return service_decision, category_decision
        logger.info("Service slot reservation for provider %s lost a race, retrying", provider_id)

    record = ensure_subscription(provider_id)
    db.session.refresh(record)
    plan = get_plan_limits(record.current_plan)
    _deny_contended(evaluate_service_creation(plan, record.active_service_count), REASON_SERVICE_LIMIT)


def sync_category_count(provider_id: int) -> None:
    """Recompute the distinct category count from the provider's active services."""
    db.session.flush()
    db.session.execute(
        update(ProviderSubscription)
        .where(ProviderSubscription.provider_id == provider_id)
        .values(distinct_category_count=_distinct_category_subquery(provider_id))
        .execution_options(synchronize_session=False)
    )


def release_service_slot(provider_id: int) -> None:
    """Give back one active-service slot after a service was deactivated."""
    db.session.flush()
    db.session.execute(
        update(ProviderSubscription)
        .where(
            ProviderSubscription.provider_id == provider_id,
            ProviderSubscription.active_service_count > 0,
        )
        .values(
            active_service_count=ProviderSubscription.active_service_count - 1,
            distinct_category_count=_distinct_category_subquery(provider_id),
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    record = _find_record(provider_id)
    if record is not None:
        db.session.refresh(record)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

def subscription_overview(provider_id: int, now: Optional[datetime] = None) -> dict:
    """Plan, limits, usage and the three current decisions for a provider."""
    now = as_utc(now) or utc_now()
    record = get_subscription(provider_id)
    plan = get_plan_limits(record.current_plan)
    expiry = as_utc(record.plan_expiry_date)
    days_remaining = 0
    if expiry is not None and expiry > now:
        days_remaining = math.ceil((expiry - now).total_seconds() / 86400)
    return {
        "provider_id": provider_id,
        "current_plan": plan.tier,
        "plan_name": plan.display_name,
        "badge": plan.badge,
        "plan_expiry_date": expiry,
        "auto_renew": record.auto_renew,
        "days_remaining": days_remaining,
        "limits": {
            "max_active_services": plan.max_active_services,
            "max_categories": plan.max_categories,
            "max_bookings_per_month": plan.max_bookings_per_month,
        },
        "usage": {
            "active_services": record.active_service_count,
            "categories": record.distinct_category_count,
            "bookings_this_month": record.bookings_this_month,
        },
        "can_create_service": evaluate_service_creation(plan, record.active_service_count).allowed,
        "can_add_category": evaluate_category(plan, record.distinct_category_count, False).allowed,
        "can_receive_booking": evaluate_booking_intake(plan, record.bookings_this_month).allowed,
    }


def providers_exceeding_booking_limit() -> list[int]:
    """Providers at or over a finite monthly booking cap (hidden from listings)."""
    provider_ids: list[int] = []
    for plan in get_billing_config().plans.values():
        if PlanLimits.is_unlimited(plan.max_bookings_per_month):
            continue
        rows = (
            db.session.query(ProviderSubscription.provider_id)
            .filter(
                ProviderSubscription.current_plan == plan.tier,
                ProviderSubscription.bookings_this_month >= plan.max_bookings_per_month,
            )
            .all()
        )
        provider_ids.extend(row.provider_id for row in rows)
    return sorted(provider_ids)


class SqlEntitlementChecker:
    """Entitlement capability backed by the plan records table."""

    def can_receive_booking(self, provider_id: int) -> LimitDecision:
        return can_receive_booking(provider_id)

    def reserve_booking_slot(self, provider_id: int) -> LimitDecision:
        return reserve_booking_slot(provider_id)


entitlement_checker = SqlEntitlementChecker()
