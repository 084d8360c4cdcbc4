"""Subscription lifecycle: payment events and the scheduled sweeps."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update

from errors import Conflict, InvalidInput, InvalidState
from extensions import db, unit_of_work
from models import (
    EVENT_CANCELLATION,
    EVENT_RENEWAL,
    NOTIFY_SUBSCRIPTION_ACTIVATED,
    NOTIFY_SUBSCRIPTION_CANCELLED,
    NOTIFY_SUBSCRIPTION_EXPIRED,
    VALID_PAYMENT_EVENT_KINDS,
    PaymentEvent,
    ProviderSubscription,
)
from services.entitlements import ensure_subscription, get_billing_config, get_plan_limits
from services.notifications import notify
from utils import as_utc, month_key, parse_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    results: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Payment events
# ---------------------------------------------------------------------------

def _find_event(event_id: Optional[str]) -> Optional[PaymentEvent]:
    if not event_id:
        return None
    return PaymentEvent.query.filter_by(event_id=event_id).first()


def _resolve_paid_tier(record: ProviderSubscription, kind: str, plan_tier: Optional[str]) -> str:
    billing = get_billing_config()
    tier = (plan_tier or "").upper()
    if not tier and kind == EVENT_RENEWAL:
        tier = record.current_plan
    if not tier:
        raise InvalidInput(f"A {kind} event needs a plan tier", provider_id=record.provider_id)
    if tier not in billing.plans:
        raise InvalidInput("Unknown plan tier", plan_tier=plan_tier)
    if tier == billing.default_tier:
        raise InvalidInput(f"The {tier} plan cannot be purchased", plan_tier=tier)
    return tier


def apply_payment_event(
    provider_id: int,
    kind: str,
    plan_tier: Optional[str] = None,
    period_end=None,
    event_id: Optional[str] = None,
    external_subscription_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ProviderSubscription:
    """Apply a purchase, renewal or cancellation reported by the payment provider.

    Purchase and renewal switch the plan and move the expiry to *period_end*
    (``default_period_days`` from now when absent).  Cancellation only stops
    auto-renewal; access lasts until the expiry sweep downgrades the record.
    An *event_id* that was already applied makes the call a no-op.
    """
    if kind not in VALID_PAYMENT_EVENT_KINDS:
        raise InvalidInput("Unknown payment event kind", kind=kind)
    now = as_utc(now) or utc_now()
    period_end = parse_datetime(period_end)

    if _find_event(event_id) is not None:
        logger.warning("Payment event %s already applied, skipping", event_id)
        return ensure_subscription(provider_id)

    try:
        with unit_of_work():
            record = ensure_subscription(provider_id)
            if kind == EVENT_CANCELLATION:
                _apply_cancellation(record, period_end, now)
            else:
                tier = _resolve_paid_tier(record, kind, plan_tier)
                if period_end is None:
                    period_end = now + timedelta(days=get_billing_config().default_period_days)
                _apply_activation(record, kind, tier, period_end, external_subscription_id)
            if event_id:
                db.session.add(PaymentEvent(
                    event_id=event_id,
                    provider_id=provider_id,
                    kind=kind,
                    plan_tier=record.current_plan,
                    period_end=period_end,
                    received_at=now,
                ))
    except Conflict:
        # Concurrent delivery of the same event won the insert.
        if _find_event(event_id) is None:
            raise
        logger.warning("Payment event %s applied concurrently, skipping", event_id)
        return ensure_subscription(provider_id)

    logger.info(
        "Applied %s event for provider %s: plan=%s expires=%s",
        kind, provider_id, record.current_plan, record.plan_expiry_date,
    )
    return record


def _apply_activation(
    record: ProviderSubscription,
    kind: str,
    tier: str,
    period_end: datetime,
    external_subscription_id: Optional[str],
) -> None:
    record.current_plan = tier
    record.plan_expiry_date = period_end
    record.auto_renew = True
    record.cancelled_at = None
    record.cancellation_reason = None
    record.booking_limit_exceeded = False
    if external_subscription_id:
        record.external_subscription_id = external_subscription_id
    plan = get_plan_limits(tier)
    notify(
        record.provider_id,
        NOTIFY_SUBSCRIPTION_ACTIVATED,
        f"{plan.display_name} plan active",
        data={"plan": tier, "kind": kind, "plan_expiry_date": period_end.isoformat()},
    )


def _apply_cancellation(record: ProviderSubscription, period_end: Optional[datetime], now: datetime) -> None:
    if record.current_plan == get_billing_config().default_tier:
        logger.info("Cancellation for provider %s on the default plan, nothing to do", record.provider_id)
        return
    if period_end is not None:
        record.plan_expiry_date = period_end
    record.auto_renew = False
    if record.cancelled_at is None:
        record.cancelled_at = now


def cancel_subscription(
    provider_id: int, reason: Optional[str] = None, now: Optional[datetime] = None
) -> ProviderSubscription:
    """Provider-initiated cancellation effective at the end of the paid period."""
    now = as_utc(now) or utc_now()
    with unit_of_work():
        record = ensure_subscription(provider_id)
        if record.current_plan == get_billing_config().default_tier:
            raise InvalidState("The free plan cannot be cancelled", provider_id=provider_id)
        if not record.auto_renew:
            raise InvalidState("Subscription is already cancelled", provider_id=provider_id)
        record.auto_renew = False
        record.cancelled_at = now
        record.cancellation_reason = (reason or "").strip() or None
        notify(
            provider_id,
            NOTIFY_SUBSCRIPTION_CANCELLED,
            "Subscription cancelled",
            "Your plan stays active until the end of the current period.",
            data={"plan": record.current_plan, "plan_expiry_date": _iso(record.plan_expiry_date)},
        )
    logger.info("Provider %s cancelled the %s plan", provider_id, record.current_plan)
    return record


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

def downgrade_expired_subscriptions(now: Optional[datetime] = None) -> SweepResult:
    """Move every paid record whose expiry has passed back to the default tier.

    Each record is committed on its own; a failure is logged and counted and
    the sweep carries on.  Running it again finds nothing left to do.
    """
    now = as_utc(now) or utc_now()
    default_tier = get_billing_config().default_tier
    candidates = [
        row.id
        for row in db.session.query(ProviderSubscription.id)
        .filter(
            ProviderSubscription.current_plan != default_tier,
            ProviderSubscription.plan_expiry_date.isnot(None),
            ProviderSubscription.plan_expiry_date < now,
        )
        .order_by(ProviderSubscription.id)
        .all()
    ]

    result = SweepResult()
    for record_id in candidates:
        try:
            outcome = _downgrade_one(record_id, default_tier, now)
        except Exception as e:
            logger.exception("Failed to downgrade subscription %s", record_id)
            result.failed += 1
            result.results.append({"subscription_id": record_id, "status": "failed", "error": str(e)})
            continue
        if outcome is not None:
            result.processed += 1
            result.results.append(outcome)

    logger.info("Expiry sweep: %s downgraded, %s failed", result.processed, result.failed)
    return result


def _downgrade_one(record_id: int, default_tier: str, now: datetime) -> Optional[dict]:
    with unit_of_work():
        record = db.session.get(ProviderSubscription, record_id)
        if record is None:
            return None
        previous_plan = record.current_plan
        expired_at = as_utc(record.plan_expiry_date)
        changed = db.session.execute(
            update(ProviderSubscription)
            .where(
                ProviderSubscription.id == record_id,
                ProviderSubscription.current_plan == previous_plan,
                ProviderSubscription.plan_expiry_date < now,
            )
            .values(
                current_plan=default_tier,
                plan_expiry_date=None,
                auto_renew=True,
                external_subscription_id=None,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            return None
        notify(
            record.provider_id,
            NOTIFY_SUBSCRIPTION_EXPIRED,
            "Subscription expired",
            f"Your {previous_plan} plan has expired and you are back on {default_tier}.",
            data={"previous_plan": previous_plan},
        )
    db.session.refresh(record)
    logger.info("Downgraded provider %s from %s to %s", record.provider_id, previous_plan, default_tier)
    return {
        "provider_id": record.provider_id,
        "previous_plan": previous_plan,
        "expired_at": _iso(expired_at),
        "status": "downgraded",
    }


def reset_monthly_booking_limits(now: Optional[datetime] = None) -> SweepResult:
    """Zero the monthly booking counter of every record on a reset tier.

    A record is reset at most once per calendar month: its ``usage_period``
    is stamped with the month of the run.
    """
    period = month_key(now)
    tiers = list(get_billing_config().monthly_reset_tiers)
    candidates = [
        row.id
        for row in db.session.query(ProviderSubscription.id)
        .filter(
            ProviderSubscription.current_plan.in_(tiers),
            or_(
                ProviderSubscription.usage_period.is_(None),
                ProviderSubscription.usage_period != period,
            ),
        )
        .order_by(ProviderSubscription.id)
        .all()
    ]

    result = SweepResult()
    for record_id in candidates:
        try:
            outcome = _reset_one(record_id, tiers, period)
        except Exception as e:
            logger.exception("Failed to reset booking counter for subscription %s", record_id)
            result.failed += 1
            result.results.append({"subscription_id": record_id, "status": "failed", "error": str(e)})
            continue
        if outcome is not None:
            result.processed += 1
            result.results.append(outcome)

    logger.info("Monthly reset for %s (%s): %s reset, %s failed", period, ",".join(tiers), result.processed, result.failed)
    return result


def _reset_one(record_id: int, tiers: list, period: str) -> Optional[dict]:
    with unit_of_work():
        record = db.session.get(ProviderSubscription, record_id)
        if record is None:
            return None
        previous = record.bookings_this_month
        changed = db.session.execute(
            update(ProviderSubscription)
            .where(
                ProviderSubscription.id == record_id,
                ProviderSubscription.current_plan.in_(tiers),
                or_(
                    ProviderSubscription.usage_period.is_(None),
                    ProviderSubscription.usage_period != period,
                ),
            )
            .values(
                bookings_this_month=0,
                booking_limit_exceeded=False,
                usage_period=period,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if changed != 1:
            return None
    db.session.refresh(record)
    return {"provider_id": record.provider_id, "previous_bookings": previous, "status": "reset"}
