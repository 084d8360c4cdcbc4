"""Plan limit evaluation.

Pure decision functions: given a plan's limits and the provider's current
counters, decide whether a gated action is allowed.  Nothing here touches the
database; callers read the counters and must re-check atomically when they
write (see ``services.entitlements``).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from config_models import PlanLimits
from errors import LimitExceeded

REASON_WITHIN_LIMIT = "WITHIN_LIMIT"
REASON_UNLIMITED = "UNLIMITED"
REASON_CATEGORY_IN_USE = "CATEGORY_ALREADY_USED"
REASON_SERVICE_LIMIT = "SERVICE_LIMIT_REACHED"
REASON_CATEGORY_LIMIT = "CATEGORY_LIMIT_REACHED"
REASON_BOOKING_LIMIT = "MONTHLY_BOOKING_LIMIT_REACHED"

ACTION_CREATE_SERVICE = "create_service"
ACTION_ADD_CATEGORY = "add_category"
ACTION_RECEIVE_BOOKING = "receive_booking"


@dataclass(frozen=True)
class LimitDecision:
    action: str
    allowed: bool
    reason: str
    current_plan: str
    plan_name: str
    limit: int
    current: int

    def to_dict(self) -> dict:
        return asdict(self)

    def raise_if_denied(self) -> "LimitDecision":
        if not self.allowed:
            raise LimitExceeded(
                f"{self.action} denied: {self.reason}",
                plan=self.current_plan,
                plan_name=self.plan_name,
                reason=self.reason,
                limit=self.limit,
                current=self.current,
            )
        return self


def _decide(action: str, plan: PlanLimits, limit: int, current: int, denied_reason: str) -> LimitDecision:
    if PlanLimits.is_unlimited(limit):
        allowed, reason = True, REASON_UNLIMITED
    elif current < limit:
        allowed, reason = True, REASON_WITHIN_LIMIT
    else:
        allowed, reason = False, denied_reason
    return LimitDecision(
        action=action,
        allowed=allowed,
        reason=reason,
        current_plan=plan.tier,
        plan_name=plan.display_name,
        limit=limit,
        current=current,
    )


def evaluate_service_creation(plan: PlanLimits, active_service_count: int) -> LimitDecision:
    return _decide(
        ACTION_CREATE_SERVICE,
        plan,
        plan.max_active_services,
        active_service_count,
        REASON_SERVICE_LIMIT,
    )


def evaluate_category(
    plan: PlanLimits, distinct_category_count: int, category_in_use: bool
) -> LimitDecision:
    """A category the provider already uses never needs a new slot."""
    if category_in_use:
        return LimitDecision(
            action=ACTION_ADD_CATEGORY,
            allowed=True,
            reason=REASON_CATEGORY_IN_USE,
            current_plan=plan.tier,
            plan_name=plan.display_name,
            limit=plan.max_categories,
            current=distinct_category_count,
        )
    return _decide(
        ACTION_ADD_CATEGORY,
        plan,
        plan.max_categories,
        distinct_category_count,
        REASON_CATEGORY_LIMIT,
    )


def evaluate_booking_intake(plan: PlanLimits, bookings_this_month: int) -> LimitDecision:
    return _decide(
        ACTION_RECEIVE_BOOKING,
        plan,
        plan.max_bookings_per_month,
        bookings_this_month,
        REASON_BOOKING_LIMIT,
    )
