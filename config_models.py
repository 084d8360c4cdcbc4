from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

UNLIMITED = -1


@dataclass
class AppConfig:
    name: str
    secret_key: str


@dataclass
class BookingConfig:
    min_duration_hours: float
    max_duration_hours: float
    currency: str


@dataclass
class PlanLimits:
    """One row of the plan limits table.  ``-1`` (UNLIMITED) lifts a cap."""
    tier: str
    display_name: str
    max_active_services: int
    max_categories: int
    max_bookings_per_month: int
    price_monthly: Decimal = Decimal("0.00")
    badge: Optional[str] = None
    priority: int = 4

    @staticmethod
    def is_unlimited(value: int) -> bool:
        return value == UNLIMITED


@dataclass
class BillingConfig:
    plans: Dict[str, PlanLimits]
    monthly_reset_tiers: List[str] = field(default_factory=lambda: ["FREE"])
    default_period_days: int = 30
    default_tier: str = "FREE"
