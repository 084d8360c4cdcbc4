"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets
from decimal import Decimal

import yaml

from config_models import UNLIMITED, AppConfig, BillingConfig, BookingConfig, PlanLimits

logger = logging.getLogger(__name__)

# Built-in plan limits table; config.yaml ``billing.plans`` may override or extend it.
DEFAULT_PLANS: dict[str, dict] = {
    "FREE": {
        "display_name": "Free",
        "max_active_services": 2,
        "max_categories": 1,
        "max_bookings_per_month": 2,
        "price_monthly": "0.00",
        "badge": None,
        "priority": 4,
    },
    "BASIC": {
        "display_name": "Basic",
        "max_active_services": UNLIMITED,
        "max_categories": 1,
        "max_bookings_per_month": 10,
        "price_monthly": "27.00",
        "badge": None,
        "priority": 3,
    },
    "PRO": {
        "display_name": "Pro",
        "max_active_services": UNLIMITED,
        "max_categories": UNLIMITED,
        "max_bookings_per_month": UNLIMITED,
        "price_monthly": "97.00",
        "badge": "Pro Partner",
        "priority": 1,
    },
}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return [part.strip().upper() for part in raw.split(",") if part.strip()]


def build_plan_limits(overrides: dict | None = None) -> dict[str, PlanLimits]:
    """Merge *overrides* (tier -> partial dict) into the default table."""
    merged: dict[str, dict] = {tier: dict(row) for tier, row in DEFAULT_PLANS.items()}
    for tier, row in (overrides or {}).items():
        merged.setdefault(tier.upper(), {}).update(row or {})

    plans: dict[str, PlanLimits] = {}
    for tier, row in merged.items():
        plans[tier] = PlanLimits(
            tier=tier,
            display_name=row.get("display_name", tier.title()),
            max_active_services=int(row.get("max_active_services", UNLIMITED)),
            max_categories=int(row.get("max_categories", UNLIMITED)),
            max_bookings_per_month=int(row.get("max_bookings_per_month", UNLIMITED)),
            price_monthly=Decimal(str(row.get("price_monthly", "0.00"))),
            badge=row.get("badge"),
            priority=int(row.get("priority", 4)),
        )
    return plans


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BookingConfig, BillingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    booking_cfg = raw.get("booking", {})
    billing_cfg = raw.get("billing", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    plans = build_plan_limits(billing_cfg.get("plans"))
    default_tier = os.environ.get(
        "BILLING_DEFAULT_TIER", billing_cfg.get("default_tier", "FREE")
    ).upper()
    if default_tier not in plans:
        raise ValueError(f"Default plan tier {default_tier!r} is not defined in billing.plans")

    return (
        AppConfig(
            name=app_cfg.get("name", "Service Marketplace"),
            secret_key=secret_key,
        ),
        BookingConfig(
            min_duration_hours=float(os.environ.get(
                "BOOKING_MIN_DURATION_HOURS", booking_cfg.get("min_duration_hours", 0.5)
            )),
            max_duration_hours=float(os.environ.get(
                "BOOKING_MAX_DURATION_HOURS", booking_cfg.get("max_duration_hours", 24)
            )),
            currency=os.environ.get("BOOKING_CURRENCY", booking_cfg.get("currency", "EUR")),
        ),
        BillingConfig(
            plans=plans,
            monthly_reset_tiers=_env_list(
                "BILLING_MONTHLY_RESET_TIERS",
                [t.upper() for t in billing_cfg.get("monthly_reset_tiers", ["FREE"])],
            ),
            default_period_days=int(os.environ.get(
                "BILLING_DEFAULT_PERIOD_DAYS", billing_cfg.get("default_period_days", 30)
            )),
            default_tier=default_tier,
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///marketplace.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
