"""Service catalog: categories, services and their aggregate ratings."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import update

from errors import Forbidden, InvalidInput, NotFound
from extensions import db, unit_of_work
from models import Category, Service
from services import entitlements
from utils import money, to_decimal, utc_now

logger = logging.getLogger(__name__)


def create_category(name: str, description: str = "") -> Category:
    """Create a category.  Duplicate names surface as ``Conflict``."""
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Category name is required")
    with unit_of_work():
        category = Category(name=name, description=description or None)
        db.session.add(category)
    logger.info("Created category %s (%s)", category.id, name)
    return category


def create_service(
    provider_id: int,
    category_id: int,
    name: str,
    rate_by_hour,
    description: Optional[str] = None,
) -> Service:
    """Create a service, counting it against the provider's plan in the same transaction."""
    name = (name or "").strip()
    if not name:
        raise InvalidInput("Service name is required")
    rate = to_decimal(rate_by_hour)
    if rate is None or rate <= 0:
        raise InvalidInput("Hourly rate must be greater than 0", rate_by_hour=rate_by_hour)
    if db.session.get(Category, category_id) is None:
        raise NotFound("Category not found", category_id=category_id)

    with unit_of_work():
        entitlements.reserve_service_slot(provider_id, category_id)
        service = Service(
            provider_id=provider_id,
            category_id=category_id,
            name=name,
            description=description,
            rate_by_hour=money(rate),
        )
        db.session.add(service)
        entitlements.sync_category_count(provider_id)
    logger.info("Provider %s created service %s in category %s", provider_id, service.id, category_id)
    return service


def delete_service(service_id: int, provider_id: int) -> Service:
    """Deactivate a service and give its slot back to the provider."""
    service = db.session.get(Service, service_id)
    if service is None or not service.is_active:
        raise NotFound("Service not found", service_id=service_id)
    if service.provider_id != provider_id:
        raise Forbidden("You can only delete your own services", service_id=service_id)

    with unit_of_work():
        service.is_active = False
        entitlements.release_service_slot(provider_id)
    logger.info("Provider %s deactivated service %s", provider_id, service_id)
    return service


def get_service(service_id: int) -> Optional[Service]:
    service = db.session.get(Service, service_id)
    if service is None or not service.is_active:
        return None
    return service


def record_rating(service_id: int, value: int) -> None:
    """Fold one rating into the service's running average.  Does not commit."""
    db.session.execute(
        update(Service)
        .where(Service.id == service_id)
        .values(
            ratings_average=(Service.ratings_average * Service.ratings_count + value)
            / (Service.ratings_count + 1),
            ratings_count=Service.ratings_count + 1,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    _expire(service_id)


def record_completed_order(service_id: int) -> None:
    """Does not commit."""
    db.session.execute(
        update(Service)
        .where(Service.id == service_id)
        .values(total_orders=Service.total_orders + 1, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    _expire(service_id)


def _expire(service_id: int) -> None:
    service = db.session.identity_map.get(db.session.identity_key(Service, service_id))
    if service is not None:
        db.session.expire(service)


class SqlServiceCatalog:
    """Catalog capability backed by the service table."""

    def get_service(self, service_id: int) -> Optional[Service]:
        return get_service(service_id)

    def record_rating(self, service_id: int, value: int) -> None:
        record_rating(service_id, value)

    def record_completed_order(self, service_id: int) -> None:
        record_completed_order(service_id)


service_catalog = SqlServiceCatalog()
