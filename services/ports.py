"""Capabilities the booking state machine depends on.

The booking service only talks to these protocols, never to the sibling
catalog or entitlement modules directly.
"""

from __future__ import annotations

from typing import Optional, Protocol

from models import Service
from services.limits import LimitDecision


class ServiceCatalog(Protocol):
    def get_service(self, service_id: int) -> Optional[Service]:
        ...

    def record_rating(self, service_id: int, value: int) -> None:
        ...

    def record_completed_order(self, service_id: int) -> None:
        ...


class EntitlementChecker(Protocol):
    def can_receive_booking(self, provider_id: int) -> LimitDecision:
        ...

    def reserve_booking_slot(self, provider_id: int) -> LimitDecision:
        ...
