"""Error taxonomy surfaced to the request-handling layer.

Every error is a client-visible outcome; none of them is retried inside the
core.  Transient storage errors are *not* wrapped here and propagate as-is.
"""

from __future__ import annotations

from typing import Any, Optional


class MarketplaceError(Exception):
    """Base class for all structured domain errors."""

    code = "ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class NotFound(MarketplaceError):
    code = "NOT_FOUND"


class Forbidden(MarketplaceError):
    code = "FORBIDDEN"


class InvalidState(MarketplaceError):
    code = "INVALID_STATE"


class InvalidInput(MarketplaceError):
    code = "INVALID_INPUT"


class InvalidProof(MarketplaceError):
    """Completion code mismatch.  Never carries the expected value."""

    code = "INVALID_PROOF"


class Conflict(MarketplaceError):
    code = "CONFLICT"


class LimitExceeded(MarketplaceError):
    """Raised when an entitlement check fails for the provider's plan."""

    code = "LIMIT_EXCEEDED"

    def __init__(
        self,
        message: str,
        *,
        plan: str,
        plan_name: str,
        reason: str,
        limit: Optional[int] = None,
        current: Optional[int] = None,
    ):
        self.plan = plan
        self.plan_name = plan_name
        self.reason = reason
        self.limit = limit
        self.current = current
        super().__init__(
            message,
            plan=plan,
            plan_name=plan_name,
            reason=reason,
            limit=limit,
            current=current,
        )
