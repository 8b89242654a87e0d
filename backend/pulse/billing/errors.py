"""Billing and entitlement error taxonomy.

Every error carries a machine-readable ``code`` and the HTTP status it maps to.
``main.py`` registers a handler that renders them as::

    {"error": {"code": "...", "message": "...", "details": {...}}}

Business-rule violations are expected control flow: they are returned to the
caller and logged without tracebacks.
"""

import uuid
from datetime import datetime
from typing import Any

from fastapi import status


class BillingError(Exception):
    """Base class for all billing/entitlement errors."""

    code: str = "BILLING_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


# --- Webhook boundary ---


class InvalidSignature(BillingError):
    """Webhook body failed signature verification. Nothing was mutated."""

    code = "INVALID_SIGNATURE"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class UnknownEventType(BillingError):
    """Event type outside the handled set. Acknowledged and ignored."""

    code = "UNKNOWN_EVENT_TYPE"
    status_code = status.HTTP_200_OK

    def __init__(self, event_type: str):
        super().__init__(f"Unhandled event type: {event_type}", {"event_type": event_type})
        self.event_type = event_type


class StaleEvent(BillingError):
    """Event older than what the subscription already reflects."""

    code = "STALE_EVENT"
    status_code = status.HTTP_200_OK

    def __init__(self, event_id: str, event_time: datetime, last_applied: datetime):
        super().__init__(
            f"Event {event_id} at {event_time.isoformat()} is older than "
            f"last applied event at {last_applied.isoformat()}",
            {"event_id": event_id},
        )
        self.event_id = event_id
        self.event_time = event_time
        self.last_applied = last_applied


class ProcessorLookupTimeout(BillingError):
    """A Stripe lookup exceeded its budget; the event will be redelivered."""

    code = "PROCESSOR_LOOKUP_TIMEOUT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, resource: str):
        super().__init__(f"Timed out fetching {resource} from payment processor")


# --- Subscription lifecycle ---


class ExistingActiveSubscription(BillingError):
    code = "EXISTING_ACTIVE_SUBSCRIPTION"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, account_id: uuid.UUID, subscription_id: uuid.UUID):
        super().__init__(
            "Account already has an active subscription",
            {"subscription_id": str(subscription_id)},
        )
        self.account_id = account_id
        self.subscription_id = subscription_id


class InvalidTransition(BillingError):
    """The subscription is not in a state that allows the transition."""

    code = "INVALID_TRANSITION"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, transition: str, current_status: str, reason: str | None = None):
        message = f"Cannot {transition} a subscription in status {current_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"transition": transition, "status": current_status})
        self.transition = transition
        self.current_status = current_status


class ConcurrentTransitionLost(BillingError):
    """Compare-and-swap lost a race; a competing writer already moved the record."""

    code = "CONCURRENT_TRANSITION_LOST"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, subscription_id: uuid.UUID, transition: str):
        super().__init__(
            f"Subscription {subscription_id} changed concurrently during {transition}",
            {"subscription_id": str(subscription_id), "transition": transition},
        )
        self.subscription_id = subscription_id
        self.transition = transition


class SubscriptionNotFound(BillingError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Subscription not found"):
        super().__init__(message)


class AccountNotFound(BillingError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Account not found"):
        super().__init__(message)


class AccountHasLiveSubscription(BillingError):
    code = "ACCOUNT_HAS_LIVE_SUBSCRIPTION"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__("Account still has an active or pending subscription")


# --- Plan catalog ---


class PlanNotFound(BillingError):
    code = "PLAN_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, identifier: str):
        super().__init__(f"Plan not found: {identifier}")


class PlanInUse(BillingError):
    code = "PLAN_IN_USE"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, subscription_count: int = 0):
        super().__init__(message, {"subscription_count": subscription_count})


class PlanTypeConflict(BillingError):
    code = "PLAN_TYPE_CONFLICT"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, plan_type: str):
        super().__init__(f"A plan with type {plan_type} already exists")


# --- Auth / delivery ---


class RateLimited(BillingError):
    code = "RATE_LIMITED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, reset_at: datetime):
        super().__init__(
            f"Too many attempts. Try again after {reset_at.isoformat()}",
            {"reset_at": reset_at.isoformat()},
        )
        self.reset_at = reset_at


class InvalidVideoToken(BillingError):
    code = "INVALID_VIDEO_TOKEN"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str):
        super().__init__(f"Invalid video token: {reason}")
        self.reason = reason


class QualityNotEntitled(BillingError):
    code = "QUALITY_NOT_ENTITLED"
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, quality: str, quality_tier: str):
        super().__init__(
            f"Quality {quality} is not included in your plan",
            {"quality": quality, "quality_tier": quality_tier, "upgrade_url": "/api/v1/billing/checkout"},
        )
