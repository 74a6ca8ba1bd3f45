"""Shared enums for the short-link service.

This module defines all status and state enums used across the codebase.
Using enums instead of string literals provides type safety and prevents typos.
"""

from enum import StrEnum

__all__ = [
    "HealthStatus",
    "RequestStatus",
    "Tier",
    "SubscriptionStatus",
    "UsageAction",
    "RedirectOutcome",
    "DenialReason",
    "Role",
]


class HealthStatus(StrEnum):
    """Health check status values."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"

    @classmethod
    def from_str(cls, value: str) -> "HealthStatus":
        """Safely parse from string, falling back to UNHEALTHY for unknown values."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNHEALTHY


class RequestStatus(StrEnum):
    """Request status values for metrics and logging."""

    SUCCESS = "success"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    LIMIT_EXCEEDED = "limit_exceeded"
    EXHAUSTED = "exhausted"
    ERROR = "error"


class Tier(StrEnum):
    """Subscription tiers, cheapest first."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"


class UsageAction(StrEnum):
    """Quota-limited actions metered per user and month."""

    CREATE_LINK = "create_link"
    API_REQUEST = "api_request"
    CUSTOM_DOMAIN = "custom_domain"
    ANALYTICS = "analytics"


class RedirectOutcome(StrEnum):
    """Terminal states of a single redirect lookup."""

    VALID = "valid"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class DenialReason(StrEnum):
    LIMIT_REACHED = "limit_reached"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    USER_NOT_FOUND = "user_not_found"
    INVALID_PLAN = "invalid_plan"


class Role(StrEnum):
    USER = "user"
    ADMIN = "admin"
