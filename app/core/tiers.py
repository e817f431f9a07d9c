"""Subscription tiers and their AI request limits.

``-1`` means unlimited for any count limit.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from app.config import get_settings

UNLIMITED = -1


class UserTier(str, Enum):
    """Subscription levels."""

    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierLimits:
    """Request ceilings for one tier."""

    tier: str
    hourly_limit: int
    daily_limit: int
    max_tokens: int
    description: str = ""

    @property
    def is_unlimited(self) -> bool:
        return self.hourly_limit == UNLIMITED and self.daily_limit == UNLIMITED


RATE_LIMITS: dict[UserTier, TierLimits] = {
    UserTier.FREE: TierLimits(UserTier.FREE.value, 10, 50, 2048, "Free"),
    UserTier.BASIC: TierLimits(UserTier.BASIC.value, 30, 200, 4096, "Basic member"),
    UserTier.PRO: TierLimits(UserTier.PRO.value, 100, 1000, 8192, "Pro member"),
    UserTier.ENTERPRISE: TierLimits(
        UserTier.ENTERPRISE.value, UNLIMITED, UNLIMITED, 16384, "Enterprise"
    ),
}


def default_limits() -> TierLimits:
    """Limits for requests whose user record cannot be loaded."""
    settings = get_settings()
    return TierLimits(
        tier="default",
        hourly_limit=settings.ai_rate_limit_per_hour,
        daily_limit=settings.ai_rate_limit_per_day,
        max_tokens=settings.ai_max_tokens_per_request,
        description="Default",
    )


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_subscription_active(user: Any, now: datetime | None = None) -> bool:
    """A subscription counts while flagged and not yet expired.

    No expiry date means a permanent subscription.
    """
    if not getattr(user, "is_subscribed", False):
        return False
    expiry = getattr(user, "subscription_expiry", None)
    if expiry is None:
        return True
    now = now or datetime.now(timezone.utc)
    return as_utc(expiry) > now


def resolve_tier(user: Any, now: datetime | None = None) -> UserTier:
    """Effective tier: the stored tier while subscribed, otherwise FREE."""
    if not is_subscription_active(user, now):
        return UserTier.FREE
    try:
        return UserTier(getattr(user, "tier", None) or UserTier.BASIC.value)
    except ValueError:
        return UserTier.FREE


def resolve_limits(user: Any, now: datetime | None = None) -> TierLimits:
    """Map a user (or None) to the limits that apply right now."""
    if user is None:
        return default_limits()
    return RATE_LIMITS[resolve_tier(user, now)]


def is_limit_exceeded(current_count: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return False
    return current_count >= limit


def remaining_quota(current_count: int, limit: int) -> int:
    """Requests left in the window, or -1 when unlimited."""
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - current_count)


def usage_percentage(current_count: int, limit: int) -> int:
    if limit == UNLIMITED:
        return 0
    if limit == 0:
        return 100
    return min(100, round(current_count / limit * 100))


def warning_level(percentage: int) -> str:
    if percentage >= 90:
        return "danger"
    if percentage >= 70:
        return "warning"
    return "safe"


def _window_info(used: int, limit: int) -> dict:
    pct = usage_percentage(used, limit)
    return {
        "used": used,
        "limit": limit,
        "remaining": remaining_quota(used, limit),
        "percentage": pct,
        "warningLevel": warning_level(pct),
        "display": "Unlimited" if limit == UNLIMITED else f"{used} / {limit}",
    }


def format_limit_info(limits: TierLimits, hourly_count: int, daily_count: int) -> dict:
    """Build the ``limitInfo`` block shown to the user."""
    return {
        "tier": limits.tier,
        "description": limits.description,
        "isUnlimited": limits.is_unlimited,
        "hourly": _window_info(hourly_count, limits.hourly_limit),
        "daily": _window_info(daily_count, limits.daily_limit),
        "maxTokens": limits.max_tokens,
    }
