"""Tests for tier resolution and limit helpers."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from app.core.tiers import (
    RATE_LIMITS,
    UNLIMITED,
    UserTier,
    format_limit_info,
    is_limit_exceeded,
    remaining_quota,
    resolve_limits,
    resolve_tier,
    usage_percentage,
    warning_level,
)

NOW = datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc)


def _user(tier="free", is_subscribed=False, expiry=None):
    return SimpleNamespace(tier=tier, is_subscribed=is_subscribed, subscription_expiry=expiry)


# ─── Tier resolution ─────────────────────────────────────────────────────────

class TestResolveTier:
    def test_unsubscribed_user_is_free_whatever_the_stored_tier(self):
        assert resolve_tier(_user("pro", is_subscribed=False), NOW) == UserTier.FREE

    def test_active_subscription_uses_stored_tier(self):
        user = _user("pro", True, NOW + timedelta(days=3))
        assert resolve_tier(user, NOW) == UserTier.PRO

    def test_expired_subscription_falls_back_to_free(self):
        user = _user("pro", True, NOW - timedelta(seconds=1))
        assert resolve_tier(user, NOW) == UserTier.FREE

    def test_naive_expiry_is_treated_as_utc(self):
        user = _user("basic", True, datetime(2026, 3, 10, 13, 0))
        assert resolve_tier(user, NOW) == UserTier.BASIC

    def test_permanent_subscription_without_expiry(self):
        assert resolve_tier(_user("enterprise", True, None), NOW) == UserTier.ENTERPRISE

    def test_active_subscription_without_tier_is_basic(self):
        user = _user(None, True, NOW + timedelta(days=1))
        assert resolve_tier(user, NOW) == UserTier.BASIC

    def test_unknown_tier_is_free(self):
        user = _user("platinum", True, NOW + timedelta(days=1))
        assert resolve_tier(user, NOW) == UserTier.FREE


class TestResolveLimits:
    def test_free_limits(self):
        limits = resolve_limits(_user(), NOW)
        assert (limits.hourly_limit, limits.daily_limit, limits.max_tokens) == (10, 50, 2048)

    def test_enterprise_is_unlimited(self):
        limits = resolve_limits(_user("enterprise", True, NOW + timedelta(days=1)), NOW)
        assert limits.is_unlimited
        assert limits.max_tokens == 16384

    def test_missing_user_gets_configured_defaults(self):
        limits = resolve_limits(None, NOW)
        assert limits.tier == "default"
        assert limits.hourly_limit == 30
        assert limits.daily_limit == 200

    def test_table_covers_every_tier(self):
        assert set(RATE_LIMITS) == set(UserTier)


# ─── Helpers ─────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_is_limit_exceeded(self):
        assert is_limit_exceeded(10, 10)
        assert not is_limit_exceeded(9, 10)
        assert not is_limit_exceeded(10_000, UNLIMITED)

    def test_remaining_quota(self):
        assert remaining_quota(3, 10) == 7
        assert remaining_quota(12, 10) == 0
        assert remaining_quota(5, UNLIMITED) == UNLIMITED

    def test_usage_percentage(self):
        assert usage_percentage(5, 10) == 50
        assert usage_percentage(20, 10) == 100
        assert usage_percentage(0, 0) == 100
        assert usage_percentage(99, UNLIMITED) == 0

    def test_warning_level_thresholds(self):
        assert warning_level(69) == "safe"
        assert warning_level(70) == "warning"
        assert warning_level(89) == "warning"
        assert warning_level(90) == "danger"

    def test_format_limit_info(self):
        info = format_limit_info(RATE_LIMITS[UserTier.FREE], hourly_count=9, daily_count=10)
        assert info["tier"] == "free"
        assert info["isUnlimited"] is False
        assert info["hourly"] == {
            "used": 9,
            "limit": 10,
            "remaining": 1,
            "percentage": 90,
            "warningLevel": "danger",
            "display": "9 / 10",
        }
        assert info["daily"]["warningLevel"] == "safe"
        assert info["maxTokens"] == 2048

    def test_format_limit_info_unlimited(self):
        info = format_limit_info(RATE_LIMITS[UserTier.ENTERPRISE], 40, 400)
        assert info["isUnlimited"] is True
        assert info["hourly"]["display"] == "Unlimited"
        assert info["daily"]["remaining"] == UNLIMITED
