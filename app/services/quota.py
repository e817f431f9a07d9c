"""Quota service for tiered hourly/daily AI request limits."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import case, delete, select, true, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tiers import UNLIMITED, TierLimits, as_utc, is_limit_exceeded, resolve_limits
from app.models.ai_rate_limit import AIRateLimit
from app.models.user import User

logger = logging.getLogger(__name__)

# Attempts at the update/insert dance before giving up on a contended row.
_MAX_ATTEMPTS = 3


@dataclass
class QuotaDecision:
    """Outcome of a quota check."""

    allowed: bool
    reason: str | None = None
    limit_type: str | None = None
    limit: int | None = None


def hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


class QuotaService:
    """Service for checking and consuming AI request quota.

    Counters live in one ``ai_rate_limits`` row per (user, UTC day). The
    check and the increment are a single conditional UPDATE so concurrent
    requests from the same user cannot race past a limit.
    """

    async def get_user(self, db: AsyncSession, user_id: int) -> User | None:
        result = await db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_limits(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime | None = None,
    ) -> TierLimits:
        """Resolve the limits for a user, falling back to the configured defaults."""
        try:
            user = await self.get_user(db, user_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load user %s for tier lookup: %s", user_id, e)
            await db.rollback()
            user = None
        return resolve_limits(user, now)

    async def get_record(
        self,
        db: AsyncSession,
        user_id: int,
        day: date,
    ) -> AIRateLimit | None:
        result = await db.execute(
            select(AIRateLimit)
            .where(AIRateLimit.user_id == user_id)
            .where(AIRateLimit.request_date == day)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_counts(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        """Return the effective (hourly, daily) counts for the current windows."""
        now = now or datetime.now(timezone.utc)
        record = await self.get_record(db, user_id, now.date())
        if record is None:
            return 0, 0
        return self._effective_hourly(record, now), record.daily_count

    @staticmethod
    def _effective_hourly(record: AIRateLimit, now: datetime) -> int:
        if as_utc(record.last_request_at) >= hour_start(now):
            return record.hourly_count
        return 0

    async def _try_increment(
        self,
        db: AsyncSession,
        user_id: int,
        limits: TierLimits,
        now: datetime,
    ) -> tuple[int, int] | None:
        """Conditionally bump both counters. Returns the new counts or None."""
        start = hour_start(now)
        same_hour = AIRateLimit.last_request_at >= start

        daily_ok = (
            AIRateLimit.daily_count < limits.daily_limit
            if limits.daily_limit != UNLIMITED
            else true()
        )
        hourly_ok = (
            (AIRateLimit.last_request_at < start)
            | (AIRateLimit.hourly_count < limits.hourly_limit)
            if limits.hourly_limit != UNLIMITED
            else true()
        )

        stmt = (
            update(AIRateLimit)
            .where(AIRateLimit.user_id == user_id)
            .where(AIRateLimit.request_date == now.date())
            .where(daily_ok)
            .where(hourly_ok)
            .values(
                hourly_count=case(
                    (same_hour, AIRateLimit.hourly_count + 1),
                    else_=1,
                ),
                daily_count=AIRateLimit.daily_count + 1,
                last_request_at=now,
            )
            .returning(AIRateLimit.hourly_count, AIRateLimit.daily_count)
            .execution_options(synchronize_session=False)
        )
        row = (await db.execute(stmt)).first()
        if row is None:
            return None
        return row.hourly_count, row.daily_count

    async def _try_create(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime,
    ) -> bool:
        """Insert today's row with both counts at 1. False if another request won."""
        dialect = db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            insert(AIRateLimit)
            .values(
                user_id=user_id,
                request_date=now.date(),
                hourly_count=1,
                daily_count=1,
                last_request_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "request_date"])
            .returning(AIRateLimit.id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    def _rejection(
        self,
        record: AIRateLimit,
        limits: TierLimits,
        now: datetime,
    ) -> QuotaDecision | None:
        if is_limit_exceeded(record.daily_count, limits.daily_limit):
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Daily AI request limit reached ({record.daily_count}/{limits.daily_limit}). "
                    "Upgrade your plan for more requests."
                ),
                limit_type="daily",
                limit=limits.daily_limit,
            )

        hourly = self._effective_hourly(record, now)
        if is_limit_exceeded(hourly, limits.hourly_limit):
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Hourly AI request limit reached ({hourly}/{limits.hourly_limit}). "
                    "Please try again later or upgrade your plan."
                ),
                limit_type="hourly",
                limit=limits.hourly_limit,
            )
        return None

    async def check_and_consume(
        self,
        db: AsyncSession,
        user_id: int,
        limits: TierLimits,
        now: datetime | None = None,
    ) -> QuotaDecision:
        """Atomically check the user's quota and count this request.

        Unlimited tiers are always allowed and never touch the table. A
        rejected request leaves the counters unchanged. Database failures
        fail open.
        """
        if limits.is_unlimited:
            return QuotaDecision(allowed=True)

        now = now or datetime.now(timezone.utc)

        try:
            for _ in range(_MAX_ATTEMPTS):
                counts = await self._try_increment(db, user_id, limits, now)
                if counts is not None:
                    await db.commit()
                    logger.debug(
                        "Quota consumed for user %s: hourly=%d daily=%d",
                        user_id,
                        counts[0],
                        counts[1],
                    )
                    return QuotaDecision(allowed=True)

                record = await self.get_record(db, user_id, now.date())
                if record is None:
                    if await self._try_create(db, user_id, now):
                        await db.commit()
                        return QuotaDecision(allowed=True)
                    # Another request created the row first; retry the update
                    continue

                decision = self._rejection(record, limits, now)
                if decision is not None:
                    await db.rollback()
                    logger.info(
                        "Quota rejected for user %s (%s limit %d)",
                        user_id,
                        decision.limit_type,
                        decision.limit,
                    )
                    return decision

            logger.warning("Quota row for user %s stayed contended; allowing request", user_id)
            await db.rollback()
            return QuotaDecision(allowed=True)

        except SQLAlchemyError as e:
            logger.error("Quota check failed for user %s, failing open: %s", user_id, e)
            await db.rollback()
            return QuotaDecision(allowed=True)

    async def purge_stale(
        self,
        db: AsyncSession,
        retention_days: int,
        now: datetime | None = None,
    ) -> int:
        """Delete counter rows older than ``retention_days``. Returns the number removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = now.date() - timedelta(days=retention_days)
        result = await db.execute(
            delete(AIRateLimit).where(AIRateLimit.request_date < cutoff)
        )
        await db.commit()
        return result.rowcount or 0


# Singleton instance
quota_service = QuotaService()
