"""AI usage accounting and statistics."""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.ai_usage_log import AIUsageLog

logger = logging.getLogger(__name__)


@dataclass
class UsageEntry:
    """Everything known about one finished (or failed) invocation."""

    user_id: int
    action: str
    input_length: int
    success: bool
    output_length: int = 0
    tokens_used: int = 0
    processing_time_ms: int = 0
    note_id: int | None = None
    provider: str | None = None
    model: str | None = None
    error_message: str | None = None


class UsageService:
    """Service for recording AI invocations and summarising them."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def calculate_cost(self, tokens: int) -> float:
        """Cost in account currency: tokens / 1000 * unit price."""
        return tokens / 1000 * self.settings.llm_price_per_1k_tokens

    async def record(
        self,
        db: AsyncSession,
        entry: UsageEntry,
        now: datetime | None = None,
    ) -> bool:
        """Append one usage row.

        Failures are logged and swallowed so accounting problems never
        change the response the caller sees. Returns whether the row was
        written.
        """
        log = AIUsageLog(
            user_id=entry.user_id,
            note_id=entry.note_id,
            action=entry.action,
            input_length=entry.input_length,
            output_length=entry.output_length,
            tokens_used=entry.tokens_used,
            cost=self.calculate_cost(entry.tokens_used),
            provider=entry.provider or self.settings.llm_provider,
            model=entry.model or self.settings.llm_model,
            success=entry.success,
            error_message=entry.error_message,
            processing_time=entry.processing_time_ms,
            created_at=now or datetime.now(timezone.utc),
        )
        try:
            db.add(log)
            await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                "Failed to record AI usage for user %s (%s): %s",
                entry.user_id,
                entry.action,
                e,
            )
            await db.rollback()
            return False

        logger.debug(
            "Recorded AI usage: user=%s action=%s success=%s tokens=%d",
            entry.user_id,
            entry.action,
            entry.success,
            entry.tokens_used,
        )
        return True

    async def _aggregate(
        self,
        db: AsyncSession,
        user_id: int,
        since: datetime,
    ):
        result = await db.execute(
            select(
                func.count(AIUsageLog.id).label("total_requests"),
                func.coalesce(func.sum(AIUsageLog.tokens_used), 0).label("total_tokens"),
                func.coalesce(func.sum(AIUsageLog.cost), 0.0).label("total_cost"),
                func.coalesce(func.avg(AIUsageLog.processing_time), 0.0).label("avg_time"),
            )
            .where(AIUsageLog.user_id == user_id)
            .where(AIUsageLog.created_at >= since)
        )
        return result.one()

    async def get_summary(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime | None = None,
    ) -> tuple[dict, dict]:
        """Return (today, month) aggregates over successful and failed calls."""
        now = now or datetime.now(timezone.utc)
        day_start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        month_start = day_start.replace(day=1)

        today = await self._aggregate(db, user_id, day_start)
        month = await self._aggregate(db, user_id, month_start)

        return (
            {
                "total_requests": int(today.total_requests or 0),
                "total_tokens": int(today.total_tokens or 0),
                "total_cost": round(float(today.total_cost or 0), 6),
                "avg_time": round(float(today.avg_time or 0), 2),
            },
            {
                "total_requests": int(month.total_requests or 0),
                "total_tokens": int(month.total_tokens or 0),
                "total_cost": round(float(month.total_cost or 0), 6),
            },
        )


# Singleton instance
usage_service = UsageService()
