"""AI history snapshots."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models.ai_history import AIHistory

logger = logging.getLogger(__name__)


class HistoryService:
    """Service for saving and listing AI history entries."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def save(
        self,
        db: AsyncSession,
        *,
        user_id: int,
        action: str,
        original_content: str,
        result_content: str,
        options: dict,
        tokens_used: int,
        note_id: int | None = None,
        now: datetime | None = None,
    ) -> AIHistory | None:
        """Store one entry expiring after the configured TTL. Errors are logged."""
        now = now or datetime.now(timezone.utc)
        entry = AIHistory(
            user_id=user_id,
            note_id=note_id,
            action=action,
            original_content=original_content,
            result_content=result_content,
            options=options,
            tokens_used=tokens_used,
            expires_at=now + timedelta(days=self.settings.ai_history_ttl_days),
            created_at=now,
        )
        try:
            db.add(entry)
            await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save AI history for user %s: %s", user_id, e)
            await db.rollback()
            return None
        return entry

    async def list_for_user(
        self,
        db: AsyncSession,
        user_id: int,
        *,
        limit: int = 20,
        offset: int = 0,
        note_id: int | None = None,
        now: datetime | None = None,
    ) -> list[AIHistory]:
        """Non-expired entries, newest first."""
        now = now or datetime.now(timezone.utc)
        query = (
            select(AIHistory)
            .where(AIHistory.user_id == user_id)
            .where(AIHistory.expires_at > now)
        )
        if note_id is not None:
            query = query.where(AIHistory.note_id == note_id)
        query = query.order_by(AIHistory.created_at.desc(), AIHistory.id.desc())

        result = await db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def purge_expired(self, db: AsyncSession, now: datetime | None = None) -> int:
        """Delete entries past their expiry. Returns the number removed."""
        now = now or datetime.now(timezone.utc)
        result = await db.execute(delete(AIHistory).where(AIHistory.expires_at <= now))
        await db.commit()
        return result.rowcount or 0


# Singleton instance
history_service = HistoryService()
