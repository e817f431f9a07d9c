"""Arq task definitions for AI data retention."""

import logging

from arq import cron
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings
from app.services.history import history_service
from app.services.quota import quota_service
from app.workers.settings import redis_settings

settings = get_settings()
logger = logging.getLogger(__name__)


# Create engine for worker (separate from web app)
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """Get database session for worker."""
    return async_session_maker()


async def purge_expired_history(ctx: dict) -> dict:
    """Cron job: delete AI history entries past their ``expires_at``."""
    db = await get_db()
    try:
        removed = await history_service.purge_expired(db)
        logger.info("Cron: purged %d expired AI history entries", removed)
        return {"removed": removed}

    except Exception as e:
        logger.error("Failed to purge AI history: %s", e)
        await db.rollback()
        return {"error": str(e)}

    finally:
        await db.close()


async def purge_stale_rate_limits(ctx: dict) -> dict:
    """Cron job: delete per-day quota counters past the retention window."""
    db = await get_db()
    try:
        removed = await quota_service.purge_stale(db, settings.ai_rate_limit_retention_days)
        logger.info("Cron: purged %d stale AI rate-limit rows", removed)
        return {"removed": removed}

    except Exception as e:
        logger.error("Failed to purge AI rate-limit rows: %s", e)
        await db.rollback()
        return {"error": str(e)}

    finally:
        await db.close()


# ── Lifecycle ───────────────────────────────────────────────────────


async def startup(ctx: dict) -> None:
    """Worker startup hook."""
    logger.info("Worker starting up...")


async def shutdown(ctx: dict) -> None:
    """Worker shutdown hook."""
    logger.info("Worker shutting down...")
    await engine.dispose()


class WorkerSettings:
    """Arq worker settings."""

    functions = [purge_expired_history, purge_stale_rate_limits]
    cron_jobs = [
        cron(purge_expired_history, hour={3}, minute={0}),
        cron(purge_stale_rate_limits, hour={3}, minute={30}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings
    max_jobs = 10
    job_timeout = 600  # 10 minutes max per job
    keep_result = 3600  # Keep results for 1 hour
