"""AI request orchestration.

One ``AIService`` call walks a request through a fixed sequence of states::

    VALIDATING -> QUOTA_CHECK -> SETTINGS_RESOLVE -> PROMPT_BUILD -> COMPLETING
        -> STREAMING | SANITIZING -> LOGGING -> DONE

Any failure moves the request to FAILED, which still writes exactly one usage
row with ``success=False`` before the error reaches the caller.

Streaming requests relay chunks as they arrive. Sanitizing, usage logging and
the history write for a stream happen in a background task once the terminal
frame has been produced, using a session of their own.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.core.errors import AIError, QuotaExceededError, ValidationError
from app.core.prompts import AIAction, build_prompt
from app.core.sanitizer import sanitize_response
from app.core.tiers import TierLimits, format_limit_info
from app.database import async_session_maker
from app.schemas.ai import AIOptions, AIResultData, StreamChunk, StreamDone, StreamError, StreamEvent
from app.services.ai_settings import EffectiveOptions, ai_settings_service
from app.services.completion import (
    CompletionClient,
    CompletionOptions,
    CompletionResult,
    completion_client,
    estimate_tokens,
)
from app.services.history import history_service
from app.services.quota import quota_service
from app.services.usage import UsageEntry, usage_service

logger = logging.getLogger(__name__)

CLIENT_DISCONNECTED = "Client disconnected before the stream finished"


class AIRequestState(str, Enum):
    """Lifecycle of a single AI request."""

    VALIDATING = "validating"
    QUOTA_CHECK = "quota_check"
    SETTINGS_RESOLVE = "settings_resolve"
    PROMPT_BUILD = "prompt_build"
    COMPLETING = "completing"
    STREAMING = "streaming"
    SANITIZING = "sanitizing"
    LOGGING = "logging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class AIRequestContext:
    """Mutable bookkeeping for one request."""

    user_id: int
    action: str
    content: str
    request_id: str = field(default_factory=lambda: uuid4().hex[:12])
    state: AIRequestState = AIRequestState.VALIDATING
    started: float = field(default_factory=time.monotonic)
    note_id: int | None = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


@dataclass
class PreparedRequest:
    """A request that passed validation and quota and has its prompt built."""

    ctx: AIRequestContext
    action: AIAction
    options: EffectiveOptions
    limits: TierLimits
    prompt: str

    @property
    def stream_enabled(self) -> bool:
        return self.options.stream_enabled

    def completion_options(self) -> CompletionOptions:
        return CompletionOptions(
            model=self.options.model,
            max_tokens=self.options.max_tokens,
            temperature=self.options.temperature,
        )


@dataclass
class _StreamOutcome:
    parts: list[str] = field(default_factory=list)
    result: CompletionResult | None = None
    error: str | None = None


class AIService:
    """Compose quota, settings, prompts, completion and accounting."""

    def __init__(
        self,
        client: CompletionClient | None = None,
        session_factory: async_sessionmaker | None = None,
    ) -> None:
        self.settings = get_settings()
        self.client = client or completion_client
        self.session_factory = session_factory or async_session_maker
        self._background_tasks: set[asyncio.Task] = set()

    # ─── State bookkeeping ──────────────────────────────────────────────

    @staticmethod
    def _transition(ctx: AIRequestContext, state: AIRequestState) -> None:
        logger.debug(
            "AI request %s (%s): %s -> %s",
            ctx.request_id,
            ctx.action,
            ctx.state.value,
            state.value,
        )
        ctx.state = state

    async def _record_failure(
        self,
        db: AsyncSession,
        ctx: AIRequestContext,
        message: str,
        *,
        tokens_used: int = 0,
        options: EffectiveOptions | None = None,
    ) -> None:
        self._transition(ctx, AIRequestState.FAILED)
        self._transition(ctx, AIRequestState.LOGGING)
        await usage_service.record(
            db,
            UsageEntry(
                user_id=ctx.user_id,
                action=ctx.action,
                input_length=len(ctx.content),
                success=False,
                tokens_used=tokens_used,
                processing_time_ms=ctx.elapsed_ms(),
                note_id=ctx.note_id,
                provider=options.provider if options else None,
                model=options.model if options else None,
                error_message=message,
            ),
        )
        ctx.state = AIRequestState.FAILED

    # ─── Validation ─────────────────────────────────────────────────────

    def validate(
        self,
        action: str,
        content: str,
        options: AIOptions | None = None,
    ) -> AIAction:
        """Check the action, content and request options. Raises ``ValidationError``."""
        try:
            ai_action = AIAction(action)
        except ValueError:
            raise ValidationError(f"Unsupported AI action: {action}")

        if not content or not content.strip():
            raise ValidationError("Content cannot be empty")

        max_length = self.settings.ai_content_max_length
        if len(content) > max_length:
            raise ValidationError(f"Content is too long (maximum {max_length} characters)")

        min_summary = self.settings.ai_summarize_min_length
        if ai_action == AIAction.SUMMARIZE and len(content) < min_summary:
            raise ValidationError(
                f"Content is too short to summarize (minimum {min_summary} characters)"
            )

        if options is not None:
            ai_settings_service.validate_options(options)
        return ai_action

    # ─── Request pipeline ───────────────────────────────────────────────

    async def prepare(
        self,
        db: AsyncSession,
        user_id: int,
        action: str,
        content: str,
        options: AIOptions | None = None,
    ) -> PreparedRequest:
        """Run everything up to the completion call.

        On failure a failed usage row is written before the error is raised.
        """
        options = options or AIOptions()
        ctx = AIRequestContext(
            user_id=user_id,
            action=action,
            content=content or "",
            note_id=options.note_id,
        )

        try:
            ai_action = self.validate(action, content, options)

            self._transition(ctx, AIRequestState.QUOTA_CHECK)
            limits = await quota_service.get_limits(db, user_id)
            decision = await quota_service.check_and_consume(db, user_id, limits)
            if not decision.allowed:
                raise QuotaExceededError(
                    decision.reason or "AI request limit reached",
                    decision.limit_type or "hourly",
                    decision.limit if decision.limit is not None else 0,
                )

            self._transition(ctx, AIRequestState.SETTINGS_RESOLVE)
            stored = await ai_settings_service.get_or_default(db, user_id)
            effective = ai_settings_service.resolve_options(options, stored, limits)

            self._transition(ctx, AIRequestState.PROMPT_BUILD)
            prompt = build_prompt(
                ai_action,
                content,
                language=effective.language,
                length=effective.length,
                style=effective.style,
            )
        except AIError as e:
            logger.info("AI request %s rejected: %s", ctx.request_id, e.message)
            await self._record_failure(db, ctx, e.message)
            raise

        self._transition(ctx, AIRequestState.COMPLETING)
        return PreparedRequest(
            ctx=ctx,
            action=ai_action,
            options=effective,
            limits=limits,
            prompt=prompt,
        )

    async def complete(self, db: AsyncSession, prepared: PreparedRequest) -> AIResultData:
        """Non-streaming branch: complete, sanitize, log, save history."""
        ctx = prepared.ctx
        try:
            result = await self.client.complete(prepared.prompt, prepared.completion_options())
        except AIError as e:
            logger.warning("AI request %s failed upstream: %s", ctx.request_id, e.message)
            await self._record_failure(db, ctx, e.message, options=prepared.options)
            raise
        except Exception:
            await self._record_failure(db, ctx, "AI service error", options=prepared.options)
            raise

        self._transition(ctx, AIRequestState.SANITIZING)
        cleaned = sanitize_response(result.result, ctx.content, prepared.action)
        processing_time = ctx.elapsed_ms()

        await self._record_success(db, prepared, cleaned, result, processing_time)
        return AIResultData(
            result=cleaned,
            tokens_used=result.tokens_used,
            processing_time=processing_time,
        )

    async def _record_success(
        self,
        db: AsyncSession,
        prepared: PreparedRequest,
        cleaned: str,
        result: CompletionResult,
        processing_time: int,
    ) -> None:
        ctx = prepared.ctx
        self._transition(ctx, AIRequestState.LOGGING)
        await usage_service.record(
            db,
            UsageEntry(
                user_id=ctx.user_id,
                action=ctx.action,
                input_length=len(ctx.content),
                success=True,
                output_length=len(cleaned),
                tokens_used=result.tokens_used,
                processing_time_ms=processing_time,
                note_id=ctx.note_id,
                provider=prepared.options.provider,
                model=result.model or prepared.options.model,
            ),
        )
        if prepared.options.save_history:
            await history_service.save(
                db,
                user_id=ctx.user_id,
                action=ctx.action,
                original_content=ctx.content,
                result_content=cleaned,
                options=prepared.options.to_history(),
                tokens_used=result.tokens_used,
                note_id=ctx.note_id,
            )
        self._transition(ctx, AIRequestState.DONE)
        logger.info(
            "AI request %s done: action=%s tokens=%d time=%dms",
            ctx.request_id,
            ctx.action,
            result.tokens_used,
            processing_time,
        )

    async def stream(self, prepared: PreparedRequest) -> AsyncIterator[StreamEvent]:
        """Streaming branch: yield chunk events, then one done or error event.

        The upstream read runs in a producer task feeding a bounded queue, so
        a slow caller slows the upstream read instead of growing a buffer.
        Closing this generator early cancels the producer.
        """
        ctx = prepared.ctx
        self._transition(ctx, AIRequestState.STREAMING)

        queue: asyncio.Queue[StreamEvent] = asyncio.Queue(
            maxsize=self.settings.ai_stream_queue_size
        )
        outcome = _StreamOutcome()

        async def on_chunk(text: str) -> None:
            outcome.parts.append(text)
            await queue.put(StreamChunk(text=text))

        async def produce() -> None:
            try:
                result = await self.client.stream_complete(
                    prepared.prompt, prepared.completion_options(), on_chunk
                )
            except AIError as e:
                logger.warning(
                    "AI stream %s failed after %d chunks: %s",
                    ctx.request_id,
                    len(outcome.parts),
                    e.message,
                )
                outcome.error = e.message
                await queue.put(StreamError(message=e.message))
            except Exception as e:
                logger.exception("AI stream %s crashed: %s", ctx.request_id, e)
                outcome.error = "AI service error"
                await queue.put(StreamError(message=outcome.error))
            else:
                outcome.result = result
                await queue.put(
                    StreamDone(
                        tokens_used=result.tokens_used,
                        processing_time_ms=ctx.elapsed_ms(),
                    )
                )

        producer = asyncio.create_task(produce())
        # Suppress "Task exception was never retrieved" warnings
        producer.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)

        try:
            while True:
                event = await queue.get()
                yield event
                if not isinstance(event, StreamChunk):
                    break
        finally:
            if not producer.done():
                producer.cancel()
            self._spawn(self._finalize_stream(prepared, outcome, producer))

    async def _finalize_stream(
        self,
        prepared: PreparedRequest,
        outcome: _StreamOutcome,
        producer: asyncio.Task,
    ) -> None:
        """Sanitize and account for a finished stream, after the response went out."""
        ctx = prepared.ctx
        await asyncio.gather(producer, return_exceptions=True)

        async with self.session_factory() as db:
            if outcome.result is not None:
                self._transition(ctx, AIRequestState.SANITIZING)
                cleaned = sanitize_response(outcome.result.result, ctx.content, prepared.action)
                await self._record_success(
                    db, prepared, cleaned, outcome.result, ctx.elapsed_ms()
                )
                return

            message = outcome.error or CLIENT_DISCONNECTED
            tokens_used = 0
            if outcome.error is None and outcome.parts:
                # Generation was cut short by the caller; charge what was produced.
                tokens_used = estimate_tokens(prepared.prompt) + estimate_tokens(
                    "".join(outcome.parts)
                )
            await self._record_failure(
                db, ctx, message, tokens_used=tokens_used, options=prepared.options
            )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("AI post-stream task failed: %s", t.exception())

        task.add_done_callback(_done)

    async def wait_for_background_tasks(self) -> None:
        """Wait until every post-stream task has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ─── Stats ──────────────────────────────────────────────────────────

    async def get_stats(
        self,
        db: AsyncSession,
        user_id: int,
        now: datetime | None = None,
    ) -> dict:
        """Usage aggregates plus the user's current limit state.

        Persistence failures produce zeroed counters rather than an error.
        """
        now = now or datetime.now(timezone.utc)
        limits = await quota_service.get_limits(db, user_id, now)

        try:
            today, month = await usage_service.get_summary(db, user_id, now)
            hourly_count, daily_count = await quota_service.get_counts(db, user_id, now)
        except SQLAlchemyError as e:
            logger.error("Failed to load AI stats for user %s: %s", user_id, e)
            await db.rollback()
            today = {"total_requests": 0, "total_tokens": 0, "total_cost": 0.0, "avg_time": 0.0}
            month = {"total_requests": 0, "total_tokens": 0, "total_cost": 0.0}
            hourly_count = daily_count = 0

        return {
            "today": today,
            "month": month,
            "rateLimit": {"hourly_count": hourly_count, "daily_count": daily_count},
            "limits": {"hourly": limits.hourly_limit, "daily": limits.daily_limit},
            "limitInfo": format_limit_info(limits, hourly_count, daily_count),
            "userTier": limits.tier,
            "isUnlimited": limits.is_unlimited,
        }


# Singleton instance
ai_service = AIService()
