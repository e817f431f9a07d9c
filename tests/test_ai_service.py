"""End-to-end tests for the AI request orchestrator with a fake completion client."""

import asyncio

import pytest
from sqlalchemy import select

from app.core.errors import QuotaExceededError, UpstreamRateLimitError, UpstreamStreamError, ValidationError
from app.models.ai_history import AIHistory
from app.models.ai_usage_log import AIUsageLog
from app.schemas.ai import AIOptions, StreamChunk, StreamDone, StreamError
from app.services.ai import CLIENT_DISCONNECTED, AIRequestState, AIService
from app.services.completion import CompletionResult
from app.services.quota import quota_service
from tests.factories import add_user


class FakeClient:
    """Stands in for ``CompletionClient``; records the prompts it was given."""

    def __init__(
        self,
        text: str = "",
        chunks: list[str] | None = None,
        error: Exception | None = None,
        hang_after: int | None = None,
    ):
        self.text = text
        self.chunks = chunks or []
        self.error = error
        self.hang_after = hang_after
        self.prompts: list[str] = []

    def _result(self, text: str) -> CompletionResult:
        return CompletionResult(
            result=text,
            tokens_used=20,
            prompt_tokens=12,
            completion_tokens=8,
            processing_time_ms=5,
            model="fake-model",
        )

    async def complete(self, prompt, options):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self._result(self.text)

    async def stream_complete(self, prompt, options, on_chunk):
        self.prompts.append(prompt)
        for i, chunk in enumerate(self.chunks):
            if self.hang_after is not None and i == self.hang_after:
                await asyncio.Event().wait()
            await on_chunk(chunk)
        if self.error is not None:
            raise self.error
        return self._result("".join(self.chunks))


async def _usage_rows(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(
            select(AIUsageLog).where(AIUsageLog.user_id == user_id).order_by(AIUsageLog.id)
        )
        return list(result.scalars().all())


async def _history_rows(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(select(AIHistory).where(AIHistory.user_id == user_id))
        return list(result.scalars().all())


# ─── Non-streaming ───────────────────────────────────────────────────────────

class TestComplete:
    @pytest.mark.asyncio
    async def test_continue_short_for_free_user(self, db, session_factory):
        await add_user(db, 1)
        client = FakeClient(text="Hello world, and the story goes on.")
        service = AIService(client=client, session_factory=session_factory)

        prepared = await service.prepare(
            db, 1, "continue", "Hello world", AIOptions(length="short", streamEnabled=False)
        )
        data = await service.complete(db, prepared)

        assert data.result == "and the story goes on."
        assert data.result.strip()
        assert data.result != client.prompts[0]
        assert data.tokens_used == 20
        assert prepared.ctx.state == AIRequestState.DONE
        assert prepared.limits.tier == "free"

        rows = await _usage_rows(session_factory, 1)
        assert len(rows) == 1
        assert rows[0].success is True
        assert rows[0].output_length == len(data.result)

        history = await _history_rows(session_factory, 1)
        assert [h.result_content for h in history] == [data.result]
        assert history[0].options["length"] == "short"

    @pytest.mark.asyncio
    async def test_save_history_false_skips_history(self, db, session_factory):
        await add_user(db, 2)
        service = AIService(client=FakeClient(text="Polished."), session_factory=session_factory)

        prepared = await service.prepare(
            db, 2, "polish", "Rough text", AIOptions(saveHistory=False, streamEnabled=False)
        )
        await service.complete(db, prepared)

        assert await _history_rows(session_factory, 2) == []
        assert len(await _usage_rows(session_factory, 2)) == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_logs_failed_usage(self, db, session_factory):
        await add_user(db, 3)
        service = AIService(
            client=FakeClient(error=UpstreamRateLimitError("Too many requests")),
            session_factory=session_factory,
        )

        prepared = await service.prepare(db, 3, "expand", "A note", AIOptions(streamEnabled=False))
        with pytest.raises(UpstreamRateLimitError):
            await service.complete(db, prepared)

        rows = await _usage_rows(session_factory, 3)
        assert len(rows) == 1
        assert rows[0].success is False
        assert rows[0].error_message == "Too many requests"
        assert prepared.ctx.state == AIRequestState.FAILED


# ─── Rejections before the upstream call ─────────────────────────────────────

class TestPrepare:
    @pytest.mark.asyncio
    async def test_empty_content_rejected_and_logged(self, db, session_factory):
        client = FakeClient(text="unused")
        service = AIService(client=client, session_factory=session_factory)

        with pytest.raises(ValidationError, match="Content cannot be empty"):
            await service.prepare(db, 4, "continue", "   ")

        rows = await _usage_rows(session_factory, 4)
        assert [r.success for r in rows] == [False]
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, db, session_factory):
        service = AIService(client=FakeClient(), session_factory=session_factory)
        with pytest.raises(ValidationError, match="Unsupported AI action"):
            await service.prepare(db, 5, "translate", "Some text")

    @pytest.mark.asyncio
    async def test_short_summary_input_rejected(self, db, session_factory):
        service = AIService(client=FakeClient(), session_factory=session_factory)
        with pytest.raises(ValidationError, match="too short to summarize"):
            await service.prepare(db, 6, "summarize", "Too short.")

    @pytest.mark.asyncio
    async def test_overlong_content_rejected(self, db, session_factory):
        service = AIService(client=FakeClient(), session_factory=session_factory)
        content = "x" * (service.settings.ai_content_max_length + 1)
        with pytest.raises(ValidationError, match="too long"):
            await service.prepare(db, 7, "polish", content)

    @pytest.mark.asyncio
    async def test_invalid_option_rejected_before_quota_is_consumed(self, db, session_factory):
        await add_user(db, 9)
        client = FakeClient(text="unused")
        service = AIService(client=client, session_factory=session_factory)

        with pytest.raises(ValidationError, match="Invalid length option"):
            await service.prepare(db, 9, "continue", "Hello world", AIOptions(length="xlarge"))

        assert await quota_service.get_counts(db, 9) == (0, 0)
        assert client.prompts == []
        rows = await _usage_rows(session_factory, 9)
        assert [r.success for r in rows] == [False]

    @pytest.mark.asyncio
    async def test_quota_exceeded_never_calls_upstream(self, db, session_factory):
        await add_user(db, 8)
        limits = await quota_service.get_limits(db, 8)
        for _ in range(limits.hourly_limit):
            await quota_service.check_and_consume(db, 8, limits)

        client = FakeClient(text="unused")
        service = AIService(client=client, session_factory=session_factory)

        with pytest.raises(QuotaExceededError) as exc_info:
            await service.prepare(db, 8, "continue", "Hello world")

        assert exc_info.value.status_code == 429
        assert "limit" in exc_info.value.message.lower()
        assert client.prompts == []
        rows = await _usage_rows(session_factory, 8)
        assert [r.success for r in rows] == [False]


# ─── Streaming ───────────────────────────────────────────────────────────────

async def _drain(service, prepared) -> list:
    return [event async for event in service.stream(prepared)]


class TestStream:
    @pytest.mark.asyncio
    async def test_chunks_then_done_and_history_is_sanitized(self, db, session_factory):
        await add_user(db, 10)
        client = FakeClient(chunks=["Hello world", ", then ", "more text."])
        service = AIService(client=client, session_factory=session_factory)

        prepared = await service.prepare(db, 10, "continue", "Hello world")
        assert prepared.stream_enabled

        events = await _drain(service, prepared)
        await service.wait_for_background_tasks()

        assert [e.text for e in events if isinstance(e, StreamChunk)] == client.chunks
        assert isinstance(events[-1], StreamDone)
        assert events[-1].tokens_used == 20

        rows = await _usage_rows(session_factory, 10)
        assert [r.success for r in rows] == [True]
        history = await _history_rows(session_factory, 10)
        assert history[0].result_content == "then more text."

    @pytest.mark.asyncio
    async def test_three_chunks_then_network_error(self, db, session_factory):
        await add_user(db, 11)
        client = FakeClient(
            chunks=["a", "b", "c"],
            error=UpstreamStreamError("Stream interrupted: connection reset"),
        )
        service = AIService(client=client, session_factory=session_factory)

        prepared = await service.prepare(db, 11, "expand", "Some note")
        events = await _drain(service, prepared)
        await service.wait_for_background_tasks()

        assert [type(e) for e in events] == [StreamChunk] * 3 + [StreamError]
        assert events[-1].message == "Stream interrupted: connection reset"

        rows = await _usage_rows(session_factory, 11)
        assert len(rows) == 1
        assert rows[0].success is False
        assert rows[0].error_message == "Stream interrupted: connection reset"
        assert await _history_rows(session_factory, 11) == []

    @pytest.mark.asyncio
    async def test_client_disconnect_cancels_upstream_and_logs(self, db, session_factory):
        await add_user(db, 12)
        client = FakeClient(chunks=["first", "second"], hang_after=1)
        service = AIService(client=client, session_factory=session_factory)

        prepared = await service.prepare(db, 12, "continue", "Start")
        stream = service.stream(prepared)
        first = await stream.__anext__()
        await stream.aclose()
        await service.wait_for_background_tasks()

        assert first == StreamChunk(text="first")
        rows = await _usage_rows(session_factory, 12)
        assert len(rows) == 1
        assert rows[0].success is False
        assert rows[0].error_message == CLIENT_DISCONNECTED
        assert rows[0].tokens_used > 0


# ─── Stats ───────────────────────────────────────────────────────────────────

class TestStats:
    @pytest.mark.asyncio
    async def test_stats_reflect_usage_and_quota(self, db, session_factory):
        await add_user(db, 20)
        service = AIService(client=FakeClient(text="Done."), session_factory=session_factory)
        prepared = await service.prepare(db, 20, "polish", "Text", AIOptions(streamEnabled=False))
        await service.complete(db, prepared)

        stats = await service.get_stats(db, 20)

        assert stats["today"]["total_requests"] == 1
        assert stats["today"]["total_tokens"] == 20
        assert stats["rateLimit"]["daily_count"] == 1
        assert stats["limits"] == {"hourly": 10, "daily": 50}
        assert stats["userTier"] == "free"
        assert stats["isUnlimited"] is False
        assert stats["limitInfo"]["hourly"]["remaining"] == 9
