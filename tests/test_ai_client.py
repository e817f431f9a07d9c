"""Tests for the Python client of the AI endpoints."""

import asyncio
import json
import logging

import httpx
import pytest

from app.client import AIAssistantClient, AssistantAPIError
from app.core.errors import StreamProtocolError, UpstreamNetworkError, UpstreamTimeoutError

BASE = "http://assistant.test/api/v1"


def _client(handler, **kwargs) -> AIAssistantClient:
    kwargs.setdefault("retry_delay", 0)
    return AIAssistantClient(
        BASE,
        token=kwargs.pop("token", "old-token"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _sse(*frames: dict) -> bytes:
    return "".join(f"data: {json.dumps(f)}\n\n" for f in frames).encode()


def _sse_response(*frames: dict) -> httpx.Response:
    return httpx.Response(
        200,
        content=_sse(*frames),
        headers={"content-type": "text/event-stream"},
    )


class _BrokenStream(httpx.AsyncByteStream):
    def __init__(self, body: bytes):
        self.body = body

    async def __aiter__(self):
        yield self.body
        raise httpx.ReadError("connection reset")


# ─── Transforms ──────────────────────────────────────────────────────────────

class TestRun:
    @pytest.mark.asyncio
    async def test_json_result_is_passed_through(self):
        def handler(request):
            assert request.url.path == "/api/v1/ai/continue"
            assert json.loads(request.content) == {
                "content": "Hello world",
                "options": {"streamEnabled": False},
            }
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "result": "以下是结果：\n正文内容",
                        "tokensUsed": 18,
                        "processingTime": 250,
                    },
                },
            )

        result = await _client(handler).run(
            "continue", "Hello world", {"streamEnabled": False}
        )

        assert result.result == "以下是结果：\n正文内容"
        assert result.raw == result.result
        assert result.tokens_used == 18
        assert not result.streamed

    @pytest.mark.asyncio
    async def test_stream_delivers_chunks_and_stats(self):
        def handler(request):
            return _sse_response(
                {"chunk": "Polished ", "done": False},
                {"chunk": "text.", "done": False},
                {"done": True, "tokensUsed": 11, "processingTime": 90},
            )

        chunks: list[str] = []
        stats: list[dict] = []

        async def on_stats(s):
            stats.append(s)

        result = await _client(handler).run(
            "polish", "Rough text", on_chunk=chunks.append, on_stats=on_stats
        )

        assert chunks == ["Polished ", "text."]
        assert stats == [{"tokensUsed": 11, "processingTime": 90}]
        assert result.result == "Polished text."
        assert result.streamed

    @pytest.mark.asyncio
    async def test_streamed_result_is_sanitized(self):
        def handler(request):
            return _sse_response(
                {"chunk": "Hello world", "done": False},
                {"chunk": ", and then more.", "done": False},
                {"done": True, "tokensUsed": 5, "processingTime": 10},
            )

        result = await _client(handler).run("continue", "Hello world")

        assert result.raw == "Hello world, and then more."
        assert result.result == "and then more."

    @pytest.mark.asyncio
    async def test_error_frame_raises_without_retry(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return _sse_response(
                {"chunk": "a", "done": False},
                {"done": True, "error": "Stream interrupted"},
            )

        with pytest.raises(AssistantAPIError, match="Stream interrupted"):
            await _client(handler).run("expand", "Note")
        assert calls == 1

    @pytest.mark.asyncio
    async def test_api_rejection_surfaces_message(self):
        def handler(request):
            return httpx.Response(
                429,
                json={"success": False, "message": "Hourly AI request limit reached (10/10)."},
            )

        with pytest.raises(AssistantAPIError) as exc_info:
            await _client(handler).run("continue", "Hello")

        assert exc_info.value.status_code == 429
        assert "limit reached" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_final_frame_is_a_protocol_error(self):
        def handler(request):
            body = _sse({"chunk": "a", "done": False}) + b"data: {\"done\": tru\n\n"
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        with pytest.raises(StreamProtocolError):
            await _client(handler).run("polish", "x")


# ─── Retry policy ────────────────────────────────────────────────────────────

class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_network_failure_before_first_chunk(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(
                200,
                json={"success": True, "data": {"result": "ok", "tokensUsed": 1, "processingTime": 1}},
            )

        result = await _client(handler).run("polish", "text")

        assert result.result == "ok"
        assert calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamNetworkError):
            await _client(handler, max_retries=2).run("polish", "text")
        assert calls == 3

    @pytest.mark.asyncio
    async def test_no_retry_once_a_chunk_was_shown(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(
                200,
                stream=_BrokenStream(_sse({"chunk": "partial", "done": False})),
                headers={"content-type": "text/event-stream"},
            )

        chunks: list[str] = []
        with pytest.raises(UpstreamNetworkError):
            await _client(handler).run("continue", "Hello", on_chunk=chunks.append)

        assert calls == 1
        assert chunks == ["partial"]

    @pytest.mark.asyncio
    async def test_stream_closed_early_before_any_chunk_is_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls == 1:
                return _sse_response()
            return _sse_response(
                {"chunk": "fine", "done": False},
                {"done": True, "tokensUsed": 2, "processingTime": 3},
            )

        result = await _client(handler).run("polish", "text")
        assert result.result == "fine"
        assert calls == 2

    @pytest.mark.asyncio
    async def test_wall_clock_timeout(self):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"success": True, "data": {"result": "late"}})

        with pytest.raises(UpstreamTimeoutError):
            await _client(handler, timeout=0.05, max_retries=0).run("polish", "text")


# ─── Auth ────────────────────────────────────────────────────────────────────

class TestTokenRefresh:
    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self):
        seen: list[str] = []

        def handler(request):
            seen.append(request.headers.get("authorization", ""))
            if request.headers.get("authorization") != "Bearer new-token":
                return httpx.Response(401, json={"success": False, "message": "expired"})
            return httpx.Response(
                200,
                json={"success": True, "data": {"result": "done", "tokensUsed": 1, "processingTime": 1}},
            )

        refreshes = 0

        async def refresh() -> str:
            nonlocal refreshes
            refreshes += 1
            return "new-token"

        result = await _client(handler, refresh_token=refresh).run("polish", "x")

        assert result.result == "done"
        assert refreshes == 1
        assert seen == ["Bearer old-token", "Bearer new-token"]

    @pytest.mark.asyncio
    async def test_second_401_is_fatal(self):
        def handler(request):
            return httpx.Response(401, json={"success": False, "message": "expired"})

        async def refresh() -> str:
            return "still-bad"

        with pytest.raises(AssistantAPIError) as exc_info:
            await _client(handler, refresh_token=refresh).run("polish", "x")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_call(self, caplog):
        gate = asyncio.Event()
        refreshes = 0

        async def refresh() -> str:
            nonlocal refreshes
            refreshes += 1
            await gate.wait()
            return "new-token"

        caplog.set_level(logging.DEBUG, logger="app.client.ai_client")
        client = _client(lambda request: httpx.Response(200), refresh_token=refresh)
        tasks = [asyncio.create_task(client.refresh_token()) for _ in range(4)]
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(*tasks) == ["new-token"] * 4
        assert refreshes == 1
        assert client.token == "new-token"
        assert "Joining token refresh already in flight" in caplog.text

    @pytest.mark.asyncio
    async def test_json_endpoint_refreshes_on_401(self):
        def handler(request):
            if request.headers.get("authorization") != "Bearer new-token":
                return httpx.Response(401, json={"success": False, "message": "expired"})
            return httpx.Response(200, json={"success": True, "data": {"default_length": "short"}})

        async def refresh() -> str:
            return "new-token"

        settings = await _client(handler, refresh_token=refresh).get_settings()
        assert settings == {"default_length": "short"}


# ─── Settings / stats ────────────────────────────────────────────────────────

class TestJsonEndpoints:
    @pytest.mark.asyncio
    async def test_update_settings_sends_only_given_fields(self):
        sent = {}

        def handler(request):
            sent["method"] = request.method
            sent["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "message": "AI settings updated"})

        message = await _client(handler).update_settings(stream_enabled=False)

        assert message == "AI settings updated"
        assert sent == {"method": "PUT", "body": {"stream_enabled": False}}

    @pytest.mark.asyncio
    async def test_invalid_setting_raises(self):
        def handler(request):
            return httpx.Response(400, json={"success": False, "message": "Invalid length setting"})

        with pytest.raises(AssistantAPIError, match="Invalid length setting"):
            await _client(handler).update_settings(default_length="xlarge")

    @pytest.mark.asyncio
    async def test_get_stats(self):
        def handler(request):
            assert request.url.path == "/api/v1/ai/stats"
            return httpx.Response(200, json={"success": True, "data": {"userTier": "pro"}})

        assert await _client(handler).get_stats() == {"userTier": "pro"}
