"""HTTP client for the AI assistant API.

Consumes the ``/ai`` endpoints the way an editor front end does: streamed
transforms are read frame by frame, transient failures are retried only
while nothing has been shown yet, and streamed text is cleaned with the
same sanitizer the server applies to non-streamed results.

Usage::

    client = AIAssistantClient("http://localhost:8000/api/v1", token=token)
    result = await client.run("continue", text, on_chunk=editor.append)
"""

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from app.core.errors import (
    AIError,
    StreamProtocolError,
    UpstreamNetworkError,
    UpstreamTimeoutError,
)
from app.core.sanitizer import sanitize_response
from app.core.single_flight import SingleFlight

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 90.0
MAX_RETRIES = 3
RETRY_DELAY = 1.0

ChunkHandler = Callable[[str], Awaitable[None] | None]
StatsHandler = Callable[[dict], Awaitable[None] | None]
TokenRefresher = Callable[[], Awaitable[str]]


class AssistantAPIError(AIError):
    """The API answered with ``success: false`` or a terminal error frame."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class _Unauthorized(Exception):
    pass


@dataclass
class AIRunResult:
    result: str
    raw: str
    tokens_used: int = 0
    processing_time: int = 0
    streamed: bool = False


async def _maybe_await(value) -> None:
    if inspect.isawaitable(value):
        await value


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


class _Attempt:
    """Progress of one attempt."""

    def __init__(self) -> None:
        self.chunks_seen = 0
        self.parts: list[str] = []


class AIAssistantClient:
    """Async client for ``POST /ai/{action}``, settings and stats."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        refresh_token: TokenRefresher | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._refresh_fn = refresh_token
        self._refresh = SingleFlight[str]()
        self._transport = transport

    # ─── Auth ───────────────────────────────────────────────────────────

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def refresh_token(self) -> str:
        """Refresh the bearer token once for all concurrent callers."""
        if self._refresh_fn is None:
            raise AssistantAPIError("Authentication required", 401)
        if self._refresh.in_flight:
            logger.debug("Joining token refresh already in flight")
        self.token = await self._refresh.do(self._refresh_fn)
        return self.token

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    # ─── JSON endpoints ─────────────────────────────────────────────────

    async def _request_json(self, method: str, path: str, payload: dict | None = None) -> dict:
        for attempt in range(2):
            async with self._client() as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=payload,
                    headers=self._headers,
                )
            if response.status_code == 401 and attempt == 0 and self._refresh_fn is not None:
                await self.refresh_token()
                continue
            if response.status_code >= 400:
                raise AssistantAPIError(_error_message(response), response.status_code)
            body = response.json()
            if not body.get("success", False):
                raise AssistantAPIError(body.get("message") or "Request failed", response.status_code)
            return body
        raise AssistantAPIError("Authentication required", 401)

    async def get_settings(self) -> dict:
        return (await self._request_json("GET", "/ai/settings"))["data"]

    async def update_settings(self, **fields) -> str:
        """Send only the given fields, e.g. ``update_settings(stream_enabled=False)``."""
        body = await self._request_json("PUT", "/ai/settings", fields)
        return body.get("message", "")

    async def get_stats(self) -> dict:
        return (await self._request_json("GET", "/ai/stats"))["data"]

    async def get_history(self, limit: int = 20, offset: int = 0) -> list[dict]:
        body = await self._request_json("GET", f"/ai/history?limit={limit}&offset={offset}")
        return body["data"]

    # ─── Transforms ─────────────────────────────────────────────────────

    async def _read_stream(
        self,
        response: httpx.Response,
        state: _Attempt,
        on_chunk: ChunkHandler | None,
        on_stats: StatsHandler | None,
    ) -> dict:
        last_malformed = False
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            try:
                frame = json.loads(line[5:].strip())
            except ValueError:
                logger.warning("Skipping malformed SSE frame: %.200s", line)
                last_malformed = True
                continue
            last_malformed = False

            if frame.get("done"):
                if frame.get("error"):
                    raise AssistantAPIError(str(frame["error"]), response.status_code)
                stats = {
                    "tokensUsed": frame.get("tokensUsed", 0),
                    "processingTime": frame.get("processingTime", 0),
                }
                if on_stats is not None:
                    await _maybe_await(on_stats(stats))
                return stats

            chunk = frame.get("chunk")
            if chunk:
                state.chunks_seen += 1
                state.parts.append(chunk)
                if on_chunk is not None:
                    await _maybe_await(on_chunk(chunk))

        if last_malformed:
            raise StreamProtocolError("Malformed final stream frame")
        raise UpstreamNetworkError("Stream closed before completion")

    async def _attempt(
        self,
        action: str,
        body: dict,
        state: _Attempt,
        on_chunk: ChunkHandler | None,
        on_stats: StatsHandler | None,
    ) -> AIRunResult:
        async with self._client() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/ai/{action}",
                json=body,
                headers=self._headers,
            ) as response:
                if response.status_code == 401:
                    raise _Unauthorized()
                if response.status_code >= 400:
                    await response.aread()
                    raise AssistantAPIError(_error_message(response), response.status_code)

                content_type = response.headers.get("content-type", "")
                if content_type.startswith("text/event-stream"):
                    stats = await self._read_stream(response, state, on_chunk, on_stats)
                    raw = "".join(state.parts)
                    return AIRunResult(
                        result=raw,
                        raw=raw,
                        tokens_used=stats["tokensUsed"],
                        processing_time=stats["processingTime"],
                        streamed=True,
                    )

                await response.aread()
                payload = response.json()
                if not payload.get("success", False):
                    raise AssistantAPIError(payload.get("message") or "Request failed", response.status_code)
                data = payload.get("data") or {}
                result = data.get("result", "")
                return AIRunResult(
                    result=result,
                    raw=result,
                    tokens_used=data.get("tokensUsed", 0),
                    processing_time=data.get("processingTime", 0),
                )

    async def run(
        self,
        action: str,
        content: str,
        options: dict | None = None,
        on_chunk: ChunkHandler | None = None,
        on_stats: StatsHandler | None = None,
    ) -> AIRunResult:
        """Run a transform and return the cleaned result.

        Each attempt is bounded by ``timeout`` seconds of wall-clock time.
        Timeouts and network failures are retried up to ``max_retries``
        times with a linearly growing delay, but only while no chunk has
        reached ``on_chunk``. A 401 triggers one token refresh.
        """
        body = {"content": content, "options": options or {}}
        retries = 0
        refreshed = False

        while True:
            state = _Attempt()
            try:
                outcome = await asyncio.wait_for(
                    self._attempt(action, body, state, on_chunk, on_stats),
                    timeout=self.timeout,
                )
            except _Unauthorized:
                if refreshed or self._refresh_fn is None:
                    raise AssistantAPIError("Authentication required", 401)
                refreshed = True
                await self.refresh_token()
                continue
            except (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError, UpstreamNetworkError) as e:
                transient = (
                    UpstreamTimeoutError(f"Request timed out after {self.timeout:g}s")
                    if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException))
                    else UpstreamNetworkError(str(e) or "Network error")
                )
                if state.chunks_seen or retries >= self.max_retries:
                    raise transient from e
                retries += 1
                delay = self.retry_delay * retries
                logger.warning(
                    "AI request failed (%s), retry %d/%d in %.1fs",
                    transient.message,
                    retries,
                    self.max_retries,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            # JSON results were already cleaned by the server
            if outcome.streamed:
                outcome.result = sanitize_response(outcome.raw, content, action)
            return outcome
