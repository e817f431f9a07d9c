"""Client for an OpenAI-compatible chat-completion endpoint."""

import json
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from app.config import get_settings
from app.core.errors import (
    UpstreamAPIError,
    UpstreamAuthError,
    UpstreamBadRequestError,
    UpstreamError,
    UpstreamNetworkError,
    UpstreamRateLimitError,
    UpstreamStreamError,
    UpstreamTimeoutError,
)

logger = logging.getLogger(__name__)

settings = get_settings()

DONE_SENTINEL = "[DONE]"

ChunkCallback = Callable[[str], Awaitable[None]]


@dataclass
class CompletionOptions:
    model: str
    max_tokens: int
    temperature: float
    top_p: float | None = None


@dataclass
class CompletionResult:
    """A finished generation."""

    result: str
    tokens_used: int
    prompt_tokens: int
    completion_tokens: int
    processing_time_ms: int
    model: str
    estimated: bool = False


def estimate_tokens(text: str) -> int:
    """Rough token count (~2 characters per token). Not billing-grade."""
    return math.ceil(len(text) / 2)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return response.reason_phrase or f"HTTP {response.status_code}"


def _status_error(response: httpx.Response, processing_time_ms: int) -> UpstreamError:
    """Map an HTTP error status to the matching upstream error."""
    message = _error_message(response)
    status = response.status_code
    if status == 401:
        logger.error("Completion endpoint rejected credentials: %s", message)
        return UpstreamAuthError(message, processing_time_ms)
    if status == 429:
        return UpstreamRateLimitError(message, processing_time_ms)
    if status == 400:
        return UpstreamBadRequestError(message, processing_time_ms)
    return UpstreamAPIError(message, processing_time_ms)


class CompletionClient:
    """Outbound calls to ``{base_url}/chat/completions``.

    Errors are raised as ``UpstreamError`` subclasses carrying the error code
    (UNAUTHORIZED, RATE_LIMIT_EXCEEDED, BAD_REQUEST, API_ERROR, TIMEOUT,
    NETWORK_ERROR, STREAM_ERROR).
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.timeout = timeout or settings.llm_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, prompt: str, options: CompletionOptions, stream: bool) -> dict:
        payload = {
            "model": options.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p if options.top_p is not None else settings.llm_top_p,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def complete(self, prompt: str, options: CompletionOptions) -> CompletionResult:
        """Single non-streaming completion."""
        start = time.monotonic()
        logger.info(
            "Completion request: model=%s prompt_len=%d max_tokens=%d",
            options.model,
            len(prompt),
            options.max_tokens,
        )

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=self._payload(prompt, options, stream=False),
                    headers=self._headers,
                )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(
                f"Request timed out after {self.timeout:g}s, please try again later",
                _elapsed_ms(start),
            ) from e
        except httpx.TransportError as e:
            logger.error("Completion network error: %s", e)
            raise UpstreamNetworkError(
                "Network connection failed, please check your network", _elapsed_ms(start)
            ) from e

        processing_time = _elapsed_ms(start)
        if response.status_code >= 400:
            logger.error(
                "Completion HTTP error %s: %s", response.status_code, response.text[:500]
            )
            raise _status_error(response, processing_time)

        try:
            data = response.json()
            result = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamAPIError("Malformed completion response", processing_time) from e

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        total_tokens = int(usage.get("total_tokens") or 0)
        estimated = False
        if not total_tokens:
            prompt_tokens = estimate_tokens(prompt)
            completion_tokens = estimate_tokens(result)
            total_tokens = prompt_tokens + completion_tokens
            estimated = True
            logger.warning("No usage in completion response, estimated %d tokens", total_tokens)

        logger.info(
            "Completion succeeded: %dms tokens=%d result_len=%d",
            processing_time,
            total_tokens,
            len(result),
        )
        return CompletionResult(
            result=result,
            tokens_used=total_tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            processing_time_ms=processing_time,
            model=data.get("model") or options.model,
            estimated=estimated,
        )

    async def stream_complete(
        self,
        prompt: str,
        options: CompletionOptions,
        on_chunk: ChunkCallback,
    ) -> CompletionResult:
        """Streaming completion.

        ``on_chunk`` is awaited for each content delta, so a slow consumer
        slows the upstream read. Returns the accumulated text and usage once
        the stream ends or ``[DONE]`` arrives.
        """
        start = time.monotonic()
        parts: list[str] = []
        prompt_tokens = completion_tokens = total_tokens = 0
        model = options.model

        logger.info(
            "Streaming completion request: model=%s prompt_len=%d max_tokens=%d",
            options.model,
            len(prompt),
            options.max_tokens,
        )

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=self._payload(prompt, options, stream=True),
                    headers=self._headers,
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        logger.error(
                            "Streaming completion HTTP error %s: %s",
                            response.status_code,
                            response.text[:500],
                        )
                        raise _status_error(response, _elapsed_ms(start))

                    try:
                        async for line in response.aiter_lines():
                            if not line.startswith("data:"):
                                continue
                            data_str = line[5:].strip()
                            if not data_str:
                                continue
                            if data_str == DONE_SENTINEL:
                                break

                            try:
                                frame = json.loads(data_str)
                            except ValueError:
                                logger.warning("Skipping malformed stream frame: %.200s", data_str)
                                continue
                            if not isinstance(frame, dict):
                                logger.warning("Skipping non-object stream frame: %.200s", data_str)
                                continue

                            choices = frame.get("choices") or []
                            choice = choices[0] if isinstance(choices, list) and choices else None
                            if choice is not None and not isinstance(choice, dict):
                                logger.warning("Skipping stream frame with malformed choice: %.200s", data_str)
                                continue
                            delta = (choice or {}).get("delta")
                            content = delta.get("content") if isinstance(delta, dict) else None
                            if content:
                                parts.append(content)
                                await on_chunk(content)

                            usage = frame.get("usage")
                            if isinstance(usage, dict) and usage:
                                prompt_tokens = int(usage.get("prompt_tokens") or 0)
                                completion_tokens = int(usage.get("completion_tokens") or 0)
                                total_tokens = int(usage.get("total_tokens") or 0)
                            if frame.get("model"):
                                model = frame["model"]
                    except httpx.HTTPError as e:
                        logger.error("Stream broke after %d chunks: %s", len(parts), e)
                        raise UpstreamStreamError(
                            f"Stream interrupted: {e}", _elapsed_ms(start)
                        ) from e
        except UpstreamError:
            raise
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(
                f"Request timed out after {self.timeout:g}s, please try again later",
                _elapsed_ms(start),
            ) from e
        except httpx.TransportError as e:
            logger.error("Streaming completion network error: %s", e)
            raise UpstreamNetworkError(
                "Network connection failed, please check your network", _elapsed_ms(start)
            ) from e

        full_content = "".join(parts)
        processing_time = _elapsed_ms(start)

        estimated = False
        if not total_tokens:
            prompt_tokens = estimate_tokens(prompt)
            completion_tokens = estimate_tokens(full_content)
            total_tokens = prompt_tokens + completion_tokens
            estimated = True
            logger.warning(
                "No usage frame in stream, estimated tokens: prompt=%d completion=%d",
                prompt_tokens,
                completion_tokens,
            )

        logger.info(
            "Streaming completion succeeded: %dms tokens=%d result_len=%d",
            processing_time,
            total_tokens,
            len(full_content),
        )
        return CompletionResult(
            result=full_content,
            tokens_used=total_tokens,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            processing_time_ms=processing_time,
            model=model,
            estimated=estimated,
        )


# Singleton instance
completion_client = CompletionClient()
