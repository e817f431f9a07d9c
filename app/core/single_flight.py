"""Single-flight coordination for async work shared by concurrent callers."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run a coroutine at most once per burst of concurrent callers.

    The first caller starts the work; callers arriving while it is in flight
    await the same future and receive the same result (or exception). Once
    the work settles the slot is cleared, so the next call starts fresh.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Future[T] | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def do(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self._lock:
            future = self._inflight
            leader = future is None
            if leader:
                future = asyncio.get_running_loop().create_future()
                self._inflight = future

        if not leader:
            return await asyncio.shield(future)

        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Followers observe the exception; keep the leader's copy from
            # being reported as "never retrieved".
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            async with self._lock:
                if self._inflight is future:
                    self._inflight = None
