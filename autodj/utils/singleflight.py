"""Per-key de-duplication of concurrent async work."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one call per key; concurrent callers share its outcome.

    The first caller for a key executes ``func``. Callers arriving while that
    call is in flight await the same future and receive the same result or
    exception. Nothing is remembered once the call settles.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._inflight: Dict[Hashable, asyncio.Future[T]] = {}

    def in_flight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def do(self, key: Hashable, func: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        while existing is not None:
            logger.debug("Joining in-flight call", extra={"group": self._name, "key": str(key)})
            try:
                return await asyncio.shield(existing)
            except asyncio.CancelledError:
                if not existing.cancelled():
                    raise
                # The leader was cancelled, not this caller: take over.
                existing = self._inflight.get(key)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await func()
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
                # Mark retrieved so an unjoined failure does not warn at GC.
                future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)


__all__ = ["SingleFlight"]
