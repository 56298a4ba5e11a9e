"""
Single-flight helper for asyncio: concurrent callers asking for the same key
share one pending operation instead of starting duplicates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, TypeVar

T = TypeVar("T")

_LOGGER = logging.getLogger("kaleidoplan.single_flight")


class SingleFlight:
    """Track in-flight work per key and let every caller await the same task.

    The work runs in its own task, so cancelling one caller (leader or
    follower) never cancels it for the others. The slot is released when the
    task finishes, so the next call after completion starts fresh.
    """

    def __init__(self, name: str = "default") -> None:
        self._name = name
        self._in_flight: Dict[Hashable, asyncio.Task] = {}

    def in_flight(self, key: Hashable = None) -> bool:
        return key in self._in_flight

    async def wait_idle(self, key: Hashable) -> None:
        """Wait until no operation for ``key`` is pending; its outcome is ignored."""
        while True:
            pending = self._in_flight.get(key)
            if pending is None:
                return
            await asyncio.wait([pending])

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory()`` unless an identical call is pending; then share its outcome."""
        task: Optional[asyncio.Task] = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        else:
            _LOGGER.debug("singleflight.join", extra={"flight": self._name})
        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # every caller may have gone away; mark the outcome as retrieved
        if not task.cancelled():
            task.exception()


def freeze_value(value: Any) -> Any:
    """Build a hashable representation of request parameters."""
    if isinstance(value, dict):
        return tuple(sorted((str(k), freeze_value(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, set)):
        return tuple(freeze_value(v) for v in value)
    return str(value)
