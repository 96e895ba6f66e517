"""
SingleFlight - Coalesces concurrent fetches of the same cache key.

When several requests for the same stale key arrive together, only the
first runs the retry sequence against the upstream; the rest await its
result. Off by default: without it every request runs its own sequence.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


class SingleFlight:
    """
    Shares one in-flight call per key between concurrent callers.

    Usage:
        flight = SingleFlight()
        envelope = await flight.do(key, lambda: refresh(key))
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()
        self._debug = debug
        self._leaders = 0
        self._coalesced = 0

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``key`` unless a call for it is already running."""
        async with self._lock:
            task = self._in_flight.get(key)
            if task is not None:
                self._coalesced += 1
                self._log(f"JOIN: {key[:50]}")
            else:
                self._leaders += 1
                self._log(f"LEAD: {key[:50]}")
                task = asyncio.create_task(self._run_and_forget(key, fn))
                self._in_flight[key] = task

        # Followers must not cancel the shared call when they are cancelled.
        return await asyncio.shield(task)

    async def _run_and_forget(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            async with self._lock:
                self._in_flight.pop(key, None)
            self._log(f"DONE: {key[:50]}")

    async def cancel_all(self) -> int:
        """Cancel every in-flight call; used on shutdown."""
        async with self._lock:
            tasks = list(self._in_flight.values())
            self._in_flight = {}
        for task in tasks:
            task.cancel()
        if tasks:
            self._log(f"CANCEL_ALL: {len(tasks)}")
        return len(tasks)

    def get_in_flight_keys(self) -> list[str]:
        return sorted(self._in_flight)

    def get_stats(self) -> "SingleFlightStats":
        return SingleFlightStats(
            leaders=self._leaders,
            coalesced=self._coalesced,
            in_flight=len(self._in_flight),
        )

    def _log(self, message: str) -> None:
        if self._debug:
            logger.debug(f"[SingleFlight] {message}")


@dataclass
class SingleFlightStats:
    """Snapshot of coalescing counters."""

    leaders: int = 0  # calls that actually ran
    coalesced: int = 0  # calls that joined a running one
    in_flight: int = 0

    @property
    def coalesce_rate(self) -> float:
        calls = self.leaders + self.coalesced
        return self.coalesced / calls if calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        stats = asdict(self)
        stats["coalesce_rate"] = round(self.coalesce_rate, 4)
        return stats
