"""
Shared fixtures: a virtual clock and scripted upstreams.
"""

import asyncio
import socket
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from livada.services.cache import CacheStore
from livada.services.fallback import TtlConfig
from livada.services.gateway import Gateway
from livada.services.retry import RetryConfig

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Virtual time; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: datetime = T0):
        self.start = start
        self.current = start
        self._monotonic = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)
        self._monotonic += seconds

    def elapsed(self) -> float:
        return (self.current - self.start).total_seconds()

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class ScriptedUpstream:
    """
    Fetch function that fails ``failures`` times, then returns ``payload``.

    ``failures=None`` fails forever. Call times are recorded in virtual
    seconds since the clock started.
    """

    def __init__(
        self,
        clock: FakeClock,
        payload: Any = None,
        failures: int | None = 0,
        error_factory: Callable[[], Exception] | None = None,
    ):
        self.clock = clock
        self.payload = payload if payload is not None else {"v": 2}
        self.failures = failures
        self.error_factory = error_factory or dns_error
        self.calls: list[float] = []
        self.timeouts: list[float] = []

    async def __call__(self, timeout: float) -> Any:
        self.calls.append(self.clock.elapsed())
        self.timeouts.append(timeout)
        if self.failures is None or len(self.calls) <= self.failures:
            raise self.error_factory()
        return self.payload

    @property
    def call_count(self) -> int:
        return len(self.calls)


def dns_error() -> Exception:
    return socket.gaierror(socket.EAI_NONAME, "Name or service not known")


def upstream_500() -> Exception:
    from livada.services.errors import UpstreamError

    return UpstreamError("sensor API returned HTTP 500", upstream="test", status_code=500)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> CacheStore:
    return CacheStore()


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=2, per_attempt_timeout=5.0, base_backoff=1.0, backoff_multiplier=2.0
    )


@pytest.fixture
def ttl_config() -> TtlConfig:
    return TtlConfig(normal_ttl=300.0, offline_ttl=1800.0)


@pytest.fixture
def gateway(clock, cache, retry_config, ttl_config) -> Gateway:
    return Gateway("test", retry_config, ttl_config, cache=cache, clock=clock)
