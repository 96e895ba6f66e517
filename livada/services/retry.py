"""
RetryPolicy - Runs an upstream operation with per-attempt timeouts and
exponential backoff.

Attempt 0 is the first try. Between attempt i and i+1 the policy sleeps
``base_backoff * backoff_multiplier ** i``. Only the last attempt's error is
surfaced when every attempt fails.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from livada.services.clock import Clock, system_clock
from livada.services.errors import (
    ConfigError,
    FetchCancelledError,
    RequestTimeoutError,
)

T = TypeVar("T")

#: An upstream operation receives the timeout of the attempt it runs in.
Operation = Callable[[float], Awaitable[T]]


@dataclass(frozen=True)
class RetryConfig:
    """Retry behaviour for one upstream."""

    max_retries: int = 2
    per_attempt_timeout: float = 10.0  # seconds
    base_backoff: float = 1.0  # seconds
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be positive")
        if self.base_backoff < 0:
            raise ValueError("base_backoff must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Sleep between attempt ``attempt`` and the next one."""
        return self.base_backoff * (self.backoff_multiplier**attempt)


@dataclass
class FetchAttempt:
    """Record of a single attempt inside one RetryPolicy.run call."""

    attempt_number: int
    started_at: datetime
    payload: Any = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class CancelScope:
    """
    Caller-controlled cancellation for a fetch.

    Either call ``cancel()`` from another task, or give a deadline (a
    ``clock.monotonic()`` value) after which the fetch is abandoned.

    Usage:
        scope = CancelScope.after(5.0)
        envelope = await gateway.fetch(key, fetch_fn, cancel=scope)
    """

    def __init__(self, deadline: float | None = None):
        self.deadline = deadline
        self._event = asyncio.Event()

    @classmethod
    def after(cls, seconds: float, clock: Clock | None = None) -> "CancelScope":
        clock = clock or system_clock
        return cls(deadline=clock.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self, clock: Clock) -> float | None:
        """Seconds left before the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return self.deadline - clock.monotonic()

    async def wait(self) -> None:
        await self._event.wait()


class RetryPolicy:
    """
    Executes an operation up to ``max_retries + 1`` times.

    Usage:
        policy = RetryPolicy()
        data = await policy.run(
            lambda timeout: client.get_json(url, timeout=timeout),
            RetryConfig(max_retries=2, per_attempt_timeout=5.0),
        )
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or system_clock

    async def run(
        self,
        operation: Operation[T],
        config: RetryConfig,
        *,
        cancel: CancelScope | None = None,
        name: str = "upstream",
    ) -> T:
        """
        Run ``operation`` until it succeeds or the attempt budget is spent.

        Args:
            operation: Async callable taking the attempt timeout in seconds
            config: Retry budget, timeout and backoff
            cancel: Optional cancel scope / deadline
            name: Upstream name used in errors and logs

        Returns:
            The result of the first successful attempt

        Raises:
            ConfigError: Immediately, without retrying
            FetchCancelledError: If ``cancel`` fires or its deadline passes
            Exception: The last attempt's error once all attempts failed
        """
        attempts: list[FetchAttempt] = []
        last_error: Exception | None = None

        for attempt_number in range(config.total_attempts):
            self._check_cancelled(cancel, name)
            started_at = self._clock.now()

            try:
                result = await self._attempt(
                    operation, config.per_attempt_timeout, cancel, name
                )
            except (ConfigError, FetchCancelledError):
                raise
            except Exception as e:
                last_error = e
                attempts.append(FetchAttempt(attempt_number, started_at, error=e))
                logger.warning(
                    f"[{name}] Attempt {attempt_number + 1}/{config.total_attempts} "
                    f"failed: {type(e).__name__}: {e}"
                )
            else:
                attempts.append(FetchAttempt(attempt_number, started_at, payload=result))
                if attempt_number > 0:
                    logger.info(
                        f"[{name}] Succeeded on attempt "
                        f"{attempt_number + 1}/{config.total_attempts}"
                    )
                return result

            if attempt_number < config.max_retries:
                delay = config.delay_for(attempt_number)
                logger.debug(f"[{name}] Backing off {delay:g}s before next attempt")
                await self._backoff(delay, cancel, name)

        logger.error(
            f"[{name}] All {len(attempts)} attempts failed, "
            f"last error: {type(last_error).__name__}: {last_error}"
        )
        assert last_error is not None
        raise last_error

    async def _attempt(
        self,
        operation: Operation[T],
        timeout: float,
        cancel: CancelScope | None,
        name: str,
    ) -> T:
        """Run one attempt, bounded by its timeout and the cancel scope."""
        limit = timeout
        deadline_bound = False
        if cancel is not None:
            remaining = cancel.remaining(self._clock)
            if remaining is not None and remaining < limit:
                limit = max(remaining, 0.0)
                deadline_bound = True

        task = asyncio.ensure_future(operation(limit))
        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=limit, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                # Let the abandoned attempt finish its cleanup.
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            return task.result()
        if cancel is not None and cancel.cancelled:
            raise FetchCancelledError(name)
        if deadline_bound:
            raise FetchCancelledError(name, "deadline exceeded")
        raise RequestTimeoutError(name, timeout)

    async def _backoff(
        self,
        delay: float,
        cancel: CancelScope | None,
        name: str,
    ) -> None:
        """Sleep between attempts unless the caller cancels first."""
        if cancel is None:
            await self._clock.sleep(delay)
            return

        remaining = cancel.remaining(self._clock)
        if remaining is not None and remaining <= delay:
            raise FetchCancelledError(name, "deadline exceeded")

        sleeper = asyncio.ensure_future(self._clock.sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

        if waiter in done:
            raise FetchCancelledError(name)

    def _check_cancelled(self, cancel: CancelScope | None, name: str) -> None:
        if cancel is None:
            return
        if cancel.cancelled:
            raise FetchCancelledError(name)
        remaining = cancel.remaining(self._clock)
        if remaining is not None and remaining <= 0:
            raise FetchCancelledError(name, "deadline exceeded")
