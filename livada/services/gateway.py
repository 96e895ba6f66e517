"""
Gateway - Cache, retry and fallback for one upstream.

Combines:
- CacheStore for last-known-good payloads
- RetryPolicy for bounded, backed-off attempts
- ErrorClassifier + FallbackDecider for serving stale data during outages
- SingleFlight (optional) for coalescing concurrent fetches of a key

Per request: fresh cache -> live; otherwise fetch with retries; success ->
store and live; failure -> classify, decide, cache-fallback or error.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal

from loguru import logger
from pydantic import BaseModel

from livada.services.cache import CacheEntry, CacheStore
from livada.services.classifier import ErrorClassifier, default_classifier
from livada.services.clock import Clock, system_clock
from livada.services.errors import CacheMiss, ConfigError
from livada.services.fallback import FallbackDecider, TtlConfig, default_decider
from livada.services.retry import CancelScope, RetryConfig, RetryPolicy
from livada.services.singleflight import SingleFlight

EnvelopeSource = Literal["live", "cache-fallback", "error"]

#: Fetch function for one upstream request; receives the attempt timeout.
FetchFn = Callable[[float], Awaitable[Any]]


class ResponseEnvelope(BaseModel):
    """What every gateway fetch returns, whatever happened upstream."""

    payload: Any = None
    source: EnvelopeSource
    timestamp: datetime
    warning: str | None = None
    upstream: str | None = None
    cached_at: datetime | None = None
    cache_age_seconds: int | None = None
    error: str | None = None
    error_kind: str | None = None  # 'connectivity' | 'upstream-error' | 'config'

    @classmethod
    def live(
        cls,
        upstream: str,
        payload: Any,
        now: datetime,
        entry: CacheEntry | None = None,
    ) -> "ResponseEnvelope":
        """Live data; ``entry`` is set when it came from a still-fresh cache."""
        return cls(
            payload=payload,
            source="live",
            timestamp=now,
            upstream=upstream,
            cached_at=entry.stored_at if entry else None,
            cache_age_seconds=int(entry.age_seconds(now)) if entry else None,
        )

    @classmethod
    def cache_fallback(
        cls,
        upstream: str,
        entry: CacheEntry,
        warning: str,
        age_seconds: int,
        now: datetime,
        error: str,
        error_kind: str,
    ) -> "ResponseEnvelope":
        return cls(
            payload=entry.payload,
            source="cache-fallback",
            timestamp=now,
            warning=warning,
            upstream=upstream,
            cached_at=entry.stored_at,
            cache_age_seconds=age_seconds,
            error=error,
            error_kind=error_kind,
        )

    @classmethod
    def failure(
        cls,
        upstream: str,
        now: datetime,
        error: str,
        error_kind: str,
    ) -> "ResponseEnvelope":
        return cls(
            source="error",
            timestamp=now,
            upstream=upstream,
            error=error,
            error_kind=error_kind,
        )

    @property
    def status_code(self) -> int:
        """HTTP status for this envelope."""
        if self.source != "error":
            return 200
        if self.error_kind == "config":
            return 500
        return 502

    def to_body(self, payload_field: str = "data") -> dict[str, Any]:
        """Wire JSON; the key set is the same for every source."""
        return {
            payload_field: self.payload,
            "source": self.source,
            "timestamp": self.timestamp.isoformat(),
            "warning": self.warning,
            "upstream": self.upstream,
            "cached_at": self.cached_at.isoformat() if self.cached_at else None,
            "cache_age_seconds": self.cache_age_seconds,
            "error": self.error,
        }


class Gateway:
    """
    Resilient access to one upstream.

    Usage:
        gateway = Gateway(
            "calendar",
            RetryConfig(max_retries=2, per_attempt_timeout=10.0),
            TtlConfig(normal_ttl=1800, offline_ttl=86400),
        )

        envelope = await gateway.fetch(
            "calendar:locale=sl",
            lambda timeout: client.get_text(CALENDAR_URL, timeout=timeout),
        )
    """

    def __init__(
        self,
        name: str,
        retry_config: RetryConfig,
        ttl_config: TtlConfig,
        cache: CacheStore | None = None,
        classifier: ErrorClassifier | None = None,
        decider: FallbackDecider | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
        single_flight: bool = False,
    ):
        self.name = name
        self.retry_config = retry_config
        self.ttl_config = ttl_config
        self.cache = cache if cache is not None else CacheStore()
        self._classifier = classifier or default_classifier
        self._decider = decider or default_decider
        self._clock = clock or system_clock
        self._retry = retry_policy or RetryPolicy(self._clock)
        self._single_flight = SingleFlight() if single_flight else None

    async def fetch(
        self,
        key: str,
        fetch_fn: FetchFn,
        retry_config: RetryConfig | None = None,
        ttl_config: TtlConfig | None = None,
        *,
        cancel: CancelScope | None = None,
    ) -> ResponseEnvelope:
        """
        Fetch ``key`` through the cache, retrying and falling back as needed.

        Never raises for upstream or internal failures: those come back as an
        envelope with ``source="error"``. Task cancellation still propagates.

        Args:
            key: Cache key, unique per upstream + request parameters
            fetch_fn: Async callable doing one upstream attempt
            retry_config: Override the gateway's retry settings
            ttl_config: Override the gateway's TTL settings
            cancel: Optional cancel scope / deadline for the whole fetch
        """
        retry_config = retry_config or self.retry_config
        ttl_config = ttl_config or self.ttl_config

        try:
            entry = await self.cache.get(key)
            now = self._clock.now()
            if entry is not None and entry.age_seconds(now) < ttl_config.normal_ttl:
                logger.debug(
                    f"[{self.name}] Fresh cache for {key} "
                    f"({int(entry.age_seconds(now))}s old)"
                )
                return ResponseEnvelope.live(self.name, entry.payload, now, entry)

            async def refresh() -> ResponseEnvelope:
                return await self._refresh(
                    key, fetch_fn, retry_config, ttl_config, cancel, now
                )

            if self._single_flight is not None:
                return await self._single_flight.do(key, refresh)
            return await refresh()

        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected gateway failure for {key}")
            return ResponseEnvelope.failure(
                self.name,
                self._clock.now(),
                f"Internal gateway error: {type(e).__name__}: {e}",
                self._classifier.classify(e).value,
            )

    async def _refresh(
        self,
        key: str,
        fetch_fn: FetchFn,
        retry_config: RetryConfig,
        ttl_config: TtlConfig,
        cancel: CancelScope | None,
        requested_at: datetime,
    ) -> ResponseEnvelope:
        # Keep the fallback candidate in the cache until we are done.
        self.cache.pin(key)
        try:
            try:
                payload = await self._retry.run(
                    fetch_fn, retry_config, cancel=cancel, name=self.name
                )
            except ConfigError as e:
                logger.error(f"[{self.name}] Configuration error: {e}")
                return ResponseEnvelope.failure(
                    self.name, self._clock.now(), str(e), "config"
                )
            except Exception as e:
                return await self._fall_back(key, e, ttl_config, requested_at)

            now = self._clock.now()
            await self.cache.put(key, payload, now)
            logger.info(f"[{self.name}] Live fetch succeeded for {key}")
            return ResponseEnvelope.live(self.name, payload, now)
        finally:
            self.cache.unpin(key)

    async def _fall_back(
        self,
        key: str,
        error: Exception,
        ttl_config: TtlConfig,
        requested_at: datetime,
    ) -> ResponseEnvelope:
        kind = self._classifier.classify(error)
        entry = await self.cache.get(key)
        now = self._clock.now()

        # Written by a concurrent request that succeeded while we retried.
        if entry is not None and entry.stored_at >= requested_at:
            logger.info(f"[{self.name}] Using {key} stored during retries")
            return ResponseEnvelope.live(self.name, entry.payload, now, entry)

        # Reported age is taken at arrival; expiry is also checked now.
        decision = self._decider.decide(entry, kind, requested_at, ttl_config)
        if decision.serve_cache:
            late = self._decider.decide(entry, kind, now, ttl_config)
            if not late.serve_cache:
                decision = late
        message = f"{self.name} unavailable: {error}"

        if decision.serve_cache and entry is not None:
            logger.warning(
                f"[{self.name}] Serving cached {key} after {kind.value} "
                f"({decision.age_seconds}s old)"
            )
            return ResponseEnvelope.cache_fallback(
                self.name,
                entry,
                decision.warning or "",
                decision.age_seconds or 0,
                now,
                message,
                kind.value,
            )

        miss = CacheMiss(key, decision.reason or "no usable cached data")
        logger.error(f"[{self.name}] {message}; {miss}")
        return ResponseEnvelope.failure(self.name, now, f"{message}; {miss}", kind.value)

    def get_status(self) -> dict[str, Any]:
        """Configuration and coalescing stats for health reporting."""
        status: dict[str, Any] = {
            "retry": asdict(self.retry_config),
            "ttl": asdict(self.ttl_config),
            "single_flight": None,
        }
        if self._single_flight is not None:
            status["single_flight"] = self._single_flight.get_stats().to_dict()
        return status

    async def close(self) -> None:
        if self._single_flight is not None:
            await self._single_flight.cancel_all()


class GatewayRegistry:
    """
    One Gateway per upstream, all sharing a single CacheStore.

    Usage:
        registry = GatewayRegistry()
        registry.register("sensors", RetryConfig(), TtlConfig(30, 600))
        envelope = await registry.get("sensors").fetch(key, fetch_fn)
    """

    def __init__(
        self,
        cache: CacheStore | None = None,
        clock: Clock | None = None,
        single_flight: bool = False,
    ):
        self.cache = cache if cache is not None else CacheStore()
        self._clock = clock or system_clock
        self._single_flight = single_flight
        self._gateways: dict[str, Gateway] = {}

    def register(
        self,
        name: str,
        retry_config: RetryConfig,
        ttl_config: TtlConfig,
    ) -> Gateway:
        """Create (or replace) the gateway for an upstream."""
        gateway = Gateway(
            name,
            retry_config,
            ttl_config,
            cache=self.cache,
            clock=self._clock,
            single_flight=self._single_flight,
        )
        self._gateways[name] = gateway
        logger.debug(f"Registered gateway: {name}")
        return gateway

    def get(self, name: str) -> Gateway:
        try:
            return self._gateways[name]
        except KeyError:
            raise KeyError(f"No gateway registered for upstream '{name}'") from None

    def get_status(self) -> dict[str, Any]:
        return {
            "cache": self.cache.get_stats().to_dict(),
            "gateways": {
                name: gateway.get_status() for name, gateway in self._gateways.items()
            },
        }

    async def close(self) -> None:
        for gateway in self._gateways.values():
            await gateway.close()
