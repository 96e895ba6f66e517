"""
Unit tests for Gateway, ResponseEnvelope and GatewayRegistry.
"""

import asyncio
from datetime import timedelta

import pytest

from livada.services.cache import CacheStore
from livada.services.errors import ConfigError
from livada.services.fallback import TtlConfig
from livada.services.gateway import Gateway, GatewayRegistry, ResponseEnvelope
from livada.services.retry import CancelScope, RetryConfig
from tests.conftest import T0, FakeClock, ScriptedUpstream, upstream_500

KEY = "sensors:endpoint=telemetry/live"
BODY_KEYS = {
    "data",
    "source",
    "timestamp",
    "warning",
    "upstream",
    "cached_at",
    "cache_age_seconds",
    "error",
}


class TestFreshCache:
    @pytest.mark.asyncio
    async def test_fresh_entry_skips_upstream(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(120)
        upstream = ScriptedUpstream(clock)

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.call_count == 0
        assert envelope.source == "live"
        assert envelope.payload == {"v": 1}
        assert envelope.cache_age_seconds == 120
        assert envelope.cached_at == T0

    @pytest.mark.asyncio
    async def test_entry_at_normal_ttl_is_refetched(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(300)
        upstream = ScriptedUpstream(clock, payload={"v": 2})

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.call_count == 1
        assert envelope.payload == {"v": 2}
        assert envelope.cached_at is None


class TestLiveFetch:
    @pytest.mark.asyncio
    async def test_success_after_failures_stops_retrying(self, gateway, cache, clock):
        upstream = ScriptedUpstream(clock, payload={"v": 2}, failures=1)

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.call_count == 2
        assert envelope.source == "live"
        assert envelope.payload == {"v": 2}
        assert envelope.warning is None
        assert envelope.error is None
        assert envelope.status_code == 200

        entry = await cache.get(KEY)
        assert entry.payload == {"v": 2}
        assert entry.stored_at == clock.now()

    @pytest.mark.asyncio
    async def test_attempts_bounded_by_max_retries(self, gateway, clock, retry_config):
        upstream = ScriptedUpstream(clock, failures=None)

        await gateway.fetch(KEY, upstream)

        assert upstream.call_count == retry_config.max_retries + 1

    @pytest.mark.asyncio
    async def test_per_call_retry_override(self, gateway, clock):
        upstream = ScriptedUpstream(clock, failures=None)

        await gateway.fetch(KEY, upstream, retry_config=RetryConfig(max_retries=0))

        assert upstream.call_count == 1


class TestFallback:
    @pytest.mark.asyncio
    async def test_offline_scenario_serves_stale_cache(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)
        upstream = ScriptedUpstream(clock, failures=None)

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.calls == [400.0, 401.0, 403.0]
        assert envelope.source == "cache-fallback"
        assert envelope.payload == {"v": 1}
        assert envelope.cache_age_seconds == 400
        assert "400s" in envelope.warning
        assert "unreachable" in envelope.warning
        assert envelope.status_code == 200

    @pytest.mark.asyncio
    async def test_connectivity_past_offline_ttl_is_error(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(1800)
        upstream = ScriptedUpstream(clock, failures=None)

        envelope = await gateway.fetch(KEY, upstream)

        assert envelope.source == "error"
        assert envelope.payload is None
        assert envelope.error_kind == "connectivity"
        assert envelope.status_code == 502
        assert "older than" in envelope.error

    @pytest.mark.asyncio
    async def test_entry_expiring_during_retries_is_error(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(1799)
        upstream = ScriptedUpstream(clock, failures=None)

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.calls == [1799.0, 1800.0, 1802.0]
        assert envelope.source == "error"
        assert envelope.payload is None
        assert "older than" in envelope.error

    @pytest.mark.asyncio
    async def test_upstream_error_past_normal_ttl_is_error(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)
        upstream = ScriptedUpstream(clock, error_factory=upstream_500, failures=None)

        envelope = await gateway.fetch(KEY, upstream)

        assert envelope.source == "error"
        assert envelope.payload is None
        assert envelope.error_kind == "upstream-error"
        assert "HTTP 500" in envelope.error

    @pytest.mark.asyncio
    async def test_no_cache_is_error(self, gateway, clock):
        upstream = ScriptedUpstream(clock, failures=None)

        envelope = await gateway.fetch(KEY, upstream)

        assert envelope.source == "error"
        assert envelope.payload is None
        assert envelope.warning is None
        assert "no cached data available" in envelope.error

    @pytest.mark.asyncio
    async def test_failures_leave_cache_untouched(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)

        await gateway.fetch(KEY, ScriptedUpstream(clock, failures=None))

        entry = await cache.get(KEY)
        assert entry.payload == {"v": 1}
        assert entry.stored_at == T0

    @pytest.mark.asyncio
    async def test_same_inputs_same_outcome(self, retry_config, ttl_config):
        async def run():
            clock = FakeClock()
            cache = CacheStore()
            gateway = Gateway("test", retry_config, ttl_config, cache=cache, clock=clock)
            await cache.put(KEY, {"v": 1}, clock.now())
            clock.advance(400)
            upstream = ScriptedUpstream(clock, failures=None)
            envelope = await gateway.fetch(KEY, upstream)
            return envelope, upstream.calls

        first, second = await run(), await run()

        assert first[0] == second[0]
        assert first[1] == second[1]

    @pytest.mark.asyncio
    async def test_cancelled_fetch_falls_back(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)
        upstream = ScriptedUpstream(clock)
        scope = CancelScope()
        scope.cancel()

        envelope = await gateway.fetch(KEY, upstream, cancel=scope)

        assert upstream.call_count == 0
        assert envelope.source == "cache-fallback"
        assert envelope.error_kind == "connectivity"


class TestErrors:
    @pytest.mark.asyncio
    async def test_config_error_is_not_retried(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)
        upstream = ScriptedUpstream(
            clock,
            failures=None,
            error_factory=lambda: ConfigError("PI_API_URL environment variable is not set."),
        )

        envelope = await gateway.fetch(KEY, upstream)

        assert upstream.call_count == 1
        assert envelope.source == "error"
        assert envelope.error_kind == "config"
        assert envelope.status_code == 500
        assert envelope.payload is None

    @pytest.mark.asyncio
    async def test_internal_failure_becomes_error_envelope(self, clock, retry_config, ttl_config):
        class BrokenCache(CacheStore):
            async def get(self, key):
                raise RuntimeError("cache exploded")

        gateway = Gateway("test", retry_config, ttl_config, cache=BrokenCache(), clock=clock)

        envelope = await gateway.fetch(KEY, ScriptedUpstream(clock))

        assert envelope.source == "error"
        assert "cache exploded" in envelope.error


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_without_single_flight_each_request_runs(self, gateway, clock, retry_config):
        upstream = ScriptedUpstream(clock, failures=None)

        envelopes = await asyncio.gather(
            gateway.fetch(KEY, upstream), gateway.fetch(KEY, upstream)
        )

        assert upstream.call_count == 2 * (retry_config.max_retries + 1)
        assert all(e.source == "error" for e in envelopes)

    @pytest.mark.asyncio
    async def test_payload_written_during_retries_is_live(self, gateway, cache, clock):
        await cache.put(KEY, {"v": 1}, clock.now())
        clock.advance(400)
        upstream = ScriptedUpstream(clock, failures=None)

        async def concurrent_success():
            while upstream.call_count < 2:
                await asyncio.sleep(0)
            await cache.put(KEY, {"v": 9}, clock.now())

        envelope, _ = await asyncio.gather(
            gateway.fetch(KEY, upstream), concurrent_success()
        )

        assert upstream.call_count == 3
        assert envelope.source == "live"
        assert envelope.payload == {"v": 9}
        assert envelope.warning is None
        assert envelope.cached_at > T0 + timedelta(seconds=400)

    @pytest.mark.asyncio
    async def test_single_flight_coalesces(self, cache, clock, retry_config, ttl_config):
        gateway = Gateway(
            "test", retry_config, ttl_config, cache=cache, clock=clock, single_flight=True
        )
        gate = asyncio.Event()
        calls = 0

        async def gated(timeout):
            nonlocal calls
            calls += 1
            await gate.wait()
            return {"v": 3}

        async def release():
            for _ in range(20):
                await asyncio.sleep(0)
            gate.set()

        first, second, _ = await asyncio.gather(
            gateway.fetch(KEY, gated), gateway.fetch(KEY, gated), release()
        )

        assert calls == 1
        assert first.payload == second.payload == {"v": 3}
        assert gateway.get_status()["single_flight"]["coalesced"] == 1


class TestEnvelope:
    def test_body_keys_identical_across_sources(self):
        from livada.services.cache import CacheEntry

        entry = CacheEntry(KEY, {"v": 1}, T0)
        envelopes = [
            ResponseEnvelope.live("sensors", {"v": 1}, T0),
            ResponseEnvelope.cache_fallback(
                "sensors", entry, "stale", 400, T0, "down", "connectivity"
            ),
            ResponseEnvelope.failure("sensors", T0, "down", "upstream-error"),
        ]

        for envelope in envelopes:
            assert set(envelope.to_body()) == BODY_KEYS

    def test_payload_field_name(self):
        body = ResponseEnvelope.live("inaturalist", [1], T0).to_body("results")

        assert body["results"] == [1]
        assert "data" not in body
        assert body["timestamp"] == T0.isoformat()

    @pytest.mark.parametrize(
        "envelope, status",
        [
            (ResponseEnvelope.live("x", 1, T0), 200),
            (ResponseEnvelope.failure("x", T0, "boom", "connectivity"), 502),
            (ResponseEnvelope.failure("x", T0, "boom", "upstream-error"), 502),
            (ResponseEnvelope.failure("x", T0, "missing", "config"), 500),
        ],
    )
    def test_status_codes(self, envelope, status):
        assert envelope.status_code == status


class TestGatewayRegistry:
    def test_gateways_share_one_cache(self, clock):
        registry = GatewayRegistry(clock=clock)
        sensors = registry.register("sensors", RetryConfig(), TtlConfig(30, 600))
        calendar = registry.register("calendar", RetryConfig(), TtlConfig(1800, 86400))

        assert sensors.cache is calendar.cache is registry.cache
        assert registry.get("sensors") is sensors

    def test_unknown_upstream(self):
        with pytest.raises(KeyError):
            GatewayRegistry().get("weather")

    def test_status(self, clock):
        registry = GatewayRegistry(clock=clock)
        registry.register("sensors", RetryConfig(), TtlConfig(30, 600))

        status = registry.get_status()

        assert "cache" in status
        assert status["gateways"]["sensors"]["ttl"] == {
            "normal_ttl": 30,
            "offline_ttl": 600,
        }
