"""
Gateway infrastructure - resilience patterns for unreliable upstreams.

Provides:
- CacheStore: Last-known-good payload per upstream key
- DefaultErrorClassifier: Connectivity vs upstream error labelling
- RetryPolicy: Bounded attempts with timeouts and exponential backoff
- FallbackDecider: Normal / offline TTL rules for serving stale data
- Gateway: Orchestrates all of the above per upstream
- UpstreamClient: Shared httpx client used by fetch functions
"""

from livada.services.errors import (
    GatewayError,
    ConfigError,
    ConnectivityError,
    RequestTimeoutError,
    FetchCancelledError,
    UpstreamError,
    CacheMiss,
)
from livada.services.clock import Clock, SystemClock, system_clock
from livada.services.cache import CacheStore, CacheEntry, CacheStats
from livada.services.classifier import (
    ErrorKind,
    ErrorClassifier,
    DefaultErrorClassifier,
)
from livada.services.retry import (
    RetryConfig,
    RetryPolicy,
    FetchAttempt,
    CancelScope,
)
from livada.services.fallback import TtlConfig, Decision, FallbackDecider
from livada.services.singleflight import SingleFlight
from livada.services.gateway import Gateway, GatewayRegistry, ResponseEnvelope
from livada.services.client import UpstreamClient

__all__ = [
    # Errors
    "GatewayError",
    "ConfigError",
    "ConnectivityError",
    "RequestTimeoutError",
    "FetchCancelledError",
    "UpstreamError",
    "CacheMiss",
    # Clock
    "Clock",
    "SystemClock",
    "system_clock",
    # Cache
    "CacheStore",
    "CacheEntry",
    "CacheStats",
    # Classification
    "ErrorKind",
    "ErrorClassifier",
    "DefaultErrorClassifier",
    # Retry
    "RetryConfig",
    "RetryPolicy",
    "FetchAttempt",
    "CancelScope",
    # Fallback
    "TtlConfig",
    "Decision",
    "FallbackDecider",
    # Gateway
    "SingleFlight",
    "Gateway",
    "GatewayRegistry",
    "ResponseEnvelope",
    # Client
    "UpstreamClient",
]
