"""
FallbackDecider - Decides whether a cached payload may stand in for a failed
live fetch.

A connectivity failure widens the acceptable cache age from the normal TTL
to the offline TTL. Anything at or past the applicable TTL is refused.
"""

from dataclasses import dataclass
from datetime import datetime

from livada.services.cache import CacheEntry
from livada.services.classifier import ErrorKind


@dataclass(frozen=True)
class TtlConfig:
    """Freshness windows for one upstream, in seconds."""

    normal_ttl: float = 300.0
    offline_ttl: float = 1800.0

    def __post_init__(self) -> None:
        if self.normal_ttl <= 0:
            raise ValueError("normal_ttl must be positive")
        if self.offline_ttl <= self.normal_ttl:
            raise ValueError("offline_ttl must be greater than normal_ttl")

    def effective_ttl(self, kind: ErrorKind) -> float:
        if kind is ErrorKind.CONNECTIVITY:
            return self.offline_ttl
        return self.normal_ttl


@dataclass(frozen=True)
class Decision:
    """Outcome of a fallback decision."""

    serve_cache: bool
    warning: str | None = None
    age_seconds: int | None = None
    reason: str | None = None

    @classmethod
    def cache_fallback(cls, warning: str, age_seconds: int) -> "Decision":
        return cls(serve_cache=True, warning=warning, age_seconds=age_seconds)

    @classmethod
    def error(cls, reason: str, age_seconds: int | None = None) -> "Decision":
        return cls(serve_cache=False, reason=reason, age_seconds=age_seconds)


class FallbackDecider:
    """Stateless; one instance can serve every gateway."""

    def decide(
        self,
        entry: CacheEntry | None,
        kind: ErrorKind,
        now: datetime,
        ttl: TtlConfig,
    ) -> Decision:
        if entry is None:
            return Decision.error("no cached data available")

        age = max(entry.age_seconds(now), 0.0)
        whole_age = int(age)
        effective = ttl.effective_ttl(kind)

        if age >= effective:
            return Decision.error(
                f"cached data is {whole_age}s old, "
                f"older than the {effective:g}s limit",
                age_seconds=whole_age,
            )

        return Decision.cache_fallback(
            self.build_warning(whole_age, kind), age_seconds=whole_age
        )

    @staticmethod
    def build_warning(age_seconds: int, kind: ErrorKind) -> str:
        warning = (
            f"Serving cached data from memory cache ({age_seconds}s old) "
            f"because the live fetch failed."
        )
        if kind is ErrorKind.CONNECTIVITY:
            warning += " Upstream host appears unreachable (offline mode)."
        return warning


default_decider = FallbackDecider()
