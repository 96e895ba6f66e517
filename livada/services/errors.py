"""
Gateway exceptions.
"""


class GatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str, upstream: str | None = None):
        self.upstream = upstream
        super().__init__(message)


class ConfigError(GatewayError):
    """Required upstream configuration is missing. Never retried."""

    pass


class ConnectivityError(GatewayError):
    """The upstream host could not be reached, or not in time."""

    pass


class RequestTimeoutError(ConnectivityError):
    """A single attempt exceeded its timeout."""

    def __init__(self, upstream: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to upstream '{upstream}' timed out after {timeout:g}s",
            upstream=upstream,
        )


class FetchCancelledError(ConnectivityError):
    """The caller cancelled the fetch or its deadline passed."""

    def __init__(self, upstream: str, reason: str = "cancelled by caller"):
        self.reason = reason
        super().__init__(
            f"Fetch from upstream '{upstream}' aborted: {reason}",
            upstream=upstream,
        )


class UpstreamError(GatewayError):
    """Upstream was reached but answered with an error or a bad payload."""

    def __init__(
        self,
        message: str,
        upstream: str | None = None,
        status_code: int | None = None,
    ):
        self.status_code = status_code
        super().__init__(message, upstream=upstream)


class CacheMiss(GatewayError):
    """No usable cached payload exists for the key."""

    def __init__(self, key: str, reason: str = "no cached data available"):
        self.key = key
        super().__init__(f"{reason} for '{key}'")
