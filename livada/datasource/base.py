"""
Base data source interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from livada.services.cache import CacheStore
from livada.services.client import UpstreamClient
from livada.services.errors import ConfigError
from livada.services.gateway import Gateway, ResponseEnvelope
from livada.services.retry import CancelScope


class BaseDataSource(ABC):
    """
    Abstract base class for all upstream data sources.

    All data sources should:
    - Go through their Gateway (caching, retries, stale fallback)
    - Use the shared UpstreamClient for HTTP
    - Raise ConfigError from the fetch when required settings are missing
    """

    #: Key the payload is rendered under in the HTTP response body.
    payload_field: str = "data"

    def __init__(self, gateway: Gateway, client: UpstreamClient):
        self.gateway = gateway
        self.client = client

    @property
    @abstractmethod
    def upstream(self) -> str:
        """Unique identifier for this data source."""
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the data source is properly configured."""
        ...

    @abstractmethod
    async def fetch_live(self, params: dict[str, Any], timeout: float) -> Any:
        """Do one upstream request and shape its payload."""
        ...

    def config_error_message(self) -> str:
        return f"Upstream '{self.upstream}' is not configured."

    def cache_key(self, params: dict[str, Any]) -> str:
        return CacheStore.generate_key(self.upstream, params)

    def render(self, envelope: ResponseEnvelope) -> dict[str, Any]:
        """HTTP response body for an envelope from this source."""
        return envelope.to_body(self.payload_field)

    async def fetch(
        self,
        params: dict[str, Any],
        cancel: CancelScope | None = None,
    ) -> ResponseEnvelope:
        """Fetch through the gateway; always returns an envelope."""

        async def fetch_fn(timeout: float) -> Any:
            if not self.is_configured():
                raise ConfigError(self.config_error_message(), upstream=self.upstream)
            return await self.fetch_live(params, timeout)

        return await self.gateway.fetch(self.cache_key(params), fetch_fn, cancel=cancel)
