"""
Pi sensor telemetry proxy.

The sensor host is a Raspberry Pi on the LAN (reached over Tailscale)
running a FastAPI app under ``/api``. It drops off the network often, which
is what the gateway's offline TTL is for.
"""

from typing import Any

from livada.datasource.base import BaseDataSource
from livada.services.client import UpstreamClient
from livada.services.gateway import Gateway


class SensorSource(BaseDataSource):
    """Proxies ``GET {PI_API_URL}/api/<endpoint>`` with query passthrough."""

    SERVICE_ID = "sensors"

    def __init__(
        self,
        gateway: Gateway,
        client: UpstreamClient,
        base_url: str | None,
    ):
        super().__init__(gateway, client)
        self.base_url = base_url

    @property
    def upstream(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.base_url)

    def config_error_message(self) -> str:
        return "PI_API_URL environment variable is not set."

    @staticmethod
    def build_params(endpoint: str, query: dict[str, str] | None = None) -> dict[str, Any]:
        """Cache/request params for an endpoint such as ``telemetry/live``."""
        params: dict[str, Any] = dict(query or {})
        params["endpoint"] = endpoint.strip("/")
        return params

    def build_url(self, endpoint: str) -> str:
        assert self.base_url is not None
        return f"{self.base_url.rstrip('/')}/api/{endpoint}"

    async def fetch_live(self, params: dict[str, Any], timeout: float) -> Any:
        query = {k: v for k, v in params.items() if k != "endpoint"}
        return await self.client.get_json(
            self.upstream,
            self.build_url(params["endpoint"]),
            params=query or None,
            timeout=timeout,
        )
