"""
UpstreamClient - Shared async HTTP client for upstream fetch functions.

Maps httpx failures onto the gateway error taxonomy so the classifier and
the HTTP layer see one vocabulary.
"""

import json
from typing import Any

import httpx
from loguru import logger

from livada.services.errors import (
    ConnectivityError,
    RequestTimeoutError,
    UpstreamError,
)

USER_AGENT = "LivadaBiotope/1.0 (https://livada-biotope.netlify.app/)"


class UpstreamClient:
    """
    Thin wrapper over ``httpx.AsyncClient``; one instance per process.

    Usage:
        async with UpstreamClient() as client:
            data = await client.get_json("inaturalist", url, params=params, timeout=8)
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._default_timeout = default_timeout
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._default_timeout),
                follow_redirects=True,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            )
        return self._http_client

    async def get_json(
        self,
        upstream: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """GET ``url`` and decode the JSON body."""
        response = await self._get(upstream, url, params, headers, timeout, "application/json")
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise UpstreamError(
                f"Invalid JSON from {upstream}: {e}", upstream=upstream
            ) from e

    async def get_text(
        self,
        upstream: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> str:
        """GET ``url`` and return the body as text."""
        response = await self._get(upstream, url, params, headers, timeout, "*/*")
        return response.text

    async def _get(
        self,
        upstream: str,
        url: str,
        params: dict[str, Any] | None,
        headers: dict[str, str] | None,
        timeout: float | None,
        accept: str,
    ) -> httpx.Response:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()
        req_timeout = timeout or self._default_timeout
        req_headers = {"Accept": accept}
        if headers:
            req_headers.update(headers)

        logger.debug(f"[{upstream}] GET {url}")
        try:
            response = await client.get(
                url, params=params, headers=req_headers, timeout=req_timeout
            )
            response.raise_for_status()
            return response

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(upstream, req_timeout) from e

        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"{upstream} returned HTTP {e.response.status_code}: "
                f"{e.response.text[:200]}",
                upstream=upstream,
                status_code=e.response.status_code,
            ) from e

        except (httpx.ConnectError, httpx.NetworkError) as e:
            raise ConnectivityError(
                f"Failed to connect to {upstream}: {e}", upstream=upstream
            ) from e

        except httpx.RequestError as e:
            raise UpstreamError(str(e), upstream=upstream) from e

    async def close(self) -> None:
        """Close the HTTP client and cleanup resources."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.debug("UpstreamClient closed")

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
