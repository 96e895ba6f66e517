"""FastAPI server exposing the gateway-backed upstream endpoints."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from loguru import logger

from livada.datasource import (
    BaseDataSource,
    CalendarSource,
    INaturalistSource,
    SensorSource,
)
from livada.services.cache import CacheStore
from livada.services.client import UpstreamClient
from livada.services.gateway import GatewayRegistry
from livada.settings import UPSTREAMS, Settings, global_settings

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class GatewayServer:
    """HTTP server for the sensor, calendar and iNaturalist gateways."""

    def __init__(
        self,
        settings: Settings,
        registry: GatewayRegistry | None = None,
        client: UpstreamClient | None = None,
    ):
        self.settings = settings
        self.client = client or UpstreamClient()
        self.registry = registry or GatewayRegistry(
            cache=CacheStore(
                max_size=settings.cache_max_size, debug=settings.cache_debug
            ),
            single_flight=settings.single_flight,
        )
        for upstream in UPSTREAMS:
            self.registry.register(
                upstream,
                settings.retry_config(upstream),
                settings.ttl_config(upstream),
            )

        self.sensors = SensorSource(
            self.registry.get("sensors"), self.client, settings.pi_api_url
        )
        self.calendar = CalendarSource(
            self.registry.get("calendar"), self.client, settings.calendar_ical_url
        )
        self.inaturalist = INaturalistSource(
            self.registry.get("inaturalist"),
            self.client,
            settings.inaturalist_api_url,
        )

        self.app = FastAPI(title="Livada Gateway", lifespan=self.lifespan)

        # Register routes
        self.app.get("/api/health")(self.health_check)
        self.app.get("/api/calendar")(self.get_calendar)
        self.app.options("/api/calendar")(self.preflight)
        self.app.get("/api/inaturalist")(self.get_inaturalist)
        self.app.options("/api/inaturalist")(self.preflight)
        self.app.get("/api/sensors/{endpoint:path}")(self.get_sensors)
        self.app.options("/api/sensors/{endpoint:path}")(self.preflight_sensors)

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncIterator[None]:
        logger.info("Livada gateway starting")
        yield
        logger.info("Livada gateway shutting down")
        await self.registry.close()
        await self.client.close()

    async def _respond(
        self, source: BaseDataSource, params: dict[str, Any]
    ) -> JSONResponse:
        envelope = await source.fetch(params)
        return JSONResponse(
            source.render(envelope),
            status_code=envelope.status_code,
            headers=CORS_HEADERS,
        )

    async def get_sensors(self, endpoint: str, request: Request) -> JSONResponse:
        """Proxy a sensor API endpoint, e.g. ``/api/sensors/telemetry/live``."""
        params = SensorSource.build_params(endpoint, dict(request.query_params))
        return await self._respond(self.sensors, params)

    async def get_calendar(
        self,
        locale: Optional[str] = None,
        max_results: Optional[str] = Query(None, alias="maxResults"),
    ) -> JSONResponse:
        """Upcoming events from the public calendar."""
        params = CalendarSource.build_params(locale, max_results)
        return await self._respond(self.calendar, params)

    async def get_inaturalist(
        self,
        page: Optional[str] = None,
        per_page: Optional[str] = None,
        locale: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> JSONResponse:
        """Recent observations of the monitoring project."""
        params = INaturalistSource.build_params(page, per_page, locale, project_id)
        return await self._respond(self.inaturalist, params)

    async def preflight(self) -> Response:
        """CORS preflight."""
        return Response(status_code=204, headers=CORS_HEADERS)

    async def preflight_sensors(self, endpoint: str) -> Response:
        return Response(status_code=204, headers=CORS_HEADERS)

    async def health_check(self) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse(
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "environment": self.settings.environment,
                "functions": {
                    "sensors": "/api/sensors/{endpoint}",
                    "calendar": "/api/calendar",
                    "inaturalist": "/api/inaturalist",
                },
                "configured": {
                    source.upstream: source.is_configured()
                    for source in (self.sensors, self.calendar, self.inaturalist)
                },
                "gateways": self.registry.get_status(),
            },
            headers=CORS_HEADERS,
        )


def create_app(
    settings: Settings | None = None,
    registry: GatewayRegistry | None = None,
    client: UpstreamClient | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        settings: Settings to use (defaults to the environment)
        registry: Pre-built gateway registry, mainly for tests
        client: Pre-built upstream client, mainly for tests

    Returns:
        FastAPI app
    """
    server = GatewayServer(settings or global_settings, registry, client)
    return server.app
