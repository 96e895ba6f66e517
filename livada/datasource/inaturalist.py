"""
iNaturalist observations for the Livada biotope monitoring project.

API docs: https://api.inaturalist.org/v1/docs/
"""

from datetime import datetime
from typing import Any

from loguru import logger

from livada.datasource.base import BaseDataSource
from livada.services.client import UpstreamClient
from livada.services.errors import UpstreamError
from livada.services.gateway import Gateway, ResponseEnvelope

LOCALES = ("en", "sl")
DEFAULT_PROJECT_ID = "the-livada-biotope-monitoring"
DEFAULT_PER_PAGE = 6
MAX_PER_PAGE = 20  # keep responses small for the site
PAGING_FIELDS = ("total_results", "page", "per_page")


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def format_observation_date(created_at: str | None, locale: str) -> str | None:
    """``5/15/2023`` for English, ``15. 5. 2023`` for Slovenian."""
    if not created_at:
        return None
    try:
        parsed = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if locale == "sl":
        return f"{parsed.day}. {parsed.month}. {parsed.year}"
    return f"{parsed.month}/{parsed.day}/{parsed.year}"


def enrich_observation(observation: dict[str, Any], locale: str) -> dict[str, Any]:
    """Add display-ready name, image URLs and date to an observation."""
    image_url = original_url = large_url = medium_url = base_url = None

    photos = observation.get("photos") or []
    if photos:
        photo = photos[0]
        original_url = photo.get("original_url")
        large_url = photo.get("large_url")
        medium_url = photo.get("medium_url")
        base_url = photo.get("url")

        # Medium loads fastest on the site
        image_url = medium_url or large_url or original_url or base_url
        if image_url and "square" in image_url:
            image_url = image_url.replace("square", "medium")

    taxon = observation.get("taxon") or {}
    formatted_name = taxon.get("preferred_common_name") or observation.get(
        "species_guess"
    )

    return {
        **observation,
        "formattedName": formatted_name,
        "imageUrl": image_url,
        "originalUrl": original_url,
        "largeUrl": large_url,
        "mediumUrl": medium_url,
        "baseUrl": base_url,
        "date": format_observation_date(observation.get("created_at"), locale),
    }


class INaturalistSource(BaseDataSource):
    """Recent observations of one iNaturalist project."""

    SERVICE_ID = "inaturalist"
    payload_field = "results"

    def __init__(
        self,
        gateway: Gateway,
        client: UpstreamClient,
        api_url: str | None,
    ):
        super().__init__(gateway, client)
        self.api_url = api_url

    @property
    def upstream(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.api_url)

    def config_error_message(self) -> str:
        return "INATURALIST_API_URL environment variable is not set."

    @staticmethod
    def build_params(
        page: Any = None,
        per_page: Any = None,
        locale: str | None = None,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """Clamp paging and fall back to defaults for anything invalid."""
        return {
            "page": max(1, _to_int(page, 1)),
            "per_page": min(MAX_PER_PAGE, max(1, _to_int(per_page, DEFAULT_PER_PAGE))),
            "locale": locale if locale in LOCALES else "en",
            "project_id": project_id or DEFAULT_PROJECT_ID,
        }

    async def fetch_live(self, params: dict[str, Any], timeout: float) -> Any:
        assert self.api_url is not None
        query = {
            "project_id": params["project_id"],
            "verifiable": "any",
            "order": "desc",
            "order_by": "created_at",
            "per_page": params["per_page"],
            "page": params["page"],
            "locale": params["locale"],
            "photos": "true",
        }
        data = await self.client.get_json(
            self.upstream,
            f"{self.api_url.rstrip('/')}/observations",
            params=query,
            timeout=timeout,
        )

        results = data.get("results") if isinstance(data, dict) else None
        if not results:
            raise UpstreamError("No observations found", upstream=self.upstream)

        logger.info(
            f"Fetched {len(results)} of {data.get('total_results')} iNaturalist observations"
        )
        return {
            **data,
            "results": [enrich_observation(obs, params["locale"]) for obs in results],
        }

    def render(self, envelope: ResponseEnvelope) -> dict[str, Any]:
        """Observations under ``results`` with the paging fields beside them."""
        body = envelope.to_body(self.payload_field)
        data = envelope.payload if isinstance(envelope.payload, dict) else {}
        body[self.payload_field] = data.get("results")
        for field in PAGING_FIELDS:
            body[field] = data.get(field)
        return body
