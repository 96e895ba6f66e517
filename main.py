"""
Livada gateway entry point.
Serves the sensor, calendar and iNaturalist endpoints.
"""

import sys

import uvicorn
from loguru import logger

from livada.api import create_app
from livada.settings import global_settings


def main() -> None:
    """Configure logging and run the HTTP server."""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    logger.info(
        f"Starting Livada gateway on {global_settings.host}:{global_settings.port}"
    )
    if not global_settings.pi_api_url:
        logger.warning("PI_API_URL is not set; sensor endpoints will return 500")

    uvicorn.run(
        create_app(global_settings),
        host=global_settings.host,
        port=global_settings.port,
        log_level=global_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
