import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from livada.services.fallback import TtlConfig
from livada.services.retry import RetryConfig

load_dotenv()

UPSTREAMS = ("sensors", "calendar", "inaturalist")

DEFAULT_CALENDAR_URL = (
    "https://calendar.google.com/calendar/ical/"
    "c_5d78eb671288cb126a905292bb719eaf94ae3c84b114b02c622dba9aa1c37cb7"
    "%40group.calendar.google.com/public/basic.ics"
)


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Server
    environment: str = Field(default="development", alias="ENVIRONMENT")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Cache
    cache_max_size: int | None = Field(default=None, alias="CACHE_MAX_SIZE")
    cache_debug: bool = Field(default=False, alias="CACHE_DEBUG")
    single_flight: bool = Field(default=False, alias="SINGLE_FLIGHT")

    # Pi sensor API (LAN / Tailscale host, no default)
    pi_api_url: str | None = Field(default=None, alias="PI_API_URL")
    sensors_normal_ttl: float = Field(default=30.0, alias="SENSORS_NORMAL_TTL")
    sensors_offline_ttl: float = Field(default=600.0, alias="SENSORS_OFFLINE_TTL")
    sensors_max_retries: int = Field(default=2, alias="SENSORS_MAX_RETRIES")
    sensors_base_backoff: float = Field(default=0.5, alias="SENSORS_BASE_BACKOFF")
    sensors_backoff_multiplier: float = Field(
        default=2.0, alias="SENSORS_BACKOFF_MULTIPLIER"
    )
    sensors_timeout: float = Field(default=5.0, alias="SENSORS_TIMEOUT")

    # Google Calendar iCal feed
    calendar_ical_url: str | None = Field(
        default=DEFAULT_CALENDAR_URL, alias="CALENDAR_ICAL_URL"
    )
    calendar_normal_ttl: float = Field(default=1800.0, alias="CALENDAR_NORMAL_TTL")
    calendar_offline_ttl: float = Field(default=86400.0, alias="CALENDAR_OFFLINE_TTL")
    calendar_max_retries: int = Field(default=2, alias="CALENDAR_MAX_RETRIES")
    calendar_base_backoff: float = Field(default=1.0, alias="CALENDAR_BASE_BACKOFF")
    calendar_backoff_multiplier: float = Field(
        default=2.0, alias="CALENDAR_BACKOFF_MULTIPLIER"
    )
    calendar_timeout: float = Field(default=10.0, alias="CALENDAR_TIMEOUT")

    # iNaturalist observations API
    inaturalist_api_url: str | None = Field(
        default="https://api.inaturalist.org/v1", alias="INATURALIST_API_URL"
    )
    inaturalist_normal_ttl: float = Field(default=600.0, alias="INATURALIST_NORMAL_TTL")
    inaturalist_offline_ttl: float = Field(
        default=21600.0, alias="INATURALIST_OFFLINE_TTL"
    )
    inaturalist_max_retries: int = Field(default=2, alias="INATURALIST_MAX_RETRIES")
    inaturalist_base_backoff: float = Field(
        default=1.0, alias="INATURALIST_BASE_BACKOFF"
    )
    inaturalist_backoff_multiplier: float = Field(
        default=2.0, alias="INATURALIST_BACKOFF_MULTIPLIER"
    )
    inaturalist_timeout: float = Field(default=8.0, alias="INATURALIST_TIMEOUT")

    @field_validator(
        "cache_max_size",
        "pi_api_url",
        "calendar_ical_url",
        "inaturalist_api_url",
        mode="before",
    )
    @classmethod
    def blank_is_unset(cls, value):
        # `KEY=` in .env arrives as an empty string
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(dict(os.environ))

    def retry_config(self, upstream: str) -> RetryConfig:
        self._check_upstream(upstream)
        return RetryConfig(
            max_retries=getattr(self, f"{upstream}_max_retries"),
            per_attempt_timeout=getattr(self, f"{upstream}_timeout"),
            base_backoff=getattr(self, f"{upstream}_base_backoff"),
            backoff_multiplier=getattr(self, f"{upstream}_backoff_multiplier"),
        )

    def ttl_config(self, upstream: str) -> TtlConfig:
        self._check_upstream(upstream)
        return TtlConfig(
            normal_ttl=getattr(self, f"{upstream}_normal_ttl"),
            offline_ttl=getattr(self, f"{upstream}_offline_ttl"),
        )

    @staticmethod
    def _check_upstream(upstream: str) -> None:
        if upstream not in UPSTREAMS:
            raise ValueError(f"Unknown upstream: {upstream}")


global_settings = Settings.from_env()
