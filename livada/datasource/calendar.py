"""
Google Calendar events from the public iCal feed.

Fetches the ICS file, keeps upcoming events, tags each with an event type
and localises titles for Slovenian visitors.
"""

import re
from datetime import date, datetime, time, timezone
from typing import Any

from icalendar import Calendar
from loguru import logger
from pydantic import BaseModel

from livada.datasource.base import BaseDataSource
from livada.services.client import UpstreamClient
from livada.services.clock import Clock, system_clock
from livada.services.errors import UpstreamError
from livada.services.gateway import Gateway

LOCALES = ("en", "sl")
DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_LIMIT = 100


class CalendarEvent(BaseModel):
    """Upcoming calendar event."""

    id: str
    title: str
    description: str
    start: str
    end: str
    location: str
    type: str  # 'workshop' | 'lecture' | 'community' | 'other'
    typeLabel: str


TYPE_LABELS = {
    "en": {
        "workshop": "Workshop",
        "lecture": "Lecture",
        "community": "Community Event",
        "other": "Event",
    },
    "sl": {
        "workshop": "Delavnica",
        "lecture": "Predavanje",
        "community": "Skupnostni dogodek",
        "other": "Dogodek",
    },
}

# English -> Slovenian, matched as whole words, case-insensitively
COMMON_TERMS_SL = {
    # Event types
    "workshop": "delavnica",
    "lecture": "predavanje",
    "community": "skupnost",
    "meeting": "srečanje",
    "discussion": "razprava",
    "talk": "pogovor",
    "presentation": "predstavitev",
    # Locations
    "livada biotope": "Biotop Livada",
    "community garden": "skupnostni vrt",
    "botanical garden": "botanični vrt",
    "urban garden": "mestni vrt",
    "city park": "mestni park",
    "nature reserve": "naravni rezervat",
    "forest": "gozd",
    "meadow": "travnik",
    "online": "spletno",
    # Common words in titles
    "permacultural": "permakulturna",
    "permaculture": "permakultura",
    "introduction": "uvod",
    "for beginners": "za začetnike",
    "beginners": "začetniki",
    "advanced": "napredni tečaj",
    "seminar": "seminar",
    "conference": "konferenca",
    "gathering": "druženje",
    "exhibition": "razstava",
    "fair": "sejem",
    "market": "tržnica",
    "volunteer": "prostovoljci",
    "maintenance": "vzdrževanje",
    "planting": "sajenje",
    "gardening": "vrtnarjenje",
    "composting": "kompostiranje",
    "beekeeping": "čebelarjenje",
    "harvest": "pobiranje pridelka",
    "seeds": "semena",
    "seed": "seme",
    "sustainability": "trajnostni razvoj",
    "sustainable": "trajnostno",
    "ecology": "ekologija",
    "biodiversity": "biotska raznovrstnost",
    "organic": "ekološko",
    "local": "lokalno",
    "seasonal": "sezonski",
    "spring": "spomladanski",
    "summer": "poletni",
    "autumn": "jesenski",
    "winter": "zimski",
    "family": "družinski",
    "children": "otroci",
    "kids": "otroci",
    "adults": "odrasli",
    "educational": "izobraževalni",
    "hands-on": "praktični",
    "practical": "praktični",
    "demonstration": "demonstracija",
    "tutorial": "vadnica",
    "course": "tečaj",
}

# Longest first so "community garden" wins over "community"
_TERM_PATTERN = re.compile(
    r"(?<!\w)("
    + "|".join(re.escape(t) for t in sorted(COMMON_TERMS_SL, key=len, reverse=True))
    + r")(?!\w)",
    re.IGNORECASE,
)

_TYPE_KEYWORDS = (
    ("workshop", ("workshop", "delavnica")),
    ("lecture", ("lecture", "predavanje")),
    ("community", ("community", "skupnost")),
)


def determine_event_type(summary: str, description: str = "") -> str:
    """Classify an event from keywords in its summary and description."""
    text = f"{summary} {description}".lower()
    for event_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return event_type
    return "other"


def translate_terms(text: str, locale: str) -> str:
    """Replace common English terms with Slovenian ones for ``sl``."""
    if not text or locale != "sl":
        return text

    def _replace(match: re.Match[str]) -> str:
        found = match.group(0)
        replacement = COMMON_TERMS_SL[found.lower()]
        if found[0].isupper():
            return replacement[0].upper() + replacement[1:]
        return replacement

    return _TERM_PATTERN.sub(_replace, text)


def _as_utc(value: date | datetime) -> datetime:
    """All-day dates become midnight UTC; naive times are taken as UTC."""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_events(
    ics_text: str,
    locale: str,
    now: datetime,
    max_results: int = DEFAULT_MAX_RESULTS,
) -> list[CalendarEvent]:
    """Parse an ICS document into upcoming, localised, sorted events."""
    try:
        calendar = Calendar.from_ical(ics_text)
    except (ValueError, IndexError) as e:
        raise UpstreamError(f"Malformed calendar data: {e}", upstream="calendar") from e

    labels = TYPE_LABELS.get(locale, TYPE_LABELS["en"])
    events: list[tuple[datetime, CalendarEvent]] = []

    for component in calendar.walk("VEVENT"):
        dtstart = component.get("dtstart")
        dtend = component.get("dtend")
        if dtstart is None or dtend is None:
            continue

        start = _as_utc(dtstart.dt)
        if start < now:
            continue

        end = _as_utc(dtend.dt)

        summary = str(component.get("summary", ""))
        description = str(component.get("description", ""))
        location = str(component.get("location", ""))
        event_type = determine_event_type(summary, description)

        events.append(
            (
                start,
                CalendarEvent(
                    id=str(component.get("uid", "")),
                    title=translate_terms(summary, locale),
                    description=translate_terms(description, locale),
                    start=start.isoformat(),
                    end=end.isoformat(),
                    location=translate_terms(location, locale),
                    type=event_type,
                    typeLabel=labels.get(event_type, labels["other"]),
                ),
            )
        )

    events.sort(key=lambda pair: pair[0])
    return [event for _, event in events[:max_results]]


class CalendarSource(BaseDataSource):
    """Public Google Calendar feed."""

    SERVICE_ID = "calendar"

    def __init__(
        self,
        gateway: Gateway,
        client: UpstreamClient,
        ical_url: str | None,
        clock: Clock | None = None,
    ):
        super().__init__(gateway, client)
        self.ical_url = ical_url
        self._clock = clock or system_clock

    @property
    def upstream(self) -> str:
        return self.SERVICE_ID

    def is_configured(self) -> bool:
        return bool(self.ical_url)

    def config_error_message(self) -> str:
        return "CALENDAR_ICAL_URL environment variable is not set."

    @staticmethod
    def build_params(
        locale: str | None = None,
        max_results: str | int | None = None,
    ) -> dict[str, Any]:
        """Normalise query parameters the way the site always has."""
        try:
            count = int(max_results) if max_results is not None else DEFAULT_MAX_RESULTS
        except (TypeError, ValueError):
            count = DEFAULT_MAX_RESULTS
        count = min(MAX_RESULTS_LIMIT, max(1, count))
        return {
            "locale": locale if locale in LOCALES else "en",
            "maxResults": count,
        }

    async def fetch_live(self, params: dict[str, Any], timeout: float) -> Any:
        assert self.ical_url is not None
        ics_text = await self.client.get_text(
            self.upstream, self.ical_url, timeout=timeout
        )
        events = parse_events(
            ics_text, params["locale"], self._clock.now(), params["maxResults"]
        )
        logger.info(f"Fetched {len(events)} upcoming calendar events")
        return [event.model_dump() for event in events]
