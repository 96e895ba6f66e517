from livada.datasource.base import BaseDataSource
from livada.datasource.calendar import CalendarEvent, CalendarSource
from livada.datasource.inaturalist import INaturalistSource
from livada.datasource.sensors import SensorSource

__all__ = [
    "BaseDataSource",
    "CalendarEvent",
    "CalendarSource",
    "INaturalistSource",
    "SensorSource",
]
