import math
from datetime import datetime, timedelta, timezone

from geoalarm.geo import EARTH_RADIUS_M, Coordinate
from geoalarm.storage import Alarm

JST = timezone(timedelta(hours=9), name="JST")
TOKYO_STATION = Coordinate(35.6809591, 139.7673068)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int, second: int = 0) -> None:
        self.now = self.now.replace(hour=hour, minute=minute, second=second, microsecond=0)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def north_of(origin: Coordinate, meters: float) -> Coordinate:
    return Coordinate(origin.latitude + math.degrees(meters / EARTH_RADIUS_M), origin.longitude)


def make_alarm(alarm_id: str = "alarm-a", hour: int = 7, minute: int = 0, enabled: bool = True, **kwargs) -> Alarm:
    return Alarm(
        id=alarm_id,
        name=kwargs.pop("name", f"Alarm {alarm_id}"),
        hour=hour,
        minute=minute,
        latitude=kwargs.pop("latitude", TOKYO_STATION.latitude),
        longitude=kwargs.pop("longitude", TOKYO_STATION.longitude),
        enabled=enabled,
        **kwargs,
    )
