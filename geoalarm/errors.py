from __future__ import annotations

from typing import Optional


class GeoAlarmError(Exception):
    """Base class for every error raised by the alarm core."""


class ProximityDenied(GeoAlarmError):
    def __init__(self, alarm_id: str, distance: float, radius: float):
        self.alarm_id = alarm_id
        self.distance = distance
        self.radius = radius
        super().__init__(
            f"Alarm {alarm_id} is {distance:.0f} m away; get within {radius:.0f} m to continue"
        )


class PositionUnavailable(GeoAlarmError):
    def __init__(self, message: str = "Current position is not known yet"):
        super().__init__(message)


class PermissionDenied(GeoAlarmError):
    def __init__(self, permission: str, message: Optional[str] = None):
        self.permission = permission
        super().__init__(message or f"{permission} permission is not granted")


class SchedulingFailure(GeoAlarmError):
    def __init__(self, event_id: str, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Failed to register {event_id}: {reason}")


class PersistenceFailure(GeoAlarmError):
    pass


class AlarmNotFound(GeoAlarmError, KeyError):
    def __init__(self, alarm_id: str):
        self.alarm_id = alarm_id
        super().__init__(alarm_id)

    def __str__(self) -> str:
        return f"Alarm {self.alarm_id} does not exist"


class InvalidAlarm(GeoAlarmError, ValueError):
    pass
