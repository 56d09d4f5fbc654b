"""Location-gated alarm core."""

from .channel import LocalNotificationChannel, NotificationChannel
from .errors import (
    AlarmNotFound,
    GeoAlarmError,
    InvalidAlarm,
    PermissionDenied,
    PersistenceFailure,
    PositionUnavailable,
    ProximityDenied,
    SchedulingFailure,
)
from .geo import Coordinate, ProximityReport, distance_to, is_within_radius
from .location import PermissionState, PositionSource, ProximityTracker
from .manager import AlarmLifecycle, AlarmState
from .repository import AlarmRepository
from .scheduler import NotificationScheduler
from .sounds import AlarmSoundPlayer, AlertSink
from .storage import Alarm, JsonAlarmStore, PersistentStore
