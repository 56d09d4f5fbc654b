import logging
import signal
from datetime import datetime
from threading import Event
from typing import Callable, Optional

from config import Config, load_config, setup_logging
from geoalarm.channel import LocalNotificationChannel
from geoalarm.geo import Coordinate
from geoalarm.location import PermissionState, ProximityTracker
from geoalarm.manager import AlarmLifecycle
from geoalarm.repository import AlarmRepository
from geoalarm.scheduler import NotificationScheduler
from geoalarm.sounds import AlarmSoundPlayer, LocalSpeaker
from geoalarm.storage import STOP_INSTRUCTION, Alarm, JsonAlarmStore
from time_utils import format_tz_offset, now_in_tz, resolve_timezone

logger = logging.getLogger("geoalarm")


def graceful_exit(signum, frame) -> None:  # pragma: no cover - signal handler
    logger.info("Shutting down (signal %s)", signum)
    raise KeyboardInterrupt()


class GeoAlarmRuntime:
    def __init__(self, config: Config, clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.tzinfo = resolve_timezone(config.timezone_name)
        self.clock = clock or (lambda: now_in_tz(self.tzinfo))
        self.stop_event = Event()

        self.tracker = ProximityTracker(on_permission_request=self._decide_location_permission)
        self.channel = LocalNotificationChannel(
            ceiling=config.notification_ceiling,
            check_interval=max(0.05, config.channel_check_interval_ms / 1000.0),
            clock=self.clock,
            on_authorization_request=self._decide_notification_authorization,
        )
        self.scheduler = NotificationScheduler(
            self.channel,
            interval=config.repeat_interval_s,
            max_duration=config.max_repeat_duration_s,
            ceiling=config.notification_ceiling,
            clock=self.clock,
            timezone=self.tzinfo,
        )
        self.repository = AlarmRepository(JsonAlarmStore(config.alarms_path))
        self.speaker = LocalSpeaker() if config.announce_alerts else None
        self.sound_player = AlarmSoundPlayer(
            config.alarm_sound_path,
            speaker=self.speaker,
            announcement=STOP_INSTRUCTION if self.speaker else None,
        )
        self.lifecycle = AlarmLifecycle(
            repository=self.repository,
            scheduler=self.scheduler,
            position_source=self.tracker,
            alert_sink=self.sound_player,
            radius=config.stop_radius_m,
        )
        self.lifecycle.on_alerting(self._on_alerting)

    def start(self) -> None:
        logger.info("Timezone %s (UTC%s)", getattr(self.tzinfo, "key", self.tzinfo), format_tz_offset(self.tzinfo))
        self.repository.load(seed_sample=self.config.seed_sample_alarm)
        self.lifecycle.request_permissions()
        if self.config.start_latitude is not None and self.config.start_longitude is not None:
            self.update_position(self.config.start_latitude, self.config.start_longitude)
        self.channel.start()
        self.on_foreground()

    def on_foreground(self) -> int:
        registered = self.lifecycle.reconcile()
        logger.info("Reconciled %s alarms, %s wake-ups pending", len(self.repository.list()), registered)
        return registered

    def update_position(self, latitude: float, longitude: float) -> None:
        self.tracker.push(Coordinate(latitude, longitude))

    def shutdown(self) -> None:
        self.stop_event.set()
        self.channel.shutdown()
        self.sound_player.stop_alert()
        if self.speaker:
            self.speaker.close()
        self.repository.close()

    def _decide_location_permission(self) -> None:
        granted = self.config.location_authorized
        self.tracker.set_permission(PermissionState.GRANTED if granted else PermissionState.DENIED)

    def _decide_notification_authorization(self) -> PermissionState:
        return PermissionState.GRANTED if self.config.notifications_authorized else PermissionState.DENIED

    def _on_alerting(self, alarm: Alarm) -> None:
        report = self.lifecycle.proximity(alarm.id)
        if report.distance is None:
            logger.warning("%s is ringing; %s", alarm.name, self.tracker.status_description())
        else:
            logger.warning("%s is ringing; target is %.0f m away", alarm.name, report.distance)


def main() -> None:
    config = load_config()
    setup_logging(config.log_level)
    signal.signal(signal.SIGINT, graceful_exit)
    runtime = GeoAlarmRuntime(config)
    runtime.start()
    try:
        while not runtime.stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    main()
