from __future__ import annotations

import logging
import time
from collections import OrderedDict
from contextlib import contextmanager
from enum import Enum
from threading import Lock, RLock
from typing import Callable, Dict, Iterator, List, Optional

from . import geo
from .errors import PermissionDenied, PositionUnavailable, ProximityDenied
from .events import EventHook
from .geo import ProximityReport
from .location import PermissionState, PositionSource
from .repository import AlarmRepository
from .scheduler import NotificationScheduler
from .sounds import AlertSink
from .storage import Alarm

logger = logging.getLogger(__name__)


class AlarmState(Enum):
    DISABLED = "disabled"
    ARMED = "armed"
    ALERTING = "alerting"


class AlarmRuntimeState:
    def __init__(self) -> None:
        self.alerting: "OrderedDict[str, float]" = OrderedDict()
        self.pending_alarm_id: Optional[str] = None


class AlarmLifecycle:
    """Owns the alarm state machine.

    Every edit, toggle, delete and stop re-reads the current position and
    checks it against the alarm's stored target before touching anything:
    an alarm can only be changed or silenced from where it points to.
    Transitions for a single alarm id are serialized.
    """

    def __init__(
        self,
        repository: AlarmRepository,
        scheduler: NotificationScheduler,
        position_source: PositionSource,
        alert_sink: AlertSink,
        radius: float = geo.DEFAULT_RADIUS_M,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.position_source = position_source
        self.alert_sink = alert_sink
        self.radius = radius

        self._runtime = AlarmRuntimeState()
        self._runtime_lock = Lock()
        self._alarm_locks: Dict[str, RLock] = {}
        self._alarm_locks_guard = Lock()
        self.alerting_events = EventHook("alarm_alerting")
        self.stopped_events = EventHook("alarm_stopped")

        scheduler.set_lookup(repository.get)
        scheduler.on_wake(self.on_wake_delivered)

    def on_alerting(self, callback: Callable[[Alarm], None]) -> Callable[[], None]:
        return self.alerting_events.subscribe(callback)

    def on_stopped(self, callback: Callable[[Alarm], None]) -> Callable[[], None]:
        return self.stopped_events.subscribe(callback)

    def request_permissions(self) -> None:
        self.position_source.request_permission()
        self.scheduler.channel.request_authorization()

    @property
    def notification_authorized(self) -> bool:
        return self.scheduler.channel.authorization == PermissionState.GRANTED

    def alarms(self) -> List[Alarm]:
        return self.repository.list()

    def get(self, alarm_id: str) -> Optional[Alarm]:
        return self.repository.get(alarm_id)

    def add(self, alarm: Alarm) -> Alarm:
        with self._serialized(alarm.id):
            stored = self.repository.add(alarm.with_enabled(True))
            self.scheduler.schedule(stored)
        return stored

    def update(self, alarm: Alarm) -> Alarm:
        with self._serialized(alarm.id):
            current = self.repository.require(alarm.id)
            self._require_in_range(current, "edit")
            stored = self.repository.update(alarm)
            self.scheduler.cancel(stored.id)
            if stored.enabled:
                self._arm(stored)
            else:
                self._clear_alerting(stored.id)
        return stored

    def toggle_enabled(self, alarm_id: str) -> Alarm:
        with self._serialized(alarm_id):
            current = self.repository.require(alarm_id)
            self._require_in_range(current, "toggle")
            updated = self.repository.toggle_enabled(alarm_id)
            self.scheduler.cancel(alarm_id)
            if updated.enabled:
                self._arm(updated)
            else:
                self._clear_alerting(alarm_id)
        return updated

    def delete(self, alarm_id: str) -> Alarm:
        with self._serialized(alarm_id):
            current = self.repository.require(alarm_id)
            self._require_in_range(current, "delete")
            removed = self.repository.remove(alarm_id)
            self.scheduler.cancel(alarm_id)
            self._clear_alerting(alarm_id)
        with self._alarm_locks_guard:
            self._alarm_locks.pop(alarm_id, None)
        return removed

    def on_wake_delivered(self, alarm_id: str) -> None:
        with self._serialized(alarm_id):
            alarm = self.repository.get(alarm_id)
            if alarm is None:
                logger.warning("Wake-up delivered for unknown alarm %s", alarm_id)
                return
            if not alarm.enabled:
                logger.warning("Wake-up delivered for disabled alarm %s, ignored", alarm_id)
                return
            now_ts = time.time()
            with self._runtime_lock:
                already_alerting = alarm_id in self._runtime.alerting
                self._runtime.alerting.setdefault(alarm_id, now_ts)
                self._runtime.pending_alarm_id = alarm_id
            self.alert_sink.start_continuous_alert()
            if not already_alerting:
                logger.info("Alarm triggered: %s (%s)", alarm.name, alarm.time_label)
                self.alerting_events.emit(alarm)

    def stop(self, alarm_id: str) -> Alarm:
        with self._serialized(alarm_id):
            current = self.repository.require(alarm_id)
            distance = self._require_in_range(current, "stop")
            stopped = self.repository.update(current.with_enabled(False))
            self.scheduler.cancel(alarm_id)
            self._clear_alerting(alarm_id)
            logger.info("Alarm %s stopped %.0f m from its target", alarm_id, distance)
            self.stopped_events.emit(stopped)
        return stopped

    def reconcile(self) -> int:
        """Rebuild every registration from the repository.

        Alarms that are still alerting get one fresh re-arm afterwards so the
        wipe does not silence them.
        """
        total = self.scheduler.reschedule_all(self.repository.list())
        for alarm_id in self.alerting_ids():
            with self._serialized(alarm_id):
                alarm = self.repository.get(alarm_id)
                if alarm and alarm.enabled and not self.scheduler.pending_for(alarm_id):
                    if self.scheduler.rearm(alarm):
                        total += 1
        return total

    def state(self, alarm_id: str) -> AlarmState:
        self.repository.require(alarm_id)
        with self._runtime_lock:
            if alarm_id in self._runtime.alerting:
                return AlarmState.ALERTING
        if self.scheduler.pending_for(alarm_id):
            return AlarmState.ARMED
        return AlarmState.DISABLED

    def alerting_ids(self) -> List[str]:
        with self._runtime_lock:
            return list(self._runtime.alerting)

    @property
    def pending_alarm_id(self) -> Optional[str]:
        with self._runtime_lock:
            return self._runtime.pending_alarm_id

    @property
    def is_alerting(self) -> bool:
        with self._runtime_lock:
            return bool(self._runtime.alerting)

    def proximity(self, alarm_id: str) -> ProximityReport:
        alarm = self.repository.require(alarm_id)
        return geo.evaluate(self.position_source.current_position(), alarm.coordinate, self.radius)

    def _arm(self, alarm: Alarm) -> int:
        registered = self.scheduler.schedule(alarm)
        with self._runtime_lock:
            alerting = alarm.id in self._runtime.alerting
        if alerting and not self.scheduler.pending_for(alarm.id):
            registered += int(self.scheduler.rearm(alarm))
        return registered

    def _require_in_range(self, alarm: Alarm, action: str) -> float:
        position = self.position_source.current_position()
        if position is None:
            if self.position_source.permission == PermissionState.DENIED:
                raise PermissionDenied("location", f"Location permission is needed to {action} an alarm")
            raise PositionUnavailable(f"Current position unknown, cannot {action} alarm {alarm.id}")
        distance = geo.great_circle_distance(position, alarm.coordinate)
        if distance > self.radius:
            logger.info(
                "Refused to %s alarm %s: %.0f m away (radius %.0f m)", action, alarm.id, distance, self.radius
            )
            raise ProximityDenied(alarm.id, distance, self.radius)
        return distance

    def _clear_alerting(self, alarm_id: str) -> None:
        with self._runtime_lock:
            was_alerting = self._runtime.alerting.pop(alarm_id, None) is not None
            if self._runtime.pending_alarm_id == alarm_id:
                self._runtime.pending_alarm_id = next(reversed(self._runtime.alerting), None)
            still_alerting = bool(self._runtime.alerting)
        if was_alerting and not still_alerting:
            self.alert_sink.stop_alert()

    @contextmanager
    def _serialized(self, alarm_id: str) -> Iterator[None]:
        with self._alarm_locks_guard:
            lock = self._alarm_locks.setdefault(alarm_id, RLock())
        with lock:
            yield
