from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Iterable, List, Optional, Set

from time_utils import fire_time_today, now_in_tz

from .channel import DEFAULT_CEILING, NotificationChannel
from .errors import SchedulingFailure
from .events import EventHook
from .location import PermissionState
from .storage import STOP_INSTRUCTION, Alarm

logger = logging.getLogger(__name__)

AlarmLookup = Callable[[str], Optional[Alarm]]


class NotificationScheduler:
    """Turns an armed alarm into a bounded batch of wake-ups and keeps it going.

    At schedule time only ``batch_size`` events are registered, since the
    channel refuses more than ``ceiling`` pending events. Every delivered
    repeating event registers one replacement ``interval`` seconds later for
    as long as the alarm stays enabled and marked as repeating.

    The repeating marker set is owned here. Marker checks and the channel
    calls that depend on them run under one lock, so a cancel can never be
    followed by a re-arm for the same alarm.
    """

    def __init__(
        self,
        channel: NotificationChannel,
        lookup: Optional[AlarmLookup] = None,
        interval: float = 5.0,
        max_duration: float = 30 * 60,
        ceiling: int = DEFAULT_CEILING,
        clock: Optional[Callable[[], datetime]] = None,
        timezone=None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.channel = channel
        self.lookup = lookup
        self.interval = interval
        self.max_duration = max_duration
        self.ceiling = ceiling
        self.tzinfo = timezone or datetime.now().astimezone().tzinfo
        self.clock = clock or (lambda: now_in_tz(self.tzinfo))
        self.wakes = EventHook("alarm_wake")

        self._repeating: Set[str] = set()
        self._lock = RLock()
        channel.on_delivery(self._on_delivery)

    @property
    def batch_size(self) -> int:
        return max(0, min(self.ceiling, int(self.max_duration // self.interval)))

    def set_lookup(self, lookup: AlarmLookup) -> None:
        self.lookup = lookup

    def on_wake(self, callback: Callable[[str], None]) -> Callable[[], None]:
        return self.wakes.subscribe(callback)

    def schedule(self, alarm: Alarm) -> int:
        if not alarm.enabled:
            logger.debug("Not scheduling disabled alarm %s", alarm.id)
            return 0
        if self.channel.authorization != PermissionState.GRANTED:
            logger.warning("Notifications not authorized, alarm %s stays unscheduled", alarm.id)
            return 0

        now = self.clock()
        fire_at = fire_time_today(alarm.hour, alarm.minute, now)
        if fire_at <= now:
            logger.info("Alarm %s time %s already passed today, nothing scheduled", alarm.id, alarm.time_label)
            return 0

        registered = 0
        with self._lock:
            for i in range(self.batch_size):
                at = fire_at + timedelta(seconds=i * self.interval)
                if at <= now:
                    continue
                event_id = f"{alarm.notification_identifier}_repeat_{i}"
                if self._register(event_id, at, alarm):
                    registered += 1
            self._repeating.add(alarm.id)
        logger.info(
            "Scheduled %s of %s wake-ups for alarm %s (%s) starting %s",
            registered,
            self.batch_size,
            alarm.id,
            alarm.name,
            fire_at.isoformat(),
        )
        return registered

    def rearm(self, alarm: Alarm) -> bool:
        if not alarm.enabled:
            return False
        with self._lock:
            self._repeating.add(alarm.id)
            return self._register_next(alarm)

    def cancel(self, alarm_id: str) -> int:
        with self._lock:
            self._repeating.discard(alarm_id)
            to_revoke = self._pending_ids_locked(alarm_id)
            for event_id in to_revoke:
                self.channel.revoke(event_id)
        if to_revoke:
            logger.info("Canceled %s wake-ups for alarm %s", len(to_revoke), alarm_id)
        return len(to_revoke)

    def reschedule_all(self, alarms: Iterable[Alarm]) -> int:
        """Revoke everything, then schedule every alarm that is enabled right now.

        Each alarm is re-read through ``lookup`` under the lock, so one that was
        disabled or removed after the caller took its snapshot is skipped.
        """
        with self._lock:
            self._repeating.clear()
            revoked = self.channel.revoke_all()
            total = 0
            for alarm in alarms:
                current = self._refresh(alarm)
                if current is not None and current.enabled:
                    total += self.schedule(current)
        logger.info("Rescheduled all alarms: revoked %s, registered %s", revoked, total)
        return total

    def _refresh(self, alarm: Alarm) -> Optional[Alarm]:
        if self.lookup is None:
            return alarm
        try:
            return self.lookup(alarm.id)
        except Exception:
            logger.error("Alarm lookup failed, not rescheduling %s", alarm.id, exc_info=True)
            return None

    def pending_for(self, alarm_id: str) -> List[str]:
        with self._lock:
            return self._pending_ids_locked(alarm_id)

    def is_repeating(self, alarm_id: str) -> bool:
        with self._lock:
            return alarm_id in self._repeating

    def _pending_ids_locked(self, alarm_id: str) -> List[str]:
        prefix = f"{alarm_id}_"
        return [
            event_id
            for event_id, payload in self.channel.list_pending()
            if payload.get("alarm_id") == alarm_id or event_id.startswith(prefix)
        ]

    def _payload(self, alarm: Alarm) -> dict:
        return {
            "alarm_id": alarm.id,
            "repeating": True,
            "title": alarm.name,
            "body": STOP_INSTRUCTION,
        }

    def _register(self, event_id: str, fire_at: datetime, alarm: Alarm) -> bool:
        try:
            self.channel.register(event_id, fire_at, self._payload(alarm))
        except SchedulingFailure as exc:
            logger.warning("Wake-up registration failed: %s", exc)
            return False
        return True

    def _register_next(self, alarm: Alarm) -> bool:
        fire_at = self.clock() + timedelta(seconds=self.interval)
        # deliveries that land together share one follow-up slot
        event_id = f"{alarm.notification_identifier}_next_{int(fire_at.timestamp() * 1000)}"
        return self._register(event_id, fire_at, alarm)

    def _on_delivery(self, payload: dict) -> None:
        alarm_id = payload.get("alarm_id")
        if not alarm_id:
            logger.warning("Delivered notification carries no alarm id: %s", payload)
            return
        if payload.get("repeating"):
            self._rearm_after_delivery(alarm_id)
        self.wakes.emit(alarm_id)

    def _rearm_after_delivery(self, alarm_id: str) -> None:
        if self.lookup is None:
            logger.warning("No alarm lookup available, skipping re-arm for %s", alarm_id)
            return
        with self._lock:
            try:
                alarm = self.lookup(alarm_id)
            except Exception:
                logger.error("Alarm lookup failed, skipping re-arm for %s", alarm_id, exc_info=True)
                return
            if alarm is None or not alarm.enabled or alarm_id not in self._repeating:
                logger.debug("Alarm %s is no longer repeating, not re-armed", alarm_id)
                return
            self._register_next(alarm)
