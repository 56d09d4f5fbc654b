from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Callable, Dict, List, Optional, Tuple

from time_utils import now_in_tz

from .errors import SchedulingFailure
from .events import EventHook
from .location import PermissionState

logger = logging.getLogger(__name__)

DEFAULT_CEILING = 64


@dataclass(frozen=True)
class PendingEvent:
    event_id: str
    fire_at: datetime
    payload: dict = field(default_factory=dict)


class NotificationChannel(ABC):
    @property
    @abstractmethod
    def authorization(self) -> PermissionState:
        ...

    @abstractmethod
    def request_authorization(self) -> None:
        ...

    @abstractmethod
    def register(self, event_id: str, fire_at: datetime, payload: dict) -> None:
        """Queue one delivery; raises SchedulingFailure when it cannot."""

    @abstractmethod
    def revoke(self, event_id: str) -> bool:
        ...

    @abstractmethod
    def revoke_all(self) -> int:
        ...

    @abstractmethod
    def list_pending(self) -> List[Tuple[str, dict]]:
        ...

    @abstractmethod
    def on_delivery(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        ...


class LocalNotificationChannel(NotificationChannel):
    """In-process delivery channel with a hard limit on pending events per alarm.

    Events are counted by their payload's ``alarm_id``, so one alarm filling
    its quota never starves another.

    A background thread polls for due events and hands each payload to the
    delivery listeners exactly once. ``deliver_due`` can also be driven
    directly with an explicit ``now``.
    """

    def __init__(
        self,
        ceiling: int = DEFAULT_CEILING,
        check_interval: float = 0.8,
        clock: Optional[Callable[[], datetime]] = None,
        authorization: PermissionState = PermissionState.NOT_DETERMINED,
        on_authorization_request: Optional[Callable[[], PermissionState]] = None,
    ):
        if ceiling < 1:
            raise ValueError("ceiling must be positive")
        self.ceiling = ceiling
        self.check_interval = max(0.05, check_interval)
        self.clock = clock or (lambda: now_in_tz(None))
        self._authorization = authorization
        self._on_authorization_request = on_authorization_request
        self._pending: Dict[str, PendingEvent] = {}
        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self.deliveries = EventHook("notification_delivery")

    @property
    def authorization(self) -> PermissionState:
        with self._lock:
            return self._authorization

    @property
    def authorization_granted(self) -> bool:
        return self.authorization == PermissionState.GRANTED

    def request_authorization(self) -> None:
        if self._on_authorization_request is None:
            logger.info("Notification authorization requested; waiting for a decision")
            return
        self.set_authorization(self._on_authorization_request())

    def set_authorization(self, state: PermissionState) -> None:
        with self._lock:
            self._authorization = state
        logger.info("Notification authorization -> %s", state.value)

    def register(self, event_id: str, fire_at: datetime, payload: dict) -> None:
        owner = payload.get("alarm_id")
        with self._lock:
            if self._authorization != PermissionState.GRANTED:
                raise SchedulingFailure(event_id, "notifications are not authorized")
            if event_id not in self._pending and self._pending_count_locked(owner) >= self.ceiling:
                raise SchedulingFailure(event_id, f"pending limit of {self.ceiling} reached for {owner or 'unowned'}")
            self._pending[event_id] = PendingEvent(event_id, fire_at, dict(payload))

    def revoke(self, event_id: str) -> bool:
        with self._lock:
            return self._pending.pop(event_id, None) is not None

    def revoke_all(self) -> int:
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
        return count

    def list_pending(self) -> List[Tuple[str, dict]]:
        with self._lock:
            return [(e.event_id, dict(e.payload)) for e in self._pending.values()]

    def pending_events(self) -> List[PendingEvent]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda e: e.fire_at)

    def on_delivery(self, callback: Callable[[dict], None]) -> Callable[[], None]:
        return self.deliveries.subscribe(callback)

    def deliver_due(self, now: Optional[datetime] = None) -> List[PendingEvent]:
        now = now or self.clock()
        with self._lock:
            due = sorted((e for e in self._pending.values() if e.fire_at <= now), key=lambda e: e.fire_at)
            for event in due:
                del self._pending[event.event_id]
        for event in due:
            logger.debug("Delivering %s (fire_at=%s)", event.event_id, event.fire_at.isoformat())
            self.deliveries.emit(dict(event.payload))
        return due

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="notification-channel", daemon=True)
        self._thread.start()

    def shutdown(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None

    def _pending_count_locked(self, owner: Optional[str]) -> int:
        return sum(1 for e in self._pending.values() if e.payload.get("alarm_id") == owner)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.deliver_due()
            self._stop_event.wait(self.check_interval)
