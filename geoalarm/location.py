from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from threading import Lock
from typing import Callable, Optional

from . import geo
from .events import EventHook
from .geo import Coordinate

logger = logging.getLogger(__name__)


class PermissionState(Enum):
    NOT_DETERMINED = "not_determined"
    GRANTED = "granted"
    DENIED = "denied"


class PositionSource(ABC):
    @property
    @abstractmethod
    def permission(self) -> PermissionState:
        ...

    @abstractmethod
    def current_position(self) -> Optional[Coordinate]:
        ...

    @abstractmethod
    def on_update(self, callback: Callable[[Coordinate], None]) -> Callable[[], None]:
        ...

    @abstractmethod
    def request_permission(self) -> None:
        ...


class ProximityTracker(PositionSource):
    """Push-fed position source that remembers the last fix.

    Whatever produces fixes (a GPS daemon, a phone bridge, a test) calls
    ``push``; permission decisions arrive through ``set_permission``.
    """

    def __init__(
        self,
        permission: PermissionState = PermissionState.NOT_DETERMINED,
        on_permission_request: Optional[Callable[[], None]] = None,
    ):
        self._lock = Lock()
        self._permission = permission
        self._last_position: Optional[Coordinate] = None
        self._on_permission_request = on_permission_request
        self.last_error: Optional[str] = None
        self.is_updating = permission == PermissionState.GRANTED
        self.updates = EventHook("position_update")
        self.permission_changes = EventHook("permission_change")

    @property
    def permission(self) -> PermissionState:
        with self._lock:
            return self._permission

    @property
    def is_denied(self) -> bool:
        return self.permission == PermissionState.DENIED

    def current_position(self) -> Optional[Coordinate]:
        with self._lock:
            return self._last_position

    def on_update(self, callback: Callable[[Coordinate], None]) -> Callable[[], None]:
        return self.updates.subscribe(callback)

    def on_permission_change(self, callback: Callable[[PermissionState], None]) -> Callable[[], None]:
        return self.permission_changes.subscribe(callback)

    def request_permission(self) -> None:
        if self.permission != PermissionState.NOT_DETERMINED:
            return
        if self._on_permission_request:
            self._on_permission_request()
        else:
            logger.info("Location permission requested; waiting for a decision")

    def set_permission(self, state: PermissionState) -> None:
        with self._lock:
            changed = self._permission != state
            self._permission = state
            self.is_updating = state == PermissionState.GRANTED
        if changed:
            logger.info("Location permission -> %s", state.value)
            self.permission_changes.emit(state)

    def push(self, position: Coordinate) -> None:
        with self._lock:
            if self._permission == PermissionState.DENIED:
                logger.debug("Ignoring position fix while permission is denied")
                return
            self._last_position = position
            self.last_error = None
        self.updates.emit(position)

    def report_error(self, message: str) -> None:
        logger.warning("Location update failed: %s", message)
        with self._lock:
            self.last_error = message

    def distance_to(self, target: Coordinate) -> Optional[float]:
        return geo.distance_to(self.current_position(), target)

    def is_within_range(self, target: Coordinate, radius: float = geo.DEFAULT_RADIUS_M) -> Optional[bool]:
        return geo.is_within_radius(self.current_position(), target, radius)

    def status_description(self) -> str:
        permission = self.permission
        if permission == PermissionState.DENIED:
            return "Location permission denied. Allow it in the system settings."
        if permission == PermissionState.NOT_DETERMINED:
            return "Location permission has not been granted yet."
        last = self.current_position()
        if last is None:
            return "Waiting for a location fix..."
        return f"Tracking location: lat {last.latitude:.4f}, lon {last.longitude:.4f}"
