from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, List

logger = logging.getLogger(__name__)


class EventHook:
    """Ordered list of callbacks for one event type.

    Listeners run in subscription order on the emitting thread. A failing
    listener is logged and does not prevent the remaining ones from running.
    """

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable] = []
        self._lock = Lock()

    def subscribe(self, listener: Callable) -> Callable[[], None]:
        if not callable(listener):
            raise ValueError("Listener must be callable")
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Callable) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, *args, **kwargs) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(*args, **kwargs)
            except Exception:
                logger.error("Listener for %s failed", self.name, exc_info=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
