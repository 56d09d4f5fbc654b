from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from queue import Empty, Queue
from threading import Event, Lock, Thread
from typing import List, Optional

from .errors import AlarmNotFound, PersistenceFailure
from .storage import Alarm, PersistentStore

logger = logging.getLogger(__name__)


class AlarmRepository:
    """Authoritative ordered set of alarms.

    Mutations are applied in memory under one lock and are visible to readers
    immediately. Durable writes are handed to a background writer thread; when
    several snapshots queue up only the newest one is written.
    """

    def __init__(self, store: PersistentStore):
        self.store = store
        self._alarms: "OrderedDict[str, Alarm]" = OrderedDict()
        self._lock = Lock()
        self._writes: "Queue[Optional[List[Alarm]]]" = Queue()
        self._write_lock = Lock()
        self._idle = Event()
        self._idle.set()
        self._writer: Optional[Thread] = None
        self.last_persist_error: Optional[str] = None

    def load(self, seed_sample: bool = False) -> List[Alarm]:
        alarms = self.store.load()
        with self._lock:
            self._alarms = OrderedDict((a.id, a) for a in alarms)
            if not self._alarms and seed_sample:
                sample = Alarm.sample()
                self._alarms[sample.id] = sample
                logger.info("No stored alarms, seeded sample alarm %s", sample.id)
            snapshot = list(self._alarms.values())
        logger.info("Loaded %s alarms", len(snapshot))
        return snapshot

    def list(self) -> List[Alarm]:
        with self._lock:
            return list(self._alarms.values())

    def get(self, alarm_id: str) -> Optional[Alarm]:
        with self._lock:
            return self._alarms.get(alarm_id)

    def require(self, alarm_id: str) -> Alarm:
        alarm = self.get(alarm_id)
        if alarm is None:
            raise AlarmNotFound(alarm_id)
        return alarm

    def add(self, alarm: Alarm) -> Alarm:
        with self._lock:
            if alarm.id in self._alarms:
                raise ValueError(f"Alarm id {alarm.id} already exists")
            self._alarms[alarm.id] = alarm
            self._persist_locked()
        logger.info("Added alarm %s (%s at %s)", alarm.id, alarm.name, alarm.time_label)
        return alarm

    def update(self, alarm: Alarm) -> Alarm:
        with self._lock:
            if alarm.id not in self._alarms:
                raise AlarmNotFound(alarm.id)
            self._alarms[alarm.id] = alarm
            self._persist_locked()
        logger.info("Updated alarm %s (enabled=%s)", alarm.id, alarm.enabled)
        return alarm

    def toggle_enabled(self, alarm_id: str) -> Alarm:
        with self._lock:
            current = self._alarms.get(alarm_id)
            if current is None:
                raise AlarmNotFound(alarm_id)
            updated = replace(current, enabled=not current.enabled)
            self._alarms[alarm_id] = updated
            self._persist_locked()
        logger.info("Toggled alarm %s (enabled=%s)", alarm_id, updated.enabled)
        return updated

    def remove(self, alarm_id: str) -> Alarm:
        with self._lock:
            removed = self._alarms.pop(alarm_id, None)
            if removed is None:
                raise AlarmNotFound(alarm_id)
            self._persist_locked()
        logger.info("Removed alarm %s", alarm_id)
        return removed

    def persist(self) -> None:
        with self._lock:
            self._persist_locked()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until queued writes have been attempted."""
        return self._idle.wait(timeout)

    def close(self, timeout: float = 2.0) -> None:
        self.flush(timeout)
        writer = self._writer
        if writer and writer.is_alive():
            self._writes.put(None)
            writer.join(timeout=timeout)
        self._writer = None

    def _persist_locked(self) -> None:
        snapshot = list(self._alarms.values())
        with self._write_lock:
            self._idle.clear()
            self._writes.put(snapshot)
            if self._writer is None or not self._writer.is_alive():
                self._writer = Thread(target=self._write_loop, name="alarm-store-writer", daemon=True)
                self._writer.start()

    def _write_loop(self) -> None:
        while True:
            snapshot = self._writes.get()
            if snapshot is None:
                return
            # newest snapshot wins
            while True:
                try:
                    newer = self._writes.get_nowait()
                except Empty:
                    break
                if newer is None:
                    self._write(snapshot)
                    self._mark_idle()
                    return
                snapshot = newer
            self._write(snapshot)
            self._mark_idle()

    def _write(self, snapshot: List[Alarm]) -> None:
        try:
            self.store.save(snapshot)
            self.last_persist_error = None
        except PersistenceFailure as exc:
            self.last_persist_error = str(exc)
            logger.error("Persisting %s alarms failed: %s", len(snapshot), exc)
        except Exception as exc:  # pragma: no cover - store bug
            self.last_persist_error = str(exc)
            logger.error("Unexpected error while persisting alarms", exc_info=True)

    def _mark_idle(self) -> None:
        with self._write_lock:
            if self._writes.empty():
                self._idle.set()
