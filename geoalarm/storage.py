from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import InvalidAlarm, PersistenceFailure
from .geo import Coordinate

logger = logging.getLogger(__name__)

STORAGE_KEY = "stored_alarms"
STOP_INSTRUCTION = "Stop the alarm once you reach the destination"


@dataclass(frozen=True)
class Alarm:
    id: str
    name: str
    hour: int
    minute: int
    latitude: float
    longitude: float
    enabled: bool = True
    address_hint: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidAlarm("Alarm id must not be empty")
        name = (self.name or "").strip()
        if not name:
            raise InvalidAlarm("Alarm name must not be empty")
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise InvalidAlarm(f"Invalid time of day {self.hour}:{self.minute}")
        try:
            Coordinate(self.latitude, self.longitude)
        except ValueError as exc:
            raise InvalidAlarm(str(exc)) from exc
        hint = (self.address_hint or "").strip() or None
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "address_hint", hint)

    @classmethod
    def create(
        cls,
        name: str,
        hour: int,
        minute: int,
        latitude: float,
        longitude: float,
        address_hint: Optional[str] = None,
    ) -> "Alarm":
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            hour=hour,
            minute=minute,
            latitude=latitude,
            longitude=longitude,
            enabled=True,
            address_hint=address_hint,
        )

    @classmethod
    def sample(cls) -> "Alarm":
        return cls.create(
            name="Go home",
            hour=19,
            minute=0,
            latitude=35.6809591,
            longitude=139.7673068,
            address_hint="Tokyo Station",
        )

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    @property
    def notification_identifier(self) -> str:
        return self.id

    @property
    def time_label(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    def with_enabled(self, enabled: bool) -> "Alarm":
        return replace(self, enabled=enabled)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "timeOfDay": {"hour": self.hour, "minute": self.minute},
            "latitude": self.latitude,
            "longitude": self.longitude,
            "enabled": self.enabled,
            "addressHint": self.address_hint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Alarm":
        time_of_day = data.get("timeOfDay")
        if not isinstance(time_of_day, dict):
            raise ValueError("Alarm payload missing timeOfDay")
        if data.get("latitude") is None or data.get("longitude") is None:
            raise ValueError("Alarm payload missing latitude/longitude")
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            hour=int(time_of_day["hour"]),
            minute=int(time_of_day["minute"]),
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            enabled=bool(data.get("enabled", True)),
            address_hint=data.get("addressHint"),
        )


class PersistentStore(ABC):
    @abstractmethod
    def load(self) -> List[Alarm]:
        """Return stored alarms in insertion order."""

    @abstractmethod
    def save(self, alarms: Sequence[Alarm]) -> None:
        """Write the full ordered list, raising PersistenceFailure on error."""


class JsonAlarmStore(PersistentStore):
    """Keeps the alarm list as JSON under a single key in one file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> List[Alarm]:
        return load_alarms(self.path)

    def save(self, alarms: Sequence[Alarm]) -> None:
        try:
            save_alarms(self.path, alarms)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"Failed to save alarms to {self.path}: {exc}") from exc


def load_alarms(path: Path) -> List[Alarm]:
    if not path.exists():
        return []
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load alarms from %s: %s", path, exc)
        return []
    items = payload.get(STORAGE_KEY) if isinstance(payload, dict) else None
    alarms: List[Alarm] = []
    seen = set()
    for item in items or []:
        try:
            alarm = Alarm.from_dict(item)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping alarm item due to parse error: %s", exc)
            continue
        if alarm.id in seen:
            logger.warning("Skipping duplicate alarm id %s", alarm.id)
            continue
        seen.add(alarm.id)
        alarms.append(alarm)
    return alarms


def save_alarms(path: Path, alarms: Sequence[Alarm]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    serializable = {STORAGE_KEY: [a.to_dict() for a in alarms]}
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(serializable, f, ensure_ascii=False, indent=2)
    tmp_path.replace(path)
