import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_env_number(name: str, default, cast, kind: str):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be {kind}, got {raw!r}") from exc


def _get_env_int(name: str, default: int) -> int:
    return _get_env_number(name, default, int, "an integer")


def _get_env_float(name: str, default: Optional[float]) -> Optional[float]:
    return _get_env_number(name, default, float, "a number")


@dataclass
class Config:
    alarms_path: Path
    alarm_sound_path: Path
    stop_radius_m: float
    repeat_interval_s: float
    max_repeat_duration_s: float
    notification_ceiling: int
    channel_check_interval_ms: int
    timezone_name: Optional[str]
    seed_sample_alarm: bool
    announce_alerts: bool
    debug: bool
    log_level: str
    notifications_authorized: bool = True
    location_authorized: bool = True
    start_latitude: Optional[float] = None
    start_longitude: Optional[float] = None


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    alarms_path = Path(os.getenv("GEOALARM_STORAGE_PATH", "data/alarms.json"))
    alarm_sound_path = Path(os.getenv("ALARM_SOUND_PATH", "data/alarm.wav"))
    stop_radius_m = _get_env_float("STOP_RADIUS_M", 100.0)
    repeat_interval_s = _get_env_float("REPEAT_INTERVAL_S", 5.0)
    max_repeat_duration_s = _get_env_float("MAX_REPEAT_DURATION_S", 30 * 60.0)
    notification_ceiling = _get_env_int("NOTIFICATION_CEILING", 64)
    channel_check_interval_ms = _get_env_int("CHANNEL_CHECK_INTERVAL_MS", 800)
    timezone_name = os.getenv("TIMEZONE") or None
    seed_sample_alarm = _get_env_bool("SEED_SAMPLE_ALARM", False)
    announce_alerts = _get_env_bool("ANNOUNCE_ALERTS", False)
    debug = _get_env_bool("DEBUG", False)
    log_level = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper()
    notifications_authorized = _get_env_bool("NOTIFICATIONS_AUTHORIZED", True)
    location_authorized = _get_env_bool("LOCATION_AUTHORIZED", True)
    start_latitude = _get_env_float("START_LATITUDE", None)
    start_longitude = _get_env_float("START_LONGITUDE", None)

    if stop_radius_m <= 0:
        raise ValueError("STOP_RADIUS_M must be positive")
    if repeat_interval_s <= 0:
        raise ValueError("REPEAT_INTERVAL_S must be positive")
    if notification_ceiling < 1:
        raise ValueError("NOTIFICATION_CEILING must be at least 1")
    if (start_latitude is None) != (start_longitude is None):
        raise ValueError("START_LATITUDE and START_LONGITUDE must be set together")

    return Config(
        alarms_path=alarms_path,
        alarm_sound_path=alarm_sound_path,
        stop_radius_m=stop_radius_m,
        repeat_interval_s=repeat_interval_s,
        max_repeat_duration_s=max_repeat_duration_s,
        notification_ceiling=notification_ceiling,
        channel_check_interval_ms=channel_check_interval_ms,
        timezone_name=timezone_name,
        seed_sample_alarm=seed_sample_alarm,
        announce_alerts=announce_alerts,
        debug=debug,
        log_level=log_level,
        notifications_authorized=notifications_authorized,
        location_authorized=location_authorized,
        start_latitude=start_latitude,
        start_longitude=start_longitude,
    )


def setup_logging(log_level: str = "INFO", log_dir: Path = Path("logs")) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "geoalarm.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, log_level)
    return log_path
