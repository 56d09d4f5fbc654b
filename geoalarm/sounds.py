from __future__ import annotations

import logging
import math
import wave
from abc import ABC, abstractmethod
from pathlib import Path
from queue import Queue
from threading import Event, Lock, Thread
from typing import Optional

import numpy as np

try:
    import winsound
except ImportError:  # pragma: no cover - non-Windows fallback
    winsound = None  # type: ignore

try:  # Optional local TTS for spoken alerts
    import pyttsx3
except ImportError:  # pragma: no cover - optional
    pyttsx3 = None  # type: ignore

logger = logging.getLogger(__name__)

SAMPLE_RATE = 24000
TONE_HZ = 880.0
BEEP_MS = 250
BEEP_GAP_S = 0.25


class AlertSink(ABC):
    @abstractmethod
    def start_continuous_alert(self) -> None:
        ...

    @abstractmethod
    def stop_alert(self) -> None:
        ...


def render_alarm_tone(duration_seconds: float = 1.5, freq: float = TONE_HZ, amplitude: float = 0.4) -> np.ndarray:
    """Two short bursts per second, as 16-bit PCM samples."""
    t = np.arange(int(duration_seconds * SAMPLE_RATE)) / SAMPLE_RATE
    tone = np.sin(2 * math.pi * freq * t)
    gate = (np.floor(t * 4) % 2 == 0).astype(np.float64)
    return (32767 * amplitude * tone * gate).astype("<i2")


def ensure_alarm_sound(path: Path, duration_seconds: float = 1.5) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    samples = render_alarm_tone(duration_seconds)
    with wave.open(str(path), "w") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(SAMPLE_RATE)
        wav.writeframes(samples.tobytes())
    logger.info("Generated default alarm sound at %s", path)


class AlarmSoundPlayer(AlertSink):
    def __init__(self, sound_path: Path, speaker: Optional["LocalSpeaker"] = None, announcement: Optional[str] = None):
        self.sound_path = Path(sound_path)
        self.speaker = speaker
        self.announcement = announcement
        self._stop_event = Event()
        self._beep_thread: Optional[Thread] = None
        self._lock = Lock()
        self._active = False

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    def start_continuous_alert(self) -> None:
        with self._lock:
            if self._active:
                return
            self._active = True
        ensure_alarm_sound(self.sound_path)
        self._stop_event.clear()
        if self.speaker and self.announcement:
            self.speaker.speak_async(self.announcement)
        if winsound:
            try:
                winsound.PlaySound(
                    str(self.sound_path),
                    winsound.SND_FILENAME | winsound.SND_LOOP | winsound.SND_ASYNC,
                )
                return
            except RuntimeError:
                logger.warning("winsound.PlaySound failed, falling back to beep loop")

        # Generic fallback: simple beep loop in thread
        if self._beep_thread and self._beep_thread.is_alive():
            return
        self._beep_thread = Thread(target=self._beep_loop, name="alarm-beep", daemon=True)
        self._beep_thread.start()

    def stop_alert(self) -> None:
        with self._lock:
            was_active = self._active
            self._active = False
        self._stop_event.set()
        if winsound and was_active:
            try:
                winsound.PlaySound(None, winsound.SND_PURGE)
            except RuntimeError:
                logger.debug("winsound.PlaySound purge failed")

    def _beep_loop(self) -> None:  # pragma: no cover - timing loop
        rings = 0
        while not self._stop_event.is_set():
            if not self._beep() and rings % 10 == 0:
                logger.info("Alarm ringing, stop it at the alarm location (%s rings)", rings)
            rings += 1
            self._stop_event.wait(BEEP_GAP_S)

    def _beep(self) -> bool:
        if winsound is None:
            return False
        try:
            winsound.Beep(int(TONE_HZ), BEEP_MS)
        except RuntimeError:
            logger.debug("winsound.Beep failed inside loop")
            return False
        return True


class LocalSpeaker:
    """Speaks announcements through pyttsx3 on a single worker thread.

    The engine is created lazily on that thread. If it cannot start, spoken
    alerts stay disabled for the rest of the process.
    """

    def __init__(self, rate: int = 185, volume: float = 1.0):
        self.rate = rate
        self.volume = volume
        self._queue: "Queue[Optional[str]]" = Queue()
        self._worker: Optional[Thread] = None
        self._lock = Lock()
        self._broken = pyttsx3 is None

    @property
    def available(self) -> bool:
        return not self._broken

    def speak_async(self, text: str) -> bool:
        if self._broken:
            return False
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = Thread(target=self._run, name="alarm-speaker", daemon=True)
                self._worker.start()
        self._queue.put(text)
        return True

    def close(self, timeout: float = 2.0) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is not None:
            self._queue.put(None)
            worker.join(timeout=timeout)

    def _run(self) -> None:
        try:
            engine = pyttsx3.init()
            engine.setProperty("rate", self.rate)
            engine.setProperty("volume", self.volume)
        except Exception:
            logger.warning("pyttsx3 engine unavailable, spoken alerts disabled", exc_info=True)
            self._broken = True
            return
        while True:
            text = self._queue.get()
            if text is None:
                return
            try:
                engine.say(text)
                engine.runAndWait()
            except Exception:  # pragma: no cover - engine runtime errors
                logger.error("pyttsx3 failed to speak %r", text, exc_info=True)
