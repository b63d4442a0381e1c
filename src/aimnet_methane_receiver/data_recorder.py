"""Session recording and export for the AIMNet receiver.

This module implements the persistence side of a monitoring run:
- SessionRecorder: Interface the telemetry session drives (start/update/append/end)
- SessionStore: Keeps recent sessions and persists them as a JSON index
- Export helpers: CSV and JSON exports of sessions and timed samples
- ReadingTailWorker: Background thread streaming new live readings as CSV

Data collection must never be blocked by recording: the session only hands
readings over, and index persistence failures are logged rather than raised.
Exports are operator-initiated and raise ``RuntimeError`` so the caller can
show the failure.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, TextIO

from .buffers import ReadingWindow
from .config import MAX_STORED_SESSIONS
from .models import Reading, Session, TimedSample

logger = logging.getLogger(__name__)

INDEX_FILENAME = "sessionIndex.json"
EXPORT_DIRNAME = "Exports"
SESSION_CSV_HEADER = "timestamp,rawValue,ppm,temperatureRaw,humidityRaw"
TIMED_SAMPLE_CSV_HEADER = SESSION_CSV_HEADER + ",batteryPercent"


class SessionRecorder(ABC):
    """Receiver of session boundaries and readings from the telemetry session."""

    @property
    @abstractmethod
    def active_session(self) -> Optional[Session]:
        pass

    @abstractmethod
    def start_session(self, device_id: str, device_name: str) -> Session:
        """Begin a new active session, ending any prior one."""

    @abstractmethod
    def update_active_session_device(self, device_id: str, device_name: str) -> None:
        """Correct the identity of the active session. No-op without one."""

    @abstractmethod
    def append(self, reading: Reading) -> None:
        """Append to the active session. No-op without one."""

    @abstractmethod
    def end_session(self) -> Optional[Session]:
        """Close and return the active session, or ``None`` if there is none."""


def _format_value(value: Optional[float]) -> str:
    return "" if value is None else str(value)


def format_reading_csv(reading: Reading, include_battery: bool = False) -> str:
    fields = [
        reading.timestamp.isoformat(),
        _format_value(reading.raw_value),
        _format_value(reading.calibrated_value),
        _format_value(reading.temperature_c),
        _format_value(reading.humidity_rh),
    ]
    if include_battery:
        fields.append(_format_value(reading.battery_percent))
    return ",".join(fields)


def session_to_csv(session: Session) -> str:
    lines = [SESSION_CSV_HEADER]
    lines.extend(format_reading_csv(r) for r in session.readings)
    return "\n".join(lines)


def timed_sample_to_csv(sample: TimedSample) -> str:
    lines = [TIMED_SAMPLE_CSV_HEADER]
    lines.extend(format_reading_csv(r, include_battery=True) for r in sample.readings)
    return "\n".join(lines)


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True)


def _write_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", newline="", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class SessionStore(SessionRecorder):
    """Session recorder persisting recent sessions under ``root``.

    Layout::

        <root>/sessionIndex.json   newest-first list of closed sessions
        <root>/Exports/            CSV and JSON exports

    At most ``max_sessions`` closed sessions are kept; older ones are trimmed
    when a session closes or the index is loaded.
    """

    def __init__(
        self,
        root: Path,
        max_sessions: int = MAX_STORED_SESSIONS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._root = Path(root)
        self._max_sessions = max_sessions
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: Optional[Session] = None
        # Readings of the active session, frozen into it when it ends
        self._active_readings: List[Reading] = []
        self._recent: List[Session] = []
        self._lock = threading.RLock()

        self._root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    @property
    def index_path(self) -> Path:
        return self._root / INDEX_FILENAME

    @property
    def export_dir(self) -> Path:
        return self._root / EXPORT_DIRNAME

    @property
    def active_session(self) -> Optional[Session]:
        """Copy of the active session including the readings so far."""
        with self._lock:
            if self._active is None:
                return None
            return replace(self._active, readings=tuple(self._active_readings))

    @property
    def recent_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._recent)

    def start_session(self, device_id: str, device_name: str) -> Session:
        with self._lock:
            if self._active is not None:
                self.end_session()
            self._active = Session(
                device_id=device_id,
                device_name=device_name,
                started_at=self._clock(),
            )
            self._active_readings = []
            logger.info("Session started: %s (%s)", self._active.id, device_id)
            return self._active

    def update_active_session_device(self, device_id: str, device_name: str) -> None:
        with self._lock:
            if self._active is None:
                return
            self._active = replace(
                self._active, device_id=device_id, device_name=device_name
            )

    def append(self, reading: Reading) -> None:
        with self._lock:
            if self._active is None:
                return
            self._active_readings.append(reading)

    def end_session(self) -> Optional[Session]:
        with self._lock:
            if self._active is None:
                return None
            session = replace(
                self._active,
                ended_at=self._active.ended_at or self._clock(),
                readings=tuple(self._active_readings),
            )
            self._active = None
            self._active_readings = []
            self._recent.insert(0, session)
            self._trim()
            self._persist_index()
            logger.info(
                "Session ended: %s, %d readings, %.1fs",
                session.id,
                len(session.readings),
                session.duration_seconds(),
            )
            return session

    def clear_history(self) -> None:
        with self._lock:
            self._recent.clear()
            try:
                self.index_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Failed to remove session index %s: %s", self.index_path, e)

    def export_session(self, session: Session, fmt: str = "csv") -> Path:
        """Write ``session`` to the export directory.

        Raises:
            ValueError: For an unknown format.
            RuntimeError: When the file cannot be written.
        """
        stamp = int(session.started_at.timestamp())
        filename = f"session_{session.id}_{stamp}.{fmt}"
        if fmt == "csv":
            text = session_to_csv(session)
        elif fmt == "json":
            text = _dump_json(session.to_dict())
        else:
            raise ValueError(f"Unsupported export format: {fmt}")
        return self._export(filename, text)

    def export_timed_sample(self, sample: TimedSample, fmt: str = "csv") -> Path:
        filename = f"timed_sample_{sample.id}.{fmt}"
        if fmt == "csv":
            text = timed_sample_to_csv(sample)
        elif fmt == "json":
            text = _dump_json(sample.to_dict())
        else:
            raise ValueError(f"Unsupported export format: {fmt}")
        return self._export(filename, text)

    def _export(self, filename: str, text: str) -> Path:
        path = self.export_dir / filename
        try:
            self.export_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(path, text)
        except OSError as e:
            logger.error("Export failed for %s: %s", path, e)
            raise RuntimeError(f"Export failed: {e}") from e
        logger.info("Exported %s", path)
        return path

    def _trim(self) -> None:
        if len(self._recent) > self._max_sessions:
            del self._recent[self._max_sessions :]

    def _load_index(self) -> None:
        if not self.index_path.exists():
            return
        try:
            with open(self.index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._recent = [Session.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable session index %s: %s", self.index_path, e)
            self._recent = []
            return
        self._trim()
        logger.info("Loaded %d stored sessions", len(self._recent))

    def _persist_index(self) -> None:
        payload = [session.to_dict() for session in self._recent]
        try:
            _write_atomic(self.index_path, _dump_json(payload))
        except OSError as e:
            logger.error("Failed to persist session index %s: %s", self.index_path, e)


class ReadingTailWorker(threading.Thread):
    """Dedicated thread writing new live readings as CSV lines.

    Polls the live-reading window every ``poll_interval`` seconds and writes
    whatever arrived since the previous poll, warning when eviction overtook
    it.
    """

    def __init__(
        self,
        window: ReadingWindow,
        output: TextIO,
        show_header: bool = True,
        poll_interval: float = 0.2,
    ):
        super().__init__(daemon=True, name="ReadingTail")
        self._window = window
        self._output = output
        self._show_header = show_header
        self._poll_interval = poll_interval
        self._last_read_index = 0
        self._stop_event = threading.Event()
        self._error: Optional[Exception] = None

    def run(self) -> None:
        logger.info("Reading tail thread started")
        try:
            if self._show_header:
                self._output.write(TIMED_SAMPLE_CSV_HEADER + "\n")
                self._output.flush()
            self._last_read_index = self._window.current_write_index

            while not self._stop_event.is_set():
                self.poll()
                self._stop_event.wait(self._poll_interval)
        except (OSError, ValueError) as e:
            logger.error("Reading tail stopped on output error: %s", e)
            self._error = e
        finally:
            logger.info("Reading tail thread finished")

    def poll(self) -> int:
        """Write readings that arrived since the last poll; return how many."""
        readings, next_index, dropped = self._window.get_since_index(
            self._last_read_index
        )
        if dropped:
            logger.warning("Live readings were evicted before they could be written")
        self._last_read_index = next_index
        for reading in readings:
            self._output.write(format_reading_csv(reading, include_battery=True) + "\n")
        if readings:
            self._output.flush()
        return len(readings)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning("Reading tail thread did not stop gracefully")

    @property
    def error(self) -> Optional[Exception]:
        return self._error
