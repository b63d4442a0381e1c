"""Bounded per-channel telemetry buffers.

The session mutates these buffers from its event-loop thread while the
dashboard and the CSV printer read them from their own threads, so every
access goes through a reentrant lock. Eviction is front-first: once a channel
reaches its capacity the oldest value and its timestamp are dropped together.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from . import codec
from .config import CHANNEL_CAPACITY, LIVE_READING_CAPACITY
from .models import DeviceKind, Reading


METHANE_CHANNELS: tuple[str, ...] = (
    codec.CH4_RAW,
    codec.CH4_PPM,
    codec.H2O_1,
    codec.H2O_2,
    codec.CO2,
    codec.PRESSURE_RAW,
    codec.PRESSURE_KPA,
    *codec.TEMPERATURE_RAW,
    *codec.TEMPERATURE_C,
    codec.HUMIDITY_RAW,
    codec.HUMIDITY_RH,
    codec.H2O_SIGNAL,
    codec.CO2_SIGNAL,
)
H2S_CHANNELS: tuple[str, ...] = (codec.H2S_PRIMARY, codec.H2S_SECONDARY)
COMMON_CHANNELS: tuple[str, ...] = (codec.BATTERY_PERCENT,)

KIND_CHANNELS: dict[DeviceKind, tuple[str, ...]] = {
    DeviceKind.METHANE: METHANE_CHANNELS,
    DeviceKind.H2S: H2S_CHANNELS,
}


@dataclass
class BufferStats:
    """Fill level and arrival rate of one buffer.

    The sample rate is the reciprocal of the gap between the two most recent
    appends, so it reacts immediately to a stalled or recovered stream.
    """

    fill_level: int = 0
    sample_rate: float = 0.0
    last_update: Optional[datetime] = None

    def update(self, timestamp: datetime) -> None:
        if self.last_update is not None:
            time_diff = (timestamp - self.last_update).total_seconds()
            if time_diff > 0:
                self.sample_rate = 1.0 / time_diff
        self.last_update = timestamp


class TelemetryChannel:
    """One named bounded sequence of values paired 1:1 with timestamps."""

    def __init__(self, name: str, capacity: int = CHANNEL_CAPACITY):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.name = name
        self._capacity = capacity
        self._values: deque[float] = deque(maxlen=capacity)
        self._timestamps: deque[datetime] = deque(maxlen=capacity)
        self._lock = threading.RLock()
        self._stats = BufferStats()

    def append(self, value: float, timestamp: datetime) -> None:
        with self._lock:
            self._values.append(value)
            self._timestamps.append(timestamp)
            self._stats.fill_level = len(self._values)
            self._stats.update(timestamp)

    def values(self) -> list[float]:
        with self._lock:
            return list(self._values)

    def timestamps(self) -> list[datetime]:
        with self._lock:
            return list(self._timestamps)

    def recent(self, count: int) -> tuple[list[datetime], list[float]]:
        """Return the newest ``count`` samples as ``(timestamps, values)``."""
        with self._lock:
            if count <= 0:
                return [], []
            return list(self._timestamps)[-count:], list(self._values)[-count:]

    @property
    def latest(self) -> Optional[float]:
        with self._lock:
            return self._values[-1] if self._values else None

    def clear(self) -> None:
        with self._lock:
            self._values.clear()
            self._timestamps.clear()
            self._stats = BufferStats()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def stats(self) -> BufferStats:
        with self._lock:
            return self._stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)


class ReadingWindow:
    """Rolling window of the most recent readings with gap-aware tailing.

    A monotonic write index lets a consumer on another thread pick up only
    the readings it has not seen yet and learn whether eviction overtook it.
    """

    def __init__(self, capacity: int = LIVE_READING_CAPACITY):
        self._capacity = capacity
        self._readings: deque[Reading] = deque(maxlen=capacity)
        self._lock = threading.RLock()
        self._write_index = 0
        self._base_index = 0

    def append(self, reading: Reading) -> None:
        with self._lock:
            if len(self._readings) == self._capacity:
                self._base_index += 1
            self._readings.append(reading)
            self._write_index += 1

    def get_all(self) -> list[Reading]:
        with self._lock:
            return list(self._readings)

    def get_recent(self, count: int) -> list[Reading]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._readings)[-count:]

    def get_since_index(self, last_index: int) -> tuple[list[Reading], int, bool]:
        """Return readings written after ``last_index``.

        Returns:
            ``(readings, next_index, dropped)`` where ``dropped`` is True when
            some readings after ``last_index`` were evicted before being read.
            After :meth:`clear` the index restarts, which callers see as a
            drop if they held an index from before the clear.
        """
        with self._lock:
            if last_index > self._write_index:
                return list(self._readings), self._write_index, True
            if last_index < self._base_index:
                return list(self._readings), self._write_index, True
            start_offset = last_index - self._base_index
            return list(self._readings)[start_offset:], self._write_index, False

    def clear(self) -> None:
        with self._lock:
            self._readings.clear()
            self._write_index = 0
            self._base_index = 0

    @property
    def current_write_index(self) -> int:
        with self._lock:
            return self._write_index

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)


class TelemetryBufferSet:
    """All channels of one connection plus the live-reading window.

    Channels are kind-exclusive except ``battery_percent``, which every
    device family reports.
    """

    def __init__(
        self,
        channel_capacity: int = CHANNEL_CAPACITY,
        live_reading_capacity: int = LIVE_READING_CAPACITY,
    ):
        self._lock = threading.RLock()
        self._channels: dict[str, TelemetryChannel] = {
            name: TelemetryChannel(name, channel_capacity)
            for name in (*METHANE_CHANNELS, *H2S_CHANNELS, *COMMON_CHANNELS)
        }
        self.live_readings = ReadingWindow(live_reading_capacity)
        self._latest_reading: Optional[Reading] = None

    def channel(self, name: str) -> TelemetryChannel:
        try:
            return self._channels[name]
        except KeyError:
            raise KeyError(f"Unknown telemetry channel: {name}") from None

    @property
    def channel_names(self) -> tuple[str, ...]:
        return tuple(self._channels)

    def append(self, name: str, value: float, timestamp: datetime) -> None:
        self.channel(name).append(value, timestamp)

    def append_many(self, values: dict[str, float], timestamp: datetime) -> None:
        with self._lock:
            for name, value in values.items():
                self.append(name, value, timestamp)

    def latest(self, name: str) -> Optional[float]:
        return self.channel(name).latest

    def latest_values(self) -> dict[str, float]:
        with self._lock:
            return {
                name: channel.latest
                for name, channel in self._channels.items()
                if channel.latest is not None
            }

    def record_reading(self, reading: Reading) -> None:
        with self._lock:
            self.live_readings.append(reading)
            self._latest_reading = reading

    @property
    def latest_reading(self) -> Optional[Reading]:
        with self._lock:
            return self._latest_reading

    def clear_kind_exclusive(self, new_kind: DeviceKind) -> list[str]:
        """Empty every channel that does not belong to ``new_kind``.

        The live-reading window and the latest reading are cleared too, so no
        reading of the previous family survives the switch.

        Returns:
            Names of the channels that were cleared.
        """
        keep: Iterable[str] = (*KIND_CHANNELS.get(new_kind, ()), *COMMON_CHANNELS)
        keep_set = set(keep)
        cleared: list[str] = []
        with self._lock:
            for name, channel in self._channels.items():
                if name not in keep_set:
                    channel.clear()
                    cleared.append(name)
            self.live_readings.clear()
            self._latest_reading = None
        return cleared

    def clear_all(self) -> None:
        with self._lock:
            for channel in self._channels.values():
                channel.clear()
            self.live_readings.clear()
            self._latest_reading = None

    def stats(self) -> dict[str, BufferStats]:
        with self._lock:
            return {name: channel.stats for name, channel in self._channels.items()}
