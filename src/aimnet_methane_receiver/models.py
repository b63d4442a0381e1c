"""Domain records produced by the telemetry session.

All records serialise to the camelCase JSON layout used by the persisted
session index and the JSON exports, with ISO-8601 timestamps.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class DeviceKind(str, Enum):
    """Sensor family inferred from the first successfully decoded payload."""

    UNKNOWN = "unknown"
    METHANE = "methane"
    H2S = "h2s"


def _new_id() -> str:
    return str(uuid.uuid4()).upper()


def _iso(value: datetime) -> str:
    return value.isoformat()


def _parse_iso(value: str) -> datetime:
    # Python < 3.11 rejects the "Z" suffix
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Reading:
    """One decoded primary-channel sample with its ambient context.

    The context fields hold the most recent auxiliary values at the time the
    primary value arrived, so they can lag the primary value by up to one
    notify/poll interval.
    """

    timestamp: datetime
    raw_value: float
    calibrated_value: float
    temperature_c: Optional[float] = None
    humidity_rh: Optional[float] = None
    battery_percent: Optional[int] = None
    kind: DeviceKind = DeviceKind.METHANE
    id: str = field(default_factory=_new_id)

    @property
    def ppm(self) -> float:
        return self.calibrated_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "rawValue": self.raw_value,
            "calibratedValue": self.calibrated_value,
            "temperatureC": self.temperature_c,
            "humidityRH": self.humidity_rh,
            "batteryPercent": self.battery_percent,
            "kind": self.kind.value,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Reading":
        return Reading(
            id=data.get("id") or _new_id(),
            timestamp=_parse_iso(data["timestamp"]),
            raw_value=float(data["rawValue"]),
            calibrated_value=float(data["calibratedValue"]),
            temperature_c=data.get("temperatureC"),
            humidity_rh=data.get("humidityRH"),
            battery_percent=data.get("batteryPercent"),
            kind=DeviceKind(data.get("kind", DeviceKind.METHANE.value)),
        )


@dataclass(frozen=True)
class Session:
    """A monitoring session owned by the session recorder."""

    device_id: str
    device_name: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    readings: tuple[Reading, ...] = ()
    id: str = field(default_factory=_new_id)

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        end = self.ended_at or now or datetime.now(timezone.utc)
        return max(0.0, (end - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at) if self.ended_at else None,
            "readings": [r.to_dict() for r in self.readings],
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Session":
        ended = data.get("endedAt")
        return Session(
            id=data["id"],
            device_id=data["deviceId"],
            device_name=data["deviceName"],
            started_at=_parse_iso(data["startedAt"]),
            ended_at=_parse_iso(ended) if ended else None,
            readings=tuple(Reading.from_dict(r) for r in data.get("readings", [])),
        )


@dataclass(frozen=True)
class TimedSample:
    """Readings captured during one timed sampling window.

    Summary statistics are derived from the readings on access; an empty
    sample reports zero for all of them.
    """

    started_at: datetime
    ended_at: datetime
    target_duration_sec: int
    readings: tuple[Reading, ...] = ()
    id: str = field(default_factory=_new_id)

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.ended_at - self.started_at).total_seconds())

    @property
    def average_ppm(self) -> float:
        if not self.readings:
            return 0.0
        return sum(r.calibrated_value for r in self.readings) / len(self.readings)

    @property
    def min_ppm(self) -> float:
        return min((r.calibrated_value for r in self.readings), default=0.0)

    @property
    def max_ppm(self) -> float:
        return max((r.calibrated_value for r in self.readings), default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "targetDurationSec": self.target_duration_sec,
            "readings": [r.to_dict() for r in self.readings],
        }


@dataclass(frozen=True)
class AdvertisedInfo:
    """Identity metadata carried in an AIMNet advertisement."""

    serial_hex: str
    boot_reason: Optional[int] = None
    version_major: Optional[int] = None
    version_minor: Optional[int] = None

    @property
    def firmware_version(self) -> Optional[str]:
        if self.version_major is None or self.version_minor is None:
            return None
        return f"{self.version_major}.{self.version_minor}"


@dataclass(frozen=True)
class DiscoveredDevice:
    """A device seen while scanning, as published to the presentation layer."""

    link_id: str
    name: Optional[str]
    rssi: Optional[int] = None
    advertised: Optional[AdvertisedInfo] = None


@dataclass
class ConnectionRecord:
    """Connected-time bookkeeping for one resolved device identifier."""

    device_id: str
    cumulative_seconds: float = 0.0
    segment_started_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.segment_started_at is not None
