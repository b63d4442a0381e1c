"""Inbound events of the telemetry session.

The link adapter, the timer arena and the radio translate everything that
happens to them into one of these records and hand it to
``TelemetrySession.dispatch``. Events carry data only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from .models import AdvertisedInfo
from .timers import TimerHandle


@dataclass(frozen=True)
class CharacteristicInfo:
    uuid: str
    can_notify: bool = False
    can_read: bool = False


@dataclass(frozen=True)
class RadioStateChanged:
    powered_on: bool
    reason: str = ""


@dataclass(frozen=True)
class AdvertisementSeen:
    link_id: str
    name: Optional[str]
    rssi: Optional[int] = None
    advertised: Optional[AdvertisedInfo] = None


@dataclass(frozen=True)
class LinkConnected:
    link_id: str


@dataclass(frozen=True)
class LinkConnectFailed:
    link_id: str
    cause: str = ""


@dataclass(frozen=True)
class LinkDisconnected:
    link_id: str
    cause: Optional[str] = None


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    link_id: str
    characteristics: tuple[CharacteristicInfo, ...]


@dataclass(frozen=True)
class NotificationStateChanged:
    link_id: str
    uuid: str
    notifying: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class CharacteristicUpdated:
    link_id: str
    uuid: str
    data: bytes
    error: Optional[str] = None


@dataclass(frozen=True)
class TimerFired:
    handle: TimerHandle


SessionEvent = Union[
    RadioStateChanged,
    AdvertisementSeen,
    LinkConnected,
    LinkConnectFailed,
    LinkDisconnected,
    CharacteristicsDiscovered,
    NotificationStateChanged,
    CharacteristicUpdated,
    TimerFired,
]
