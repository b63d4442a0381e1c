from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

import pytest

from aimnet_methane_receiver.ble_link import LinkPort
from aimnet_methane_receiver.config import (
    BATTERY_LEVEL_CHAR,
    FIRMWARE_REVISION_CHAR,
    SERIAL_NUMBER_CHAR,
    TELEMETRY_CHAR,
    MonitorConfig,
)
from aimnet_methane_receiver.data_recorder import SessionRecorder
from aimnet_methane_receiver.events import (
    AdvertisementSeen,
    CharacteristicInfo,
    CharacteristicsDiscovered,
    CharacteristicUpdated,
    LinkConnected,
)
from aimnet_methane_receiver.models import AdvertisedInfo, Reading, Session
from aimnet_methane_receiver.session import TelemetrySession
from aimnet_methane_receiver.timers import Scheduler

START = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)

GAS_FRAME = "1000,start,410,395,520,10132,2400,2430,0,2380,4500,2510,end,0,1200,{ch4},800"
H2S_FRAME = "{t},{primary},{secondary}"

TEXT_DEVICE_CHARS = (
    CharacteristicInfo(TELEMETRY_CHAR, can_notify=True, can_read=True),
    CharacteristicInfo(SERIAL_NUMBER_CHAR, can_read=True),
    CharacteristicInfo(FIRMWARE_REVISION_CHAR, can_read=True),
    CharacteristicInfo(BATTERY_LEVEL_CHAR, can_notify=False, can_read=True),
)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class _Scheduled:
    due: datetime
    seq: int
    callback: Callable[[], None]
    cancelled: bool = False


class ManualScheduler(Scheduler):
    """Runs callbacks only when the test advances the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._pending: List[_Scheduled] = []
        self._seq = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> Any:
        self._seq += 1
        entry = _Scheduled(self.clock.now + timedelta(seconds=delay), self._seq, callback)
        self._pending.append(entry)
        return entry

    def cancel(self, token: Any) -> None:
        if token is not None:
            token.cancelled = True

    @property
    def pending(self) -> int:
        return sum(1 for e in self._pending if not e.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.clock.now + timedelta(seconds=seconds)
        while True:
            live = [e for e in self._pending if not e.cancelled and e.due <= target]
            if not live:
                break
            entry = min(live, key=lambda e: (e.due, e.seq))
            self._pending.remove(entry)
            self.clock.now = entry.due
            entry.callback()
        self._pending = [e for e in self._pending if not e.cancelled]
        self.clock.now = target


class FakeLink(LinkPort):
    """Records every command; tests play the radio by dispatching events."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []

    def start_scan(self) -> None:
        self.calls.append(("start_scan",))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, link_id: str) -> None:
        self.calls.append(("connect", link_id))

    def disconnect(self, link_id: str) -> None:
        self.calls.append(("disconnect", link_id))

    def discover(self, link_id: str) -> None:
        self.calls.append(("discover", link_id))

    def set_notify(self, link_id: str, uuid: str, enabled: bool) -> None:
        self.calls.append(("set_notify", link_id, uuid, enabled))

    def read(self, link_id: str, uuid: str) -> None:
        self.calls.append(("read", link_id, uuid))

    async def aclose(self) -> None:
        self.calls.append(("aclose",))

    def named(self, name: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    def reads_of(self, uuid: str) -> int:
        return sum(1 for call in self.calls if call[0] == "read" and call[2] == uuid)


class MemoryRecorder(SessionRecorder):
    def __init__(self) -> None:
        self._active: Optional[Session] = None
        self._readings: List[Reading] = []
        self.started: List[Tuple[str, str]] = []
        self.ended: List[Session] = []
        self.renamed: List[Tuple[str, str]] = []

    @property
    def active_session(self) -> Optional[Session]:
        if self._active is None:
            return None
        return replace(self._active, readings=tuple(self._readings))

    def start_session(self, device_id: str, device_name: str) -> Session:
        self.started.append((device_id, device_name))
        self._active = Session(device_id=device_id, device_name=device_name, started_at=START)
        self._readings = []
        return self._active

    def update_active_session_device(self, device_id: str, device_name: str) -> None:
        self.renamed.append((device_id, device_name))
        if self._active is not None:
            self._active = replace(self._active, device_id=device_id, device_name=device_name)

    def append(self, reading: Reading) -> None:
        if self._active is not None:
            self._readings.append(reading)

    def end_session(self) -> Optional[Session]:
        session = self.active_session
        self._active, self._readings = None, []
        if session is not None:
            self.ended.append(session)
        return session


@dataclass
class Harness:
    clock: FakeClock
    scheduler: ManualScheduler
    link: FakeLink
    recorder: MemoryRecorder
    session: TelemetrySession
    notified: List[Tuple[str, int]] = field(default_factory=list)

    def advance(self, seconds: float) -> None:
        self.scheduler.advance(seconds)

    def connect(
        self,
        link_id: str = "AA:BB:CC:DD:EE:01",
        name: str = "AIMNet-01",
        advertised: Optional[AdvertisedInfo] = None,
        characteristics: Tuple[CharacteristicInfo, ...] = TEXT_DEVICE_CHARS,
    ) -> None:
        self.session.start_scanning()
        self.session.dispatch(
            AdvertisementSeen(link_id=link_id, name=name, rssi=-60, advertised=advertised)
        )
        assert self.session.connect(link_id)
        self.session.dispatch(LinkConnected(link_id))
        self.session.dispatch(CharacteristicsDiscovered(link_id, characteristics))

    def send(self, uuid: str, data: bytes, link_id: str = "AA:BB:CC:DD:EE:01") -> None:
        self.session.dispatch(CharacteristicUpdated(link_id=link_id, uuid=uuid, data=data))

    def send_gas(self, ch4: float, link_id: str = "AA:BB:CC:DD:EE:01") -> None:
        self.send(TELEMETRY_CHAR, GAS_FRAME.format(ch4=ch4).encode(), link_id)

    def send_h2s(
        self, primary: float, secondary: float = 0.0, link_id: str = "AA:BB:CC:DD:EE:01"
    ) -> None:
        frame = H2S_FRAME.format(t=1, primary=primary, secondary=secondary)
        self.send(TELEMETRY_CHAR, frame.encode(), link_id)


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    def factory(**config: Any) -> Harness:
        config.setdefault("warmup_seconds", 0)
        clock = FakeClock()
        scheduler = ManualScheduler(clock)
        link = FakeLink()
        recorder = MemoryRecorder()
        notified: List[Tuple[str, int]] = []
        session = TelemetrySession(
            link,
            scheduler,
            recorder=recorder,
            config=MonitorConfig(**config),
            clock=clock,
            low_battery_notifier=lambda device_id, level: notified.append((device_id, level)),
        )
        return Harness(clock, scheduler, link, recorder, session, notified)

    return factory


@pytest.fixture
def harness(make_harness: Callable[..., Harness]) -> Harness:
    return make_harness()
