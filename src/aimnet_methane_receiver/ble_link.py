"""BLE link layer for AIMNet gas sensors.

This module adapts the radio to the telemetry session. The session never
awaits the radio: every :class:`LinkPort` method schedules the operation and
returns immediately, and the outcome re-enters the session as an event
(``LinkConnected``, ``CharacteristicUpdated`` and so on) through the ``post``
callback supplied by the runtime.

Core Features:
- **Device Discovery**: Continuous scanning with AIMNet manufacturer-data parsing
- **Connection Handling**: One connect attempt per operator request, no retries
- **GATT Access**: Service discovery, notification subscription and reads
- **Error Classification**: Adapter and connection errors logged with guidance
- **Mock Device**: Synthetic AIMNet sensor for demos and hardware-free runs

Architecture:
- LinkPort interface decouples the session from the radio (BLE, Mock, test fakes)
- All link coroutines run on the runtime's event loop, so ``post`` is called
  from that loop only
- Errors never propagate out of link tasks; they become events or log lines

Requirements:
- bleak: Cross-platform BLE library for device communication
- asyncio: Async I/O support for concurrent operation
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Coroutine, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .config import (
    BATTERY_LEVEL_CHAR,
    FIRMWARE_REVISION_CHAR,
    SERIAL_NUMBER_CHAR,
    TELEMETRY_CHAR,
    normalize_uuid,
)
from .events import (
    AdvertisementSeen,
    CharacteristicInfo,
    CharacteristicsDiscovered,
    CharacteristicUpdated,
    LinkConnected,
    LinkConnectFailed,
    LinkDisconnected,
    NotificationStateChanged,
    RadioStateChanged,
    SessionEvent,
)
from .identity import parse_bleak_manufacturer_data, parse_manufacturer_data

logger = logging.getLogger(__name__)

PostEvent = Callable[[SessionEvent], None]


class LinkPort(ABC):
    """Non-blocking commands the telemetry session issues to the radio.

    Implementations must not call back into the session synchronously from
    these methods; results are delivered later through the event sink.
    """

    @abstractmethod
    def start_scan(self) -> None:
        pass

    @abstractmethod
    def stop_scan(self) -> None:
        pass

    @abstractmethod
    def connect(self, link_id: str) -> None:
        pass

    @abstractmethod
    def disconnect(self, link_id: str) -> None:
        pass

    @abstractmethod
    def discover(self, link_id: str) -> None:
        pass

    @abstractmethod
    def set_notify(self, link_id: str, uuid: str, enabled: bool) -> None:
        pass

    @abstractmethod
    def read(self, link_id: str, uuid: str) -> None:
        pass

    async def aclose(self) -> None:
        """Release radio resources. Called once when the runtime stops."""


def classify_ble_error(error: BaseException) -> str:
    """Map a link failure to operator guidance."""
    text = str(error)
    lowered = text.lower()
    if "was not found" in text or "no such device" in lowered:
        return "Device not found - check that the sensor is powered on and advertising"
    if "timeout" in lowered or isinstance(error, asyncio.TimeoutError):
        return "Connection timeout - device may be out of range"
    if "disconnected" in lowered:
        return "Device disconnected - connection lost during operation"
    if "bluetooth" in lowered and ("off" in lowered or "not available" in lowered):
        return "Bluetooth adapter is off or unavailable"
    return "Unexpected BLE error"


class _TaskSpawner:
    """Fire-and-forget coroutine runner that logs failures instead of losing them."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Link task %s failed: %s: %s", task.get_name(), type(exc).__name__, exc
            )

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class BleakLink(LinkPort):
    """Production link backed by bleak.

    Scanning uses a long-lived :class:`BleakScanner` with a detection
    callback, so advertisements stream into the session while the operator
    picks a device. Connections use :class:`BleakClient` with a disconnected
    callback; service discovery reads ``client.services`` populated on
    connect.

    Attributes:
        _post: Event sink provided by the runtime.
        _scan_timeout: Optional automatic scan stop, in seconds.
        _devices: Last ``BLEDevice`` seen per address, reused on connect so
            the backend does not need to rescan.
        _clients: Connected clients by link id.
        _closing: Link ids disconnected on purpose, to label the callback.

    Note:
        A scanner start failure is how bleak reports a powered-off or
        unauthorised adapter, so it is posted as ``RadioStateChanged(False)``.
    """

    def __init__(self, post: PostEvent, scan_timeout: Optional[float] = None):
        self._post = post
        self._scan_timeout = scan_timeout
        self._scanner: Optional[BleakScanner] = None
        self._scan_stop_handle: Optional[asyncio.TimerHandle] = None
        self._devices: dict[str, BLEDevice] = {}
        self._clients: dict[str, BleakClient] = {}
        self._connect_tasks: dict[str, asyncio.Task[Any]] = {}
        self._closing: set[str] = set()
        self._tasks = _TaskSpawner()

    def start_scan(self) -> None:
        self._tasks.spawn(self._start_scan(), "ble-start-scan")

    def stop_scan(self) -> None:
        self._tasks.spawn(self._stop_scan(), "ble-stop-scan")

    def connect(self, link_id: str) -> None:
        task = self._tasks.spawn(self._connect(link_id), f"ble-connect-{link_id}")
        self._connect_tasks[link_id] = task

    def disconnect(self, link_id: str) -> None:
        self._tasks.spawn(self._disconnect(link_id), f"ble-disconnect-{link_id}")

    def discover(self, link_id: str) -> None:
        self._tasks.spawn(self._discover(link_id), f"ble-discover-{link_id}")

    def set_notify(self, link_id: str, uuid: str, enabled: bool) -> None:
        self._tasks.spawn(
            self._set_notify(link_id, uuid, enabled), f"ble-notify-{uuid}"
        )

    def read(self, link_id: str, uuid: str) -> None:
        self._tasks.spawn(self._read(link_id, uuid), f"ble-read-{uuid}")

    async def aclose(self) -> None:
        await self._stop_scan()
        for link_id in list(self._clients):
            await self._disconnect(link_id)
        await self._tasks.cancel_all()

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        logger.debug(
            "Device discovered: addr=%s name=%s rssi=%s",
            device.address,
            device.name,
            adv.rssi,
        )
        self._devices[device.address] = device
        self._post(
            AdvertisementSeen(
                link_id=device.address,
                name=device.name or adv.local_name,
                rssi=adv.rssi,
                advertised=parse_bleak_manufacturer_data(adv.manufacturer_data or {}),
            )
        )

    async def _start_scan(self) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback=self._on_detection)
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            logger.error("BLE scanner initialization failed: %s", e)
            logger.error(
                "Please verify: Bluetooth is enabled, the adapter/drivers are "
                "installed, and this process may access the adapter (Location "
                "Services on Windows, bluetooth group on Linux)."
            )
            self._post(RadioStateChanged(powered_on=False, reason=str(e)))
            return
        self._scanner = scanner
        self._post(RadioStateChanged(powered_on=True))
        logger.info("BLE scan started")
        if self._scan_timeout is not None:
            loop = asyncio.get_running_loop()
            self._scan_stop_handle = loop.call_later(self._scan_timeout, self.stop_scan)

    async def _stop_scan(self) -> None:
        if self._scan_stop_handle is not None:
            self._scan_stop_handle.cancel()
            self._scan_stop_handle = None
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
            logger.info("BLE scan stopped")
        except (BleakError, OSError) as e:
            logger.warning("BLE scan stop failed: %s", e)

    async def _connect(self, link_id: str) -> None:
        target: Any = self._devices.get(link_id, link_id)

        def on_disconnect(_: BleakClient) -> None:
            intentional = link_id in self._closing
            self._closing.discard(link_id)
            self._clients.pop(link_id, None)
            if not intentional:
                logger.warning("BLE connection lost (callback): %s", link_id)
            self._post(
                LinkDisconnected(
                    link_id=link_id,
                    cause=None if intentional else "Connection lost.",
                )
            )

        client = BleakClient(target, disconnected_callback=on_disconnect)
        logger.info("BLE connection starting: %s", link_id)
        try:
            await client.connect()
        except asyncio.CancelledError:
            logger.info("BLE connection attempt cancelled: %s", link_id)
            self._post(LinkDisconnected(link_id=link_id))
            raise
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.error("BLE connection failed: %s: %s", type(e).__name__, e)
            logger.error(classify_ble_error(e))
            self._post(LinkConnectFailed(link_id=link_id, cause=str(e) or type(e).__name__))
            return
        finally:
            self._connect_tasks.pop(link_id, None)

        self._clients[link_id] = client
        logger.info("BLE connection established: %s", link_id)
        self._post(LinkConnected(link_id=link_id))

    async def _disconnect(self, link_id: str) -> None:
        pending = self._connect_tasks.pop(link_id, None)
        if pending is not None and not pending.done():
            pending.cancel()
        client = self._clients.get(link_id)
        if client is None:
            return
        self._closing.add(link_id)
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning("BLE disconnect failed for %s: %s", link_id, e)
            self._closing.discard(link_id)
            if self._clients.pop(link_id, None) is not None:
                self._post(LinkDisconnected(link_id=link_id, cause=str(e) or None))

    async def _discover(self, link_id: str) -> None:
        client = self._clients.get(link_id)
        if client is None:
            return
        infos: list[CharacteristicInfo] = []
        for service in client.services:
            for char in service.characteristics:
                props = set(char.properties)
                infos.append(
                    CharacteristicInfo(
                        uuid=normalize_uuid(char.uuid),
                        can_notify=bool(props & {"notify", "indicate"}),
                        can_read="read" in props,
                    )
                )
        logger.info("Discovered %d characteristics on %s", len(infos), link_id)
        self._post(CharacteristicsDiscovered(link_id=link_id, characteristics=tuple(infos)))

    async def _set_notify(self, link_id: str, uuid: str, enabled: bool) -> None:
        client = self._clients.get(link_id)
        if client is None:
            return

        def handle(_: Any, data: bytearray) -> None:
            logger.debug("Notification received: %s %d bytes", uuid, len(data))
            self._post(CharacteristicUpdated(link_id=link_id, uuid=uuid, data=bytes(data)))

        try:
            if enabled:
                logger.info("Starting notification subscription: char=%s", uuid)
                await client.start_notify(uuid, handle)
            else:
                logger.info("Stopping notification subscription: char=%s", uuid)
                await client.stop_notify(uuid)
        except (BleakError, OSError, ValueError) as e:
            logger.warning("Notification change failed for %s: %s", uuid, e)
            self._post(
                NotificationStateChanged(
                    link_id=link_id, uuid=uuid, notifying=False, error=str(e)
                )
            )
            return
        self._post(NotificationStateChanged(link_id=link_id, uuid=uuid, notifying=enabled))

    async def _read(self, link_id: str, uuid: str) -> None:
        client = self._clients.get(link_id)
        if client is None:
            return
        try:
            data = await client.read_gatt_char(uuid)
        except (BleakError, OSError, ValueError) as e:
            logger.debug("Read failed for %s: %s", uuid, e)
            self._post(CharacteristicUpdated(link_id=link_id, uuid=uuid, data=b"", error=str(e)))
            return
        self._post(CharacteristicUpdated(link_id=link_id, uuid=uuid, data=bytes(data)))


MOCK_LINK_ID = "MOCK-AIMNET-0001"
MOCK_DEVICE_NAME = "AIMNet Mock"
MOCK_SERIAL = "A1B2C3D4E5F60718"
MOCK_FIRMWARE = "1.4"
# Company id 0xFFFF (test use), 8-byte serial, boot reason, firmware 1.4
MOCK_MANUFACTURER_DATA = bytes.fromhex("ffff" + MOCK_SERIAL + "01" + "0104")


class MockLink(LinkPort):
    """Synthetic AIMNet text-protocol device for demos and hardware-free runs.

    The device advertises once scanning starts, accepts connections
    immediately and, once its telemetry characteristic is subscribed, pushes
    one gas frame per ``update_interval``:

    - **CH4 signal**: slow sinusoid around 2000 counts with Gaussian noise
    - **Temperatures**: around 24 degC with small thermal drift
    - **Humidity/pressure**: near-constant room values with noise

    Serial, firmware and battery level are served on read.

    Attributes:
        _post: Event sink provided by the runtime.
        _update_interval: Seconds between generated frames.
        _battery_percent: Level reported on battery reads.
    """

    def __init__(
        self,
        post: PostEvent,
        update_interval: float = 1.0,
        battery_percent: int = 87,
    ):
        self._post = post
        self._update_interval = update_interval
        self._battery_percent = battery_percent
        self._connected = False
        self._stream_task: Optional[asyncio.Task[Any]] = None
        self._start_time = time.time()
        self._tasks = _TaskSpawner()

    def start_scan(self) -> None:
        self._post(RadioStateChanged(powered_on=True))
        self._tasks.spawn(self._advertise(), "mock-advertise")

    def stop_scan(self) -> None:
        pass

    def connect(self, link_id: str) -> None:
        self._tasks.spawn(self._connect(link_id), "mock-connect")

    def disconnect(self, link_id: str) -> None:
        self._tasks.spawn(self._disconnect(link_id), "mock-disconnect")

    def discover(self, link_id: str) -> None:
        self._post(
            CharacteristicsDiscovered(
                link_id=link_id,
                characteristics=(
                    CharacteristicInfo(TELEMETRY_CHAR, can_notify=True, can_read=True),
                    CharacteristicInfo(SERIAL_NUMBER_CHAR, can_read=True),
                    CharacteristicInfo(FIRMWARE_REVISION_CHAR, can_read=True),
                    CharacteristicInfo(BATTERY_LEVEL_CHAR, can_read=True),
                ),
            )
        )

    def set_notify(self, link_id: str, uuid: str, enabled: bool) -> None:
        if uuid == TELEMETRY_CHAR:
            if enabled and self._stream_task is None:
                self._stream_task = self._tasks.spawn(self._stream(link_id), "mock-stream")
            elif not enabled and self._stream_task is not None:
                self._stream_task.cancel()
                self._stream_task = None
        self._post(NotificationStateChanged(link_id=link_id, uuid=uuid, notifying=enabled))

    def read(self, link_id: str, uuid: str) -> None:
        if not self._connected:
            return
        if uuid == SERIAL_NUMBER_CHAR:
            data = MOCK_SERIAL.encode("utf-8")
        elif uuid == FIRMWARE_REVISION_CHAR:
            data = MOCK_FIRMWARE.encode("utf-8")
        elif uuid == BATTERY_LEVEL_CHAR:
            data = bytes([self._battery_percent])
        elif uuid == TELEMETRY_CHAR:
            data = self.make_frame(time.time() - self._start_time).encode("utf-8")
        else:
            return
        self._post(CharacteristicUpdated(link_id=link_id, uuid=uuid, data=data))

    async def aclose(self) -> None:
        self._connected = False
        await self._tasks.cancel_all()

    async def _advertise(self) -> None:
        await asyncio.sleep(0.2)
        self._post(
            AdvertisementSeen(
                link_id=MOCK_LINK_ID,
                name=MOCK_DEVICE_NAME,
                rssi=-52,
                advertised=parse_manufacturer_data(MOCK_MANUFACTURER_DATA),
            )
        )

    async def _connect(self, link_id: str) -> None:
        await asyncio.sleep(0.1)
        if link_id != MOCK_LINK_ID:
            self._post(LinkConnectFailed(link_id=link_id, cause="Unknown mock device"))
            return
        self._connected = True
        self._start_time = time.time()
        self._post(LinkConnected(link_id=link_id))

    async def _disconnect(self, link_id: str) -> None:
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        if not self._connected:
            return
        self._connected = False
        await asyncio.sleep(0)
        self._post(LinkDisconnected(link_id=link_id))

    async def _stream(self, link_id: str) -> None:
        while self._connected:
            elapsed = time.time() - self._start_time
            frame = self.make_frame(elapsed)
            self._post(
                CharacteristicUpdated(
                    link_id=link_id, uuid=TELEMETRY_CHAR, data=frame.encode("utf-8")
                )
            )
            await asyncio.sleep(self._update_interval)

    @staticmethod
    def make_frame(elapsed: float) -> str:
        """Build one text gas frame for ``elapsed`` seconds since connect."""
        ch4 = 2000.0 + 150.0 * math.sin(2 * math.pi * 0.02 * elapsed) + random.gauss(0, 8.0)
        temperature = 24.0 + 0.5 * math.sin(2 * math.pi * 0.005 * elapsed)
        fields = [
            int(elapsed * 1000),
            "start",
            round(410 + random.gauss(0, 3)),  # h2o sensor 1
            round(395 + random.gauss(0, 3)),  # h2o sensor 2
            round(520 + random.gauss(0, 5)),  # co2 sensor
            round(10132 + random.gauss(0, 4)),  # pressure, 0.01 kPa
            round((temperature + random.gauss(0, 0.05)) * 100),
            round((temperature + 0.3 + random.gauss(0, 0.05)) * 100),
            0,
            round((temperature - 0.2 + random.gauss(0, 0.05)) * 100),
            round((45.0 + random.gauss(0, 0.4)) * 100),  # humidity, 0.01 %RH
            round((temperature + 1.1 + random.gauss(0, 0.05)) * 100),
            "end",
            0,
            round(1200 + random.gauss(0, 6)),  # h2o signal
            round(ch4),
            round(800 + random.gauss(0, 6)),  # co2 signal
        ]
        return ",".join(str(f) for f in fields)
