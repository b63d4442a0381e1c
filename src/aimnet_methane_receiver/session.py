"""Telemetry session state machine.

:class:`TelemetrySession` owns the lifecycle of one AIMNet sensor link:

    idle -> scanning -> connecting -> [preparing] -> streaming <-> signal_timeout
                                                  \\-> disconnected / failed

It is a single-threaded reducer. Link callbacks, timer fires and radio
changes arrive as events through :meth:`TelemetrySession.dispatch`; operator
actions arrive as command methods. Both mutate state only on the caller's
thread, which the runtime guarantees is the event-loop thread. After every
event and every command an immutable :class:`SessionSnapshot` is published to
subscribers.

Timers are slots in a :class:`~.timers.TimerTable`; their fires come back as
``TimerFired`` events and stale fires are discarded by generation, so a timer
from a superseded connection can never touch the current one.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from . import codec
from .ble_link import LinkPort
from .buffers import TelemetryBufferSet
from .config import (
    BATTERY_LEVEL_CHAR,
    FIRMWARE_REVISION_CHAR,
    GAS_CHAR,
    HUMIDITY_CHAR,
    PRIMARY_CHARS,
    SERIAL_NUMBER_CHAR,
    STREAM_CHARS,
    TELEMETRY_CHAR,
    TEMPERATURE_CHAR,
    MonitorConfig,
    normalize_uuid,
)
from .data_recorder import SessionRecorder
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
    TimerFired,
)
from .identity import DurationLedger, is_aimnet_device, resolve_device_id
from .models import AdvertisedInfo, DeviceKind, DiscoveredDevice, Reading, TimedSample
from .sampling import TimedSamplingController
from .timers import Scheduler, TimerHandle, TimerKind, TimerTable

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "Methane Sensor"

Clock = Callable[[], datetime]
SnapshotListener = Callable[["SessionSnapshot"], None]
LowBatteryNotifier = Callable[[str, int], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    PREPARING = "preparing"
    STREAMING = "streaming"
    SIGNAL_TIMEOUT = "signal_timeout"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything the presentation layer may observe, frozen at one instant."""

    state: ConnectionState
    status_message: str
    radio_powered_on: bool
    is_scanning: bool
    discovered_devices: tuple[DiscoveredDevice, ...]
    connected_link_id: Optional[str]
    device_id: Optional[str]
    device_name: Optional[str]
    device_kind: DeviceKind
    device_serial: Optional[str]
    firmware_revision: Optional[str]
    battery_percent: Optional[int]
    is_preparing: bool
    preparation_seconds_left: int
    preparation_total_seconds: int
    connection_duration_seconds: float
    durations_by_device: dict[str, float]
    latest_values: dict[str, float]
    latest_reading: Optional[Reading]
    last_sample_at: Optional[datetime]
    is_sampling: bool
    sample_seconds_left: int
    sample_duration_seconds: int
    last_timed_sample: Optional[TimedSample]
    updated_at: datetime

    @property
    def is_connected(self) -> bool:
        return self.connected_link_id is not None


@dataclass
class _Connection:
    """State that lives exactly as long as one established link."""

    link_id: str
    name: str
    device_id: str
    connected_at: datetime
    characteristics: dict[str, CharacteristicInfo] = field(default_factory=dict)
    discovery_complete: bool = False
    preparation_complete: bool = False
    preparing: bool = False
    preparation_seconds_left: int = 0
    preparation_total_seconds: int = 0
    streaming_enabled_at: Optional[datetime] = None
    last_sample_at: Optional[datetime] = None
    signal_timeout_since: Optional[datetime] = None
    serial: Optional[str] = None
    firmware: Optional[str] = None
    battery_percent: Optional[int] = None

    def readable(self, uuid: str) -> bool:
        info = self.characteristics.get(uuid)
        return info is not None and info.can_read


class TelemetrySession:
    """Event-sourced state machine for one AIMNet sensor session.

    Args:
        link: Radio adapter receiving the session's non-blocking commands.
        scheduler: Runs timer callbacks on the session's execution context.
        recorder: Optional session recorder notified of session boundaries
            and readings.
        config: Timing, capacity and calibration settings.
        clock: Source of timezone-aware "now"; injectable for tests.
        low_battery_notifier: Called once per device as ``(device_id, level)``
            when the battery drops to the low threshold.
        post_event: Where timer fires are delivered. Defaults to
            :meth:`dispatch`; the runtime routes them through its queue.
        radio_powered_on: Initial adapter state.
    """

    def __init__(
        self,
        link: LinkPort,
        scheduler: Scheduler,
        recorder: Optional[SessionRecorder] = None,
        config: Optional[MonitorConfig] = None,
        clock: Optional[Clock] = None,
        low_battery_notifier: Optional[LowBatteryNotifier] = None,
        post_event: Optional[Callable[[SessionEvent], None]] = None,
        radio_powered_on: bool = True,
    ):
        self.config = config or MonitorConfig()
        self._link = link
        self._recorder = recorder
        self._clock: Clock = clock or (lambda: datetime.now(timezone.utc))
        self._low_battery_notifier = low_battery_notifier
        self._post_event = post_event or self.dispatch

        self.buffers = TelemetryBufferSet(
            channel_capacity=self.config.channel_capacity,
            live_reading_capacity=self.config.live_reading_capacity,
        )
        self.sampling = TimedSamplingController(self.config.timed_sample_capacity)
        self.durations = DurationLedger()
        self._timers = TimerTable(scheduler, self._on_timer)

        self._state = ConnectionState.IDLE
        self._status = "Bluetooth idle"
        self._radio_on = radio_powered_on
        self._scanning = False
        self._discovered: dict[str, DiscoveredDevice] = {}
        self._advertised: dict[str, AdvertisedInfo] = {}
        self._pending_link: Optional[str] = None
        self._connection: Optional[_Connection] = None
        self._closing_links: set[str] = set()
        self._kind = DeviceKind.UNKNOWN
        self._published_durations: dict[str, float] = {}
        self._low_battery_notified: set[str] = set()
        self._listeners: list[SnapshotListener] = []
        self.snapshot = self._build_snapshot()

    # ------------------------------------------------------------------
    # Observation

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status_message(self) -> str:
        return self._status

    @property
    def device_kind(self) -> DeviceKind:
        return self._kind

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register ``listener`` for every future snapshot; return an unsubscriber."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def connection_duration(self, device_id: str) -> float:
        return self.durations.total(device_id, self._clock())

    # ------------------------------------------------------------------
    # Commands

    def start_scanning(self) -> bool:
        """Start (or keep) scanning.

        The scan is requested even when the adapter was last reported off:
        the link answers with a fresh ``RadioStateChanged``, which is the only
        way a transient adapter failure can clear.
        """
        try:
            if self._scanning:
                return True
            self._discovered.clear()
            self._advertised.clear()
            self._scanning = True
            self._link.start_scan()
            if self._radio_on:
                self._transition(ConnectionState.SCANNING, "Scanning for sensors...")
            else:
                self._transition(ConnectionState.SCANNING, "Retrying Bluetooth adapter...")
            return True
        finally:
            self._publish()

    def stop_scanning(self) -> None:
        self._stop_scanning()
        self._publish()

    def connect(self, link_id: str) -> bool:
        """Ask the link to connect to a discovered device.

        Refused while another connection is established or pending; the
        status message explains why.
        """
        try:
            if self._connection is not None or self._pending_link is not None:
                active = self._connection.link_id if self._connection else self._pending_link
                self._status = f"Already connected to {active}. Disconnect first."
                return False
            if not self._radio_on:
                self._transition(ConnectionState.IDLE, "Bluetooth is not powered on.")
                return False
            self._stop_scanning()
            # A previous attempt may have been cancelled without a link event
            self._closing_links.discard(link_id)
            self._pending_link = link_id
            self._transition(
                ConnectionState.CONNECTING, f"Connecting to {self._display_name(link_id)}..."
            )
            self._link.connect(link_id)
            return True
        finally:
            self._publish()

    def disconnect(self) -> None:
        """Tear the current connection down immediately.

        Calling this with nothing connected is harmless: the state becomes
        ``disconnected`` again and no session end is signalled.
        """
        conn = self._connection
        if conn is not None:
            self._closing_links.add(conn.link_id)
            self._link.disconnect(conn.link_id)
            self._teardown("Disconnected.")
        elif self._pending_link is not None:
            link_id, self._pending_link = self._pending_link, None
            self._closing_links.add(link_id)
            self._link.disconnect(link_id)
            self._transition(ConnectionState.DISCONNECTED, "Connection attempt cancelled.")
        else:
            self._transition(ConnectionState.DISCONNECTED, "No connected device.")
        self._publish()

    def start_timed_sample(self, duration_sec: Optional[int] = None) -> bool:
        try:
            conn = self._connection
            if conn is None:
                self._status = "Connect to a device before starting a timed sample."
                return False
            if not conn.preparation_complete:
                self._status = "Wait for warmup to finish before sampling."
                return False
            if self._kind == DeviceKind.H2S:
                self._status = "Timed sampling is available for methane devices only."
                return False
            duration = (
                self.config.default_sample_duration_seconds
                if duration_sec is None
                else duration_sec
            )
            self.sampling.start(self._clock(), duration)
            self._timers.arm(TimerKind.SAMPLE_COUNTDOWN, 1.0, repeating=True)
            return True
        finally:
            self._publish()

    def stop_timed_sample(self) -> Optional[TimedSample]:
        self._timers.cancel(TimerKind.SAMPLE_COUNTDOWN)
        sample = self.sampling.stop(self._clock())
        self._publish()
        return sample

    def cancel_timed_sample(self) -> None:
        self._cancel_sampling()
        self._publish()

    def clear_live_telemetry(self) -> None:
        self._clear_live_telemetry()
        self._publish()

    # ------------------------------------------------------------------
    # Events

    def dispatch(self, event: SessionEvent) -> None:
        """Apply one inbound event and publish the resulting snapshot."""
        if isinstance(event, CharacteristicUpdated):
            self._on_characteristic_updated(event)
        elif isinstance(event, TimerFired):
            self._on_timer_fired(event.handle)
        elif isinstance(event, AdvertisementSeen):
            self._on_advertisement(event)
        elif isinstance(event, NotificationStateChanged):
            self._on_notification_state(event)
        elif isinstance(event, CharacteristicsDiscovered):
            self._on_characteristics_discovered(event)
        elif isinstance(event, LinkConnected):
            self._on_link_connected(event)
        elif isinstance(event, LinkConnectFailed):
            self._on_link_connect_failed(event)
        elif isinstance(event, LinkDisconnected):
            self._on_link_disconnected(event)
        elif isinstance(event, RadioStateChanged):
            self._on_radio_state(event)
        else:
            raise TypeError(f"Unsupported session event: {event!r}")
        self._publish()

    def _on_radio_state(self, event: RadioStateChanged) -> None:
        was_on, self._radio_on = self._radio_on, event.powered_on
        if event.powered_on:
            if not was_on:
                logger.info("✅ Bluetooth adapter available")
                if self._scanning:
                    self._transition(ConnectionState.SCANNING, "Scanning for sensors...")
            return
        logger.warning("📴 Bluetooth unavailable: %s", event.reason or "adapter off")
        if self._scanning:
            self._scanning = False
            self._link.stop_scan()
        conn = self._connection
        if conn is not None:
            self._closing_links.add(conn.link_id)
            self._link.disconnect(conn.link_id)
            self._teardown("Bluetooth unavailable.")
        self._pending_link = None
        self._cancel_sampling()
        self._transition(ConnectionState.IDLE, "Bluetooth unavailable.")

    def _on_advertisement(self, event: AdvertisementSeen) -> None:
        if not is_aimnet_device(event.name, self.config.device_name_prefix):
            return
        if event.advertised is not None:
            self._advertised[event.link_id] = event.advertised
        previous = self._discovered.get(event.link_id)
        if previous is None:
            logger.info("🔍 AIMNet device found: %s (%s)", event.name, event.link_id)
        self._discovered[event.link_id] = DiscoveredDevice(
            link_id=event.link_id,
            name=event.name or (previous.name if previous else None),
            rssi=event.rssi,
            advertised=self._advertised.get(event.link_id),
        )

    def _on_link_connected(self, event: LinkConnected) -> None:
        if event.link_id != self._pending_link:
            logger.warning("⚠️ Ignoring unexpected connection to %s", event.link_id)
            self._closing_links.add(event.link_id)
            self._link.disconnect(event.link_id)
            return
        self._pending_link = None
        self._stop_scanning()
        now = self._clock()

        advertised = self._advertised.get(event.link_id)
        device_id = (
            resolve_device_id(None, advertised.serial_hex if advertised else None, event.link_id)
            or event.link_id
        )
        conn = _Connection(
            link_id=event.link_id,
            name=self._display_name(event.link_id, DEFAULT_DEVICE_NAME),
            device_id=device_id,
            connected_at=now,
        )
        self._connection = conn
        self._clear_live_telemetry()
        logger.info("✅ Connected to %s as %s", event.link_id, device_id)

        self.durations.begin(device_id, now)
        self._timers.arm(TimerKind.DEVICE_DURATION, 1.0, key=device_id, repeating=True)
        self._start_session_if_needed(conn)

        warmup = self.config.warmup_seconds
        if warmup > 0:
            conn.preparing = True
            conn.preparation_total_seconds = int(math.ceil(warmup))
            conn.preparation_seconds_left = conn.preparation_total_seconds
            self._timers.arm(TimerKind.PREPARATION_COUNTDOWN, 1.0, repeating=True)
            self._timers.arm(TimerKind.WARMUP, warmup)
            self._transition(ConnectionState.PREPARING, "Sensor warmup in progress...")
        else:
            conn.preparation_complete = True
            self._transition(ConnectionState.CONNECTING, "Discovering services...")
        self._link.discover(event.link_id)

    def _on_link_connect_failed(self, event: LinkConnectFailed) -> None:
        if event.link_id != self._pending_link:
            return
        self._pending_link = None
        cause = event.cause or "unknown error"
        logger.error("❌ Failed to connect to %s: %s", event.link_id, cause)
        self._transition(ConnectionState.FAILED, f"Failed to connect: {cause}.")

    def _on_link_disconnected(self, event: LinkDisconnected) -> None:
        self._discovered.pop(event.link_id, None)
        if event.link_id in self._closing_links:
            self._closing_links.discard(event.link_id)
            return
        message = (
            f"Disconnected: {event.cause}" if event.cause else "Device disconnected."
        )
        conn = self._connection
        if conn is not None and conn.link_id == event.link_id:
            logger.warning("🔌 Link lost: %s (%s)", event.link_id, event.cause or "no cause")
            self._teardown(message)
        elif self._pending_link == event.link_id:
            self._pending_link = None
            self._transition(ConnectionState.DISCONNECTED, message)

    def _on_characteristics_discovered(self, event: CharacteristicsDiscovered) -> None:
        conn = self._current(event.link_id)
        if conn is None:
            return
        for info in event.characteristics:
            uuid = normalize_uuid(info.uuid)
            conn.characteristics[uuid] = CharacteristicInfo(
                uuid=uuid, can_notify=info.can_notify, can_read=info.can_read
            )
        conn.discovery_complete = True

        for uuid in (SERIAL_NUMBER_CHAR, FIRMWARE_REVISION_CHAR):
            if conn.readable(uuid):
                self._link.read(conn.link_id, uuid)

        battery = conn.characteristics.get(BATTERY_LEVEL_CHAR)
        if battery is not None:
            if battery.can_notify:
                self._link.set_notify(conn.link_id, BATTERY_LEVEL_CHAR, True)
            if battery.can_read:
                self._link.read(conn.link_id, BATTERY_LEVEL_CHAR)
            self._timers.arm(TimerKind.BATTERY_RETRY, self.config.battery_read_delay_seconds)

        if not conn.preparation_complete:
            return
        if self._state == ConnectionState.CONNECTING:
            self._status = "Services discovered."
        self._enable_streaming_if_ready(conn)

    def _on_notification_state(self, event: NotificationStateChanged) -> None:
        conn = self._current(event.link_id)
        uuid = normalize_uuid(event.uuid)
        if conn is None or uuid not in STREAM_CHARS or conn.streaming_enabled_at is None:
            return
        if event.error:
            logger.warning("⚠️ Notifications unavailable on %s: %s", uuid, event.error)
        if event.notifying and not event.error:
            self._timers.cancel(TimerKind.READ_FALLBACK, key=uuid)
        elif conn.readable(uuid):
            logger.info("🔁 Polling %s every %.1fs", uuid, self.config.read_fallback_interval_seconds)
            self._timers.arm(
                TimerKind.READ_FALLBACK,
                self.config.read_fallback_interval_seconds,
                key=uuid,
                repeating=True,
            )

    def _on_characteristic_updated(self, event: CharacteristicUpdated) -> None:
        conn = self._current(event.link_id)
        if conn is None:
            return
        if event.error:
            logger.debug("Characteristic %s update failed: %s", event.uuid, event.error)
            return
        uuid = normalize_uuid(event.uuid)
        data = event.data

        if uuid == SERIAL_NUMBER_CHAR:
            serial = codec.decode_utf8_string(data)
            if serial:
                self._upgrade_identity(conn, serial)
        elif uuid == FIRMWARE_REVISION_CHAR:
            conn.firmware = codec.decode_utf8_string(data)
        elif uuid == BATTERY_LEVEL_CHAR:
            self._on_battery(conn, data)
        elif uuid == GAS_CHAR:
            raw = codec.decode_gas_raw(data, self.config.gas_byte_order)
            if raw is None:
                logger.debug("Dropping short gas frame: %r", data)
                return
            self._apply_kind(DeviceKind.METHANE)
            self._publish_primary(conn, DeviceKind.METHANE, raw)
        elif uuid == TEMPERATURE_CHAR:
            value = codec.decode_temperature(data)
            if value is not None:
                self.buffers.append(codec.TEMPERATURE_C[0], value, self._clock())
        elif uuid == HUMIDITY_CHAR:
            value = codec.decode_humidity(data)
            if value is not None:
                self.buffers.append(codec.HUMIDITY_RH, value, self._clock())
        elif uuid == TELEMETRY_CHAR:
            frame = codec.decode_frame(data)
            if frame is None:
                return
            self._apply_kind(frame.kind)
            self.buffers.append_many(frame.channels, self._clock())
            self._publish_primary(conn, frame.kind, frame.primary)

    def _on_timer_fired(self, handle: TimerHandle) -> None:
        resolved = self._timers.resolve(handle)
        if resolved is None:
            return
        kind, key = resolved
        conn = self._connection
        now = self._clock()

        if kind == TimerKind.SAMPLE_COUNTDOWN:
            sample = self.sampling.tick(now)
            if sample is not None or not self.sampling.is_sampling:
                self._timers.cancel(TimerKind.SAMPLE_COUNTDOWN)
            return
        if conn is None:
            return

        if kind == TimerKind.DEVICE_DURATION:
            if conn.device_id != key:
                self._timers.cancel(TimerKind.DEVICE_DURATION, key=key)
                return
            self._published_durations[key] = self.durations.total(key, now)
        elif kind == TimerKind.PREPARATION_COUNTDOWN:
            conn.preparation_seconds_left = max(0, conn.preparation_seconds_left - 1)
            if conn.preparation_seconds_left == 0:
                self._timers.cancel(TimerKind.PREPARATION_COUNTDOWN)
        elif kind == TimerKind.WARMUP:
            self._timers.cancel(TimerKind.PREPARATION_COUNTDOWN)
            conn.preparing = False
            conn.preparation_seconds_left = 0
            conn.preparation_complete = True
            logger.info("⏳ Warmup completed for %s", conn.device_id)
            self._transition(
                ConnectionState.PREPARING, "Warmup completed. Waiting for methane stream..."
            )
            self._enable_streaming_if_ready(conn)
        elif kind == TimerKind.WATCHDOG:
            self._check_signal(conn, now)
        elif kind == TimerKind.READ_FALLBACK:
            if conn.readable(key):
                self._link.read(conn.link_id, key)
            else:
                self._timers.cancel(TimerKind.READ_FALLBACK, key=key)
        elif kind == TimerKind.BATTERY_RETRY:
            if conn.battery_percent is None and conn.readable(BATTERY_LEVEL_CHAR):
                logger.info("🔋 No battery level yet, retrying read")
                self._link.read(conn.link_id, BATTERY_LEVEL_CHAR)

    def _on_timer(self, handle: TimerHandle) -> None:
        self._post_event(TimerFired(handle))

    # ------------------------------------------------------------------
    # Streaming

    def _enable_streaming_if_ready(self, conn: _Connection) -> None:
        if (
            not conn.preparation_complete
            or not conn.discovery_complete
            or conn.streaming_enabled_at is not None
        ):
            return
        for uuid in STREAM_CHARS:
            info = conn.characteristics.get(uuid)
            if info is None:
                continue
            if info.can_notify:
                self._link.set_notify(conn.link_id, uuid, True)
                self._timers.cancel(TimerKind.READ_FALLBACK, key=uuid)
            elif info.can_read:
                self._timers.arm(
                    TimerKind.READ_FALLBACK,
                    self.config.read_fallback_interval_seconds,
                    key=uuid,
                    repeating=True,
                )
            if info.can_read:
                self._link.read(conn.link_id, uuid)

        conn.streaming_enabled_at = self._clock()
        self._timers.arm(
            TimerKind.WATCHDOG, self.config.watchdog_interval_seconds, repeating=True
        )
        if conn.last_sample_at is None:
            self._transition(ConnectionState.STREAMING, "Waiting for telemetry...")
        else:
            self._transition(ConnectionState.STREAMING, self._receiving_message())

    def _check_signal(self, conn: _Connection, now: datetime) -> None:
        if conn.streaming_enabled_at is None:
            return
        baseline = conn.streaming_enabled_at
        if conn.last_sample_at is not None and conn.last_sample_at > baseline:
            baseline = conn.last_sample_at
        silent_for = (now - baseline).total_seconds()

        if silent_for <= self.config.signal_timeout_seconds:
            if self._state == ConnectionState.SIGNAL_TIMEOUT:
                conn.signal_timeout_since = None
                self._transition(ConnectionState.STREAMING, "Telemetry stream restored.")
            return

        if self._state != ConnectionState.SIGNAL_TIMEOUT:
            logger.warning("⚠️ Telemetry silent for %.1fs on %s", silent_for, conn.device_id)
            conn.signal_timeout_since = now
            self._transition(
                ConnectionState.SIGNAL_TIMEOUT, "Telemetry timeout. Attempting recovery..."
            )

        limit = self.config.max_signal_timeout_seconds
        since = conn.signal_timeout_since or now
        if limit is not None and (now - since).total_seconds() >= limit:
            logger.warning("⏱️ Signal timeout exceeded %.0fs, disconnecting", limit)
            self._closing_links.add(conn.link_id)
            self._link.disconnect(conn.link_id)
            self._teardown(f"Disconnected: no telemetry for {silent_for:.0f}s.")
            return

        for uuid in PRIMARY_CHARS:
            if conn.readable(uuid):
                self._link.read(conn.link_id, uuid)

    def _apply_kind(self, kind: DeviceKind) -> None:
        if kind == self._kind:
            return
        previous, self._kind = self._kind, kind
        cleared = self.buffers.clear_kind_exclusive(kind)
        if self.sampling.is_sampling:
            self._cancel_sampling()
            self._status = "Timed sample cancelled: device type changed."
        if previous != DeviceKind.UNKNOWN:
            logger.info(
                "🧪 Device kind changed %s -> %s, cleared %d channels",
                previous.value,
                kind.value,
                len(cleared),
            )

    def _publish_primary(self, conn: _Connection, kind: DeviceKind, raw: float) -> None:
        now = self._clock()
        if kind == DeviceKind.H2S:
            calibrated = raw
            self.buffers.append(codec.H2S_PRIMARY, raw, now)
            temperature = humidity = None
        else:
            calibrated = self.config.calibration.ppm_from_raw(raw)
            self.buffers.append(codec.CH4_RAW, raw, now)
            self.buffers.append(codec.CH4_PPM, calibrated, now)
            temperature = self.buffers.latest(codec.TEMPERATURE_C[0])
            humidity = self.buffers.latest(codec.HUMIDITY_RH)

        conn.last_sample_at = now
        reading = Reading(
            timestamp=now,
            raw_value=raw,
            calibrated_value=calibrated,
            temperature_c=temperature,
            humidity_rh=humidity,
            battery_percent=conn.battery_percent,
            kind=kind,
        )
        self.buffers.record_reading(reading)
        self.sampling.record(reading)
        if self._recorder is not None:
            self._recorder.append(reading)

        if not conn.preparation_complete:
            return
        if self._state == ConnectionState.SIGNAL_TIMEOUT:
            conn.signal_timeout_since = None
            logger.info("✅ Telemetry stream restored on %s", conn.device_id)
            self._transition(ConnectionState.STREAMING, "Telemetry stream restored.")
        elif self._state != ConnectionState.STREAMING or self._status == "Waiting for telemetry...":
            self._transition(ConnectionState.STREAMING, self._receiving_message())

    def _receiving_message(self) -> str:
        if self._kind == DeviceKind.H2S:
            return "Receiving H2S telemetry."
        return "Receiving methane telemetry."

    # ------------------------------------------------------------------
    # Identity, battery and teardown

    def _upgrade_identity(self, conn: _Connection, serial: str) -> None:
        conn.serial = serial
        advertised = self._advertised.get(conn.link_id)
        new_id = resolve_device_id(
            serial, advertised.serial_hex if advertised else None, conn.link_id
        )
        if new_id is None or new_id == conn.device_id:
            return
        old_id, conn.device_id = conn.device_id, new_id
        now = self._clock()
        self.durations.transfer(old_id, new_id, now)
        self._published_durations[old_id] = self.durations.total(old_id, now)
        self._timers.cancel(TimerKind.DEVICE_DURATION, key=old_id)
        self._timers.arm(TimerKind.DEVICE_DURATION, 1.0, key=new_id, repeating=True)
        if self._recorder is not None and self._recorder.active_session is not None:
            self._recorder.update_active_session_device(new_id, conn.name)

    def _on_battery(self, conn: _Connection, data: bytes) -> None:
        level = codec.decode_battery(data)
        if level is None:
            return
        conn.battery_percent = level
        self._timers.cancel(TimerKind.BATTERY_RETRY)
        self.buffers.append(codec.BATTERY_PERCENT, float(level), self._clock())

        if level > self.config.low_battery_threshold_percent:
            return
        if conn.device_id in self._low_battery_notified:
            return
        self._low_battery_notified.add(conn.device_id)
        logger.warning(
            "🪫 Low battery: device %s is at %d%%. Please replace or recharge it.",
            conn.device_id,
            level,
        )
        if self._low_battery_notifier is not None:
            self._low_battery_notifier(conn.device_id, level)

    def _start_session_if_needed(self, conn: _Connection) -> None:
        if self._recorder is None:
            return
        if self._recorder.active_session is None:
            self._recorder.start_session(conn.device_id, conn.name)
        else:
            self._recorder.update_active_session_device(conn.device_id, conn.name)

    def _teardown(self, message: str) -> None:
        conn, self._connection = self._connection, None
        self._pending_link = None
        self._timers.cancel_all()
        self._cancel_sampling()
        if conn is not None:
            now = self._clock()
            total = self.durations.end(conn.device_id, now)
            self._published_durations[conn.device_id] = total
            logger.info(
                "🏁 Connection to %s closed, %.1fs connected in total", conn.device_id, total
            )
            if self._recorder is not None:
                self._recorder.end_session()
        self._transition(ConnectionState.DISCONNECTED, message)

    # ------------------------------------------------------------------
    # Helpers

    def _current(self, link_id: str) -> Optional[_Connection]:
        conn = self._connection
        if conn is None or conn.link_id != link_id:
            return None
        return conn

    def _stop_scanning(self) -> None:
        if self._scanning:
            self._scanning = False
            self._link.stop_scan()
        if self._state == ConnectionState.SCANNING:
            self._transition(ConnectionState.IDLE, "Scan stopped.")

    def _cancel_sampling(self) -> None:
        self._timers.cancel(TimerKind.SAMPLE_COUNTDOWN)
        self.sampling.cancel()

    def _clear_live_telemetry(self) -> None:
        self.buffers.clear_all()
        self._kind = DeviceKind.UNKNOWN
        if self._connection is not None:
            self._connection.last_sample_at = None

    def _display_name(self, link_id: str, default: Optional[str] = None) -> str:
        device = self._discovered.get(link_id)
        if device is not None and device.name:
            return device.name
        return default or "sensor"

    def _transition(self, state: ConnectionState, message: str) -> None:
        if state != self._state:
            logger.info("State %s -> %s: %s", self._state.value, state.value, message)
        self._state = state
        self._status = message

    def _build_snapshot(self) -> SessionSnapshot:
        now = self._clock()
        conn = self._connection
        return SessionSnapshot(
            state=self._state,
            status_message=self._status,
            radio_powered_on=self._radio_on,
            is_scanning=self._scanning,
            discovered_devices=tuple(self._discovered.values()),
            connected_link_id=conn.link_id if conn else None,
            device_id=conn.device_id if conn else None,
            device_name=conn.name if conn else None,
            device_kind=self._kind,
            device_serial=conn.serial if conn else None,
            firmware_revision=conn.firmware if conn else None,
            battery_percent=conn.battery_percent if conn else None,
            is_preparing=bool(conn and conn.preparing),
            preparation_seconds_left=conn.preparation_seconds_left if conn else 0,
            preparation_total_seconds=conn.preparation_total_seconds if conn else 0,
            connection_duration_seconds=(
                self.durations.total(conn.device_id, now) if conn else 0.0
            ),
            durations_by_device=dict(self._published_durations),
            latest_values=self.buffers.latest_values(),
            latest_reading=self.buffers.latest_reading,
            last_sample_at=conn.last_sample_at if conn else None,
            is_sampling=self.sampling.is_sampling,
            sample_seconds_left=self.sampling.remaining_seconds,
            sample_duration_seconds=self.sampling.target_duration_sec,
            last_timed_sample=self.sampling.last_sample,
            updated_at=now,
        )

    def _publish(self) -> None:
        self.snapshot = self._build_snapshot()
        for listener in list(self._listeners):
            listener(self.snapshot)
