import logging

from aimnet_methane_receiver import codec
from aimnet_methane_receiver.config import (
    BATTERY_LEVEL_CHAR,
    GAS_CHAR,
    SERIAL_NUMBER_CHAR,
    TELEMETRY_CHAR,
)
from aimnet_methane_receiver.events import (
    AdvertisementSeen,
    CharacteristicInfo,
    LinkConnectFailed,
    LinkDisconnected,
    NotificationStateChanged,
    RadioStateChanged,
)
from aimnet_methane_receiver.models import AdvertisedInfo, DeviceKind
from aimnet_methane_receiver.session import ConnectionState

LINK = "AA:BB:CC:DD:EE:01"


def test_scan_and_connect_streams_methane(harness):
    harness.connect()
    snapshot = harness.session.snapshot
    assert snapshot.state == ConnectionState.STREAMING
    assert snapshot.status_message == "Waiting for telemetry..."
    assert ("set_notify", LINK, TELEMETRY_CHAR, True) in harness.link.calls
    assert harness.recorder.started == [(LINK, "AIMNet-01")]

    harness.send_gas(2000)

    snapshot = harness.session.snapshot
    assert snapshot.status_message == "Receiving methane telemetry."
    assert snapshot.device_kind == DeviceKind.METHANE
    reading = snapshot.latest_reading
    assert reading.ppm == 2000
    assert reading.temperature_c == 24.0
    assert reading.humidity_rh == 45.0
    assert snapshot.latest_values[codec.PRESSURE_KPA] == 101.32
    assert len(harness.recorder.active_session.readings) == 1


def test_non_aimnet_advertisements_are_ignored(harness):
    harness.session.start_scanning()
    harness.session.dispatch(AdvertisementSeen(link_id="X", name="Headphones"))
    harness.session.dispatch(AdvertisementSeen(link_id="Y", name="AIMNet-7"))
    assert [d.link_id for d in harness.session.snapshot.discovered_devices] == ["Y"]


def test_warmup_countdown_then_streaming(make_harness):
    h = make_harness(warmup_seconds=20)
    h.connect()
    assert h.session.state == ConnectionState.PREPARING
    assert h.session.snapshot.preparation_seconds_left == 20
    assert not h.link.named("set_notify")

    assert not h.session.start_timed_sample(10)
    assert h.session.status_message == "Wait for warmup to finish before sampling."

    h.advance(5)
    assert h.session.snapshot.preparation_seconds_left == 15
    assert h.session.snapshot.is_preparing

    h.advance(15)
    snapshot = h.session.snapshot
    assert snapshot.state == ConnectionState.STREAMING
    assert not snapshot.is_preparing
    assert ("set_notify", LINK, TELEMETRY_CHAR, True) in h.link.calls


def test_watchdog_reports_timeout_and_recovery(harness):
    harness.connect()
    harness.send_gas(2000)
    reads_before = harness.link.reads_of(TELEMETRY_CHAR)

    harness.advance(6)
    assert harness.session.state == ConnectionState.STREAMING

    harness.advance(1)
    assert harness.session.state == ConnectionState.SIGNAL_TIMEOUT
    assert harness.session.status_message == "Telemetry timeout. Attempting recovery..."
    assert harness.link.reads_of(TELEMETRY_CHAR) == reads_before + 1

    harness.send_gas(2010)
    assert harness.session.state == ConnectionState.STREAMING
    assert harness.session.status_message == "Telemetry stream restored."


def test_watchdog_counts_from_streaming_enable_without_samples(harness):
    harness.connect()
    harness.advance(6)
    assert harness.session.state == ConnectionState.STREAMING
    harness.advance(1)
    assert harness.session.state == ConnectionState.SIGNAL_TIMEOUT


def test_signal_timeout_limit_disconnects(make_harness):
    h = make_harness(max_signal_timeout_seconds=3)
    h.connect()
    h.advance(7)
    assert h.session.state == ConnectionState.SIGNAL_TIMEOUT

    h.advance(3)
    assert h.session.state == ConnectionState.DISCONNECTED
    assert ("disconnect", LINK) in h.link.calls
    assert len(h.recorder.ended) == 1


def test_reconnect_accumulates_connected_time(harness):
    harness.connect()
    harness.advance(10)
    harness.session.disconnect()
    harness.session.dispatch(LinkDisconnected(LINK))
    assert harness.session.snapshot.durations_by_device[LINK] == 10

    harness.connect()
    harness.advance(5)
    assert harness.session.snapshot.connection_duration_seconds == 15

    harness.session.disconnect()
    assert harness.session.snapshot.durations_by_device[LINK] == 15
    assert len(harness.recorder.ended) == 2


def test_disconnect_without_connection_is_harmless(harness):
    harness.session.disconnect()
    assert harness.session.state == ConnectionState.DISCONNECTED
    assert harness.session.status_message == "No connected device."
    assert harness.recorder.ended == []


def test_disconnect_twice_ends_session_once(harness):
    harness.connect()
    harness.session.disconnect()
    harness.session.disconnect()
    assert len(harness.recorder.ended) == 1
    assert harness.link.named("disconnect") == [("disconnect", LINK)]
    assert harness.scheduler.pending == 0


def test_late_disconnect_event_after_explicit_disconnect_only_prunes(harness):
    harness.connect()
    harness.session.disconnect()
    harness.session.dispatch(LinkDisconnected(LINK, cause="Connection lost."))
    assert harness.session.status_message == "Disconnected."
    assert harness.session.snapshot.discovered_devices == ()


def test_link_loss_tears_down(harness):
    harness.connect()
    harness.send_gas(2000)
    harness.session.dispatch(LinkDisconnected(LINK, cause="Connection lost."))
    snapshot = harness.session.snapshot
    assert snapshot.state == ConnectionState.DISCONNECTED
    assert snapshot.status_message == "Disconnected: Connection lost."
    assert not snapshot.is_connected
    assert harness.recorder.ended[0].readings[0].ppm == 2000
    assert harness.scheduler.pending == 0


def test_connect_failure(harness):
    harness.session.start_scanning()
    harness.session.connect("11:22")
    harness.session.dispatch(LinkConnectFailed("11:22", cause="timeout"))
    assert harness.session.state == ConnectionState.FAILED
    assert harness.session.status_message == "Failed to connect: timeout."


def test_link_loss_after_reconnecting_a_cancelled_attempt(harness):
    harness.session.start_scanning()
    harness.session.dispatch(AdvertisementSeen(LINK, "AIMNet-01", -60))
    assert harness.session.connect(LINK)
    harness.session.disconnect()
    assert harness.session.status_message == "Connection attempt cancelled."

    harness.connect()
    harness.send_gas(2000)
    harness.session.dispatch(LinkDisconnected(LINK, cause="Connection lost."))

    assert harness.session.state == ConnectionState.DISCONNECTED
    assert harness.session.status_message == "Disconnected: Connection lost."
    assert harness.session.snapshot.connected_link_id is None
    assert len(harness.recorder.ended) == 1
    assert harness.scheduler.pending == 0


def test_link_loss_is_logged(harness, caplog):
    harness.connect()
    with caplog.at_level(logging.WARNING, logger="aimnet_methane_receiver.session"):
        harness.session.dispatch(LinkDisconnected(LINK, cause="Connection lost."))
    assert f"🔌 Link lost: {LINK} (Connection lost.)" in caplog.messages


def test_connect_refused_while_connected(harness):
    harness.connect()
    assert not harness.session.connect("11:22")
    assert harness.session.snapshot.connected_link_id == LINK
    assert ("connect", "11:22") not in harness.link.calls


def test_radio_off_tears_down_and_scanning_retries_adapter(harness):
    harness.connect()
    harness.session.dispatch(RadioStateChanged(powered_on=False, reason="off"))
    assert harness.session.state == ConnectionState.IDLE
    assert harness.session.status_message == "Bluetooth unavailable."
    assert ("disconnect", LINK) in harness.link.calls
    assert len(harness.recorder.ended) == 1

    assert not harness.session.connect(LINK)
    assert harness.session.status_message == "Bluetooth is not powered on."

    del harness.link.calls[:]
    assert harness.session.start_scanning()
    assert harness.link.calls == [("start_scan",)]
    assert harness.session.state == ConnectionState.SCANNING
    assert harness.session.status_message == "Retrying Bluetooth adapter..."


def test_scanning_recovers_when_adapter_comes_back(harness):
    harness.session.dispatch(RadioStateChanged(powered_on=False, reason="adapter error"))
    harness.session.start_scanning()
    harness.session.dispatch(RadioStateChanged(powered_on=True))
    assert harness.session.state == ConnectionState.SCANNING
    assert harness.session.status_message == "Scanning for sensors..."

    harness.session.dispatch(AdvertisementSeen(LINK, "AIMNet-01", -60))
    assert harness.session.connect(LINK)
    assert ("connect", LINK) in harness.link.calls


def test_repeated_adapter_failure_returns_to_idle(harness):
    harness.session.dispatch(RadioStateChanged(powered_on=False, reason="adapter error"))
    harness.session.start_scanning()
    harness.session.dispatch(RadioStateChanged(powered_on=False, reason="adapter error"))
    assert harness.session.state == ConnectionState.IDLE
    assert harness.session.status_message == "Bluetooth unavailable."
    assert harness.link.calls[-1] == ("stop_scan",)

    harness.session.start_scanning()
    assert harness.link.named("start_scan") == [("start_scan",), ("start_scan",)]


def test_timed_sample_collects_readings(harness):
    harness.connect()
    harness.send_gas(50)
    assert harness.session.start_timed_sample(5)

    harness.send_gas(100)
    harness.advance(1)
    harness.send_gas(200)
    harness.advance(1)
    harness.send_gas(300)
    assert harness.session.snapshot.sample_seconds_left == 3

    harness.advance(3)
    snapshot = harness.session.snapshot
    assert not snapshot.is_sampling
    sample = snapshot.last_timed_sample
    assert [r.ppm for r in sample.readings] == [100, 200, 300]
    assert sample.average_ppm == 200
    assert sample.duration_seconds == 5


def test_timed_sample_guards(harness):
    assert not harness.session.start_timed_sample(5)
    assert harness.session.status_message == "Connect to a device before starting a timed sample."

    harness.connect()
    harness.send_h2s(5.5)
    assert not harness.session.start_timed_sample(5)
    assert harness.session.status_message == "Timed sampling is available for methane devices only."


def test_cancel_timed_sample_keeps_previous_result(harness):
    harness.connect()
    harness.session.start_timed_sample(1)
    harness.send_gas(100)
    harness.advance(1)
    first = harness.session.snapshot.last_timed_sample

    harness.session.start_timed_sample(10)
    harness.send_gas(200)
    harness.session.cancel_timed_sample()
    assert not harness.session.snapshot.is_sampling
    assert harness.session.snapshot.last_timed_sample is first


def test_kind_switch_clears_other_family(harness):
    harness.connect()
    harness.send(BATTERY_LEVEL_CHAR, bytes([80]))
    harness.send_gas(2000)
    harness.session.start_timed_sample(30)

    harness.send_h2s(5.5, 1.2)

    buffers = harness.session.buffers
    assert harness.session.device_kind == DeviceKind.H2S
    assert len(buffers.channel(codec.CH4_PPM)) == 0
    assert len(buffers.channel(codec.TEMPERATURE_C[0])) == 0
    assert buffers.latest(codec.H2S_PRIMARY) == 5.5
    assert buffers.latest(codec.H2S_SECONDARY) == 1.2
    assert buffers.latest(codec.BATTERY_PERCENT) == 80
    assert [r.kind for r in buffers.live_readings.get_all()] == [DeviceKind.H2S]
    assert not harness.session.snapshot.is_sampling


def test_malformed_frame_changes_nothing(harness):
    harness.connect()
    harness.send_gas(2000)
    before = harness.session.snapshot.latest_values

    harness.send(TELEMETRY_CHAR, b"1000,start,1,2,end,9")
    harness.send(TELEMETRY_CHAR, b"\xff\xfe")

    assert harness.session.snapshot.latest_values == before
    assert len(harness.session.buffers.live_readings) == 1


def test_low_battery_warns_once_per_device(harness):
    harness.connect()
    harness.send(BATTERY_LEVEL_CHAR, bytes([8]))
    harness.send(BATTERY_LEVEL_CHAR, bytes([7]))
    assert harness.notified == [(LINK, 8)]
    assert harness.session.snapshot.battery_percent == 7


def test_battery_read_retried_when_missing(harness):
    harness.connect()
    assert harness.link.reads_of(BATTERY_LEVEL_CHAR) == 1
    harness.advance(10)
    assert harness.link.reads_of(BATTERY_LEVEL_CHAR) == 2
    harness.advance(10)
    assert harness.link.reads_of(BATTERY_LEVEL_CHAR) == 2


def test_serial_upgrades_identity(harness):
    advertised = AdvertisedInfo(serial_hex="A1B2C3D4E5F60718")
    harness.connect(advertised=advertised)
    assert harness.session.snapshot.device_id == "A1B2C3D4E5F60718"

    harness.advance(4)
    harness.send(SERIAL_NUMBER_CHAR, b"SN-0001\x00")
    harness.advance(6)

    snapshot = harness.session.snapshot
    assert snapshot.device_id == "SN-0001"
    assert snapshot.device_serial == "SN-0001"
    assert snapshot.connection_duration_seconds == 10
    assert harness.recorder.renamed[-1] == ("SN-0001", "AIMNet-01")
    assert harness.recorder.active_session.device_id == "SN-0001"


def test_read_fallback_polls_channels_without_notify(harness):
    chars = (CharacteristicInfo(GAS_CHAR, can_notify=False, can_read=True),)
    harness.connect(characteristics=chars)
    assert harness.link.reads_of(GAS_CHAR) == 1

    harness.advance(3)
    assert harness.link.reads_of(GAS_CHAR) == 4

    harness.send(GAS_CHAR, (1234).to_bytes(2, "big"))
    assert harness.session.buffers.latest(codec.CH4_RAW) == 1234
    assert harness.session.device_kind == DeviceKind.METHANE


def test_notification_failure_falls_back_to_reads(harness):
    harness.connect()
    base = harness.link.reads_of(TELEMETRY_CHAR)

    harness.session.dispatch(
        NotificationStateChanged(LINK, TELEMETRY_CHAR, notifying=False, error="not permitted")
    )
    harness.advance(2)
    assert harness.link.reads_of(TELEMETRY_CHAR) == base + 2

    harness.session.dispatch(NotificationStateChanged(LINK, TELEMETRY_CHAR, notifying=True))
    harness.advance(2)
    assert harness.link.reads_of(TELEMETRY_CHAR) == base + 2


def test_updates_from_other_links_are_ignored(harness):
    harness.connect()
    harness.send_gas(2000, link_id="OTHER")
    assert harness.session.snapshot.latest_reading is None


def test_clear_live_telemetry(harness):
    harness.connect()
    harness.send_gas(2000)
    harness.session.clear_live_telemetry()
    snapshot = harness.session.snapshot
    assert snapshot.latest_values == {}
    assert snapshot.latest_reading is None
    assert snapshot.device_kind == DeviceKind.UNKNOWN


def test_subscribers_receive_snapshots_until_unsubscribed(harness):
    seen = []
    unsubscribe = harness.session.subscribe(seen.append)
    harness.session.start_scanning()
    assert seen[-1].state == ConnectionState.SCANNING

    unsubscribe()
    harness.session.stop_scanning()
    assert len(seen) == 1
    assert harness.session.state == ConnectionState.IDLE
