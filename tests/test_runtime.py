import time

import pytest

from aimnet_methane_receiver import codec
from aimnet_methane_receiver.ble_link import MOCK_LINK_ID, MOCK_SERIAL, MockLink
from aimnet_methane_receiver.config import MonitorConfig
from aimnet_methane_receiver.runtime import MonitorRuntime
from aimnet_methane_receiver.session import ConnectionState


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_mock_frames_decode_as_gas():
    frame = codec.decode_frame(MockLink.make_frame(12.5).encode())
    assert frame.shape == "gas"
    assert 1500 < frame.primary < 2500


def test_commands_require_running_runtime():
    runtime = MonitorRuntime(MonitorConfig(warmup_seconds=0))
    assert runtime.snapshot is None
    with pytest.raises(RuntimeError):
        runtime.connect(MOCK_LINK_ID)


def test_mock_runtime_auto_connects_and_streams(tmp_path):
    runtime = MonitorRuntime(
        MonitorConfig(warmup_seconds=0, data_dir=tmp_path), mock=True, auto_connect=True
    )
    seen = []
    runtime.subscribe(seen.append)
    runtime.start()
    try:
        assert wait_for(
            lambda: runtime.snapshot is not None and runtime.snapshot.latest_reading is not None
        )
        snapshot = runtime.snapshot
        assert snapshot.state == ConnectionState.STREAMING
        assert snapshot.connected_link_id == MOCK_LINK_ID
        assert wait_for(lambda: runtime.snapshot.device_serial == MOCK_SERIAL)
        assert len(runtime.buffers.live_readings) >= 1
        assert seen

        runtime.disconnect()
        assert runtime.snapshot.connected_link_id is None
    finally:
        runtime.stop()
    assert not runtime.is_running
    assert runtime.error is None
