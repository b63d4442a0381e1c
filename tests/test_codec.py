import pytest

from aimnet_methane_receiver import codec
from aimnet_methane_receiver.models import DeviceKind

CANONICAL = b"1000,start,410,395,520,10132,2400,2430,0,2380,4500,2510,end,0,1200,2051,800"
SIXTEEN = b"100,start,1,2,3,4,5,6,7,8,9,end,10,11,12,13"


def test_canonical_gas_frame():
    frame = codec.decode_frame(CANONICAL)
    assert frame.kind == DeviceKind.METHANE
    assert frame.shape == "gas"
    assert not frame.degraded
    assert frame.device_time == 1000
    assert frame.primary == 2051
    ch = frame.channels
    assert ch[codec.H2O_1] == 410
    assert ch[codec.CO2] == 520
    assert ch[codec.PRESSURE_KPA] == pytest.approx(101.32)
    assert ch[codec.TEMPERATURE_C[0]] == 24.0
    assert ch[codec.TEMPERATURE_C[2]] == 23.8
    assert ch[codec.HUMIDITY_RH] == 45.0
    assert ch[codec.TEMPERATURE_C[3]] == 25.1
    assert ch[codec.H2O_SIGNAL] == 1200
    assert ch[codec.CO2_SIGNAL] == 800


def test_sixteen_field_gas_frame_sets_every_field():
    frame = codec.decode_frame(SIXTEEN)
    assert frame.shape == "gas"
    assert frame.primary == 12
    ch = frame.channels
    assert [ch[codec.H2O_1], ch[codec.H2O_2], ch[codec.CO2]] == [1, 2, 3]
    assert ch[codec.PRESSURE_RAW] == 4
    assert ch[codec.TEMPERATURE_RAW[0]] == 5
    assert ch[codec.TEMPERATURE_RAW[1]] == 6
    assert ch[codec.TEMPERATURE_RAW[2]] == 7
    assert ch[codec.HUMIDITY_RAW] == 8
    assert ch[codec.TEMPERATURE_RAW[3]] == 9
    assert ch[codec.H2O_SIGNAL] == 11
    assert ch[codec.CO2_SIGNAL] == 13


def test_device_name_prefix_is_stripped():
    frame = codec.decode_frame(b"AIMNet-01," + CANONICAL)
    assert frame.device_name == "AIMNet-01"
    assert frame.primary == 2051


def test_markers_are_case_insensitive_and_padding_ignored():
    frame = codec.decode_frame(CANONICAL.replace(b"start", b"START") + b"\x00\x00\r\n")
    assert frame is not None and frame.shape == "gas"


def test_h2s_frame():
    frame = codec.decode_frame(b"42,5.5,1.25")
    assert frame.kind == DeviceKind.H2S
    assert frame.primary == 5.5
    assert frame.channels == {codec.H2S_SECONDARY: 1.25}
    assert frame.device_time == 42


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"\x00\x00",
        b"\xff\xfe\xfd",
        b"AIMNet-01",
        b"start,end",
        b"1000,start,1,2,3,end,4,5,6,7",  # end too early
        b"1000,start,1,2,3,4,5,6,7,8,9,10,end,1,2",  # tail too short
        b"1000,start,x,2,3,4,5,6,7,8,9,10,end,0,1,2,3",  # bad body value
        b"abc,def",
        b"nan,inf",
    ],
)
def test_malformed_frames_are_dropped(payload):
    assert codec.decode_frame(payload) is None


def test_unstructured_number_is_degraded_methane():
    frame = codec.decode_frame(b"status,1875.5")
    assert frame.degraded
    assert frame.kind == DeviceKind.METHANE
    assert frame.primary == 1875.5
    assert frame.device_name == "status"


def test_two_numbers_fall_back_to_first():
    frame = codec.decode_frame(b"12,34")
    assert frame.degraded
    assert frame.primary == 12


def test_shape_priority_is_configurable():
    frame = codec.decode_frame(b"1,2,3", shapes=(codec.GAS_SHAPE,))
    assert frame.degraded
    assert frame.primary == 1


def test_binary_decoders():
    assert codec.decode_gas_raw(b"\x04\xd2") == 1234
    assert codec.decode_gas_raw(b"\xd2\x04", "little") == 1234
    assert codec.decode_gas_raw(b"\x01") is None
    assert codec.decode_temperature((-512).to_bytes(2, "little", signed=True)) == -5.12
    assert codec.decode_humidity((4550).to_bytes(2, "little")) == 45.5
    assert codec.decode_humidity(b"") is None
    assert codec.decode_battery(bytes([150])) == 100
    assert codec.decode_battery(bytes([42, 0])) == 42
    assert codec.decode_battery(b"") is None
    assert codec.decode_utf8_string(b"  1.4.2\x00") == "1.4.2"
    assert codec.decode_utf8_string(b"\x00") is None
