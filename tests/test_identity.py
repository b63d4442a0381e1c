from datetime import timedelta

from aimnet_methane_receiver.calibration import CalibrationProfile
from aimnet_methane_receiver.identity import (
    DurationLedger,
    is_aimnet_device,
    parse_bleak_manufacturer_data,
    parse_manufacturer_data,
    resolve_device_id,
)

from conftest import START

SERIAL = bytes([0x01, 0x23, 0x45, 0x67, 0x89, 0xAB, 0xCD, 0xEF])


def test_full_manufacturer_block():
    info = parse_manufacturer_data(b"\x59\x00" + SERIAL + bytes([3, 1, 4]))
    assert info.serial_hex == "0123456789ABCDEF"
    assert info.boot_reason == 3
    assert info.firmware_version == "1.4"


def test_serial_only_manufacturer_block():
    info = parse_manufacturer_data(b"\x59\x00" + SERIAL)
    assert info.serial_hex == "0123456789ABCDEF"
    assert info.boot_reason is None
    assert info.firmware_version is None


def test_short_manufacturer_block_is_ignored():
    assert parse_manufacturer_data(b"") is None
    assert parse_manufacturer_data(b"\x59") is None
    assert parse_manufacturer_data(b"\x59\x00" + SERIAL[:7]) is None


def test_bleak_mapping_restores_company_id():
    info = parse_bleak_manufacturer_data({0x0059: SERIAL + bytes([1, 2, 0])})
    assert info.serial_hex == "0123456789ABCDEF"
    assert info.firmware_version == "2.0"
    assert parse_bleak_manufacturer_data({}) is None
    assert parse_bleak_manufacturer_data({0x0059: b"\x01"}) is None


def test_name_prefix_filter():
    assert is_aimnet_device("AIMNet-01")
    assert not is_aimnet_device("Thermometer")
    assert not is_aimnet_device(None)
    assert is_aimnet_device(None, prefix="")


def test_device_id_preference():
    assert resolve_device_id("SN-1", "0A0B", "AA:BB") == "SN-1"
    assert resolve_device_id(None, "0A0B", "AA:BB") == "0A0B"
    assert resolve_device_id("", "", "AA:BB") == "AA:BB"
    assert resolve_device_id(None, None, None) is None


def test_ledger_accumulates_across_segments():
    ledger = DurationLedger()
    ledger.begin("dev", START)
    assert ledger.total("dev", START + timedelta(seconds=4)) == 4
    assert ledger.end("dev", START + timedelta(seconds=10)) == 10
    assert not ledger.is_open("dev")

    ledger.begin("dev", START + timedelta(seconds=60))
    assert ledger.end("dev", START + timedelta(seconds=65)) == 15
    assert ledger.totals(START + timedelta(seconds=100)) == {"dev": 15}


def test_ledger_begin_twice_keeps_first_start():
    ledger = DurationLedger()
    ledger.begin("dev", START)
    ledger.begin("dev", START + timedelta(seconds=5))
    assert ledger.end("dev", START + timedelta(seconds=8)) == 8


def test_ledger_end_without_segment():
    ledger = DurationLedger()
    assert ledger.end("missing", START) == 0.0
    assert ledger.total("missing", START) == 0.0


def test_ledger_transfer_moves_open_segment():
    ledger = DurationLedger()
    ledger.begin("AA:BB", START)
    ledger.transfer("AA:BB", "SN-1", START + timedelta(seconds=3))

    assert not ledger.is_open("AA:BB")
    assert ledger.is_open("SN-1")
    assert ledger.total("AA:BB", START + timedelta(seconds=10)) == 0.0
    assert ledger.end("SN-1", START + timedelta(seconds=10)) == 10


def test_calibration_inverts_and_clamps():
    profile = CalibrationProfile(
        slope_raw_per_ppm=2.0, intercept_raw=100.0, minimum_ppm=0.0, maximum_ppm=500.0
    )
    assert profile.ppm_from_raw(300) == 100.0
    assert profile.ppm_from_raw(50) == 0.0
    assert profile.ppm_from_raw(5000) == 500.0


def test_calibration_is_monotonic():
    profile = CalibrationProfile(slope_raw_per_ppm=12.5, intercept_raw=400, minimum_ppm=0)
    outputs = [profile.ppm_from_raw(raw) for raw in range(0, 5000, 250)]
    assert outputs == sorted(outputs)


def test_non_positive_slope_collapses_to_minimum():
    for slope in (0.0, -1.0):
        profile = CalibrationProfile(slope_raw_per_ppm=slope, intercept_raw=0, minimum_ppm=5)
        assert profile.ppm_from_raw(1000) == 5


def test_default_calibration_is_identity():
    profile = CalibrationProfile.default_linear()
    assert profile.ppm_from_raw(2051) == 2051
    assert profile.ppm_from_raw(-3) == 0.0
