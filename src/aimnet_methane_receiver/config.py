"""Constants and runtime configuration for the AIMNet gas-sensor receiver.

The UUIDs and timing values mirror the AIMNet firmware. Anything an operator
may want to tune is carried on :class:`MonitorConfig`, which the CLI builds
from its arguments and hands to the session and the link adapter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .calibration import CalibrationProfile


# Environmental sensing service (binary-protocol firmware)
SENSOR_SERVICE = "0000181a-0000-1000-8000-00805f9b34fb"
GAS_CHAR = "00002bd0-0000-1000-8000-00805f9b34fb"  # uint16 raw CH4 signal
TEMPERATURE_CHAR = "00002a6e-0000-1000-8000-00805f9b34fb"  # sint16 LE, 0.01 degC
HUMIDITY_CHAR = "00002a6f-0000-1000-8000-00805f9b34fb"  # uint16 LE, 0.01 %RH

# Text-protocol firmware pushes comma separated frames on a single characteristic
TELEMETRY_CHAR = "abcd1234-5678-1234-5678-abcdef123456"

# Device information service
DEVICE_INFO_SERVICE = "0000180a-0000-1000-8000-00805f9b34fb"
SERIAL_NUMBER_CHAR = "00002a25-0000-1000-8000-00805f9b34fb"
FIRMWARE_REVISION_CHAR = "00002a26-0000-1000-8000-00805f9b34fb"

# Battery service
BATTERY_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_CHAR = "00002a19-0000-1000-8000-00805f9b34fb"

STREAM_CHARS = (GAS_CHAR, TEMPERATURE_CHAR, HUMIDITY_CHAR, TELEMETRY_CHAR)
PRIMARY_CHARS = (GAS_CHAR, TELEMETRY_CHAR)

DEVICE_NAME_PREFIX = "AIMNet"

PREPARATION_DELAY_SECONDS = 20.0
READ_FALLBACK_INTERVAL_SECONDS = 1.0
SIGNAL_TIMEOUT_SECONDS = 6.0
WATCHDOG_INTERVAL_SECONDS = 1.0
BATTERY_READ_DELAY_SECONDS = 10.0
LOW_BATTERY_THRESHOLD_PERCENT = 10
DEFAULT_TIMED_SAMPLE_DURATION_SECONDS = 30

CHANNEL_CAPACITY = 7200
LIVE_READING_CAPACITY = 300
TIMED_SAMPLE_CAPACITY = 6000
MAX_STORED_SESSIONS = 25


def normalize_uuid(value: str) -> str:
    """Expand 16-bit SIG UUIDs ("2A19") to their 128-bit lower-case form."""
    text = value.strip().lower()
    if len(text) == 4:
        return f"0000{text}-0000-1000-8000-00805f9b34fb"
    return text


@dataclass(frozen=True)
class MonitorConfig:
    """Tunable behaviour of one monitoring session.

    Attributes:
        warmup_seconds: Sensor warm-up before streaming is enabled. ``0``
            skips the preparing state entirely (text-protocol firmware).
        signal_timeout_seconds: Silence after which the watchdog reports a
            signal timeout and re-reads the primary characteristic.
        max_signal_timeout_seconds: Optional upper bound for how long a
            signal timeout may last before the session disconnects. ``None``
            keeps the device in degraded streaming until the operator acts.
        read_fallback_interval_seconds: Poll interval for channels that
            cannot notify (or stopped notifying).
        gas_byte_order: Byte order of the binary gas characteristic.
    """

    device_name_prefix: str = DEVICE_NAME_PREFIX
    scan_timeout: Optional[float] = None
    warmup_seconds: float = PREPARATION_DELAY_SECONDS
    signal_timeout_seconds: float = SIGNAL_TIMEOUT_SECONDS
    max_signal_timeout_seconds: Optional[float] = None
    watchdog_interval_seconds: float = WATCHDOG_INTERVAL_SECONDS
    read_fallback_interval_seconds: float = READ_FALLBACK_INTERVAL_SECONDS
    battery_read_delay_seconds: float = BATTERY_READ_DELAY_SECONDS
    low_battery_threshold_percent: int = LOW_BATTERY_THRESHOLD_PERCENT
    default_sample_duration_seconds: int = DEFAULT_TIMED_SAMPLE_DURATION_SECONDS
    channel_capacity: int = CHANNEL_CAPACITY
    live_reading_capacity: int = LIVE_READING_CAPACITY
    timed_sample_capacity: int = TIMED_SAMPLE_CAPACITY
    gas_byte_order: str = "big"
    calibration: CalibrationProfile = field(
        default_factory=CalibrationProfile.default_linear
    )
    data_dir: Path = field(default_factory=lambda: Path.cwd() / "aimnet_data")
