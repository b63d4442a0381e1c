"""Decoding of AIMNet sensor payloads.

Two firmware families share this module:

- **Binary firmware** exposes one characteristic per quantity (raw gas signal,
  temperature, humidity, battery) with fixed-width integer encodings.
- **Text firmware** pushes comma separated frames on a single telemetry
  characteristic. The device family is not advertised, so it is inferred from
  the structure of each frame by trying the known frame shapes in a fixed
  priority order.

GAS frame layout (kind ``methane``)::

    time,start,h2o_1,h2o_2,co2,pressure,temp_1,temp_2,[reserved...],temp_3,humidity,temp_4,end,reserved,h2o_sig,ch4_sig,co2_sig

The ``start`` marker sits at index 1 and the first ``end`` marker at index 11
or later closes the body. The first six body values are read from the front
of the body and the last three from its back, so firmware builds with or
without the reserved body slot decode identically. Temperatures, humidity and
pressure are transmitted in hundredths.

H2S frame layout (kind ``h2s``)::

    time,primary_ppb,secondary_ppb

Every decoder returns ``None`` for a malformed payload; nothing here raises
on bad input.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .models import DeviceKind

logger = logging.getLogger(__name__)

START_MARKER = "start"
END_MARKER = "end"
MARKER_TOKENS = frozenset({START_MARKER, END_MARKER})

GAS_MIN_FIELDS = 16
GAS_MIN_END_INDEX = 11
GAS_TAIL_FIELDS = 4
H2S_MIN_FIELDS = 3

# Channel names shared with the buffer set
CH4_RAW = "ch4_raw"
CH4_PPM = "ch4_ppm"
H2O_1 = "h2o_1"
H2O_2 = "h2o_2"
CO2 = "co2"
PRESSURE_RAW = "pressure_raw"
PRESSURE_KPA = "pressure_kpa"
TEMPERATURE_RAW = tuple(f"temperature_{i}_raw" for i in range(1, 5))
TEMPERATURE_C = tuple(f"temperature_{i}_c" for i in range(1, 5))
HUMIDITY_RAW = "humidity_raw"
HUMIDITY_RH = "humidity_rh"
H2O_SIGNAL = "h2o_signal"
CO2_SIGNAL = "co2_signal"
H2S_PRIMARY = "h2s_primary"
H2S_SECONDARY = "h2s_secondary"
BATTERY_PERCENT = "battery_percent"


@dataclass(frozen=True)
class DecodedFrame:
    """Result of decoding one text frame.

    Attributes:
        kind: Device family the frame belongs to.
        primary: Raw value of the kind's primary gas channel.
        channels: Auxiliary channel values keyed by channel name, already
            scaled to engineering units where the firmware sends hundredths.
        device_time: Device clock carried in the frame, when present.
        device_name: Alphabetic prefix token stripped from the frame.
        shape: Name of the matching shape, or ``"fallback"``.
    """

    kind: DeviceKind
    primary: float
    channels: dict[str, float] = field(default_factory=dict)
    device_time: Optional[int] = None
    device_name: Optional[str] = None
    shape: str = "fallback"

    @property
    def degraded(self) -> bool:
        return self.shape == "fallback"


@dataclass(frozen=True)
class FrameShape:
    """Structural signature of one known text frame layout."""

    name: str
    kind: DeviceKind
    min_fields: int
    parse: Callable[[Sequence[str]], Optional[DecodedFrame]]

    def match(self, fields: Sequence[str]) -> Optional[DecodedFrame]:
        if len(fields) < self.min_fields:
            return None
        return self.parse(fields)


def parse_float(token: str) -> Optional[float]:
    try:
        value = float(token)
    except ValueError:
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_int(token: str) -> Optional[int]:
    try:
        return int(token)
    except ValueError:
        value = parse_float(token)
        return int(value) if value is not None else None


def decode_text(data: bytes) -> Optional[str]:
    """Decode a frame to text, dropping NUL padding and surrounding whitespace."""
    try:
        text = bytes(data).decode("utf-8", errors="strict")
    except UnicodeDecodeError:
        logger.debug("UTF-8 decode failed: %r", bytes(data))
        return None
    text = text.replace("\x00", "").strip()
    return text or None


def split_fields(payload: str) -> list[str]:
    return [token.strip() for token in payload.split(",") if token.strip()]


def split_device_prefix(fields: Sequence[str]) -> tuple[Optional[str], list[str]]:
    """Strip a leading device-name token (any token containing letters)."""
    if fields and any(ch.isalpha() for ch in fields[0]):
        return fields[0], list(fields[1:])
    return None, list(fields)


def _parse_gas(fields: Sequence[str]) -> Optional[DecodedFrame]:
    if fields[1].lower() != START_MARKER:
        return None
    end_index = next(
        (
            i
            for i in range(GAS_MIN_END_INDEX, len(fields))
            if fields[i].lower() == END_MARKER
        ),
        None,
    )
    if end_index is None or len(fields) - end_index - 1 < GAS_TAIL_FIELDS:
        return None

    body = fields[2:end_index]
    tail = fields[end_index + 1 :]
    device_time = parse_int(fields[0])
    named = (
        (H2O_1, body[0]),
        (H2O_2, body[1]),
        (CO2, body[2]),
        (PRESSURE_RAW, body[3]),
        (TEMPERATURE_RAW[0], body[4]),
        (TEMPERATURE_RAW[1], body[5]),
        (TEMPERATURE_RAW[2], body[-3]),
        (HUMIDITY_RAW, body[-2]),
        (TEMPERATURE_RAW[3], body[-1]),
        (H2O_SIGNAL, tail[1]),
        (CH4_RAW, tail[2]),
        (CO2_SIGNAL, tail[3]),
    )
    values: dict[str, float] = {}
    for name, token in named:
        value = parse_float(token)
        if value is None:
            return None
        values[name] = value
    if device_time is None:
        return None

    ch4 = values.pop(CH4_RAW)
    values[PRESSURE_KPA] = values[PRESSURE_RAW] / 100.0
    for raw_name, c_name in zip(TEMPERATURE_RAW, TEMPERATURE_C):
        values[c_name] = values[raw_name] / 100.0
    values[HUMIDITY_RH] = values[HUMIDITY_RAW] / 100.0
    return DecodedFrame(
        kind=DeviceKind.METHANE,
        primary=ch4,
        channels=values,
        device_time=device_time,
        shape="gas",
    )


def _parse_h2s(fields: Sequence[str]) -> Optional[DecodedFrame]:
    device_time = parse_int(fields[0])
    primary = parse_float(fields[1])
    secondary = parse_float(fields[2])
    if device_time is None or primary is None or secondary is None:
        return None
    return DecodedFrame(
        kind=DeviceKind.H2S,
        primary=primary,
        channels={H2S_SECONDARY: secondary},
        device_time=device_time,
        shape="h2s",
    )


GAS_SHAPE = FrameShape("gas", DeviceKind.METHANE, GAS_MIN_FIELDS, _parse_gas)
H2S_SHAPE = FrameShape("h2s", DeviceKind.H2S, H2S_MIN_FIELDS, _parse_h2s)

# Tried in this order; the first structural match wins
SHAPE_PRIORITY: tuple[FrameShape, ...] = (GAS_SHAPE, H2S_SHAPE)


def decode_frame(
    data: bytes, shapes: Sequence[FrameShape] = SHAPE_PRIORITY
) -> Optional[DecodedFrame]:
    """Classify and decode one text telemetry frame.

    Args:
        data: Raw characteristic value.
        shapes: Frame shapes to try, in priority order.

    Returns:
        The decoded frame, a degraded single-value frame when no shape matches
        but the frame holds a number and no shape markers, or ``None`` when the
        frame is malformed.
    """
    text = decode_text(data)
    if text is None:
        return None
    device_name, fields = split_device_prefix(split_fields(text))
    if not fields:
        logger.debug("Frame empty after prefix strip: %r", text)
        return None

    for shape in shapes:
        decoded = shape.match(fields)
        if decoded is not None:
            if device_name is not None:
                decoded = _with_name(decoded, device_name)
            return decoded

    if any(token.lower() in MARKER_TOKENS for token in fields):
        logger.debug("Dropping malformed framed payload: %r", text)
        return None

    fallback = next(
        (v for v in (parse_float(token) for token in fields) if v is not None), None
    )
    if fallback is None:
        logger.debug("Dropping unrecognised payload: %r", text)
        return None
    return DecodedFrame(
        kind=DeviceKind.METHANE, primary=fallback, device_name=device_name
    )


def _with_name(frame: DecodedFrame, name: str) -> DecodedFrame:
    return DecodedFrame(
        kind=frame.kind,
        primary=frame.primary,
        channels=frame.channels,
        device_time=frame.device_time,
        device_name=name,
        shape=frame.shape,
    )


def decode_gas_raw(data: bytes, byte_order: str = "big") -> Optional[float]:
    if len(data) < 2:
        return None
    return float(int.from_bytes(bytes(data[:2]), byte_order, signed=False))  # type: ignore[arg-type]


def decode_temperature(data: bytes) -> Optional[float]:
    if len(data) < 2:
        return None
    return int.from_bytes(bytes(data[:2]), "little", signed=True) / 100.0


def decode_humidity(data: bytes) -> Optional[float]:
    if len(data) < 2:
        return None
    return int.from_bytes(bytes(data[:2]), "little", signed=False) / 100.0


def decode_battery(data: bytes) -> Optional[int]:
    if not data:
        return None
    return min(100, max(0, data[0]))


def decode_utf8_string(data: bytes) -> Optional[str]:
    text = bytes(data).decode("utf-8", errors="replace").replace("\x00", "").strip()
    return text or None
