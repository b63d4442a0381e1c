"""Device identity resolution and per-device connected-time accounting."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Mapping, Optional

from .config import DEVICE_NAME_PREFIX
from .models import AdvertisedInfo, ConnectionRecord

logger = logging.getLogger(__name__)

COMPANY_ID_LENGTH = 2
SERIAL_LENGTH = 8


def parse_manufacturer_data(data: bytes) -> Optional[AdvertisedInfo]:
    """Extract the AIMNet identity block from raw manufacturer data.

    Layout after the 2-byte company identifier::

        serial[8] | boot_reason[1] | version_major[1] | version_minor[1]

    Args:
        data: Manufacturer-specific advertisement bytes, company id included.

    Returns:
        The advertised identity, or ``None`` when fewer than eight payload
        bytes follow the company identifier.
    """
    if len(data) < COMPANY_ID_LENGTH:
        return None
    payload = bytes(data[COMPANY_ID_LENGTH:])
    if len(payload) < SERIAL_LENGTH:
        return None

    serial_hex = payload[:SERIAL_LENGTH].hex().upper()
    boot_reason = payload[8] if len(payload) >= 9 else None
    major: Optional[int] = None
    minor: Optional[int] = None
    if len(payload) >= 11:
        major, minor = payload[9], payload[10]
    return AdvertisedInfo(
        serial_hex=serial_hex,
        boot_reason=boot_reason,
        version_major=major,
        version_minor=minor,
    )


def parse_bleak_manufacturer_data(
    manufacturer_data: Mapping[int, bytes],
) -> Optional[AdvertisedInfo]:
    """Parse bleak's ``{company_id: payload}`` form.

    bleak strips the company identifier, so it is put back (little-endian, as
    transmitted) before the shared parser runs. The first parseable entry wins.
    """
    for company_id, payload in manufacturer_data.items():
        raw = int(company_id).to_bytes(2, "little") + bytes(payload)
        info = parse_manufacturer_data(raw)
        if info is not None:
            return info
    return None


def is_aimnet_device(
    name: Optional[str], prefix: str = DEVICE_NAME_PREFIX
) -> bool:
    if not prefix:
        return True
    return bool(name) and name.startswith(prefix)  # type: ignore[union-attr]


def resolve_device_id(
    descriptor_serial: Optional[str],
    advertised_serial: Optional[str],
    link_id: Optional[str],
) -> Optional[str]:
    """Pick the most durable identifier available for a device.

    Preference order is the Device Information serial, then the advertised
    serial, then the link-layer identifier. Empty strings count as absent.
    """
    for candidate in (descriptor_serial, advertised_serial, link_id):
        if candidate:
            return candidate
    return None


class DurationLedger:
    """Cumulative connected time per resolved device identifier.

    Each device has at most one open segment. Closing a segment folds its
    length into the cumulative total, so totals never decrease across
    reconnects.
    """

    def __init__(self) -> None:
        self._records: dict[str, ConnectionRecord] = {}

    def record(self, device_id: str) -> ConnectionRecord:
        record = self._records.get(device_id)
        if record is None:
            record = ConnectionRecord(device_id=device_id)
            self._records[device_id] = record
        return record

    def begin(self, device_id: str, now: datetime) -> None:
        record = self.record(device_id)
        if record.is_open:
            logger.debug("Duration segment already open for %s", device_id)
            return
        record.segment_started_at = now

    def total(self, device_id: str, now: datetime) -> float:
        record = self._records.get(device_id)
        if record is None:
            return 0.0
        total = record.cumulative_seconds
        if record.segment_started_at is not None:
            total += max(0.0, (now - record.segment_started_at).total_seconds())
        return total

    def end(self, device_id: str, now: datetime) -> float:
        """Close the open segment (if any) and return the new cumulative total."""
        record = self._records.get(device_id)
        if record is None:
            return 0.0
        if record.segment_started_at is not None:
            elapsed = (now - record.segment_started_at).total_seconds()
            record.cumulative_seconds += max(0.0, elapsed)
            record.segment_started_at = None
        return record.cumulative_seconds

    def transfer(self, old_id: str, new_id: str, now: datetime) -> None:
        """Move an open segment to a better identifier resolved mid-connection.

        Time already closed under ``old_id`` stays with it; only the open
        segment moves, keeping its original start instant.
        """
        if old_id == new_id:
            return
        old = self._records.get(old_id)
        started = old.segment_started_at if old is not None else None
        if old is not None:
            old.segment_started_at = None
        target = self.record(new_id)
        if target.is_open:
            return
        target.segment_started_at = started if started is not None else now
        logger.info("Connection time tracking moved from %s to %s", old_id, new_id)

    def is_open(self, device_id: str) -> bool:
        record = self._records.get(device_id)
        return record is not None and record.is_open

    def totals(self, now: datetime) -> dict[str, float]:
        return {device_id: self.total(device_id, now) for device_id in self._records}
