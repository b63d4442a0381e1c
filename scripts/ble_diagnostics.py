#!/usr/bin/env python3
"""
BLE connection diagnostics and troubleshooting tool for AIMNet gas sensors.
"""

import argparse
import asyncio
import logging
import os
import platform
import subprocess
import sys
from typing import List, Optional, Tuple

# Add the receiver module to the path (from scripts/ to src/)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

try:
    from bleak import BleakClient, BleakScanner
    from bleak.exc import BleakError
except ImportError:
    logger.error("❌ Bleak library not found. Run 'pip install -e .' to install dependencies.")
    sys.exit(1)

from aimnet_methane_receiver import codec
from aimnet_methane_receiver.config import (
    BATTERY_LEVEL_CHAR,
    DEVICE_NAME_PREFIX,
    FIRMWARE_REVISION_CHAR,
    GAS_CHAR,
    SERIAL_NUMBER_CHAR,
    TELEMETRY_CHAR,
    normalize_uuid,
)
from aimnet_methane_receiver.identity import (
    is_aimnet_device,
    parse_bleak_manufacturer_data,
)


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and working."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()
    if system == "darwin":  # macOS
        command, marker = ["system_profiler", "SPBluetoothDataType"], "State: On"
    elif system == "linux":
        command, marker = ["bluetoothctl", "show"], "Powered: yes"
    else:
        logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
        return True  # Assume it's working

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"⚠️ Could not check Bluetooth status on {system}: {e}")
        return True  # Assume it's working

    if marker in result.stdout:
        logger.info(f"✅ Bluetooth is enabled on {system}")
        return True
    logger.error(f"❌ Bluetooth appears to be disabled on {system}")
    return False


async def scan_for_devices(duration: float, prefix: str) -> List[Tuple[str, str]]:
    """Scan for nearby BLE devices and decode AIMNet advertisements.

    Returns:
        ``(address, name)`` of every AIMNet device found.
    """
    logger.info(f"📡 Scanning for BLE devices for {duration}s...")

    try:
        found = await BleakScanner.discover(timeout=duration, return_adv=True)
    except BleakError as e:
        logger.error(f"❌ Error during BLE scan: {e}")
        return []

    if not found:
        logger.error("❌ No BLE devices found")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Make sure your AIMNet sensor is powered on")
        logger.info("   - Check that the device is advertising")
        logger.info("   - Move closer to the device")
        return []

    logger.info(f"✅ Found {len(found)} BLE device(s):")

    aimnet_devices: List[Tuple[str, str]] = []
    for address, (device, adv) in found.items():
        device_name = adv.local_name or device.name or "Unknown"
        logger.info(f"   📱 {device_name} ({address}) RSSI: {adv.rssi}dBm")

        if not is_aimnet_device(device_name, prefix):
            continue
        aimnet_devices.append((address, device_name))
        logger.info("      🎯 AIMNet sensor found!")
        info = parse_bleak_manufacturer_data(adv.manufacturer_data)
        if info is None:
            logger.info("      ⚠️ No AIMNet identity in manufacturer data")
            continue
        logger.info(f"      🔢 Serial: {info.serial_hex}")
        if info.boot_reason is not None:
            logger.info(f"      🔁 Boot reason: {info.boot_reason}")
        if info.firmware_version:
            logger.info(f"      🧩 Firmware: {info.firmware_version}")

    if aimnet_devices:
        logger.info(f"\n🎯 Found {len(aimnet_devices)} AIMNet sensor(s)")
    else:
        logger.warning(f"\n⚠️ No devices with a name starting with '{prefix}' found")
    return aimnet_devices


async def read_text(client: BleakClient, uuid: str) -> Optional[str]:
    try:
        return codec.decode_utf8_string(await client.read_gatt_char(uuid))
    except BleakError as e:
        logger.warning(f"⚠️ Could not read {uuid}: {e}")
        return None


async def test_connection(address: str, frames: int = 3, timeout: float = 30.0) -> None:
    """Connect, list the sensor characteristics and print a few decoded frames."""
    logger.info(f"\n🔌 Testing connection to {address}...")

    try:
        async with BleakClient(address, timeout=20.0) as client:
            logger.info("✅ Connected")
            available = {
                normalize_uuid(char.uuid): char
                for service in client.services
                for char in service.characteristics
            }
            for uuid, label in ((SERIAL_NUMBER_CHAR, "Serial"), (FIRMWARE_REVISION_CHAR, "Firmware")):
                if uuid in available:
                    logger.info(f"   {label}: {await read_text(client, uuid)}")
            if BATTERY_LEVEL_CHAR in available:
                level = codec.decode_battery(await client.read_gatt_char(BATTERY_LEVEL_CHAR))
                logger.info(f"   🔋 Battery: {level}%")

            stream_uuid = next((u for u in (TELEMETRY_CHAR, GAS_CHAR) if u in available), None)
            if stream_uuid is None:
                logger.error("❌ No telemetry characteristic found")
                return

            received: "asyncio.Queue[bytes]" = asyncio.Queue()
            await client.start_notify(
                stream_uuid, lambda _, data: received.put_nowait(bytes(data))
            )
            logger.info("📊 Waiting for telemetry (sensors may still be warming up)...")
            try:
                for index in range(frames):
                    data = await asyncio.wait_for(received.get(), timeout=timeout)
                    if stream_uuid == GAS_CHAR:
                        logger.info(f"📈 Frame {index + 1}: raw={codec.decode_gas_raw(data)}")
                        continue
                    frame = codec.decode_frame(data)
                    if frame is None:
                        logger.warning(f"⚠️ Frame {index + 1} not decodable: {data!r}")
                    else:
                        logger.info(
                            f"📈 Frame {index + 1}: {frame.kind.value} primary={frame.primary}"
                            f" shape={frame.shape} channels={len(frame.channels)}"
                        )
                logger.info(f"✅ Successfully received {frames} frames")
            except asyncio.TimeoutError:
                logger.warning("⏱️ Timeout waiting for data")
            finally:
                await client.stop_notify(stream_uuid)
    except (BleakError, asyncio.TimeoutError, OSError) as e:
        logger.error(f"❌ Connection test failed: {e}")


async def main(args: argparse.Namespace) -> None:
    """Run BLE diagnostics."""
    logger.info("🔧 AIMNet Gas Sensor BLE Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error(
            "\n❌ Bluetooth issues detected. Please enable Bluetooth and try again."
        )
        return

    devices = await scan_for_devices(args.scan_time, args.name_prefix)

    address = args.address or (devices[0][0] if devices else None)
    if address and not args.scan_only:
        await test_connection(address, frames=args.frames)

    logger.info("\n🏁 Diagnostics complete")
    logger.info("\n💡 If you're still having connection issues:")
    logger.info("   1. Restart the sensor")
    logger.info("   2. Move closer to reduce interference")
    logger.info("   3. Check for other Bluetooth devices causing interference")
    logger.info("   4. Try the monitor with --log-level DEBUG for a full trace")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="AIMNet BLE diagnostics")
    parser.add_argument("--address", help="Device to test instead of the first one found")
    parser.add_argument("--name-prefix", default=DEVICE_NAME_PREFIX)
    parser.add_argument("--scan-time", type=float, default=15.0)
    parser.add_argument("--frames", type=int, default=3)
    parser.add_argument("--scan-only", action="store_true")
    try:
        asyncio.run(main(parser.parse_args()))
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")
    except Exception as e:
        logger.error(f"❌ Diagnostics error: {e}")
        sys.exit(1)
