"""
CLI Wrapper for the Bulk Flashing Engine

Usage:
    bulk-flasher                    # factory image mode, every attached device
    bulk-flasher --ota              # OTA sideload mode
    python -m bulk_flasher --images-dir ~/images --yes

Or import:
    from bulk_flasher.utils.flashing.flash_cli import flash_devices
    report = flash_devices(ProvisioningMode.FACTORY_IMAGE, assume_yes=True)
"""

import argparse
import sys
import logging
from pathlib import Path
from typing import List, Optional

from .flash_artifacts import ArtifactResolver, ImageBundle, ProvisioningMode
from .flash_engine import DeviceFlashEngine, DeviceTaskState
from .flash_fleet import FleetOrchestrator, FleetReport
from .flash_transport import DeviceTransport
from ..host_setup import ensure_udev_rules
from ..platform_tools import ensure_platform_tools
from ..tools import ConnectedDevice, get_devices, kill_adb_server
from ...config import settings
from ...core.exceptions import FlasherError, PrerequisiteMissing
from ...core.logging import get_log_file, setup_logging

logger = logging.getLogger(__name__)

PREPARATION_STEPS = [
    "Enable Developer Options on device (Settings -> About Phone -> tap \"Build number\" 7 times)",
    "Enable USB debugging on device (Settings -> System -> Advanced -> Developer Options) "
    "and allow the computer to debug (hit \"OK\" on the popup when USB is connected)",
    "Enable OEM Unlocking (in the same Developer Options menu)",
]


def transition_callback(state: DeviceTaskState):
    """Callback for per-device state changes"""
    print(f"[{state.serial}] {state.phase.value}")


def console_engine_factory(device: ConnectedDevice, bundle: ImageBundle) -> DeviceFlashEngine:
    return DeviceFlashEngine(DeviceTransport(device.serial), bundle, device, on_transition=transition_callback)


def select_devices(devices: List[ConnectedDevice]) -> List[ConnectedDevice]:
    usable = []
    for device in devices:
        if device.usable:
            usable.append(device)
        else:
            logger.warning(f"Skipping device {device.serial} in state '{device.state}'")
    return usable


def print_summary(report: FleetReport):
    print("-" * 60)
    for state in report.results:
        if state.success:
            print(f"✅ {state.serial}: done")
        else:
            print(f"❌ {state.serial}: failed at {state.error} ({state.detail})")
    print("-" * 60)
    print(f"Log written to {get_log_file()}")


def flash_devices(
    mode: ProvisioningMode,
    images_dir: Optional[Path] = None,
    extract_dir: Optional[Path] = None,
    assume_yes: bool = False,
) -> FleetReport:
    """
    Prepare the host and flash every attached device.

    Raises:
        FlasherError: a run-level prerequisite is missing
    """
    adb_path, fastboot_path = ensure_platform_tools()
    settings.ADB_PATH = adb_path
    settings.FASTBOOT_PATH = fastboot_path

    ensure_udev_rules()
    kill_adb_server()

    if not assume_yes:
        print("Do the following for each device:")
        for step in PREPARATION_STEPS:
            print(step)
        input("When done, press enter to continue")

    devices = select_devices(get_devices())
    if not devices:
        raise PrerequisiteMissing("No device connected")

    orchestrator = FleetOrchestrator(
        ArtifactResolver(images_dir=images_dir, extract_dir=extract_dir),
        engine_factory=console_engine_factory,
    )
    return orchestrator.run(devices, mode)


def main(argv: Optional[List[str]] = None):
    """CLI entry point"""
    parser = argparse.ArgumentParser(
        description="Flash a custom OS onto every Android device attached over USB",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Unlock, flash factory firmware and the OS image, wipe, re-lock if a key is present
  bulk-flasher --images-dir ~/images

  # Sideload an OTA package onto every device
  bulk-flasher --ota --images-dir ~/images
        """,
    )

    parser.add_argument(
        "--ota",
        action="store_true",
        help="Sideload an OTA package instead of flashing a factory image",
    )
    parser.add_argument(
        "--images-dir",
        type=Path,
        help=f"Directory holding images and keys (default: {settings.IMAGES_DIR})",
    )
    parser.add_argument(
        "--extract-dir",
        type=Path,
        help=f"Directory factory images are extracted into (default: {settings.EXTRACT_DIR})",
    )
    parser.add_argument(
        "--adb-path",
        help=f"Path to adb binary (default: {settings.ADB_PATH})",
    )
    parser.add_argument(
        "--fastboot-path",
        help=f"Path to fastboot binary (default: {settings.FASTBOOT_PATH})",
    )
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Do not wait for confirmation that devices are prepared",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    if args.adb_path:
        settings.ADB_PATH = args.adb_path
    if args.fastboot_path:
        settings.FASTBOOT_PATH = args.fastboot_path

    setup_logging(verbose=args.verbose)
    mode = ProvisioningMode.OTA_SIDELOAD if args.ota else ProvisioningMode.FACTORY_IMAGE

    try:
        report = flash_devices(
            mode,
            images_dir=args.images_dir,
            extract_dir=args.extract_dir,
            assume_yes=args.yes,
        )
    except FlasherError as e:
        logger.error(f"{e}. Exiting...")
        sys.exit(1)

    print_summary(report)
    sys.exit(0 if report.all_succeeded else 1)


if __name__ == "__main__":
    main()
