"""
Bulk Flashing Engine - per-device FSM

Drives one device through a strictly forward sequence of states. Two branches
exist, chosen once per run:

OTA sideload:
    START → REBOOTED_TO_RECOVERY → WAITING_FOR_SIDELOAD → OTA_PUSHED → DONE

Factory image:
    START → REBOOTED_TO_BOOTLOADER → BOOTLOADER_UNLOCKED
          → FIRMWARE_PARTITIONS_FLASHED → UPDATE_PACKAGE_FLASHED
          → REBOOTED_TO_BOOTLOADER_POST_FLASH → KEY_PROVISIONED
          → BOOTLOADER_RELOCKED → REBOOTED → DONE

Key provisioning and re-locking only happen when the bundle carries an AVB
custom key. Any failing step moves the task to FAILED and nothing after it
runs; sibling device tasks are unaffected.

Critical rules:
- Every reboot-bootloader is followed by a fixed settle delay
- No state is revisited and no step is retried (confirmations aside)
"""

from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol
from dataclasses import dataclass, field
import time
import logging

from .flash_artifacts import ImageBundle, ProvisioningMode, list_partition_images
from .flash_confirm import ConfirmationController, VariablePoller
from ..tools import CommandResult, ConnectedDevice, ToolKind
from ...config import settings
from ...core.exceptions import CommandFailure, DeviceTaskError

logger = logging.getLogger(__name__)


class FlashState(Enum):
    """FSM states of a device task"""
    START = "start"
    REBOOTED_TO_BOOTLOADER = "rebooted_to_bootloader"
    REBOOTED_TO_RECOVERY = "rebooted_to_recovery"
    WAITING_FOR_SIDELOAD = "waiting_for_sideload"
    OTA_PUSHED = "ota_pushed"
    BOOTLOADER_UNLOCKED = "bootloader_unlocked"
    FIRMWARE_PARTITIONS_FLASHED = "firmware_partitions_flashed"
    UPDATE_PACKAGE_FLASHED = "update_package_flashed"
    REBOOTED_TO_BOOTLOADER_POST_FLASH = "rebooted_to_bootloader_post_flash"
    KEY_PROVISIONED = "key_provisioned"
    BOOTLOADER_RELOCKED = "bootloader_relocked"
    REBOOTED = "rebooted"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (FlashState.DONE, FlashState.FAILED)


@dataclass
class DeviceTaskState:
    """State owned by exactly one device task"""
    serial: str
    phase: FlashState = FlashState.START
    error: Optional[str] = None      # failing step name
    detail: Optional[str] = None     # failure message
    history: List[FlashState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.phase is FlashState.DONE

    @property
    def finished(self) -> bool:
        return self.phase in TERMINAL_STATES


class TransportProtocol(Protocol):
    """
    Per-device transport.

    Implementations must provide ADB and Fastboot commands bound to one
    serial, and a bootloader variable read that returns "" on failure.
    """

    serial: str

    def adb(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        ...

    def fastboot(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        ...

    def getvar(self, name: str, timeout: Optional[float] = 10) -> str:
        ...


class DeviceFlashEngine:
    """
    Flashing engine for one device.

    Usage:
        engine = DeviceFlashEngine(DeviceTransport(device.serial), bundle, device)
        state = engine.execute(ProvisioningMode.FACTORY_IMAGE)

        if state.success:
            print("Device flashed")
        else:
            print(f"Failed at {state.error}: {state.detail}")
    """

    def __init__(
        self,
        transport: TransportProtocol,
        bundle: ImageBundle,
        device: ConnectedDevice,
        confirmer: Optional[ConfirmationController] = None,
        sleep: Callable[[float], None] = time.sleep,
        settle_delay: Optional[float] = None,
        confirm_attempts: Optional[int] = None,
        confirm_interval: Optional[float] = None,
        partition_products: Optional[Iterable[str]] = None,
        relock_exempt_products: Optional[Iterable[str]] = None,
        on_transition: Optional[Callable[[DeviceTaskState], None]] = None,
    ):
        self.transport = transport
        self.bundle = bundle
        self.device = device
        self.sleep = sleep
        self.confirmer = confirmer or ConfirmationController(VariablePoller(transport), sleep=sleep)
        self.settle_delay = settings.SETTLE_DELAY_SEC if settle_delay is None else settle_delay
        self.confirm_attempts = settings.CONFIRM_MAX_ATTEMPTS if confirm_attempts is None else confirm_attempts
        self.confirm_interval = settings.CONFIRM_INTERVAL_SEC if confirm_interval is None else confirm_interval
        self.partition_products = set(
            settings.partition_image_products_list if partition_products is None else partition_products
        )
        self.relock_exempt_products = set(
            settings.relock_exempt_products_list if relock_exempt_products is None else relock_exempt_products
        )
        self.on_transition = on_transition

        self.state = DeviceTaskState(serial=device.serial)
        self._step = "start"

    @property
    def serial(self) -> str:
        return self.device.serial

    def _log(self, message: str, level: int = logging.INFO):
        logger.log(level, f"[{self.serial}] {message}", extra={"serial": self.serial, "step": self._step})

    def _transition(self, new_state: FlashState, message: str = ""):
        """Transition to new state and log"""
        old_state = self.state.phase
        self.state.phase = new_state
        self.state.history.append(new_state)
        self._log(f"[STATE: {old_state.value} → {new_state.value}] {message}".rstrip())
        if self.on_transition:
            self.on_transition(self.state)

    def _run(self, step: str, tool: ToolKind, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        """Run one command for ``step``; a failing exit status ends the task"""
        self._step = step
        if tool is ToolKind.ADB:
            result = self.transport.adb(args, timeout=timeout)
        else:
            result = self.transport.fastboot(args, timeout=timeout)
        if not result.success:
            raise CommandFailure(self.serial, step, result)
        return result

    def _reboot_bootloader(self, step: str):
        self._run(step, ToolKind.FASTBOOT, ["reboot-bootloader"], timeout=settings.COMMAND_TIMEOUT_SEC * 2)
        self.sleep(self.settle_delay)

    def execute(self, mode: ProvisioningMode) -> DeviceTaskState:
        """
        Execute the complete task for ``mode``.

        Never raises for device-level problems: the returned state is DONE or
        FAILED with the failing step name in ``error``.
        """
        self.state.history.append(FlashState.START)
        self._log(f"Starting {mode.value.replace('_', ' ')} provisioning")
        try:
            if mode is ProvisioningMode.OTA_SIDELOAD:
                self._run_ota_sideload()
            else:
                self._run_factory_image()
            self._transition(FlashState.DONE, "Device provisioned")
        except DeviceTaskError as e:
            self._fail(e.step, str(e))
        except Exception as e:
            logger.exception(f"[{self.serial}] Unexpected error during {self._step}")
            self._fail(self._step, str(e))
        return self.state

    def _fail(self, step: str, detail: str):
        self.state.error = step
        self.state.detail = detail
        self._step = step
        self._log(f"Failed at step '{step}': {detail}", logging.ERROR)
        self._transition(FlashState.FAILED, step)

    # OTA sideload branch

    def _run_ota_sideload(self):
        if self.device.tool is ToolKind.FASTBOOT:
            self._run("reboot to recovery", ToolKind.FASTBOOT, ["reboot", "recovery"])
        else:
            self._run("reboot to recovery", ToolKind.ADB, ["reboot", "recovery"])
        self._transition(FlashState.REBOOTED_TO_RECOVERY, "Rebooting to recovery")

        self._step = "wait for sideload"
        self._log(
            "ACTION REQUIRED: select 'Apply update from ADB' in the recovery menu",
            logging.WARNING,
        )
        self._run("wait for sideload", ToolKind.ADB, ["wait-for-sideload"], timeout=settings.FLASH_TIMEOUT_SEC)
        self._transition(FlashState.WAITING_FOR_SIDELOAD, "Device accepting sideload")

        self._log(f"Sideloading {self.bundle.ota_package.name}...")
        self._run(
            "ota sideload",
            ToolKind.ADB,
            ["sideload", str(self.bundle.ota_package)],
            timeout=settings.FLASH_TIMEOUT_SEC,
        )
        self._transition(FlashState.OTA_PUSHED, "OTA package pushed")

    # Factory image branch

    def _run_factory_image(self):
        self._enter_bootloader()
        self._unlock_bootloader()

        # Read at runtime: selects the firmware strategy and the relock exemption
        product = self.transport.getvar("product") or self.bundle.product
        self._flash_firmware(product)
        self._flash_update_package()

        self._reboot_bootloader("reboot to bootloader post flash")
        self._transition(FlashState.REBOOTED_TO_BOOTLOADER_POST_FLASH, "Back in bootloader")

        if self.bundle.sign_key is not None:
            self._provision_key()
            if product in self.relock_exempt_products:
                self._log(f"{product} must remain unlockable, not re-locking bootloader")
            else:
                self._relock_bootloader()
        else:
            self._log("No AVB custom key, leaving bootloader unlocked")

        self._log("Rebooting...")
        self._run("reboot", ToolKind.FASTBOOT, ["reboot"])
        self._transition(FlashState.REBOOTED, "Rebooting into the new OS")

    def _enter_bootloader(self):
        if self.device.tool is ToolKind.FASTBOOT:
            self._step = "reboot to bootloader"
            self._log("Device is already in fastboot mode")
        else:
            self._run("reboot to bootloader", ToolKind.ADB, ["reboot", "bootloader"], timeout=settings.COMMAND_TIMEOUT_SEC * 2)
            self.sleep(self.settle_delay)
        self._transition(FlashState.REBOOTED_TO_BOOTLOADER, "Device in bootloader fastboot mode")

    def _unlock_bootloader(self):
        self._step = "bootloader unlock"
        self._log("Unlocking bootloader...")
        self.confirmer.confirm(
            action=lambda: self.transport.fastboot(["flashing", "unlock"], timeout=settings.COMMAND_TIMEOUT_SEC),
            variable="unlocked",
            expected="yes",
            max_attempts=self.confirm_attempts,
            interval=self.confirm_interval,
            serial=self.serial,
            step="bootloader unlock",
        )
        self._transition(FlashState.BOOTLOADER_UNLOCKED, "Bootloader unlocked")

    def _flash_firmware(self, product: str):
        if product in self.partition_products:
            self._flash_partition_images()
        else:
            self._flash_bootloader_and_radio()
        self._transition(FlashState.FIRMWARE_PARTITIONS_FLASHED, "Stock firmware flashed")

    def _flash_bootloader_and_radio(self):
        for partition, image in (("bootloader", self.bundle.bootloader), ("radio", self.bundle.radio)):
            step = f"{partition} flash"
            if image is None:
                self._step = step
                raise DeviceTaskError(self.serial, step, f"no {partition} image in bundle")
            self._log(f"Flashing {partition}: {image.name}")
            self._run(step, ToolKind.FASTBOOT, ["--slot", "all", "flash", partition, str(image)],
                      timeout=settings.FLASH_TIMEOUT_SEC)
            self._reboot_bootloader(f"reboot after {partition} flash")

    def _flash_partition_images(self):
        step = "partition flash"
        self._step = step
        if self.bundle.partition_dir is None:
            raise DeviceTaskError(self.serial, step, "no partition image directory in bundle")

        images = list_partition_images(self.bundle.partition_dir)
        if not images:
            raise DeviceTaskError(self.serial, step, f"{self.bundle.partition_dir} is empty")

        for index, (partition, image) in enumerate(images, 1):
            self._log(f"Flashing {partition} ({index}/{len(images)}): {image.name}")
            self._run(step, ToolKind.FASTBOOT, ["--slot", "all", "flash", partition, str(image)],
                      timeout=settings.FLASH_TIMEOUT_SEC)

    def _flash_update_package(self):
        self._log(f"Flashing {self.bundle.update_package.name} and wiping userdata...")
        self._run(
            "update package flash",
            ToolKind.FASTBOOT,
            ["-w", "--skip-reboot", "update", str(self.bundle.update_package)],
            timeout=settings.FLASH_TIMEOUT_SEC,
        )
        self._transition(FlashState.UPDATE_PACKAGE_FLASHED, "Update package flashed, userdata wiped")

    def _provision_key(self):
        self._step = "key erase"
        result = self.transport.fastboot(["erase", "avb_custom_key"])
        if not result.success:
            # The key slot may simply be empty
            self._log(f"Could not erase avb_custom_key: {result.output.strip()}", logging.WARNING)

        self._run("key flash", ToolKind.FASTBOOT, ["flash", "avb_custom_key", str(self.bundle.sign_key)])
        self._transition(FlashState.KEY_PROVISIONED, "AVB custom key flashed")

    def _relock_bootloader(self):
        self._step = "bootloader relock"
        self._log("Locking bootloader...")
        self.confirmer.confirm(
            action=lambda: self.transport.fastboot(["flashing", "lock"], timeout=settings.COMMAND_TIMEOUT_SEC),
            variable="unlocked",
            expected="no",
            max_attempts=self.confirm_attempts,
            interval=self.confirm_interval,
            serial=self.serial,
            step="bootloader relock",
        )
        self._transition(FlashState.BOOTLOADER_RELOCKED, "Bootloader locked")


__all__ = [
    "FlashState",
    "DeviceTaskState",
    "TransportProtocol",
    "DeviceFlashEngine",
]
