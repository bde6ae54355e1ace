"""Shared fixtures: scripted device transport and recorded sleeps."""

import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import pytest

from bulk_flasher.utils.flashing.flash_artifacts import ImageBundle
from bulk_flasher.utils.tools import CommandResult, ConnectedDevice, ToolKind


class FakeTransport:
    """
    Records every command and answers from a script.

    ``failures`` holds (tool, args prefix) pairs that exit 1.
    ``variables`` maps a getvar name to a value or a list of values consumed
    one per call (the last one sticks).
    """

    def __init__(
        self,
        serial: str,
        variables: Optional[Dict[str, Union[str, List[str]]]] = None,
        failures: Sequence[Tuple[str, Tuple[str, ...]]] = (),
    ):
        self.serial = serial
        self.variables = {"unlocked": "yes", "product": "sargo"}
        self.variables.update(variables or {})
        self.failures = list(failures)
        self.calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.getvars: List[str] = []
        self._lock = threading.Lock()

    def _record(self, tool: str, args: Sequence[str]) -> CommandResult:
        args = tuple(args)
        with self._lock:
            self.calls.append((tool, args))
        for fail_tool, prefix in self.failures:
            if fail_tool == tool and args[:len(prefix)] == prefix:
                return CommandResult(returncode=1, stderr="FAILED (remote: 'injected')")
        return CommandResult(returncode=0, stdout="OKAY")

    def adb(self, args, timeout=None) -> CommandResult:
        return self._record("adb", args)

    def fastboot(self, args, timeout=None) -> CommandResult:
        return self._record("fastboot", args)

    def getvar(self, name, timeout=10) -> str:
        self.getvars.append(name)
        value = self.variables.get(name, "")
        if isinstance(value, list):
            if len(value) > 1:
                return value.pop(0)
            return value[0] if value else ""
        return value

    def commands(self, tool: Optional[str] = None) -> List[Tuple[str, ...]]:
        return [args for t, args in self.calls if tool is None or t == tool]

    def ran(self, *prefix: str) -> bool:
        return any(args[:len(prefix)] == prefix for _, args in self.calls)


class SleepRecorder:
    """Stands in for time.sleep"""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float):
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def adb_device():
    return ConnectedDevice(serial="SERIAL-A", state="device", tool=ToolKind.ADB)


@pytest.fixture
def fastboot_device():
    return ConnectedDevice(serial="SERIAL-F", state="fastboot", tool=ToolKind.FASTBOOT)


@pytest.fixture
def partition_dir(tmp_path: Path) -> Path:
    images = tmp_path / "factory" / "images"
    images.mkdir(parents=True)
    for name in ("abl.img", "modem.img", "xbl.elf"):
        (images / name).write_bytes(b"\x00")
    return images


@pytest.fixture
def factory_bundle(tmp_path: Path, partition_dir: Path) -> ImageBundle:
    bootloader = tmp_path / "bootloader-sargo.img"
    radio = tmp_path / "radio-sargo.img"
    update = tmp_path / "altos-sargo-img-1.zip"
    for path in (bootloader, radio, update):
        path.write_bytes(b"\x00")
    return ImageBundle(
        product="sargo",
        update_package=update,
        bootloader=bootloader,
        radio=radio,
        partition_dir=partition_dir,
    )


@pytest.fixture
def signed_bundle(factory_bundle: ImageBundle, tmp_path: Path) -> ImageBundle:
    key = tmp_path / "avb_pkmd.bin"
    key.write_bytes(b"\x00")
    return ImageBundle(
        product=factory_bundle.product,
        update_package=factory_bundle.update_package,
        bootloader=factory_bundle.bootloader,
        radio=factory_bundle.radio,
        partition_dir=factory_bundle.partition_dir,
        sign_key=key,
    )


@pytest.fixture
def ota_bundle(tmp_path: Path) -> ImageBundle:
    ota = tmp_path / "altos-sargo-ota-1.zip"
    ota.write_bytes(b"\x00")
    return ImageBundle(product="sargo", ota_package=ota)
