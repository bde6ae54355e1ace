import subprocess
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from ..config import settings

logger = logging.getLogger(__name__)

USABLE_STATES = ("device", "fastboot", "recovery", "sideload")


class ToolKind(Enum):
    """Which device-management tool an invocation targets"""
    ADB = "adb"
    FASTBOOT = "fastboot"


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one device tool invocation"""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        # fastboot writes most of its output to stderr
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(frozen=True)
class ToolInvocation:
    """
    One device tool call.

    Immutable: the argument vector is rebuilt on every ``argv()`` call, so
    concurrent device tasks never share a mutable command.
    """
    tool: ToolKind
    binary: str
    args: Tuple[str, ...]
    serial: Optional[str] = None

    def argv(self) -> List[str]:
        cmd = [self.binary]
        if self.serial:
            cmd.extend(["-s", self.serial])
        cmd.extend(self.args)
        return cmd

    def __str__(self) -> str:
        return " ".join(self.argv())


@dataclass(frozen=True)
class ConnectedDevice:
    """A device serial as reported by one of the tools at enumeration time"""
    serial: str
    state: str
    tool: ToolKind = field(compare=False)

    @property
    def usable(self) -> bool:
        return self.state in USABLE_STATES


def build_invocation(
    tool: ToolKind,
    args: Sequence[str],
    serial: Optional[str] = None,
    binary: Optional[str] = None,
) -> ToolInvocation:
    if binary is None:
        binary = settings.ADB_PATH if tool is ToolKind.ADB else settings.FASTBOOT_PATH
    return ToolInvocation(tool=tool, binary=binary, args=tuple(args), serial=serial)


def run_tool(invocation: ToolInvocation, timeout: Optional[float] = None) -> CommandResult:
    """Run one device tool invocation synchronously and capture its output"""
    if timeout is None:
        timeout = settings.COMMAND_TIMEOUT_SEC
    cmd = invocation.argv()
    logger.debug(f"Executing {invocation.tool.value}: {' '.join(cmd)}")

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        return CommandResult(
            returncode=-1,
            stderr=f"Command timed out after {timeout} seconds (device may be rebooting or unresponsive)",
        )
    except FileNotFoundError:
        logger.error(f"{invocation.tool.value} not found at path: {invocation.binary}")
        return CommandResult(returncode=127, stderr=f"{invocation.binary}: not found")
    except PermissionError:
        logger.error(
            f"Permission denied running {invocation.tool.value}: {invocation.binary}. "
            "May need USB permissions or sudo."
        )
        return CommandResult(returncode=126, stderr=f"{invocation.binary}: permission denied")

    if result.returncode != 0:
        logger.debug(f"{' '.join(cmd)} exited {result.returncode}: {(result.stderr or result.stdout)[:200]}")

    return CommandResult(
        returncode=result.returncode,
        stdout=result.stdout or "",
        stderr=result.stderr or "",
    )


def run_adb_command(args: Sequence[str], serial: Optional[str] = None, timeout: Optional[float] = None) -> CommandResult:
    """Run an ADB command with timeout handling"""
    return run_tool(build_invocation(ToolKind.ADB, args, serial), timeout=timeout)


def run_fastboot_command(args: Sequence[str], serial: Optional[str] = None, timeout: Optional[float] = None) -> CommandResult:
    """Run a Fastboot command with timeout handling"""
    return run_tool(build_invocation(ToolKind.FASTBOOT, args, serial), timeout=timeout)


def parse_device_list(output: str, tool: ToolKind) -> List[ConnectedDevice]:
    """
    Parse ``adb devices`` / ``fastboot devices`` output.

    Both print one ``SERIAL<tab>STATE`` line per device; adb adds a
    "List of devices attached" header and daemon start-up chatter.
    """
    devices = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        serial, state = parts[0], parts[1]
        devices.append(ConnectedDevice(serial=serial, state=state, tool=tool))
    return devices


def get_devices() -> List[ConnectedDevice]:
    """Snapshot of connected devices, adb first, then fastboot"""
    devices: List[ConnectedDevice] = []
    seen = set()

    for tool in (ToolKind.ADB, ToolKind.FASTBOOT):
        result = run_tool(build_invocation(tool, ["devices"]), timeout=15)
        if not result.success:
            logger.debug(f"{tool.value} devices failed: {result.output.strip()}")
            continue
        for device in parse_device_list(result.stdout or result.stderr, tool):
            if device.serial in seen:
                logger.debug(f"Device {device.serial} already listed, skipping {tool.value} entry")
                continue
            seen.add(device.serial)
            devices.append(device)

    logger.info(f"Found {len(devices)} device(s): {[d.serial for d in devices]}")
    return devices


def parse_getvar(output: str, name: str) -> str:
    """Extract ``name: value`` from fastboot getvar output"""
    prefix = f"{name.lower()}:"
    for line in output.splitlines():
        line = line.strip()
        if line.lower().startswith(prefix):
            return line[len(prefix):].strip()
    return ""


def get_var(serial: str, name: str, timeout: float = 10) -> str:
    """Read a bootloader variable; empty string if unavailable"""
    result = run_fastboot_command(["getvar", name], serial=serial, timeout=timeout)
    if not result.success:
        return ""
    return parse_getvar(result.output, name)


def get_prop(serial: str, prop: str, timeout: float = 10) -> str:
    """Read an Android system property; empty string if unavailable"""
    result = run_adb_command(["shell", "getprop", prop], serial=serial, timeout=timeout)
    if not result.success:
        return ""
    return result.stdout.strip().strip("[]\r\n")


def identify_device(device: ConnectedDevice) -> str:
    """Identify device codename - works in both ADB and Fastboot mode"""
    if device.tool is ToolKind.ADB:
        codename = get_prop(device.serial, "ro.product.device")
        if codename:
            return codename
    return get_var(device.serial, "product")


def kill_adb_server() -> None:
    result = run_adb_command(["kill-server"], timeout=10)
    if not result.success:
        logger.warning(f"Failed to stop adb server: {result.output.strip()}")
