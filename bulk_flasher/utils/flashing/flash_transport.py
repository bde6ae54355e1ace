"""
Transport Implementation for the Flashing Engine

This module provides the per-device transport used by the flashing engine.
It uses subprocess (via ``utils.tools``) to execute ADB and Fastboot commands
against one device serial.

Each call builds a fresh ``ToolInvocation``; the transport holds no mutable
command state, so one instance per device task is safe under concurrency.
"""

import logging
from typing import List, Optional

from ..tools import CommandResult, ToolKind, build_invocation, parse_getvar, run_tool
from ...config import settings

logger = logging.getLogger(__name__)


class DeviceTransport:
    """
    Subprocess transport bound to a single device serial.

    Tool paths are resolved once at construction so that a later change to
    the global settings cannot retarget a running task.
    """

    def __init__(
        self,
        serial: str,
        adb_path: Optional[str] = None,
        fastboot_path: Optional[str] = None,
    ):
        self.serial = serial
        self.adb_path = adb_path or settings.ADB_PATH
        self.fastboot_path = fastboot_path or settings.FASTBOOT_PATH

    def adb(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        """Execute ADB command against this device"""
        invocation = build_invocation(ToolKind.ADB, args, serial=self.serial, binary=self.adb_path)
        return run_tool(invocation, timeout=timeout)

    def fastboot(self, args: List[str], timeout: Optional[float] = None) -> CommandResult:
        """Execute Fastboot command against this device"""
        invocation = build_invocation(ToolKind.FASTBOOT, args, serial=self.serial, binary=self.fastboot_path)
        return run_tool(invocation, timeout=timeout)

    def getvar(self, name: str, timeout: Optional[float] = 10) -> str:
        """
        Read a bootloader variable.

        Returns the value, or an empty string when the query fails or the
        variable is not reported.
        """
        result = self.fastboot(["getvar", name], timeout=timeout)
        if not result.success:
            logger.debug(f"[{self.serial}] getvar {name} failed: {result.output.strip()}")
            return ""
        return parse_getvar(result.output, name)


__all__ = ["DeviceTransport"]
