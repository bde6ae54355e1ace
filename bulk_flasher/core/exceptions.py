"""Flashing error taxonomy

Run-level errors (``PrerequisiteMissing``, ``PlatformToolsError``) stop the
whole batch before any device task starts. Per-device errors
(``CommandFailure``, ``ConfirmationTimeout``) end only the task that raised
them.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from bulk_flasher.utils.tools import CommandResult


class FlasherError(Exception):
    """Base class for all flasher errors"""


class PrerequisiteMissing(FlasherError):
    """A required artifact or the device model could not be found"""


class PlatformToolsError(FlasherError):
    """adb/fastboot are unavailable and could not be installed"""


class DeviceTaskError(FlasherError):
    """Error terminal for a single device's task"""

    def __init__(self, serial: str, step: str, message: str):
        self.serial = serial
        self.step = step
        super().__init__(f"[{serial}] {step}: {message}")


class CommandFailure(DeviceTaskError):
    """A device tool invocation exited with failure during a task step"""

    def __init__(self, serial: str, step: str, result: Optional["CommandResult"] = None):
        self.result = result
        if result is None:
            message = "command failed"
        else:
            message = f"exit {result.returncode}: {result.output.strip() or 'no output'}"
        super().__init__(serial, step, message)


class ConfirmationTimeout(DeviceTaskError):
    """A physically-confirmed transition was not observed within its retry budget"""

    def __init__(self, serial: str, step: str, variable: str, expected: str, attempts: int):
        self.variable = variable
        self.expected = expected
        self.attempts = attempts
        super().__init__(
            serial,
            step,
            f"'{variable}' did not become '{expected}' after {attempts} poll(s)",
        )


__all__ = [
    "FlasherError",
    "PrerequisiteMissing",
    "PlatformToolsError",
    "DeviceTaskError",
    "CommandFailure",
    "ConfirmationTimeout",
]
