"""
Physically-confirmed bootloader transitions

Unlocking or re-locking a bootloader needs the user to press keys on the
device itself. The controller here re-issues the request at a fixed interval
and polls a bootloader variable until it reports the expected value, giving
up after a bounded number of polls.
"""

import time
import logging
from typing import Any, Callable

from ...core.exceptions import ConfirmationTimeout

logger = logging.getLogger(__name__)


class VariablePoller:
    """Reads one bootloader variable per call; no retry of its own"""

    def __init__(self, transport: Any):
        self.transport = transport

    def __call__(self, name: str) -> str:
        return self.poll(name)

    def poll(self, name: str) -> str:
        value = self.transport.getvar(name)
        return (value or "").strip().lower()


class ConfirmationController:
    """
    Retry combinator for confirmed transitions.

    Usage:
        controller = ConfirmationController(VariablePoller(transport))
        controller.confirm(
            action=lambda: transport.fastboot(["flashing", "unlock"]),
            variable="unlocked",
            expected="yes",
            max_attempts=3,
            interval=30,
        )
    """

    def __init__(self, poll: Callable[[str], str], sleep: Callable[[float], None] = time.sleep):
        self.poll = poll
        self.sleep = sleep

    def confirm(
        self,
        action: Callable[[], Any],
        variable: str,
        expected: str,
        max_attempts: int,
        interval: float,
        serial: str = "",
        step: str = "confirmation",
    ) -> int:
        """
        Drive ``variable`` to ``expected``.

        Polls at most ``max_attempts`` times. Between two polls the action is
        issued once and the controller sleeps ``interval`` seconds. If the
        first poll already matches, the action is never issued.

        Returns:
            Number of times the action was issued

        Raises:
            ConfirmationTimeout: the variable never matched
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        expected = expected.lower()
        issued = 0

        for attempt in range(1, max_attempts + 1):
            value = self.poll(variable)
            if value == expected:
                if issued:
                    logger.info(f"[{serial}] {step} confirmed ({variable}={value}) after {issued} request(s)")
                else:
                    logger.info(f"[{serial}] {variable} is already '{expected}', skipping {step}")
                return issued

            logger.debug(f"[{serial}] {variable}='{value}' (poll {attempt}/{max_attempts})")
            if attempt == max_attempts:
                break

            logger.warning(
                f"[{serial}] ACTION REQUIRED: use the volume and power keys on the device to confirm {step}"
            )
            result = action()
            issued += 1
            if result is not None and not getattr(result, "success", True):
                # The request may return once the prompt is dismissed; the poll decides
                logger.debug(f"[{serial}] {step} request returned: {getattr(result, 'output', '').strip()}")
            self.sleep(interval)

        logger.error(f"[{serial}] {step} not confirmed after {max_attempts} poll(s)")
        raise ConfirmationTimeout(serial, step, variable, expected, max_attempts)


__all__ = ["VariablePoller", "ConfirmationController"]
