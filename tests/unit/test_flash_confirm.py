"""Unit tests for the Variable Poller and Confirmation Controller."""

from unittest.mock import MagicMock

import pytest

from bulk_flasher.core.exceptions import ConfirmationTimeout
from bulk_flasher.utils.flashing.flash_confirm import ConfirmationController, VariablePoller


class ScriptedPoller:
    """Returns the scripted values in order, repeating the last one."""

    def __init__(self, values):
        self.values = list(values)
        self.calls = 0

    def __call__(self, name):
        self.calls += 1
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


@pytest.mark.unit
class TestVariablePoller:
    """Test VariablePoller against a mocked transport."""

    def test_poll_returns_normalized_value(self):
        transport = MagicMock()
        transport.getvar.return_value = " Yes "

        assert VariablePoller(transport).poll("unlocked") == "yes"
        transport.getvar.assert_called_once_with("unlocked")

    def test_poll_failure_returns_empty(self):
        transport = MagicMock()
        transport.getvar.return_value = ""

        assert VariablePoller(transport)("unlocked") == ""


@pytest.mark.unit
class TestConfirmationController:
    """Test the bounded confirmation loop with a fake poller and clock."""

    def test_already_matching_never_issues_action(self, sleeps):
        poller = ScriptedPoller(["yes"])
        action = MagicMock()
        controller = ConfirmationController(poller, sleep=sleeps)

        issued = controller.confirm(action, "unlocked", "yes", max_attempts=3, interval=30)

        assert issued == 0
        action.assert_not_called()
        assert sleeps.calls == []
        assert poller.calls == 1

    def test_match_on_third_poll(self, sleeps):
        poller = ScriptedPoller(["no", "no", "yes"])
        action = MagicMock()
        controller = ConfirmationController(poller, sleep=sleeps)

        issued = controller.confirm(action, "unlocked", "yes", max_attempts=3, interval=30)

        assert issued == 2
        assert action.call_count == 2
        assert sleeps.calls == [30, 30]
        assert poller.calls == 3

    @pytest.mark.parametrize("n", [1, 2, 3, 4])
    def test_match_on_nth_poll_issues_at_most_n_actions(self, sleeps, n):
        poller = ScriptedPoller(["no"] * (n - 1) + ["yes"])
        action = MagicMock()
        controller = ConfirmationController(poller, sleep=sleeps)

        controller.confirm(action, "unlocked", "yes", max_attempts=4, interval=1)

        assert poller.calls == n
        assert action.call_count <= n

    def test_never_matching_fails_after_exactly_max_polls(self, sleeps):
        poller = ScriptedPoller(["no"])
        action = MagicMock()
        controller = ConfirmationController(poller, sleep=sleeps)

        with pytest.raises(ConfirmationTimeout) as exc_info:
            controller.confirm(
                action, "unlocked", "yes", max_attempts=3, interval=30,
                serial="ABC", step="bootloader unlock",
            )

        assert poller.calls == 3
        assert action.call_count <= 3
        assert exc_info.value.serial == "ABC"
        assert exc_info.value.step == "bootloader unlock"
        assert exc_info.value.attempts == 3

    def test_empty_poll_counts_as_mismatch(self, sleeps):
        poller = ScriptedPoller(["", "yes"])
        action = MagicMock()

        issued = ConfirmationController(poller, sleep=sleeps).confirm(
            action, "unlocked", "yes", max_attempts=2, interval=5
        )

        assert issued == 1

    def test_failed_action_does_not_abort(self, sleeps):
        poller = ScriptedPoller(["yes", "yes", "no"])
        action = MagicMock(return_value=MagicMock(success=False, output="FAILED"))

        issued = ConfirmationController(poller, sleep=sleeps).confirm(
            action, "unlocked", "no", max_attempts=3, interval=5
        )

        assert issued == 2

    def test_invalid_budget(self, sleeps):
        controller = ConfirmationController(ScriptedPoller(["no"]), sleep=sleeps)

        with pytest.raises(ValueError):
            controller.confirm(MagicMock(), "unlocked", "yes", max_attempts=0, interval=1)
