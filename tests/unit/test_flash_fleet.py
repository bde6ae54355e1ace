"""Unit tests for FleetOrchestrator."""

import threading
from unittest.mock import MagicMock

import pytest

from bulk_flasher.core.exceptions import PrerequisiteMissing
from bulk_flasher.utils.flashing.flash_artifacts import ProvisioningMode
from bulk_flasher.utils.flashing.flash_engine import DeviceFlashEngine, FlashState
from bulk_flasher.utils.flashing.flash_fleet import FleetOrchestrator
from bulk_flasher.utils.tools import ConnectedDevice, ToolKind

from tests.conftest import FakeTransport, SleepRecorder


def device(serial, tool=ToolKind.ADB):
    return ConnectedDevice(serial=serial, state="device" if tool is ToolKind.ADB else "fastboot", tool=tool)


class EngineFactory:
    """Builds engines over fake transports and keeps them for inspection."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.transports = {}
        self.lock = threading.Lock()

    def __call__(self, dev, bundle):
        transport = FakeTransport(dev.serial, failures=self.failures.get(dev.serial, ()))
        with self.lock:
            self.transports[dev.serial] = transport
        return DeviceFlashEngine(
            transport, bundle, dev,
            sleep=SleepRecorder(),
            settle_delay=0,
            confirm_interval=0,
            partition_products=[],
            relock_exempt_products=[],
        )


@pytest.fixture
def resolver(factory_bundle, ota_bundle):
    mock = MagicMock()
    mock.resolve.side_effect = lambda product, mode: (
        ota_bundle if mode is ProvisioningMode.OTA_SIDELOAD else factory_bundle
    )
    return mock


@pytest.mark.unit
class TestFleetOrchestrator:
    """Test fan-out, isolation and run-level prerequisites."""

    def test_two_devices_one_radio_failure(self, resolver):
        factory = EngineFactory(failures={"A": [("fastboot", ("--slot", "all", "flash", "radio"))]})
        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        report = orchestrator.run([device("A"), device("B")], ProvisioningMode.FACTORY_IMAGE)

        results = {r.serial: r for r in report.results}
        assert results["A"].phase is FlashState.FAILED
        assert results["A"].error == "radio flash"
        assert results["B"].phase is FlashState.DONE
        assert FlashState.KEY_PROVISIONED not in results["B"].history
        assert FlashState.BOOTLOADER_RELOCKED not in results["B"].history
        assert [r.serial for r in report.failed] == ["A"]
        assert not report.all_succeeded

    def test_bundle_resolved_once_from_first_device(self, resolver):
        identify = MagicMock(return_value="sargo")
        orchestrator = FleetOrchestrator(resolver, engine_factory=EngineFactory(), identify=identify)

        report = orchestrator.run([device("A"), device("B"), device("C")], ProvisioningMode.FACTORY_IMAGE)

        identify.assert_called_once()
        assert identify.call_args[0][0].serial == "A"
        resolver.resolve.assert_called_once_with("sargo", ProvisioningMode.FACTORY_IMAGE)
        assert report.all_succeeded
        assert report.product == "sargo"

    def test_every_serial_gets_its_own_task(self, resolver):
        factory = EngineFactory()
        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        orchestrator.run([device("A"), device("B"), device("A")], ProvisioningMode.FACTORY_IMAGE)

        assert sorted(factory.transports) == ["A", "B"]
        for serial, transport in factory.transports.items():
            assert transport.serial == serial
            assert transport.ran("reboot", "bootloader")

    def test_ota_mode(self, resolver):
        factory = EngineFactory()
        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        report = orchestrator.run([device("A")], ProvisioningMode.OTA_SIDELOAD)

        assert report.all_succeeded
        assert report.results[0].history == [
            FlashState.START,
            FlashState.REBOOTED_TO_RECOVERY,
            FlashState.WAITING_FOR_SIDELOAD,
            FlashState.OTA_PUSHED,
            FlashState.DONE,
        ]
        assert not factory.transports["A"].ran("flashing", "unlock")

    def test_unknown_model_is_fatal(self, resolver):
        factory = EngineFactory()
        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "")

        with pytest.raises(PrerequisiteMissing):
            orchestrator.run([device("A")], ProvisioningMode.FACTORY_IMAGE)

        assert factory.transports == {}
        resolver.resolve.assert_not_called()

    def test_missing_artifacts_fatal_before_any_task(self):
        resolver = MagicMock()
        resolver.resolve.side_effect = PrerequisiteMissing("Cannot continue without the sargo device image")
        factory = EngineFactory()
        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        with pytest.raises(PrerequisiteMissing):
            orchestrator.run([device("A"), device("B")], ProvisioningMode.FACTORY_IMAGE)

        assert factory.transports == {}

    def test_no_devices(self, resolver):
        orchestrator = FleetOrchestrator(resolver, engine_factory=EngineFactory(), identify=lambda d: "sargo")

        with pytest.raises(PrerequisiteMissing):
            orchestrator.run([], ProvisioningMode.FACTORY_IMAGE)

    def test_prepared_bundle_skips_resolution(self, resolver, factory_bundle):
        identify = MagicMock()
        orchestrator = FleetOrchestrator(resolver, engine_factory=EngineFactory(), identify=identify)

        report = orchestrator.run([device("A")], ProvisioningMode.FACTORY_IMAGE, bundle=factory_bundle)

        assert report.all_succeeded
        identify.assert_not_called()
        resolver.resolve.assert_not_called()

    def test_bundle_mode_mismatch(self, resolver, ota_bundle):
        orchestrator = FleetOrchestrator(resolver, engine_factory=EngineFactory(), identify=lambda d: "sargo")

        with pytest.raises(PrerequisiteMissing):
            orchestrator.run([device("A")], ProvisioningMode.FACTORY_IMAGE, bundle=ota_bundle)

    def test_crashing_task_is_isolated(self, resolver):
        good = EngineFactory()

        def factory(dev, bundle):
            if dev.serial == "A":
                raise RuntimeError("engine construction failed")
            return good(dev, bundle)

        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        report = orchestrator.run([device("A"), device("B")], ProvisioningMode.FACTORY_IMAGE)

        results = {r.serial: r for r in report.results}
        assert results["A"].phase is FlashState.FAILED
        assert "engine construction failed" in results["A"].detail
        assert results["B"].success

    def test_tasks_run_concurrently(self, resolver):
        barrier = threading.Barrier(3, timeout=5)
        inner = EngineFactory()

        def factory(dev, bundle):
            # Each task waits for the others: only passes if all three run at once
            barrier.wait()
            return inner(dev, bundle)

        orchestrator = FleetOrchestrator(resolver, engine_factory=factory, identify=lambda d: "sargo")

        report = orchestrator.run([device("A"), device("B"), device("C")], ProvisioningMode.FACTORY_IMAGE)

        assert report.all_succeeded
        assert len(report.results) == 3
