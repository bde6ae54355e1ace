"""
Fleet Orchestrator

Resolves the shared image bundle once, then fans out one device task per
serial on a thread pool and waits for all of them. A failing device never
stops its siblings; the run only aborts early when a prerequisite is missing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from .flash_artifacts import ArtifactResolver, ImageBundle, ProvisioningMode
from .flash_engine import DeviceFlashEngine, DeviceTaskState, FlashState
from .flash_transport import DeviceTransport
from ..tools import ConnectedDevice, identify_device
from ...config import settings
from ...core.exceptions import PrerequisiteMissing

logger = logging.getLogger(__name__)

EngineFactory = Callable[[ConnectedDevice, ImageBundle], DeviceFlashEngine]


def default_engine_factory(device: ConnectedDevice, bundle: ImageBundle) -> DeviceFlashEngine:
    return DeviceFlashEngine(DeviceTransport(device.serial), bundle, device)


@dataclass
class FleetReport:
    """Aggregate outcome of one batch"""
    product: str
    mode: ProvisioningMode
    results: List[DeviceTaskState] = field(default_factory=list)

    @property
    def succeeded(self) -> List[DeviceTaskState]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> List[DeviceTaskState]:
        return [r for r in self.results if not r.success]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.results) and not self.failed


class FleetOrchestrator:
    """
    Runs one device task per connected device.

    Usage:
        orchestrator = FleetOrchestrator(ArtifactResolver())
        report = orchestrator.run(get_devices(), ProvisioningMode.FACTORY_IMAGE)
    """

    def __init__(
        self,
        resolver: Optional[ArtifactResolver] = None,
        engine_factory: EngineFactory = default_engine_factory,
        max_workers: Optional[int] = None,
        identify: Callable[[ConnectedDevice], str] = identify_device,
    ):
        self.resolver = resolver or ArtifactResolver()
        self.engine_factory = engine_factory
        self.max_workers = settings.MAX_WORKERS if max_workers is None else max_workers
        self.identify = identify

    def _resolve_bundle(self, devices: Sequence[ConnectedDevice], mode: ProvisioningMode) -> ImageBundle:
        product = self.identify(devices[0])
        if not product:
            raise PrerequisiteMissing("Cannot determine device model")
        logger.info(f"Device model: {product}")
        return self.resolver.resolve(product, mode)

    def _run_device(self, device: ConnectedDevice, bundle: ImageBundle, mode: ProvisioningMode) -> DeviceTaskState:
        engine = self.engine_factory(device, bundle)
        return engine.execute(mode)

    def run(
        self,
        devices: Sequence[ConnectedDevice],
        mode: ProvisioningMode,
        bundle: Optional[ImageBundle] = None,
    ) -> FleetReport:
        """
        Flash every device in ``devices``.

        Raises:
            PrerequisiteMissing: no devices, unknown model or missing artifacts
        """
        unique: List[ConnectedDevice] = []
        seen = set()
        for device in devices:
            if device.serial in seen:
                logger.warning(f"Device {device.serial} listed twice, flashing it once")
                continue
            seen.add(device.serial)
            unique.append(device)

        if not unique:
            raise PrerequisiteMissing("No device connected")

        if bundle is None:
            bundle = self._resolve_bundle(unique, mode)
        if bundle.mode is not mode:
            raise PrerequisiteMissing(f"Image bundle for {bundle.product} does not support {mode.value}")

        workers = self.max_workers if self.max_workers > 0 else len(unique)
        logger.info(f"Flashing {len(unique)} device(s) with {workers} worker(s)")

        report = FleetReport(product=bundle.product, mode=mode)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flash") as executor:
            futures = [
                (device, executor.submit(self._run_device, device, bundle, mode))
                for device in unique
            ]

            wait([future for _, future in futures])

            for device, future in futures:
                try:
                    state = future.result()
                except Exception as e:
                    logger.exception(f"[{device.serial}] Device task crashed")
                    state = DeviceTaskState(
                        serial=device.serial,
                        phase=FlashState.FAILED,
                        error="task",
                        detail=str(e),
                        history=[FlashState.FAILED],
                    )
                report.results.append(state)

        for state in report.failed:
            logger.error(
                f"[{state.serial}] Failed at step '{state.error}': {state.detail}",
                extra={"serial": state.serial, "step": state.error},
            )
        logger.info(
            f"Bulk flashing complete: {len(report.succeeded)} succeeded, {len(report.failed)} failed"
        )
        return report


__all__ = ["FleetOrchestrator", "FleetReport", "default_engine_factory"]
