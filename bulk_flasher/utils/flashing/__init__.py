from .flash_artifacts import ArtifactResolver, ImageBundle, ProvisioningMode
from .flash_confirm import ConfirmationController, VariablePoller
from .flash_engine import DeviceFlashEngine, DeviceTaskState, FlashState
from .flash_fleet import FleetOrchestrator, FleetReport
from .flash_transport import DeviceTransport

__all__ = [
    "ArtifactResolver",
    "ImageBundle",
    "ProvisioningMode",
    "ConfirmationController",
    "VariablePoller",
    "DeviceFlashEngine",
    "DeviceTaskState",
    "FlashState",
    "FleetOrchestrator",
    "FleetReport",
    "DeviceTransport",
]
