"""Linux host setup: udev rules so USB devices are reachable without root"""

import sys
import logging
import subprocess
import tempfile
from pathlib import Path

from ..config import settings
from ..core.exceptions import FlasherError, PrerequisiteMissing
from .platform_tools import download_file

logger = logging.getLogger(__name__)


def _sudo(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["sudo", *args], capture_output=True, text=True, check=False)


def ensure_udev_rules() -> bool:
    """
    Install Android udev rules when the rules directory does not exist.

    Returns:
        True if rules were installed, False if nothing was needed

    Raises:
        PrerequisiteMissing: the rules could not be installed
    """
    if not sys.platform.startswith("linux"):
        return False

    rules_dir = Path(settings.UDEV_RULES_DIR)
    if rules_dir.exists():
        return False

    logger.info(f"{rules_dir} missing, installing Android udev rules")
    result = _sudo("mkdir", "-p", str(rules_dir))
    if result.returncode != 0:
        raise PrerequisiteMissing(f"Cannot continue without udev rules: {result.stderr.strip()}")

    with tempfile.TemporaryDirectory() as tmp:
        rules_file = Path(tmp) / Path(settings.UDEV_RULES_URL).name
        try:
            download_file(settings.UDEV_RULES_URL, rules_file)
        except FlasherError as e:
            raise PrerequisiteMissing(f"Cannot continue without udev rules: {e}") from e

        result = _sudo("cp", str(rules_file), str(rules_dir))
        if result.returncode != 0:
            raise PrerequisiteMissing(f"Cannot continue without udev rules: {result.stderr.strip()}")

    for args in (("udevadm", "control", "--reload-rules"), ("udevadm", "trigger")):
        result = _sudo(*args)
        if result.returncode != 0:
            logger.warning(f"{' '.join(args)} failed: {result.stderr.strip()}")
    return True
