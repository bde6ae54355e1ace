"""Android platform tools discovery and installation"""

import os
import shutil
import sys
import zipfile
import tempfile
import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

import httpx

from ..config import settings
from ..core.exceptions import PlatformToolsError
from .tools import ToolKind, build_invocation, run_tool

logger = logging.getLogger(__name__)

VERSION_ARGS = {
    ToolKind.ADB: ["version"],
    ToolKind.FASTBOOT: ["--version"],
}


def format_bytes(size: int) -> str:
    """Human-readable decimal size, e.g. ``1.5 MB``"""
    if size < 10:
        return f"{size} B"
    value = float(size)
    for suffix in ("B", "kB", "MB", "GB", "TB", "PB"):
        if value < 1000 or suffix == "PB":
            break
        value /= 1000
    return f"{value:.1f} {suffix}" if value < 10 else f"{value:.0f} {suffix}"


def check_tool_availability(tool: ToolKind, binary: str) -> bool:
    """Check if a tool answers its version command"""
    result = run_tool(build_invocation(tool, VERSION_ARGS[tool], binary=binary), timeout=5)
    return result.success


def check_platform_tools(adb_path: Optional[str] = None, fastboot_path: Optional[str] = None) -> bool:
    return (
        check_tool_availability(ToolKind.ADB, adb_path or settings.ADB_PATH)
        and check_tool_availability(ToolKind.FASTBOOT, fastboot_path or settings.FASTBOOT_PATH)
    )


def _bundled_paths(tools_dir: Path) -> Tuple[str, str]:
    suffix = ".exe" if sys.platform.startswith("win") else ""
    return str(tools_dir / f"adb{suffix}"), str(tools_dir / f"fastboot{suffix}")


def download_file(
    url: str,
    destination: Path,
    on_progress: Optional[Callable[[int], None]] = None,
    timeout: float = 60.0,
) -> Path:
    """Stream ``url`` to ``destination``"""
    destination.parent.mkdir(parents=True, exist_ok=True)
    downloaded = 0
    try:
        with httpx.stream("GET", url, follow_redirects=True, timeout=timeout) as response:
            response.raise_for_status()
            with open(destination, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
                    downloaded += len(chunk)
                    if on_progress:
                        on_progress(downloaded)
    except httpx.HTTPError as e:
        if destination.exists():
            destination.unlink()
        raise PlatformToolsError(f"Download of {url} failed: {e}") from e

    logger.info(f"Downloaded {destination.name} ({format_bytes(downloaded)})")
    return destination


def _extract_platform_tools(archive: Path, tools_dir: Path):
    """Unpack the archive's top-level ``platform-tools/`` folder into ``tools_dir``"""
    tools_dir.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(dir=tools_dir.parent) as tmp:
        with zipfile.ZipFile(archive, "r") as zip_ref:
            zip_ref.extractall(tmp)
        unpacked = Path(tmp) / "platform-tools"
        if not unpacked.is_dir():
            raise PlatformToolsError(f"{archive.name} has no platform-tools folder")
        shutil.copytree(unpacked, tools_dir, dirs_exist_ok=True)
    # zipfile drops the executable bit
    for binary in _bundled_paths(tools_dir):
        if os.path.exists(binary):
            os.chmod(binary, 0o755)


def ensure_platform_tools() -> Tuple[str, str]:
    """
    Make sure adb and fastboot are usable.

    Tries the configured paths first, then ``PLATFORM_TOOLS_DIR``. If that is
    empty, extracts a local platform-tools archive or downloads one.

    Returns:
        (adb_path, fastboot_path) that answered their version command

    Raises:
        PlatformToolsError: the tools cannot be made available
    """
    if check_platform_tools():
        return settings.ADB_PATH, settings.FASTBOOT_PATH

    tools_dir = Path(settings.PLATFORM_TOOLS_DIR).expanduser()
    adb_path, fastboot_path = _bundled_paths(tools_dir)
    if check_platform_tools(adb_path, fastboot_path):
        return adb_path, fastboot_path

    archive = tools_dir.parent / Path(settings.PLATFORM_TOOLS_URL).name
    if not archive.exists():
        logger.info(f"Android platform tools missing. Downloading {settings.PLATFORM_TOOLS_URL}")
        download_file(
            settings.PLATFORM_TOOLS_URL,
            archive,
            on_progress=lambda n: print(f"\rDownloading... {format_bytes(n)} downloaded", end="", flush=True),
        )
        print()

    try:
        _extract_platform_tools(archive, tools_dir)
    except (zipfile.BadZipFile, OSError) as e:
        raise PlatformToolsError(f"Cannot extract {archive}: {e}") from e

    if not check_platform_tools(adb_path, fastboot_path):
        raise PlatformToolsError("Cannot continue without Android platform tools")
    return adb_path, fastboot_path
