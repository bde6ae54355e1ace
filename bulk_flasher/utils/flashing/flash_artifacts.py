"""
Artifact Resolver for the Flashing Engine

Locates the files a run needs, once, before any device task starts:
- custom OS update package: ``*<product>*-img-*.zip``
- stock factory image: ``*<product>*factory*.zip`` (extracted to find
  ``bootloader*.img``, ``radio*.img`` and the per-partition image directory)
- OTA package: ``*<product>*-ota-*.zip``
- AVB custom key: ``*.bin``

Anything missing that the selected mode cannot do without raises
``PrerequisiteMissing``; the whole run stops.
"""

import logging
import shutil
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from ...config import settings
from ...core.exceptions import PrerequisiteMissing

logger = logging.getLogger(__name__)

EXTRACTED_MARKER = ".extracted"


class ProvisioningMode(Enum):
    """How every device in the batch is provisioned"""
    FACTORY_IMAGE = "factory_image"
    OTA_SIDELOAD = "ota_sideload"


@dataclass(frozen=True)
class ImageBundle:
    """Read-only artifact set shared by every device task of a run"""
    product: str
    update_package: Optional[Path] = None
    bootloader: Optional[Path] = None
    radio: Optional[Path] = None
    partition_dir: Optional[Path] = None
    ota_package: Optional[Path] = None
    sign_key: Optional[Path] = None

    @property
    def mode(self) -> ProvisioningMode:
        if self.ota_package is not None:
            return ProvisioningMode.OTA_SIDELOAD
        return ProvisioningMode.FACTORY_IMAGE

    @property
    def has_monolithic_firmware(self) -> bool:
        return self.bootloader is not None and self.radio is not None


def list_partition_images(partition_dir: Path) -> List[Tuple[str, Path]]:
    """
    Discrete partition images in ``partition_dir``, sorted by file name.

    The partition name is the file name without its extension
    (``modem.img`` -> ``modem``).
    """
    return [
        (path.stem, path)
        for path in sorted(partition_dir.iterdir())
        if path.is_file() and not path.name.startswith(".")
    ]


def extract_zip(archive: Path, destination: Path) -> Path:
    """
    Extract ``archive`` into ``destination``.

    Raises:
        PrerequisiteMissing: unreadable archive or a member escaping ``destination``
    """
    destination = destination.resolve()
    destination.mkdir(parents=True, exist_ok=True)

    try:
        with zipfile.ZipFile(archive, "r") as zip_ref:
            for member in zip_ref.infolist():
                target = (destination / member.filename).resolve()
                if target != destination and destination not in target.parents:
                    raise PrerequisiteMissing(f"{member.filename}: illegal file path in {archive.name}")
            zip_ref.extractall(destination)
    except zipfile.BadZipFile as e:
        raise PrerequisiteMissing(f"Cannot read {archive.name}: {e}") from e

    return destination


class ArtifactResolver:
    """
    Finds and validates the image bundle for one product.

    Usage:
        resolver = ArtifactResolver()
        bundle = resolver.resolve("sargo", ProvisioningMode.FACTORY_IMAGE)
    """

    def __init__(
        self,
        images_dir: Optional[Path] = None,
        extract_dir: Optional[Path] = None,
        partition_dir_name: Optional[str] = None,
        partition_products: Optional[Iterable[str]] = None,
    ):
        self.images_dir = Path(images_dir or settings.IMAGES_DIR).expanduser()
        self.extract_dir = Path(extract_dir or settings.EXTRACT_DIR).expanduser()
        self.partition_dir_name = partition_dir_name or settings.PARTITION_IMAGE_DIR
        self.partition_products = set(
            settings.partition_image_products_list if partition_products is None else partition_products
        )

    def _scan(self, product: str) -> dict:
        found = {"factory": None, "update": None, "ota": None, "key": None}

        if not self.images_dir.is_dir():
            raise PrerequisiteMissing(f"Images directory not found: {self.images_dir}")

        for path in sorted(self.images_dir.iterdir()):
            if not path.is_file():
                continue
            name = path.name
            if product in name and name.endswith(".zip"):
                if "factory" in name:
                    found["factory"] = path
                elif "-img-" in name:
                    found["update"] = path
                elif "-ota-" in name:
                    found["ota"] = path
            elif name.endswith(".bin"):
                found["key"] = path

        return found

    def _extract_factory_image(self, archive: Path) -> Path:
        target = self.extract_dir / archive.stem
        marker = target / EXTRACTED_MARKER
        if marker.is_file():
            logger.info(f"Factory image already extracted at {target}")
            return target
        if target.exists():
            logger.warning(f"Discarding incomplete extraction at {target}")
            shutil.rmtree(target)
        logger.info(f"Extracting {archive.name} to {target}...")
        extract_zip(archive, target)
        marker.touch()
        return target

    def _find_firmware(self, root: Path) -> Tuple[Optional[Path], Optional[Path], Optional[Path]]:
        bootloader = next(iter(sorted(root.rglob("bootloader*.img"))), None)
        radio = next(iter(sorted(root.rglob("radio*.img"))), None)
        partition_dir = next(
            (p for p in sorted(root.rglob(self.partition_dir_name)) if p.is_dir()),
            None,
        )
        return bootloader, radio, partition_dir

    def resolve(self, product: str, mode: ProvisioningMode) -> ImageBundle:
        """
        Resolve the bundle for ``product``.

        Raises:
            PrerequisiteMissing: a file the mode requires is absent
        """
        if not product:
            raise PrerequisiteMissing("Cannot determine device model")

        found = self._scan(product)

        if mode is ProvisioningMode.OTA_SIDELOAD:
            if found["ota"] is None:
                raise PrerequisiteMissing(f"Cannot continue without an OTA package for {product}")
            logger.info(f"OTA package: {found['ota'].name}")
            return ImageBundle(product=product, ota_package=found["ota"])

        if found["update"] is None:
            raise PrerequisiteMissing(f"Cannot continue without the {product} device image")

        firmware_root = self.images_dir
        if found["factory"] is not None:
            firmware_root = self._extract_factory_image(found["factory"])
        bootloader, radio, partition_dir = self._find_firmware(firmware_root)

        if product in self.partition_products:
            if partition_dir is None or not list_partition_images(partition_dir):
                raise PrerequisiteMissing(
                    f"Cannot continue without the {product} factory image "
                    f"(no partition images in a '{self.partition_dir_name}' directory)"
                )
        elif not (bootloader and radio):
            raise PrerequisiteMissing(
                f"Cannot continue without the {product} factory image "
                "(no bootloader and radio images found)"
            )

        bundle = ImageBundle(
            product=product,
            update_package=found["update"],
            bootloader=bootloader,
            radio=radio,
            partition_dir=partition_dir,
            sign_key=found["key"],
        )

        logger.info(f"Update package: {bundle.update_package.name}")
        if bundle.has_monolithic_firmware:
            logger.info(f"Bootloader: {bundle.bootloader.name}, radio: {bundle.radio.name}")
        if bundle.partition_dir:
            logger.info(f"Partition images: {bundle.partition_dir}")
        if bundle.sign_key:
            logger.info(f"AVB custom key: {bundle.sign_key.name}")
        else:
            logger.info("No AVB custom key found, bootloaders will stay unlocked")

        return bundle


__all__ = [
    "ProvisioningMode",
    "ImageBundle",
    "ArtifactResolver",
    "extract_zip",
    "list_partition_images",
]
