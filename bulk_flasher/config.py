"""Application Configuration - bulk flashing settings"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List
import platform


def _platform_tools_os() -> str:
    system = platform.system().lower()
    return system if system in ("linux", "darwin", "windows") else "linux"


class Settings(BaseSettings):
    """Bulk flasher settings, overridable from the environment or a .env file"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Bulk Flasher"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Device tools
    ADB_PATH: str = "adb"
    FASTBOOT_PATH: str = "fastboot"
    PLATFORM_TOOLS_DIR: str = Field(
        default="./platform-tools",
        description="Fallback location of adb/fastboot when they are not on PATH",
    )
    PLATFORM_TOOLS_URL: str = Field(
        default=f"https://dl.google.com/android/repository/platform-tools-latest-{_platform_tools_os()}.zip",
        description="Where to fetch Android platform tools from when missing",
    )

    # Host setup (Linux only)
    UDEV_RULES_URL: str = "https://raw.githubusercontent.com/invisiblek/udevrules/master/99-android.rules"
    UDEV_RULES_DIR: str = "/etc/udev/rules.d"

    # Images
    IMAGES_DIR: str = Field(
        default=".",
        description="Directory holding factory images, update packages, OTA packages and AVB keys",
    )
    EXTRACT_DIR: str = Field(
        default="./extracted",
        description="Directory factory image archives are extracted into",
    )
    PARTITION_IMAGE_DIR: str = Field(
        default="images",
        description="Name of the directory of discrete partition images inside a factory image",
    )
    PARTITION_IMAGE_PRODUCTS: str = Field(
        default="jasmine",
        description="Comma-separated products flashed partition by partition",
    )
    RELOCK_EXEMPT_PRODUCTS: str = Field(
        default="jasmine",
        description="Comma-separated products whose bootloader is never re-locked",
    )

    # Timing
    SETTLE_DELAY_SEC: float = 5
    CONFIRM_INTERVAL_SEC: float = 30
    CONFIRM_MAX_ATTEMPTS: int = 3
    COMMAND_TIMEOUT_SEC: int = 30
    FLASH_TIMEOUT_SEC: int = 600

    # Concurrency
    MAX_WORKERS: int = Field(
        default=0,
        description="Upper bound on concurrent device tasks (0 = one per device)",
    )

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text
    LOG_DIR: str = "./logs"
    LOG_FILE: str = "flasher.log"
    LOG_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 3

    @field_validator("CONFIRM_MAX_ATTEMPTS")
    @classmethod
    def validate_confirm_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("CONFIRM_MAX_ATTEMPTS must be at least 1")
        return v

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v

    @property
    def partition_image_products_list(self) -> List[str]:
        """Parse per-partition products from comma-separated string"""
        return [p.strip() for p in self.PARTITION_IMAGE_PRODUCTS.split(",") if p.strip()]

    @property
    def relock_exempt_products_list(self) -> List[str]:
        """Parse relock-exempt products from comma-separated string"""
        return [p.strip() for p in self.RELOCK_EXEMPT_PRODUCTS.split(",") if p.strip()]


settings = Settings()
