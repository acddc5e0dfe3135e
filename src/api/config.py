"""Application configuration and constants."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class DeviceBreakpoint:
    """Known device resolution with default scaling parameters."""

    width: int
    height: int
    pixel_ratio: float
    default_format: str
    default_quality: int


DEVICE_BREAKPOINTS: List[DeviceBreakpoint] = [
    DeviceBreakpoint(320, 568, 1, "webp", 75),  # iPhone SE
    DeviceBreakpoint(375, 667, 2, "webp", 80),  # iPhone 8
    DeviceBreakpoint(390, 844, 3, "webp", 85),  # iPhone 12
    DeviceBreakpoint(414, 896, 3, "webp", 85),  # iPhone 11 Pro Max
    DeviceBreakpoint(768, 1024, 2, "webp", 85),  # iPad
    DeviceBreakpoint(1024, 1366, 2, "webp", 90),  # iPad Pro
    DeviceBreakpoint(1280, 800, 1, "webp", 90),  # Desktop
    DeviceBreakpoint(1920, 1080, 1, "webp", 95),  # Full HD
    DeviceBreakpoint(2560, 1440, 1, "webp", 100),  # 2K
]

# Breakpoint used for each detected device class
DEVICE_CLASS_DIMENSIONS: Dict[str, Tuple[int, int]] = {
    "mobile": (375, 667),
    "tablet": (768, 1024),
    "desktop": (1920, 1080),
    "retina": (2560, 1440),
}

# (max content length, font size in px), sorted by threshold
TEXT_SIZE_MAP: List[Tuple[int, int]] = [
    (100, 45),
    (240, 41),
    (300, 40),
    (350, 39),
    (400, 38),
    (450, 36),
    (500, 35),
    (550, 33),
    (600, 31),
    (700, 30),
    (1000, 25),
]
MIN_FONT_SIZE = 20

CANVAS_WIDTH = 1080
CANVAS_HEIGHT = 1080
CANVAS_PADDING = 40

FALLBACK_FONT_PATHS: List[str] = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/Arial.ttf",
    "/System/Library/Fonts/Supplemental/Arial.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
]

DEFAULT_SCALE_QUALITY = 90
DEFAULT_SCALE_FORMAT = "webp"
SCALER_CACHE_TTL_SECONDS = 60 * 60
SCALER_CACHE_MAX_ENTRIES = 200

DEFAULT_BACKGROUND_MAX_BYTES = 7 * 1024 * 1024

CACHE_CLEANUP_INTERVAL_SECONDS = 15 * 60
PROCESSOR_CLEANUP_INTERVAL_SECONDS = 5 * 60
MEMORY_CHECK_INTERVAL_SECONDS = 1.0
MEMORY_POLL_INTERVAL_SECONDS = 0.1
MEMORY_PRESSURE_THRESHOLD = 0.8

REQUEST_TIMEOUT_SECONDS = 60


@dataclass
class HostingLimits:
    """Upload limits of the image hosting provider."""

    cloud_name: str
    max_file_size: int
    categories: Dict[str, List[str]] = field(
        default_factory=lambda: {
            "profiles": ["jpg", "jpeg", "png", "webp"],
            "authors": ["jpg", "jpeg", "png", "webp"],
            "quotes": ["jpg", "jpeg", "png", "webp"],
            "gallery": ["jpg", "jpeg", "png", "webp"],
        }
    )

    @property
    def allowed_formats(self) -> List[str]:
        """Union of allowed formats across all categories."""
        formats: set[str] = set()
        for category_formats in self.categories.values():
            formats.update(f.lower() for f in category_formats)
        return sorted(formats)


class Settings(BaseSettings):
    """Application configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_cors_origins: str = "*"

    site_name: str = "Quoticon"
    font_path: Optional[str] = "public/fonts/Inter-Regular.ttf"
    background_timeout_seconds: float = 10.0
    backgrounds_dir: Optional[str] = None

    cache_max_entries: int = 100
    cache_max_age_seconds: float = 60 * 60
    cache_max_size_mb: int = 100

    processor_max_retries: int = 3
    processor_retry_delay_seconds: float = 1.0
    processor_max_concurrent: int = 3
    processor_max_memory_mb: int = 512
    processor_memory_wait_timeout_seconds: float = 30.0

    hosting_cloud_name: str = "quoticon"
    hosting_max_file_size_mb: int = 7

    log_level: str = "INFO"
    log_format: str = "json"

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 1000

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if self.api_cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.api_cors_origins.split(",")]

    @property
    def hosting_limits(self) -> HostingLimits:
        """Hosting provider limits derived from settings."""
        return HostingLimits(
            cloud_name=self.hosting_cloud_name,
            max_file_size=self.hosting_max_file_size_mb * 1024 * 1024,
        )


settings = Settings()
