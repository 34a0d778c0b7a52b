"""Application configuration and constants."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

FIT_MODES: tuple[str, ...] = ("contain", "cover", "fill", "inside", "outside")
OUTPUT_FORMATS: tuple[str, ...] = ("webp", "jpeg", "png", "avif")
SHARPEN_LEVELS: tuple[str, ...] = ("low", "medium", "high")

FORMAT_ALIASES: dict[str, str] = {"jpg": "jpeg"}

MIME_TYPES: dict[str, str] = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "avif": "image/avif",
}

# Inclusive quality bounds applied after defaults and text floors.
FORMAT_QUALITY_BOUNDS: dict[str, tuple[int, int]] = {
    "webp": (1, 85),
    "jpeg": (1, 85),
    "png": (1, 90),
    "avif": (1, 80),
}

MAX_DIMENSION_PX = 10000
DEFAULT_FIT = "inside"
DEFAULT_SHARPEN_LEVEL = "medium"

PHOTO_DEFAULT_QUALITY = 75
TEXT_DEFAULT_QUALITY = 85
TEXT_MIN_QUALITY = 70

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IMAGE_ACCEPT = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"

CACHE_CONTROL = "public, max-age=86400, s-maxage=31536000, immutable"


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

    log_level: str = "INFO"
    log_format: str = "json"
    debug_errors: bool = False

    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = 120
    rate_limit_max_requests: int = 50
    rate_limit_window_seconds: int = 3600
    rate_limit_sweep_interval_seconds: int = 600

    admin_ips: str = ""
    api_keys: str = ""
    trusted_proxies: str = ""
    require_api_key: bool = False

    fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 2
    fetch_backoff_seconds: float = 1.0
    fetch_max_redirects: int = 5
    max_image_size_mb: int = 10
    max_input_pixels: int = 2**24

    codec_timeout_seconds: float = 20.0
    request_timeout_seconds: float = 60.0

    cache_max_size_mb: int = 256
    cache_ttl_seconds: int = 0

    default_output_format: Literal["webp", "source"] = "webp"
    always_sharpen: bool = False
    text_aspect_ratio: float = 2.0
    small_image_px: int = 300

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if self.api_cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.api_cors_origins.split(",")]

    @property
    def admin_ips_list(self) -> list[str]:
        """Parse admin IP allowlist; an empty list grants nobody privileges."""
        return [ip.strip() for ip in self.admin_ips.split(",") if ip.strip()]

    @property
    def trusted_proxies_list(self) -> list[str]:
        """Parse peers whose client IP headers are believed; empty trusts none."""
        return [peer.strip() for peer in self.trusted_proxies.split(",") if peer.strip()]

    @property
    def api_keys_list(self) -> list[str]:
        """Parse accepted API keys from comma-separated string."""
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def max_image_size_bytes(self) -> int:
        return self.max_image_size_mb * 1024 * 1024


settings = Settings()
