"""
Configuration for Hydrarr.
Settings are read once from the environment (or a .env file) and turned into
immutable service descriptors that are injected into the clients.
"""

from dataclasses import dataclass
from typing import Optional, Dict

from pydantic_settings import BaseSettings


# Order in which services appear in every aggregated listing
SERVICE_ORDER = ["sonarr", "radarr", "lidarr", "readarr", "prowlarr", "bazarr"]

DOWNLOAD_CLIENT = "qbittorrent"

# Current and legacy API prefixes per service
API_PREFIXES = {
    "sonarr": ("/api/v3", "/api"),
    "radarr": ("/api/v3", "/api"),
    "lidarr": ("/api/v1", "/api"),
    "readarr": ("/api/v1", "/api"),
    "prowlarr": ("/api/v1", "/api"),
    "bazarr": ("/api", "/api"),
}

CATEGORY_TO_SERVICES = {
    "tv": ["sonarr"],
    "movies": ["radarr"],
    "music": ["lidarr"],
}


@dataclass(frozen=True)
class ServiceConfig:
    """Connection details for one upstream *arr service."""
    name: str
    url: str = ""
    api_key: str = ""
    api_prefix: str = "/api/v3"
    legacy_prefix: str = "/api"

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


@dataclass(frozen=True)
class DownloadClientConfig:
    """Connection details for the qBittorrent Web API."""
    url: str = ""
    username: str = ""
    password: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.url)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Media managers
    sonarr_url: str = ""
    sonarr_api_key: str = ""
    radarr_url: str = ""
    radarr_api_key: str = ""
    lidarr_url: str = ""
    lidarr_api_key: str = ""
    readarr_url: str = ""
    readarr_api_key: str = ""
    prowlarr_url: str = ""
    prowlarr_api_key: str = ""
    bazarr_url: str = ""
    bazarr_api_key: str = ""

    # Download client
    qbittorrent_url: str = ""
    qbittorrent_username: str = ""
    qbittorrent_password: str = ""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: str = "*"  # comma-separated, empty disables CORS

    # Upstream call settings
    upstream_timeout: float = 10.0
    release_search_timeout: float = 60.0
    rejected_check_concurrency_sonarr: int = 2
    rejected_check_concurrency_radarr: int = 4
    rejected_check_concurrency_default: int = 3

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 500

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def service_configs(self) -> Dict[str, ServiceConfig]:
        """Build a descriptor for every known service, configured or not."""
        services = {}
        for name in SERVICE_ORDER:
            api_prefix, legacy_prefix = API_PREFIXES[name]
            services[name] = ServiceConfig(
                name=name,
                url=(getattr(self, f"{name}_url") or "").strip(),
                api_key=(getattr(self, f"{name}_api_key") or "").strip(),
                api_prefix=api_prefix,
                legacy_prefix=legacy_prefix,
            )
        return services

    def download_client_config(self) -> DownloadClientConfig:
        return DownloadClientConfig(
            url=self.qbittorrent_url.strip(),
            username=self.qbittorrent_username,
            password=self.qbittorrent_password,
        )

    def rejected_check_concurrency(self, service: str) -> int:
        """Concurrency cap for per-item release checks against a service."""
        value = getattr(self, f"rejected_check_concurrency_{service}", None)
        if value is None:
            return self.rejected_check_concurrency_default
        return value
