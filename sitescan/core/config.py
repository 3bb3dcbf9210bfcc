"""
Site scan settings, read from the environment and .env.

The app starts without any remote service configured. Starting a scan needs
the discovery and capacity service URLs and fails early with a clear error
when either is missing.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MissingServiceConfigError(Exception):
    """Raised when a scan is requested without the remote services configured."""
    pass


class Settings(BaseSettings):
    """Service URLs, retry policy, scan tuning and storage defaults."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./sitescan.db",
        description="SQLAlchemy connection URL (PostgreSQL in production)"
    )

    # Remote analysis services (OPTIONAL for startup, REQUIRED for scans)
    discovery_service_url: Optional[str] = Field(
        default=None,
        description="Endpoint of the site discovery service"
    )
    capacity_service_url: Optional[str] = Field(
        default=None,
        description="Endpoint of the capacity estimation service"
    )
    ownership_service_url: Optional[str] = Field(
        default=None,
        description="Endpoint of the ownership detection service"
    )
    service_api_key: Optional[str] = Field(
        default=None,
        description="Bearer token sent to the remote services"
    )
    detect_ownership: bool = Field(
        default=True,
        description="Call ownership detection during enrichment when a URL is configured"
    )

    # HTTP behaviour
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Timeout for a single remote call"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for a failed remote call"
    )
    retry_backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential backoff factor for retries"
    )

    # Discovery
    default_search_radius_meters: int = Field(
        default=100_000,
        gt=0,
        description="Search radius used for free-text location queries"
    )
    max_discovery_results: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum candidates requested from the discovery service"
    )

    # Progress weighting
    discovery_weight: int = Field(
        default=25,
        ge=0,
        le=100,
        description="Progress percentage reached once discovery completes"
    )

    # Aggregation
    cluster_radius_degrees: float = Field(
        default=0.1,
        gt=0,
        le=10,
        description="Greedy clustering radius in degrees (~11 km at 0.1)"
    )

    # Storage defaults
    mva_per_mw: float = Field(
        default=1.25,
        gt=0,
        description="Multiplier converting estimated MW into stored MVA"
    )
    default_load_factor: float = Field(
        default=0.75,
        ge=0,
        le=1,
        description="Load factor written for newly stored sites"
    )
    coordinates_source: str = Field(
        default="discovery_service",
        description="Label stored with each row to record where coordinates came from"
    )

    # Presentation
    map_link_base: str = Field(
        default="https://maps.google.com/",
        description="Base URL for 'view on map' links"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    def require_discovery_service_url(self) -> str:
        """
        Get the discovery service URL, raising a clear error if missing.

        Call this at the START of any scan.

        Raises:
            MissingServiceConfigError: If the URL is not configured
        """
        if not self.discovery_service_url:
            raise MissingServiceConfigError(
                "DISCOVERY_SERVICE_URL is required to run a scan. "
                "Please set it in your .env file or environment variables."
            )
        return self.discovery_service_url

    def require_capacity_service_url(self) -> str:
        """
        Get the capacity estimation URL, raising a clear error if missing.

        Raises:
            MissingServiceConfigError: If the URL is not configured
        """
        if not self.capacity_service_url:
            raise MissingServiceConfigError(
                "CAPACITY_SERVICE_URL is required to enrich discovered sites. "
                "Please set it in your .env file or environment variables."
            )
        return self.capacity_service_url

    def get_ownership_service_url(self) -> Optional[str]:
        """
        Get the ownership detection URL if enabled and configured.

        Ownership detection is optional; enrichment still completes without it.
        """
        if not self.detect_ownership:
            return None
        return self.ownership_service_url


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first access."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
