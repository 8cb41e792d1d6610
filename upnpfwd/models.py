"""Pydantic models for upnpfwd configuration.

Provides validated data models for type safety and runtime validation.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ForwarderConfig(BaseModel):
    """Port forwarding agent configuration."""

    mapping_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="AddPortMapping attempts per port before giving up",
    )
    mapping_retry_interval: float = Field(
        default=5.0,
        ge=0.0,
        le=600.0,
        description="Seconds to wait between AddPortMapping attempts",
    )
    description_prefix: str = Field(
        default="Olive ",
        description="Prefix of the port mapping description sent to the router",
    )


class DiscoveryConfig(BaseModel):
    """SSDP discovery and HTTP transport configuration."""

    search_target: str = Field(
        default=IGD_DEVICE_TYPE,
        description="ST header used for M-SEARCH requests",
    )
    search_interval: float = Field(
        default=60.0,
        ge=1.0,
        le=3600.0,
        description="Seconds between M-SEARCH rounds while discovery runs",
    )
    search_mx: int = Field(
        default=3,
        ge=1,
        le=120,
        description="MX header (maximum response delay) for M-SEARCH",
    )
    listen_notify: bool = Field(
        default=True,
        description="Listen for multicast NOTIFY announcements on port 1900",
    )
    http_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Timeout for description fetches and SOAP actions",
    )
    default_max_age: int = Field(
        default=1800,
        ge=60,
        le=86400,
        description="Device lifetime when CACHE-CONTROL is missing",
    )

    @field_validator("search_target")
    @classmethod
    def _validate_search_target(cls, v: str) -> str:
        """Reject empty search targets."""
        if not v.strip():
            msg = "search_target must not be empty"
            raise ValueError(msg)
        return v.strip()


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log records instead of rich console output",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    forwarder: ForwarderConfig = Field(
        default_factory=ForwarderConfig,
        description="Forwarding agent configuration",
    )
    discovery: DiscoveryConfig = Field(
        default_factory=DiscoveryConfig,
        description="Discovery configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
