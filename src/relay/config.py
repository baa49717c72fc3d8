"""Configuration schema for the signaling relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """Signaling WebSocket endpoint configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    path: str = Field(default="/ws", description="Upgrade path for signaling connections")
    max_message_bytes: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Maximum inbound frame size (SDP blobs are a few KB)",
    )
    ping_interval_s: float | None = Field(
        default=30.0,
        gt=0,
        description="Protocol-level keepalive ping interval (None disables)",
    )
    ping_timeout_s: float | None = Field(
        default=20.0,
        gt=0,
        description="Close the connection if a keepalive ping is not answered in time",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate that the path is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"WebSocket path must start with '/', got '{v}'")
        return v


class HealthConfig(BaseModel):
    """Health check HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health and metrics endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        """Resolved health server port."""
        return self.health.port or self.websocket.port + 1

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if relay_host := os.getenv("RELAY_HOST"):
            data.setdefault("websocket", {})["host"] = relay_host

        if relay_port := os.getenv("RELAY_PORT"):
            data.setdefault("websocket", {})["port"] = int(relay_port)

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
