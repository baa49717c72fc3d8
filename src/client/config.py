"""Configuration schema for the voice client.

Defines Pydantic models for the signaling endpoint, ICE servers, audio
capture constraints and the recovery/heartbeat timings, loaded from YAML
with environment variable overrides.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]


class IceServerEntry(BaseModel):
    """One ICE server as handed to the peer transport."""

    urls: list[str]
    username: str | None = None
    credential: str | None = None


class IceConfig(BaseModel):
    """Connectivity relay endpoints.

    Public STUN endpoints are always used. The TURN relay is added only when
    URL, username and credential are all configured.
    """

    stun_urls: list[str] = Field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    turn_url: str | None = Field(default=None, description="TURN relay URL (turn:host:port)")
    turn_username: str | None = Field(default=None, description="TURN username")
    turn_credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("turn_url")
    @classmethod
    def validate_turn_url(cls, v: str | None) -> str | None:
        """Validate TURN URL scheme."""
        if v is not None and not v.startswith(("turn:", "turns:")):
            raise ValueError(f"TURN URL must start with 'turn:' or 'turns:', got '{v}'")
        return v

    def ice_servers(self) -> list[IceServerEntry]:
        """Resolve the ICE server list for a new transport."""
        servers = [IceServerEntry(urls=[url]) for url in self.stun_urls]
        if self.turn_url and self.turn_username and self.turn_credential:
            logger.info("Using TURN server", extra={"turn_url": self.turn_url})
            servers.append(
                IceServerEntry(
                    urls=[self.turn_url],
                    username=self.turn_username,
                    credential=self.turn_credential,
                )
            )
        else:
            logger.warning("No TURN server configured, may have issues with restrictive NATs")
        return servers


class AudioConfig(BaseModel):
    """Microphone capture settings (audio only, never video)."""

    device: str | None = Field(default=None, description="Capture device (platform default if unset)")
    input_format: str | None = Field(
        default=None,
        description="Capture backend format (pulse, alsa, avfoundation, dshow); auto if unset",
    )
    echo_cancellation: bool = Field(default=True, description="Request echo cancellation")
    noise_suppression: bool = Field(default=True, description="Request noise suppression")
    auto_gain_control: bool = Field(default=True, description="Request automatic gain control")


class ClientConfig(BaseModel):
    """Root client configuration."""

    server_url: str = Field(
        default="ws://localhost:8080/ws",
        description="Signaling WebSocket URL",
    )
    ice: IceConfig = Field(default_factory=IceConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)

    heartbeat_interval_s: float = Field(
        default=25.0,
        gt=0,
        description="Application-level ping interval over the signaling channel",
    )
    recovery_delay_s: float = Field(
        default=10.0,
        ge=0,
        description="Grace period before restarting a disconnected link",
    )
    max_ice_restarts: int = Field(
        default=2,
        ge=0,
        description="ICE restart budget per call attempt",
    )
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate that the signaling URL is a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from YAML, or defaults plus env overrides."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    import os

    if relay_url := os.getenv("RELAY_URL"):
        data["server_url"] = relay_url

    if turn_url := os.getenv("TURN_URL"):
        data.setdefault("ice", {})["turn_url"] = turn_url

    if turn_user := os.getenv("TURN_USER"):
        data.setdefault("ice", {})["turn_username"] = turn_user

    if turn_credential := os.getenv("TURN_CREDENTIAL"):
        data.setdefault("ice", {})["turn_credential"] = turn_credential

    return data
