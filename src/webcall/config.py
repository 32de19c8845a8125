"""Configuration schema for the call orchestrator.

Defines Pydantic models for loading and validating call configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


class SignalingConfig(BaseModel):
    """Signaling relay connection configuration."""

    server_url: str = Field(
        default="ws://localhost:8765",
        description="Signaling relay WebSocket URL (ws:// or wss://)",
    )
    user_id: str | None = Field(
        default=None,
        description="Local peer id (user1 or user2); usually supplied per process",
    )
    max_message_size: int = Field(
        default=2**20, ge=1024, description="Maximum inbound message size in bytes"
    )

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate that the relay URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Signaling server_url must start with ws:// or wss://, got '{v}'")
        return v


class ReconnectConfig(BaseModel):
    """Signaling reconnect policy (bounded exponential backoff)."""

    enabled: bool = Field(default=True, description="Reconnect after the relay drops")
    max_attempts: int = Field(default=5, ge=1, description="Attempts per outage")
    initial_backoff_s: float = Field(default=1.0, gt=0, description="First retry delay")
    max_backoff_s: float = Field(default=30.0, gt=0, description="Retry delay ceiling")


class IceServerConfig(BaseModel):
    """Connectivity-assist (STUN/TURN) server descriptor."""

    urls: list[str] = Field(..., min_length=1, description="stun:, turn: or turns: URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate ICE server URL schemes."""
        valid_schemes = ("stun:", "turn:", "turns:")
        for url in v:
            if not url.startswith(valid_schemes):
                raise ValueError(f"ICE server url must start with one of {valid_schemes}, got '{url}'")
        return v


def _default_ice_servers() -> list[IceServerConfig]:
    return [IceServerConfig(urls=["stun:stun.l.google.com:19302"])]


class QualityConfig(BaseModel):
    """Adaptive audio bitrate configuration."""

    enabled: bool = Field(default=True, description="Enable link-quality sampling")
    interval_s: float = Field(default=5.0, gt=0, description="Sampling interval in seconds")
    low_bandwidth_kbps: float = Field(
        default=1000.0,
        ge=0,
        description="Downlink throughput below which the link counts as low",
    )
    low_tier_types: list[str] = Field(
        default_factory=lambda: ["slow-2g", "2g", "3g"],
        description="Connection classes treated as low-tier",
    )
    low_bitrate_bps: int = Field(default=20_000, ge=6_000, description="Audio bitrate on a low link")
    normal_bitrate_bps: int = Field(default=64_000, ge=6_000, description="Audio bitrate otherwise")


class AudioConfig(BaseModel):
    """Local audio capture and playback devices."""

    input_device: str | None = Field(
        default=None,
        description="Capture device (ffmpeg input, e.g. 'default' for pulse); silence if unset",
    )
    input_format: str | None = Field(
        default=None, description="ffmpeg input format for input_device (e.g. pulse, alsa)"
    )
    output_device: str | int | None = Field(
        default=None, description="Playback device name or index (default output if unset)"
    )
    speaker_device: str | int | None = Field(
        default=None,
        description="Playback device used when routed to speaker (falls back to output_device)",
    )


class RelayConfig(BaseModel):
    """Signaling relay server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8765, ge=1024, le=65535, description="Bind port")
    health_enabled: bool = Field(default=True, description="Serve /health on port + 1")


class WebCallConfig(BaseModel):
    """Root call configuration."""

    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    ice_servers: list[IceServerConfig] = Field(default_factory=_default_ice_servers)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "WebCallConfig":
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

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "WebCallConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply SIGNAL_SERVER_URL, WEBCALL_USER_ID and WEBCALL_LOG_LEVEL."""
    if server_url := os.getenv("SIGNAL_SERVER_URL"):
        data.setdefault("signaling", {})["server_url"] = server_url

    if user_id := os.getenv("WEBCALL_USER_ID"):
        data.setdefault("signaling", {})["user_id"] = user_id

    if log_level := os.getenv("WEBCALL_LOG_LEVEL"):
        data["log_level"] = log_level

    return data
