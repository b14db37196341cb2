"""Configuration models and YAML loader for the tunnel daemon."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from .common.exceptions import ConfigurationError
from .common.logging import get_logger
from .common.utils import validate_non_empty_string

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "/etc/ssh-tunnel/config.yaml"
DEFAULT_RECONNECT_DELAY = 2.0


class VPSConfig(BaseModel):
    """SSH connection identity of the public VPS."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True, extra="forbid")

    host: str = Field(description="VPS hostname or address")
    user: str = Field(description="SSH login user")
    port: int = Field(default=22, ge=1, le=65535, description="SSH port")
    ssh_key: str = Field(description="Path to the private key used for login")
    strict_hostkey: str = Field(
        default="accept-new", description="StrictHostKeyChecking policy"
    )
    server_alive_interval: int = Field(
        default=15, ge=1, le=3600, description="Seconds between keepalive probes"
    )
    server_alive_count_max: int = Field(
        default=3, ge=1, le=100, description="Missed probes before disconnect"
    )

    @field_validator("host", "user", "ssh_key")
    @classmethod
    def validate_required(cls, v: str, info: ValidationInfo) -> str:
        return validate_non_empty_string(v, f"vps.{info.field_name}")

    @field_validator("port", mode="before")
    @classmethod
    def default_port(cls, v: Any) -> Any:
        """A zero or missing port means the SSH default."""
        if v is None or v == 0:
            return 22
        return v

    @field_validator("strict_hostkey", mode="before")
    @classmethod
    def default_strict_hostkey(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "accept-new"
        return v

    @property
    def target(self) -> str:
        """SSH destination in user@host form."""
        return f"{self.user}@{self.host}"


class TCPForward(BaseModel):
    """One TCP service published on the VPS."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True, extra="forbid")

    remote_port: int = Field(ge=1, le=65535, description="Public port on the VPS")
    local_host: str = Field(min_length=1, description="Host serving the service")
    local_port: int = Field(ge=1, le=65535, description="Port of the local service")


class UDPForward(BaseModel):
    """One UDP service published on the VPS through a wrap port."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True, extra="forbid")

    udp_public_port: int = Field(ge=1, le=65535, description="Public UDP port")
    local_host: str = Field(min_length=1, description="Host serving the service")
    local_udp_port: int = Field(ge=1, le=65535, description="Local UDP port")
    wrap_tcp_port: int = Field(
        ge=1, le=65535, description="Loopback TCP port carrying the datagrams"
    )


class TunnelConfig(BaseModel):
    """Validated configuration for one tunnel daemon."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True, extra="forbid")

    vps: VPSConfig
    reconnect_delay_seconds: float = Field(
        default=DEFAULT_RECONNECT_DELAY, description="Pause between SSH sessions"
    )
    log_dir: str = Field(default="/var/log", description="Local relay log directory")
    remote_log_dir: str = Field(
        default="/var/log", description="Relay log directory on the VPS"
    )
    relay_idle_timeout: int | None = Field(
        default=None, ge=1, description="Optional socat -T inactivity timeout"
    )
    tcp_forwards: list[TCPForward] = Field(default_factory=list)
    udp_forwards: list[UDPForward] = Field(default_factory=list)

    @field_validator("reconnect_delay_seconds", mode="before")
    @classmethod
    def default_missing_delay(cls, v: Any) -> Any:
        return DEFAULT_RECONNECT_DELAY if v is None else v

    @field_validator("reconnect_delay_seconds")
    @classmethod
    def default_reconnect_delay(cls, v: float) -> float:
        """Zero or negative delays fall back to the default."""
        return DEFAULT_RECONNECT_DELAY if v <= 0 else v

    @field_validator("tcp_forwards", "udp_forwards", mode="before")
    @classmethod
    def empty_list_for_null(cls, v: Any) -> Any:
        return [] if v is None else v

    @model_validator(mode="after")
    def validate_port_collisions(self) -> "TunnelConfig":
        """Reject forwards whose ports would collide on either side."""
        remote_ports: set[int] = set()
        for tcp in self.tcp_forwards:
            if tcp.remote_port in remote_ports:
                raise ValueError(
                    f"duplicate tcp_forwards remote_port {tcp.remote_port}"
                )
            remote_ports.add(tcp.remote_port)

        tcp_ports = {f.remote_port for f in self.tcp_forwards} | {
            f.local_port for f in self.tcp_forwards
        }
        public_ports: set[int] = set()
        wrap_ports: set[int] = set()
        for udp in self.udp_forwards:
            if udp.udp_public_port in public_ports:
                raise ValueError(
                    f"duplicate udp_forwards udp_public_port {udp.udp_public_port}"
                )
            public_ports.add(udp.udp_public_port)

            if udp.wrap_tcp_port in wrap_ports:
                raise ValueError(
                    f"duplicate udp_forwards wrap_tcp_port {udp.wrap_tcp_port}"
                )
            wrap_ports.add(udp.wrap_tcp_port)

            if udp.wrap_tcp_port in tcp_ports:
                raise ValueError(
                    f"wrap_tcp_port {udp.wrap_tcp_port} "
                    "collides with a tcp_forwards port"
                )
        return self


def parse_config(data: Any) -> TunnelConfig:
    """Validate already-parsed configuration data.

    Raises:
        ConfigurationError: If the data does not describe a valid tunnel
    """
    if not isinstance(data, dict):
        raise ConfigurationError("configuration must be a mapping")
    try:
        return TunnelConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config: {e}") from e


def load_config(path: str | Path) -> TunnelConfig:
    """Read and validate a YAML configuration file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    config_path = Path(path)
    try:
        text = config_path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config {config_path}: {e}") from e

    config = parse_config(data)
    logger.info(
        "Loaded config",
        path=str(config_path),
        tcp_forwards=len(config.tcp_forwards),
        udp_forwards=len(config.udp_forwards),
    )
    return config
