"""Configuration management for the Home Assistant connection."""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


WEBSOCKET_PATH = "/api/websocket"

USER_CONFIG_DIR = Path.home() / ".config" / "hass_link"


class ReconnectPolicy(BaseModel):
    """Exponential backoff between reconnection attempts (seconds)."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    base_delay: float = Field(1.0, gt=0)
    growth_factor: float = Field(1.5, ge=1.0)
    max_delay: float = Field(30.0, gt=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "ReconnectPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect number ``attempt`` (0-based), capped at max_delay."""
        try:
            delay = self.base_delay * self.growth_factor ** attempt
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds. Times are in seconds."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(5, ge=1)
    success_threshold: int = Field(2, ge=1)
    timeout: float = Field(30.0, gt=0)
    monitoring_period: float = Field(60.0, gt=0)


def normalize_ws_url(url: str) -> str:
    """
    Turn whatever the user typed into a WebSocket API URL.

    Examples:
        http://hass.local:8123      -> ws://hass.local:8123/api/websocket
        https://example.org/        -> wss://example.org/api/websocket
        192.168.1.10:8123           -> ws://192.168.1.10:8123/api/websocket
        wss://example.org/api/websocket (unchanged)
    """
    v = url.strip()
    if not v:
        raise ValueError("Home Assistant URL must not be empty")

    # Replace http:// or https:// with ws:// or wss://
    if v.startswith("http://"):
        v = v.replace("http://", "ws://", 1)
    elif v.startswith("https://"):
        v = v.replace("https://", "wss://", 1)
    elif not v.startswith(("ws://", "wss://")):
        v = "ws://" + v

    # Ensure it ends with the WebSocket API path
    v = v.rstrip("/")
    if not v.endswith(WEBSOCKET_PATH):
        v = v + WEBSOCKET_PATH

    return v


class ConnectionConfig(BaseModel):
    """
    Everything one connection needs. Immutable.

    A connection never mutates its config; reconfiguring means passing a
    new ``ConnectionConfig`` to ``HomeAssistantConnection.connect``.

    Callbacks:
        on_status(status, reason): connectivity changes
        on_event(message): every pushed frame that is not a handshake or result
        on_batch(updates): coalesced ``{entity_id: EventMessage}`` batches;
            when set, entity events go here instead of ``on_event``
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Home Assistant WebSocket URL")
    token: str = Field(..., repr=False, description="Long-lived access token")

    on_event: Optional[Callable[..., Any]] = None
    on_status: Optional[Callable[..., Any]] = None
    on_batch: Optional[Callable[..., Any]] = None

    request_timeout: float = Field(30.0, gt=0)
    batch_window: float = Field(0.05, ge=0)
    subscribe_events: List[str] = ["state_changed"]
    ping_interval: Optional[float] = Field(None, gt=0)

    reconnect: ReconnectPolicy = ReconnectPolicy()
    circuit_breaker: Optional[CircuitBreakerConfig] = CircuitBreakerConfig()

    @field_validator("url")
    @classmethod
    def convert_to_ws(cls, v: str) -> str:
        return normalize_ws_url(v)

    @property
    def coalescing(self) -> bool:
        return self.on_batch is not None and self.batch_window > 0


class ClientOptions(BaseModel):
    """Connection tuning read from YAML."""
    request_timeout: float = 30.0
    batch_window: float = 0.05
    subscribe_events: List[str] = ["state_changed"]
    ping_interval: Optional[float] = None
    reconnect: ReconnectPolicy = ReconnectPolicy()
    circuit_breaker: Optional[CircuitBreakerConfig] = CircuitBreakerConfig()


class Settings(BaseModel):
    """Full client settings: credentials from .env, tuning from YAML."""

    hass_url: str = Field(..., description="Home Assistant URL")
    hass_token: str = Field(..., repr=False, description="Home Assistant access token")

    client: ClientOptions = ClientOptions()

    def connection_config(self, **callbacks: Any) -> ConnectionConfig:
        """Build a ConnectionConfig, adding ``on_status``/``on_event``/``on_batch``."""
        return ConnectionConfig(
            url=self.hass_url,
            token=self.hass_token,
            **self.client.model_dump(exclude={"reconnect", "circuit_breaker"}),
            reconnect=self.client.reconnect,
            circuit_breaker=self.client.circuit_breaker,
            **callbacks,
        )


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries.

    Override values take precedence over base values.
    Nested dictionaries are merged recursively.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def _read_yaml(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a YAML mapping")
    return data


def load_yaml_config(
    project_config_path: Optional[Path] = None,
    user_config_path: Optional[Path] = None,
) -> ClientOptions:
    """
    Load YAML configuration with hierarchy.

    Config hierarchy (later overrides earlier):
    1. Project defaults: ./config.yaml
    2. User overrides: ~/.config/hass_link/config.yaml

    Only the ``client:`` section is read.
    """
    if project_config_path is None:
        project_config_path = Path(__file__).parent.parent.parent / "config.yaml"
    if user_config_path is None:
        user_config_path = USER_CONFIG_DIR / "config.yaml"

    merged_config: Dict[str, Any] = {}

    for path in (project_config_path, user_config_path):
        if path.exists():
            merged_config = deep_merge(merged_config, _read_yaml(path))

    return ClientOptions(**(merged_config.get("client") or {}))


def load_config(
    env_file: Optional[str] = None,
    project_config_path: Optional[Path] = None,
    user_config_path: Optional[Path] = None,
) -> Settings:
    """
    Load full configuration from environment and YAML files.

    Args:
        env_file: Path to .env file (defaults to .env in the project root)

    Returns:
        Settings with credentials and connection tuning
    """
    if env_file is None:
        env_file = Path(__file__).parent.parent.parent / ".env"

    if not Path(env_file).exists():
        raise FileNotFoundError(f"Config file not found: {env_file}")

    load_dotenv(env_file)

    return Settings(
        hass_url=os.getenv("HASS_URL"),
        hass_token=os.getenv("HASS_TOKEN"),
        client=load_yaml_config(project_config_path, user_config_path),
    )
