"""Resilient asyncio client for the Home Assistant WebSocket API."""

from .callback_registry import CallbackRegistry
from .circuit_breaker import CircuitBreaker, CircuitBreakerMetrics, CircuitState
from .config import CircuitBreakerConfig, ConnectionConfig, ReconnectPolicy, Settings, load_config
from .entity_batcher import EntityBatcher
from .errors import (
    AuthError,
    CircuitOpenError,
    CommandError,
    HassLinkError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from .hass_api import HomeAssistantAPI
from .websocket_client import ConnectionState, ConnectionStatus, HomeAssistantConnection

__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "CallbackRegistry",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitOpenError",
    "CircuitState",
    "CommandError",
    "ConnectionConfig",
    "ConnectionState",
    "ConnectionStatus",
    "EntityBatcher",
    "HassLinkError",
    "HomeAssistantAPI",
    "HomeAssistantConnection",
    "ProtocolError",
    "ReconnectPolicy",
    "RequestTimeoutError",
    "Settings",
    "TransportError",
    "load_config",
]
