"""Exceptions raised by the Home Assistant connection core."""

from typing import Any, Optional, Union


class HassLinkError(Exception):
    """Base class for all connection errors."""


class TransportError(HassLinkError):
    """Socket-level failure: open, close or send error, or not connected."""


class ProtocolError(HassLinkError):
    """A frame could not be parsed or did not match any known shape."""


class AuthError(HassLinkError):
    """Home Assistant rejected the access token. Not retried."""


class RequestTimeoutError(HassLinkError, TimeoutError):
    """No result arrived for a request before its local deadline."""

    def __init__(self, request_id: int, timeout: float):
        super().__init__(f"Command {request_id} timed out after {timeout:g}s (client-side)")
        self.request_id = request_id
        self.timeout = timeout


class CircuitOpenError(HassLinkError):
    """The circuit breaker rejected the call without touching the network."""

    def __init__(self, state: Any, retry_at: Optional[float] = None):
        super().__init__(f"Circuit breaker is {state} - rejecting request")
        self.state = state
        self.retry_at = retry_at


class CommandError(HassLinkError):
    """Home Assistant answered a command with ``success: false``."""

    def __init__(self, code: Union[str, int], message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
