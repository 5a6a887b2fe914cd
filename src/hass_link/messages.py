"""
Wire frames for the Home Assistant WebSocket API.

Every frame is a single JSON object with a ``type`` field. Inbound frames are
decoded once, at the boundary, into one of the models below so the rest of
the client can dispatch on the Python type instead of comparing strings:

    auth_required  ->  AuthRequired
    auth_ok        ->  AuthOk
    auth_invalid   ->  AuthInvalid
    result         ->  ResultMessage
    event          ->  EventMessage
    pong           ->  PongMessage
    anything else  ->  UnknownMessage (kept for forward compatibility)

Outbound frames are plain dicts built by ``auth_frame`` and
``command_frame``.
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import ProtocolError


logger = logging.getLogger(__name__)


class Frame(BaseModel):
    """Common base: unknown keys are preserved, never rejected."""

    model_config = ConfigDict(extra="allow")

    type: str


class AuthRequired(Frame):
    type: str = "auth_required"
    ha_version: Optional[str] = None


class AuthOk(Frame):
    type: str = "auth_ok"
    ha_version: Optional[str] = None


class AuthInvalid(Frame):
    type: str = "auth_invalid"
    message: str = "Invalid access token"


class ErrorInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Union[str, int] = "unknown_error"
    message: str = "Unknown HA Error"


class ResultMessage(Frame):
    type: str = "result"
    id: int
    success: bool
    result: Any = None
    error: Optional[ErrorInfo] = None


class Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: str
    data: Dict[str, Any] = {}
    origin: Optional[str] = None
    time_fired: Optional[str] = None

    @property
    def entity_id(self) -> Optional[str]:
        """Entity the event is about, when the payload names one."""
        entity_id = self.data.get("entity_id")
        return entity_id if isinstance(entity_id, str) else None


class EventMessage(Frame):
    type: str = "event"
    id: Optional[int] = None
    event: Event


class PongMessage(Frame):
    type: str = "pong"
    id: int


class UnknownMessage(Frame):
    """Any frame type this client does not model."""


InboundFrame = Union[
    AuthRequired, AuthOk, AuthInvalid, ResultMessage, EventMessage, PongMessage, UnknownMessage
]

_FRAME_TYPES = {
    "auth_required": AuthRequired,
    "auth_ok": AuthOk,
    "auth_invalid": AuthInvalid,
    "result": ResultMessage,
    "event": EventMessage,
    "pong": PongMessage,
}


def decode_frame(raw: Union[str, bytes]) -> InboundFrame:
    """
    Parse one text frame into a typed message.

    Raises:
        ProtocolError: if the frame is not JSON, not an object, has no
            string ``type``, or does not match the shape of its type.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Frame is not a JSON object: {type(data).__name__}")

    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        raise ProtocolError("Frame has no 'type' field")

    model = _FRAME_TYPES.get(msg_type, UnknownMessage)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Malformed {msg_type!r} frame: {e.error_count()} error(s)") from e


def encode_frame(message: Dict[str, Any]) -> str:
    return json.dumps(message)


def auth_frame(token: str) -> Dict[str, Any]:
    return {"type": "auth", "access_token": token}


def command_frame(msg_id: int, command_type: str, **params: Any) -> Dict[str, Any]:
    """Build a command frame. ``id`` and ``type`` always win over params."""
    return {**params, "id": msg_id, "type": command_type}
