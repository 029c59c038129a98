"""
Wire protocol shared by the relay and the session client.

Every frame is a JSON object::

    {"type": "<message type>", "id": <int, requests only>, "data": <payload>}

A frame carrying an ``id`` is a request; the relay answers it with an
``ack`` frame echoing the same ``id``. Client requests decode into one of
the dataclasses below through ``REQUEST_TYPES``; anything else raises
``ProtocolError``.
"""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ProtocolError


class MessageType(Enum):
    # client -> registry
    START_SESSION = "start_session"
    JOIN_SESSION = "join_session"
    LEAVE_SESSION = "leave_session"
    END_SESSION = "end_session"
    UPDATE_SESSION = "update_session"
    CONTROL_SESSION = "control_session"

    # registry -> client
    CLIENT_JOINED = "client_joined"
    CLIENT_LEFT = "client_left"
    PEER_COUNT = "peer_count"
    SESSION_ENDED = "session_ended"
    ACK = "ack"


HOST_ENDED = "Host ended session"
HOST_DISCONNECTED = "Host disconnected"


@dataclass
class Frame:
    type: MessageType
    data: Any = None
    id: Optional[int] = None


def encode_frame(msg_type: MessageType, data: Any = None, request_id: Optional[int] = None) -> str:
    frame: Dict[str, Any] = {"type": msg_type.value}
    if request_id is not None:
        frame["id"] = int(request_id)
    if data is not None:
        frame["data"] = data
    return json.dumps(frame)


def decode_frame(raw: str) -> Frame:
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"malformed frame: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("frame must be a JSON object")

    request_id = obj.get("id")
    if request_id is not None and not isinstance(request_id, int):
        raise ProtocolError("frame id must be an integer")

    try:
        msg_type = MessageType(obj.get("type"))
    except ValueError:
        raise ProtocolError(f"unknown message type: {obj.get('type')!r}", request_id=request_id)
    return Frame(type=msg_type, data=obj.get("data"), id=request_id)


# ============================================================
# CLIENT REQUESTS
# ============================================================

def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"missing field: {key}")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"field {key} must be a string")
    return value.strip() or None


@dataclass
class StartSession:
    name: Optional[str] = None
    session_code: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StartSession":
        return cls(name=_optional_str(data, "name"), session_code=_optional_str(data, "sessionCode"))


@dataclass
class JoinSession:
    session_code: str
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinSession":
        return cls(session_code=_require_str(data, "sessionCode"), name=_optional_str(data, "name"))


@dataclass
class LeaveSession:
    session_code: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeaveSession":
        return cls(session_code=_require_str(data, "sessionCode"))


@dataclass
class EndSession:
    session_code: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EndSession":
        return cls(session_code=_require_str(data, "sessionCode"))


@dataclass
class UpdateSession:
    session_code: str
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateSession":
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise ProtocolError("missing field: data")
        return cls(session_code=_require_str(data, "sessionCode"), data=payload)


@dataclass
class ControlSession:
    session_code: str
    command: str
    payload: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControlSession":
        return cls(
            session_code=_require_str(data, "sessionCode"),
            command=_require_str(data, "command"),
            payload=data.get("payload"),
        )


REQUEST_TYPES = {
    MessageType.START_SESSION: StartSession,
    MessageType.JOIN_SESSION: JoinSession,
    MessageType.LEAVE_SESSION: LeaveSession,
    MessageType.END_SESSION: EndSession,
    MessageType.UPDATE_SESSION: UpdateSession,
    MessageType.CONTROL_SESSION: ControlSession,
}


def decode_request(frame: Frame):
    """Turn a client frame into its request record"""
    cls = REQUEST_TYPES.get(frame.type)
    if cls is None:
        raise ProtocolError(f"{frame.type.value} is not a client request")
    data = frame.data if frame.data is not None else {}
    if not isinstance(data, dict):
        raise ProtocolError(f"{frame.type.value} payload must be an object")
    return cls.from_dict(data)
