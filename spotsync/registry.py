"""
In-memory session registry: rooms, membership and relaying

All state lives on the relay's event loop. Every public method runs to
completion without awaiting, so join/leave/disconnect for a room can never
interleave; outbound frames go to per-connection FIFO outboxes, which keeps
a room's messages in emission order for every member.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from . import config
from .errors import CodeSpaceExhausted, InvalidCode
from .protocol import HOST_DISCONNECTED, HOST_ENDED, MessageType, encode_frame
from .utils import generate_session_code, is_valid_session_code

logger = logging.getLogger("spot_sync")


@dataclass
class Room:
    code: str
    host_id: str
    host_name: Optional[str] = None
    # listener connection id -> display name
    members: Dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def listener_count(self) -> int:
        return len(self.members)

    def participants(self) -> List[str]:
        return [self.host_id, *self.members]


class SessionRegistry:
    def __init__(
        self,
        code_attempts: int = config.CODE_ATTEMPTS,
        peer_count_debounce: float = config.PEER_COUNT_DEBOUNCE,
        code_factory: Callable[[], str] = generate_session_code,
    ):
        self.rooms: Dict[str, Room] = {}
        self.connections: Dict[str, Any] = {}
        self.code_attempts = code_attempts
        self.peer_count_debounce = peer_count_debounce
        self._code_factory = code_factory
        self._pending_counts: Dict[str, asyncio.TimerHandle] = {}

    # ============================================================
    # CONNECTIONS
    # ============================================================

    def register(self, connection) -> None:
        """Track a live connection; it must expose ``id`` and ``send(str)``"""
        self.connections[connection.id] = connection

    def _send(self, connection_id: str, msg_type: MessageType, data: Any = None) -> None:
        conn = self.connections.get(connection_id)
        if conn is None:
            return
        conn.send(encode_frame(msg_type, data))

    def _broadcast(self, room: Room, msg_type: MessageType, data: Any = None) -> None:
        frame = encode_frame(msg_type, data)
        for cid in room.participants():
            conn = self.connections.get(cid)
            if conn is not None:
                conn.send(frame)

    def _emit_peer_count(self, room: Room) -> None:
        self._broadcast(room, MessageType.PEER_COUNT, room.listener_count)
        logger.debug("Room %s now has %d listeners", room.code, room.listener_count)

    # ============================================================
    # ROOM LIFECYCLE
    # ============================================================

    def create_room(self, host_id: str, name: Optional[str] = None,
                    preferred_code: Optional[str] = None) -> str:
        """Register ``host_id`` as host of a fresh room and return its code"""
        code = None
        if preferred_code and is_valid_session_code(preferred_code) and preferred_code not in self.rooms:
            code = preferred_code
        else:
            for _ in range(self.code_attempts):
                candidate = self._code_factory()
                if candidate not in self.rooms:
                    code = candidate
                    break
        if code is None:
            logger.error("Could not find a free session code after %d attempts", self.code_attempts)
            raise CodeSpaceExhausted("Could not allocate a session code")

        room = Room(code=code, host_id=host_id, host_name=name)
        self.rooms[code] = room
        logger.info("🎪 Session %s started by %s", code, name or host_id)
        self._emit_peer_count(room)
        return code

    def join_room(self, code: str, joiner_id: str, name: Optional[str] = None) -> Room:
        """Add a listener; returns the room so the caller can address its host"""
        room = self.rooms.get(code)
        if room is None:
            raise InvalidCode(code)
        if joiner_id == room.host_id:
            return room

        already = joiner_id in room.members
        room.members[joiner_id] = name
        if not already:
            logger.info("✅ %s joined %s", name or joiner_id, code)
            self._send(room.host_id, MessageType.CLIENT_JOINED, _client_notice(joiner_id, name))
        self._emit_peer_count(room)
        return room

    def leave_room(self, code: str, connection_id: str) -> None:
        room = self.rooms.get(code)
        if room is None:
            return
        if connection_id == room.host_id:
            self._end(room, HOST_ENDED)
            return
        if connection_id not in room.members:
            return

        del room.members[connection_id]
        logger.info("👋 %s left %s", connection_id, code)
        self._send(room.host_id, MessageType.CLIENT_LEFT, {"clientId": connection_id})
        self._emit_peer_count(room)

    def end_room(self, code: str, requester_id: str) -> bool:
        """Host-only teardown; anyone else is ignored without a trace"""
        room = self.rooms.get(code)
        if room is None or room.host_id != requester_id:
            return False
        self._end(room, HOST_ENDED)
        return True

    def _end(self, room: Room, reason: str) -> None:
        self._broadcast(room, MessageType.SESSION_ENDED, {"message": reason})
        self.rooms.pop(room.code, None)
        pending = self._pending_counts.pop(room.code, None)
        if pending is not None:
            pending.cancel()
        logger.info("🛑 Session %s ended: %s", room.code, reason)

    # ============================================================
    # RELAYING
    # ============================================================

    def relay_update(self, code: str, payload: Dict[str, Any], sender_id: Optional[str] = None) -> bool:
        """Broadcast a host playback snapshot to the whole room"""
        room = self.rooms.get(code)
        if room is None:
            raise InvalidCode(code)
        if sender_id is not None and sender_id != room.host_id:
            return False
        self._broadcast(room, MessageType.UPDATE_SESSION, {"data": payload})
        return True

    def relay_control(self, code: str, command: str, payload: Any = None,
                      sender_id: Optional[str] = None) -> None:
        """Forward a listener's control request to the host only"""
        room = self.rooms.get(code)
        if room is None:
            raise InvalidCode(code)
        data = {"command": command}
        if payload is not None:
            data["payload"] = payload
        if sender_id is not None:
            data["clientId"] = sender_id
        self._send(room.host_id, MessageType.CONTROL_SESSION, data)

    # ============================================================
    # DISCONNECTS
    # ============================================================

    def on_disconnect(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)
        for room in list(self.rooms.values()):
            if room.host_id == connection_id:
                self._end(room, HOST_DISCONNECTED)
            elif connection_id in room.members:
                del room.members[connection_id]
                self._send(room.host_id, MessageType.CLIENT_LEFT, {"clientId": connection_id})
                self._schedule_peer_count(room.code)

    def _schedule_peer_count(self, code: str) -> None:
        if code in self._pending_counts:
            return
        loop = asyncio.get_running_loop()
        self._pending_counts[code] = loop.call_later(
            self.peer_count_debounce, self._flush_peer_count, code
        )

    def _flush_peer_count(self, code: str) -> None:
        self._pending_counts.pop(code, None)
        room = self.rooms.get(code)
        if room is not None:
            self._emit_peer_count(room)

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self.rooms),
            "listeners": sum(r.listener_count for r in self.rooms.values()),
            "connections": len(self.connections),
        }


def _client_notice(client_id: str, name: Optional[str]) -> Dict[str, Any]:
    notice = {"clientId": client_id}
    if name:
        notice["name"] = name
    return notice
