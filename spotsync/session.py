"""
Per-participant session state machine

A SessionClient owns its role (idle / hosting / joined), the session code,
the connection status and the one transport channel it talks to the relay
through. Everything runs on one event loop; channel events arrive through
the synchronous on_connect / on_disconnect / on_message callbacks and are
applied in full before control returns to the loop.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import config
from .channel import WebSocketChannel
from .errors import (
    ChannelUnavailable, InvalidCode, InvalidCodeFormat, SessionError, SyncError, Unauthorized,
)
from .playback import PlaybackSnapshot
from .protocol import MessageType
from .storage import StateStore
from .utils import is_valid_session_code

logger = logging.getLogger("spot_sync")

SESSION_GONE = "Session no longer available"


class Role(Enum):
    IDLE = "idle"
    HOSTING = "hosting"
    JOINED = "joined"


class ConnectionStatus(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SessionListener:
    """UI-facing notifications. Override the ones you care about."""

    def on_state_changed(self, client: "SessionClient") -> None:
        pass

    def on_connection_lost(self) -> None:
        pass

    def on_connection_restored(self) -> None:
        pass

    def on_session_ended(self, message: str) -> None:
        pass

    def on_peer_count(self, count: int) -> None:
        pass

    def on_client_joined(self, client_id: str, name: Optional[str]) -> None:
        pass

    def on_client_left(self, client_id: str) -> None:
        pass

    def on_host_update(self, snapshot: PlaybackSnapshot) -> None:
        pass

    def on_control(self, command: str, payload: Any) -> None:
        pass

    def on_track_mismatch(self, host_track, local_track, episode: int) -> None:
        pass


def _default_channel(listener) -> WebSocketChannel:
    return WebSocketChannel(config.RELAY_URL, listener=listener)


class SessionClient:
    def __init__(self, channel_factory: Callable[[Any], Any] = _default_channel,
                 store: Optional[StateStore] = None, display_name: str = ""):
        self._channel_factory = channel_factory
        self.store = store if store is not None else StateStore()
        self.listeners: List[SessionListener] = []

        self.role = Role.IDLE
        self.session_code = ""
        self.connection_status = ConnectionStatus.DISCONNECTED
        self.connected_peers = 0
        self.host_name = ""
        self.display_name = display_name

        self._channel = None
        self._intentional_disconnect = False
        # bumped on every leave/end/teardown; acks from an older epoch are stale
        self._epoch = 0
        self._tasks = set()

        self._handlers = {
            MessageType.PEER_COUNT: self._on_peer_count,
            MessageType.CLIENT_JOINED: self._on_client_joined,
            MessageType.CLIENT_LEFT: self._on_client_left,
            MessageType.UPDATE_SESSION: self._on_update,
            MessageType.CONTROL_SESSION: self._on_control,
            MessageType.SESSION_ENDED: self._on_session_ended,
        }

    # ============================================================
    # LISTENERS
    # ============================================================

    def add_listener(self, listener: SessionListener) -> None:
        self.listeners.append(listener)

    def notify(self, event: str, *args) -> None:
        for listener in list(self.listeners):
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Session listener failed on {event}")

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ============================================================
    # COMMANDS
    # ============================================================

    async def start(self, name: Optional[str] = None) -> str:
        """Host a new session; returns its code"""
        self._require_idle()
        if name:
            self.display_name = name

        epoch = self._epoch
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            channel = await self._open_channel()
            reply = await channel.request(MessageType.START_SESSION, self._named({}))
        except SyncError:
            await self._abort_connect(epoch)
            raise

        if epoch != self._epoch:
            raise SessionError("Session start cancelled")
        code = reply.get("sessionCode")
        if not reply.get("success", True) or not code:
            await self._abort_connect(epoch)
            raise SessionError(reply.get("error") or "Failed to start session")

        self.role = Role.HOSTING
        self.session_code = code
        self.connected_peers = 0
        self.connection_status = ConnectionStatus.CONNECTED
        self._save()
        logger.info(f"🎪 Hosting session {code}")
        return code

    async def join(self, code: str, name: Optional[str] = None) -> None:
        """Join a running session as a listener"""
        code = str(code or "").strip()
        if not is_valid_session_code(code):
            raise InvalidCodeFormat(code)
        self._require_idle()
        if name:
            self.display_name = name

        epoch = self._epoch
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            channel = await self._open_channel()
            reply = await channel.request(
                MessageType.JOIN_SESSION, self._named({"sessionCode": code})
            )
        except SyncError:
            await self._abort_connect(epoch)
            raise

        if epoch != self._epoch:
            raise SessionError("Join cancelled")
        if not reply.get("success"):
            await self._abort_connect(epoch)
            if reply.get("reason") == "invalid_code":
                raise InvalidCode(code)
            raise SessionError(reply.get("error") or "Failed to join session")

        self.role = Role.JOINED
        self.session_code = code
        self.host_name = reply.get("hostName") or ""
        self.connection_status = ConnectionStatus.CONNECTED
        self._save()
        logger.info(f"✅ Joined session {code}")

    async def leave(self) -> None:
        """Leave the current session; local state is cleared whatever the relay says"""
        code = self.session_code
        channel = self._channel
        self._epoch += 1

        if channel is not None and channel.connected and code:
            try:
                await channel.request(MessageType.LEAVE_SESSION, {"sessionCode": code})
            except SyncError as e:
                logger.warning(f"Leave not acknowledged for {code}: {e}")
        await self._reset()
        if code:
            logger.info(f"👋 Left session {code}")

    async def end(self) -> None:
        """Host-only teardown; fire-and-forget towards the relay"""
        if self.role is not Role.HOSTING:
            raise Unauthorized("Only the host can end the session")
        code = self.session_code
        channel = self._channel
        self._epoch += 1

        if channel is not None and channel.connected:
            try:
                await channel.emit(MessageType.END_SESSION, {"sessionCode": code})
            except SyncError as e:
                logger.warning(f"Could not send end for {code}: {e}")
        await self._reset()
        logger.info(f"🛑 Ended session {code}")

    async def send_update(self, snapshot: PlaybackSnapshot) -> None:
        """Broadcast the host's playback to the room"""
        if self.role is not Role.HOSTING:
            return
        channel = self._require_channel()
        await channel.emit(
            MessageType.UPDATE_SESSION,
            {"sessionCode": self.session_code, "data": snapshot.to_dict()},
        )

    async def send_control(self, command: str, payload: Any = None) -> None:
        """Ask the host to play/pause/toggle/seek"""
        if self.role is not Role.JOINED:
            raise SessionError("Not in a session")
        channel = self._require_channel()
        data = {"sessionCode": self.session_code, "command": command}
        if payload is not None:
            data["payload"] = payload
        reply = await channel.request(MessageType.CONTROL_SESSION, data)
        if not reply.get("success"):
            if reply.get("reason") == "invalid_code":
                raise InvalidCode(self.session_code)
            raise SessionError(reply.get("error") or "Control failed")

    async def restore(self) -> None:
        """Pick up a session persisted by a previous run and reconnect to it"""
        saved = self.store.load()
        try:
            role = Role(saved.get("sessionState", Role.IDLE.value))
        except ValueError:
            role = Role.IDLE
        code = saved.get("sessionCode") or ""
        self.display_name = self.display_name or saved.get("lastJoinedName") or ""

        if role is Role.IDLE or not is_valid_session_code(code):
            self._clear()
            self._save()
            return

        self.role = role
        self.session_code = code
        self.connected_peers = int(saved.get("connectedPeers") or 0)
        self._set_status(ConnectionStatus.CONNECTING)
        channel = self._new_channel()
        try:
            await channel.connect()
        except SyncError as e:
            # The channel keeps retrying; its first connect is not a restore
            logger.warning(f"Relay not reachable yet while restoring {code}: {e}")

    def status(self) -> Dict[str, Any]:
        return {
            "connected": bool(self._channel is not None and self._channel.connected),
            "peerCount": self.connected_peers,
            "sessionCode": self.session_code,
            "sessionState": self.role.value,
            "connectionStatus": self.connection_status.value,
        }

    # ============================================================
    # CHANNEL EVENTS
    # ============================================================

    def on_connect(self) -> None:
        if self.role is Role.IDLE:
            return
        previous = self.connection_status
        self._set_status(ConnectionStatus.CONNECTING)
        if previous is ConnectionStatus.DISCONNECTED:
            logger.info(f"🔌 Connection restored for {self.session_code}")
            self.notify("on_connection_restored")
        self.spawn(self._rejoin(self._epoch))

    def on_disconnect(self) -> None:
        if self._intentional_disconnect:
            self._intentional_disconnect = False
            self._set_status(ConnectionStatus.DISCONNECTED)
            return
        self._set_status(ConnectionStatus.DISCONNECTED)
        if self.role is not Role.IDLE:
            logger.warning(f"⚠️ Connection lost for {self.session_code}")
            self.notify("on_connection_lost")

    def on_message(self, msg_type: MessageType, data: Any) -> None:
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.debug(f"Ignoring {msg_type.value} from relay")
            return
        handler(data)

    def _on_peer_count(self, data: Any) -> None:
        try:
            count = max(0, int(data))
        except (TypeError, ValueError):
            return
        self.connected_peers = count
        self._save()
        self.notify("on_peer_count", count)

    def _on_client_joined(self, data: Any) -> None:
        data = data or {}
        self.notify("on_client_joined", data.get("clientId"), data.get("name"))

    def _on_client_left(self, data: Any) -> None:
        self.notify("on_client_left", (data or {}).get("clientId"))

    def _on_update(self, data: Any) -> None:
        if self.role is not Role.JOINED or not isinstance(data, dict):
            return
        payload = data.get("data")
        if not isinstance(payload, dict):
            return
        try:
            snapshot = PlaybackSnapshot.from_dict(payload)
        except (TypeError, ValueError) as e:
            logger.debug(f"Dropping malformed host update: {e}")
            return
        self.notify("on_host_update", snapshot)

    def _on_control(self, data: Any) -> None:
        if self.role is not Role.HOSTING or not isinstance(data, dict):
            return
        self.notify("on_control", data.get("command"), data.get("payload"))

    def _on_session_ended(self, data: Any) -> None:
        if self.role is Role.IDLE:
            return
        message = (data or {}).get("message") or SESSION_GONE
        logger.info(f"🛑 Session {self.session_code} ended: {message}")
        self._end_locally(message)

    # ============================================================
    # INTERNALS
    # ============================================================

    async def _rejoin(self, epoch: int) -> None:
        channel = self._channel
        if channel is None:
            return
        code = self.session_code
        try:
            if self.role is Role.HOSTING:
                reply = await channel.request(
                    MessageType.START_SESSION, self._named({"sessionCode": code})
                )
                ok = reply.get("success", True) and bool(reply.get("sessionCode"))
            else:
                reply = await channel.request(
                    MessageType.JOIN_SESSION, self._named({"sessionCode": code})
                )
                ok = bool(reply.get("success"))
        except SyncError as e:
            logger.warning(f"Rejoin of {code} failed: {e}")
            return

        if epoch != self._epoch or self.role is Role.IDLE:
            return
        if not ok:
            self._end_locally(SESSION_GONE)
            return
        if self.role is Role.HOSTING and reply["sessionCode"] != code:
            logger.info(f"Previous code {code} was taken, now hosting {reply['sessionCode']}")
            self.session_code = reply["sessionCode"]
        self.connection_status = ConnectionStatus.CONNECTED
        self._save()

    def _new_channel(self):
        self._intentional_disconnect = False
        self._channel = self._channel_factory(self)
        return self._channel

    async def _open_channel(self):
        channel = self._channel or self._new_channel()
        if not channel.connected:
            await channel.connect()
        return channel

    def _require_channel(self):
        channel = self._channel
        if channel is None or not channel.connected:
            raise ChannelUnavailable("Not connected to relay")
        return channel

    def _require_idle(self) -> None:
        if self.role is not Role.IDLE or self.connection_status is ConnectionStatus.CONNECTING:
            raise SessionError("Already in a session")

    def _detach_channel(self):
        channel, self._channel = self._channel, None
        if channel is not None:
            # consumed by the disconnect event this close produces
            self._intentional_disconnect = channel.connected
        return channel

    async def _teardown_channel(self) -> None:
        channel = self._detach_channel()
        if channel is not None:
            await channel.close()

    def _end_locally(self, message: str) -> None:
        """Drop to idle before anyone hears about it; the socket closes afterwards"""
        self._epoch += 1
        self._clear()
        self._save()
        channel = self._detach_channel()
        if channel is not None:
            self.spawn(channel.close())
        self.notify("on_session_ended", message)

    async def _abort_connect(self, epoch: int) -> None:
        if epoch != self._epoch:
            return
        await self._teardown_channel()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _reset(self) -> None:
        self._clear()
        self._save()
        await self._teardown_channel()

    def _clear(self) -> None:
        self.role = Role.IDLE
        self.session_code = ""
        self.connected_peers = 0
        self.host_name = ""
        self.connection_status = ConnectionStatus.DISCONNECTED

    def _named(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.display_name:
            data["name"] = self.display_name
        return data

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self.connection_status:
            return
        self.connection_status = status
        self._save()

    def _save(self) -> None:
        self.store.save({
            "sessionState": self.role.value,
            "sessionCode": self.session_code,
            "connectionStatus": self.connection_status.value,
            "connectedPeers": self.connected_peers,
            "lastJoinedName": self.display_name,
        })
        self.notify("on_state_changed", self)
