"""Shared fakes and fixtures for the Spot Sync tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from spotsync.errors import ChannelUnavailable
from spotsync.playback import Command, PlaybackOracle, PlaybackSnapshot, TrackIdentity
from spotsync.protocol import MessageType
from spotsync.session import SessionClient, SessionListener
from spotsync.storage import StateStore


class FakeConnection:
    """Relay-side connection that records outbound frames."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.frames: List[str] = []

    def send(self, frame: str) -> None:
        self.frames.append(frame)

    def messages(self, msg_type: Optional[MessageType] = None) -> List[Dict[str, Any]]:
        decoded = [json.loads(f) for f in self.frames]
        if msg_type is None:
            return decoded
        return [m for m in decoded if m["type"] == msg_type.value]


class FakeChannel:
    """In-process transport channel driven by the test."""

    def __init__(self, listener, disconnect_on_close: bool = True):
        self.listener = listener
        self.disconnect_on_close = disconnect_on_close
        self.connected = False
        self.closed = False
        self.replies: Dict[MessageType, Any] = {}
        self.requests: List[tuple] = []
        self.emitted: List[tuple] = []
        self.connect_error: Optional[Exception] = None

    async def connect(self, timeout=None) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        self.listener.on_connect()

    async def close(self) -> None:
        was_connected = self.connected
        self.connected = False
        self.closed = True
        if was_connected and self.disconnect_on_close:
            self.listener.on_disconnect()

    async def request(self, msg_type: MessageType, data=None, timeout=None):
        if not self.connected:
            raise ChannelUnavailable("Not connected to relay")
        self.requests.append((msg_type, data))
        reply = self.replies.get(msg_type, {"success": True})
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, asyncio.Future):
            return await reply
        return reply

    async def emit(self, msg_type: MessageType, data=None) -> None:
        if not self.connected:
            raise ChannelUnavailable("Not connected to relay")
        self.emitted.append((msg_type, data))

    def drop(self) -> None:
        """Simulate the socket going away underneath the client."""
        self.connected = False
        self.listener.on_disconnect()

    def restore(self) -> None:
        self.connected = True
        self.listener.on_connect()

    def sent_types(self) -> List[MessageType]:
        return [t for t, _ in self.requests]


class RecordingListener(SessionListener):
    def __init__(self):
        self.events: List[tuple] = []

    def _record(self, *event):
        self.events.append(event)

    def on_connection_lost(self):
        self._record("connection_lost")

    def on_connection_restored(self):
        self._record("connection_restored")

    def on_session_ended(self, message):
        self._record("session_ended", message)

    def on_peer_count(self, count):
        self._record("peer_count", count)

    def on_client_joined(self, client_id, name):
        self._record("client_joined", client_id, name)

    def on_client_left(self, client_id):
        self._record("client_left", client_id)

    def on_host_update(self, snapshot):
        self._record("host_update", snapshot)

    def on_control(self, command, payload):
        self._record("control", command, payload)

    def on_track_mismatch(self, host_track, local_track, episode):
        self._record("track_mismatch", host_track, local_track, episode)

    def names(self) -> List[str]:
        return [e[0] for e in self.events]


class FakeOracle(PlaybackOracle):
    def __init__(self, snapshot: Optional[PlaybackSnapshot] = None):
        self.snapshot = snapshot
        self.commands: List[Command] = []
        self.read_error: Optional[Exception] = None
        self.apply_error: Optional[Exception] = None

    async def read_local_playback(self):
        if self.read_error is not None:
            raise self.read_error
        return self.snapshot

    async def apply_command(self, command: Command) -> None:
        if self.apply_error is not None:
            raise self.apply_error
        self.commands.append(command)


class ManualClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


def snapshot(title="A", artist="B", position_ms=0, duration_ms=200000,
             is_playing=True, captured_at=1_000_000.0) -> PlaybackSnapshot:
    return PlaybackSnapshot(
        track=TrackIdentity(title, artist),
        position_ms=position_ms,
        duration_ms=duration_ms,
        is_playing=is_playing,
        captured_at=captured_at,
    )


async def drain(client: SessionClient) -> None:
    """Wait for every task the client spawned, including ones spawned meanwhile."""
    while client._tasks:
        await asyncio.gather(*list(client._tasks))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def channels() -> List[FakeChannel]:
    return []


@pytest.fixture
def store() -> StateStore:
    return StateStore()

