"""Tests for the in-memory session registry."""

import asyncio
import itertools
import re

import pytest

from spotsync.errors import CodeSpaceExhausted, InvalidCode
from spotsync.protocol import HOST_DISCONNECTED, HOST_ENDED, MessageType
from spotsync.registry import SessionRegistry

from conftest import FakeConnection


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(peer_count_debounce=0.01)


def connect(registry: SessionRegistry, *ids: str):
    conns = [FakeConnection(i) for i in ids]
    for conn in conns:
        registry.register(conn)
    return conns


class TestCreateRoom:
    def test_code_format_and_registration(self, registry) -> None:
        """A new room gets a 6-digit code and the caller as host."""
        (host,) = connect(registry, "h")
        code = registry.create_room("h", name="DJ")
        assert re.fullmatch(r"\d{6}", code)
        assert registry.rooms[code].host_id == "h"
        assert registry.rooms[code].host_name == "DJ"
        assert host.messages(MessageType.PEER_COUNT)[-1]["data"] == 0

    def test_collision_retries(self) -> None:
        """A code already in use is never handed out twice."""
        codes = iter(["111111", "111111", "222222"])
        registry = SessionRegistry(code_factory=lambda: next(codes))
        assert registry.create_room("a") == "111111"
        assert registry.create_room("b") == "222222"
        assert registry.rooms["111111"].host_id == "a"

    def test_exhaustion_raises(self) -> None:
        """Running out of attempts aborts creation without touching rooms."""
        registry = SessionRegistry(code_attempts=3, code_factory=lambda: "111111")
        registry.create_room("a")
        with pytest.raises(CodeSpaceExhausted):
            registry.create_room("b")
        assert list(registry.rooms) == ["111111"]

    def test_preferred_code_used_when_free(self, registry) -> None:
        """A reconnecting host gets its old code back if nobody holds it."""
        assert registry.create_room("h", preferred_code="424242") == "424242"

    def test_preferred_code_ignored_when_taken(self) -> None:
        """A live room is never overwritten by a preferred code."""
        codes = itertools.cycle(["555555"])
        registry = SessionRegistry(code_factory=lambda: next(codes))
        registry.create_room("a", preferred_code="424242")
        assert registry.create_room("b", preferred_code="424242") == "555555"
        assert registry.rooms["424242"].host_id == "a"

    def test_malformed_preferred_code_ignored(self, registry) -> None:
        """Only valid codes are honoured as preferences."""
        code = registry.create_room("h", preferred_code="abc")
        assert code != "abc"
        assert re.fullmatch(r"\d{6}", code)


class TestJoinRoom:
    def test_unknown_code(self, registry) -> None:
        """Joining a code no live room holds fails with InvalidCode."""
        with pytest.raises(InvalidCode):
            registry.join_room("999999", "x")

    def test_join_notifies_host_and_counts(self, registry) -> None:
        """The host hears about the joiner and everyone gets the new count."""
        host, listener = connect(registry, "h", "l1")
        code = registry.create_room("h", name="DJ")
        room = registry.join_room(code, "l1", name="Ana")

        assert room.host_name == "DJ"
        assert host.messages(MessageType.CLIENT_JOINED) == [
            {"type": "client_joined", "data": {"clientId": "l1", "name": "Ana"}}
        ]
        assert host.messages(MessageType.PEER_COUNT)[-1]["data"] == 1
        assert listener.messages(MessageType.PEER_COUNT)[-1]["data"] == 1

    def test_rejoin_is_idempotent(self, registry) -> None:
        """Joining twice keeps one membership and one join notice."""
        host, _ = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        registry.join_room(code, "l1")
        assert registry.rooms[code].listener_count == 1
        assert len(host.messages(MessageType.CLIENT_JOINED)) == 1

    def test_host_joining_own_room(self, registry) -> None:
        """The host is never counted as a listener."""
        connect(registry, "h")
        code = registry.create_room("h")
        registry.join_room(code, "h")
        assert registry.rooms[code].listener_count == 0

    def test_join_after_end_fails(self, registry) -> None:
        """An ended room's code is invalid for joining."""
        connect(registry, "h")
        code = registry.create_room("h")
        registry.end_room(code, "h")
        with pytest.raises(InvalidCode):
            registry.join_room(code, "l1")


class TestRelay:
    def test_update_reaches_everyone_in_order(self, registry) -> None:
        """Updates go to host and listeners in emission order."""
        host, l1, l2 = connect(registry, "h", "l1", "l2")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        registry.join_room(code, "l2")

        for i in range(3):
            registry.relay_update(code, {"positionMs": i}, sender_id="h")

        for conn in (host, l1, l2):
            updates = conn.messages(MessageType.UPDATE_SESSION)
            assert [u["data"]["data"]["positionMs"] for u in updates] == [0, 1, 2]

    def test_update_unknown_room(self, registry) -> None:
        """Relaying into a missing room raises InvalidCode."""
        with pytest.raises(InvalidCode):
            registry.relay_update("123456", {})

    def test_update_from_listener_ignored(self, registry) -> None:
        """Only the host's playback is relayed."""
        host, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        assert registry.relay_update(code, {"positionMs": 1}, sender_id="l1") is False
        assert host.messages(MessageType.UPDATE_SESSION) == []

    def test_control_goes_to_host_only(self, registry) -> None:
        """Listener control requests are addressed to the host alone."""
        host, l1, l2 = connect(registry, "h", "l1", "l2")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        registry.join_room(code, "l2")

        registry.relay_control(code, "seek", {"ms": 1000}, sender_id="l1")

        assert host.messages(MessageType.CONTROL_SESSION) == [
            {"type": "control_session",
             "data": {"command": "seek", "payload": {"ms": 1000}, "clientId": "l1"}}
        ]
        assert l1.messages(MessageType.CONTROL_SESSION) == []
        assert l2.messages(MessageType.CONTROL_SESSION) == []

    def test_control_unknown_room(self, registry) -> None:
        """Control into a missing room raises InvalidCode."""
        with pytest.raises(InvalidCode):
            registry.relay_control("123456", "play")


class TestLeaveAndEnd:
    def test_leave_twice_is_idempotent(self, registry) -> None:
        """A second leave changes nothing and counts never go negative."""
        host, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")

        registry.leave_room(code, "l1")
        registry.leave_room(code, "l1")

        counts = [m["data"] for m in host.messages(MessageType.PEER_COUNT)]
        assert counts == [0, 1, 0]
        assert len(host.messages(MessageType.CLIENT_LEFT)) == 1
        assert code in registry.rooms

    def test_leave_unknown_room_is_noop(self, registry) -> None:
        """Leaving a room that does not exist does nothing."""
        registry.leave_room("123456", "x")

    def test_host_leave_ends_room(self, registry) -> None:
        """A host leaving tears the room down for everyone."""
        _, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        registry.leave_room(code, "h")
        assert code not in registry.rooms
        assert l1.messages(MessageType.SESSION_ENDED)[0]["data"] == {"message": HOST_ENDED}

    def test_end_by_non_host_is_silent(self, registry) -> None:
        """A listener cannot end the room and is told nothing."""
        host, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        assert registry.end_room(code, "l1") is False
        assert code in registry.rooms
        assert host.messages(MessageType.SESSION_ENDED) == []
        assert l1.messages(MessageType.SESSION_ENDED) == []

    def test_end_by_host(self, registry) -> None:
        """Ending notifies every member with the reason and drops the room."""
        host, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        assert registry.end_room(code, "h") is True
        for conn in (host, l1):
            assert conn.messages(MessageType.SESSION_ENDED) == [
                {"type": "session_ended", "data": {"message": HOST_ENDED}}
            ]
        assert code not in registry.rooms


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_host_disconnect_ends_room_once(self, registry) -> None:
        """Exactly one 'Host disconnected' notice per hosted room."""
        _, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")

        registry.on_disconnect("h")
        registry.on_disconnect("h")

        assert l1.messages(MessageType.SESSION_ENDED) == [
            {"type": "session_ended", "data": {"message": HOST_DISCONNECTED}}
        ]
        assert code not in registry.rooms

    @pytest.mark.asyncio
    async def test_listener_disconnect_keeps_room(self, registry) -> None:
        """A listener dropping only shrinks the room, after the debounce."""
        host, _ = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        before = len(host.messages(MessageType.PEER_COUNT))

        registry.on_disconnect("l1")
        assert code in registry.rooms
        assert len(host.messages(MessageType.PEER_COUNT)) == before

        await asyncio.sleep(0.05)
        assert host.messages(MessageType.PEER_COUNT)[-1]["data"] == 0
        assert host.messages(MessageType.CLIENT_LEFT) == [
            {"type": "client_left", "data": {"clientId": "l1"}}
        ]

    @pytest.mark.asyncio
    async def test_rapid_disconnects_coalesce(self, registry) -> None:
        """Several drops inside the debounce window yield one count update."""
        host, *_ = connect(registry, "h", "l1", "l2", "l3")
        code = registry.create_room("h")
        for cid in ("l1", "l2", "l3"):
            registry.join_room(code, cid)
        before = len(host.messages(MessageType.PEER_COUNT))

        for cid in ("l1", "l2", "l3"):
            registry.on_disconnect(cid)
        await asyncio.sleep(0.05)

        counts = host.messages(MessageType.PEER_COUNT)[before:]
        assert [m["data"] for m in counts] == [0]

    @pytest.mark.asyncio
    async def test_pending_count_dropped_when_room_ends(self, registry) -> None:
        """No count update is sent for a room that ended meanwhile."""
        host, l1 = connect(registry, "h", "l1")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        before = len(host.messages(MessageType.PEER_COUNT))

        registry.on_disconnect("l1")
        registry.end_room(code, "h")
        await asyncio.sleep(0.05)

        assert len(host.messages(MessageType.PEER_COUNT)) == before

    def test_stats(self, registry) -> None:
        """Stats count rooms, listeners and connections, not codes."""
        connect(registry, "h", "l1", "l2")
        code = registry.create_room("h")
        registry.join_room(code, "l1")
        registry.join_room(code, "l2")
        assert registry.stats() == {"sessions": 1, "listeners": 2, "connections": 3}
