"""
Relay HTTP/WebSocket handlers
WebSocket session protocol + stats with ETag caching
"""
import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import WSMsgType, web

from .errors import CodeSpaceExhausted, InvalidCode, ProtocolError
from .protocol import (
    ControlSession, EndSession, JoinSession, LeaveSession, MessageType,
    StartSession, UpdateSession, decode_frame, decode_request, encode_frame,
)
from .registry import SessionRegistry
from .utils import generate_connection_id, generate_display_name

logger = logging.getLogger("spot_sync")

registry_key = web.AppKey("registry", SessionRegistry)
heartbeat_key = web.AppKey("ws_heartbeat", float)


class Connection:
    """One relay WebSocket with an ordered outbound queue"""

    def __init__(self, ws: web.WebSocketResponse):
        self.id = generate_connection_id()
        self.ws = ws
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.writer: Optional[asyncio.Task] = None

    def send(self, frame: str) -> None:
        self.queue.put_nowait(frame)

    def start(self) -> None:
        self.writer = asyncio.create_task(self._drain())

    async def _drain(self):
        while True:
            frame = await self.queue.get()
            if frame is None:
                return
            try:
                await self.ws.send_str(frame)
            except Exception as e:
                logger.debug(f"Failed to send to {self.id}: {e}")
                return

    async def close(self):
        self.queue.put_nowait(None)
        if self.writer is not None:
            try:
                await asyncio.wait_for(self.writer, timeout=1.0)
            except asyncio.TimeoutError:
                self.writer.cancel()


# ============================================================
# REQUEST HANDLERS
# ============================================================

def handle_start(registry: SessionRegistry, conn: Connection, req: StartSession) -> Dict[str, Any]:
    try:
        code = registry.create_room(
            conn.id, name=req.name or generate_display_name(), preferred_code=req.session_code
        )
    except CodeSpaceExhausted as e:
        return {"success": False, "error": str(e)}
    return {"success": True, "sessionCode": code}


def handle_join(registry: SessionRegistry, conn: Connection, req: JoinSession) -> Dict[str, Any]:
    room = registry.join_room(req.session_code, conn.id, name=req.name)
    reply = {"success": True}
    if room.host_name:
        reply["hostName"] = room.host_name
    return reply


def handle_leave(registry: SessionRegistry, conn: Connection, req: LeaveSession) -> Dict[str, Any]:
    registry.leave_room(req.session_code, conn.id)
    return {"success": True}


def handle_end(registry: SessionRegistry, conn: Connection, req: EndSession) -> Dict[str, Any]:
    registry.end_room(req.session_code, conn.id)
    return {"success": True}


def handle_update(registry: SessionRegistry, conn: Connection, req: UpdateSession) -> Dict[str, Any]:
    registry.relay_update(req.session_code, req.data, sender_id=conn.id)
    return {"success": True}


def handle_control(registry: SessionRegistry, conn: Connection, req: ControlSession) -> Dict[str, Any]:
    registry.relay_control(req.session_code, req.command, req.payload, sender_id=conn.id)
    return {"success": True}


HANDLERS = {
    StartSession: handle_start,
    JoinSession: handle_join,
    LeaveSession: handle_leave,
    EndSession: handle_end,
    UpdateSession: handle_update,
    ControlSession: handle_control,
}


def dispatch(registry: SessionRegistry, conn: Connection, raw: str) -> None:
    """Decode one inbound frame, run it against the registry and ack it"""
    request_id = None
    try:
        frame = decode_frame(raw)
        request_id = frame.id
        req = decode_request(frame)
        reply = HANDLERS[type(req)](registry, conn, req)
    except InvalidCode as e:
        reply = {"success": False, "error": str(e), "reason": "invalid_code"}
    except ProtocolError as e:
        if request_id is None:
            request_id = e.request_id
        logger.warning(f"Bad frame from {conn.id}: {e}")
        reply = {"success": False, "error": str(e)}
    if request_id is not None:
        conn.send(encode_frame(MessageType.ACK, reply, request_id))


# ============================================================
# WEBSOCKET SESSION ENDPOINT
# ============================================================

async def ws_session(request: web.Request) -> web.WebSocketResponse:
    """WebSocket endpoint carrying the session protocol"""
    registry = request.app[registry_key]
    ws = web.WebSocketResponse(heartbeat=request.app.get(heartbeat_key))
    await ws.prepare(request)

    conn = Connection(ws)
    conn.start()
    registry.register(conn)
    logger.info(f"📡 Connection opened: {conn.id} (total: {len(registry.connections)})")

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                if msg.data == "ping":
                    conn.send("pong")
                    continue
                dispatch(registry, conn, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.debug(f"WebSocket error on {conn.id}: {ws.exception()}")
    finally:
        registry.on_disconnect(conn.id)
        await conn.close()
        logger.info(f"📡 Connection closed: {conn.id} (remaining: {len(registry.connections)})")

    return ws


# ============================================================
# HTTP
# ============================================================

async def index(request: web.Request) -> web.Response:
    return web.Response(text="works fine")


async def api_stats(request: web.Request) -> web.Response:
    """Live session counts with ETag caching"""
    stats = request.app[registry_key].stats()

    content = json.dumps(stats, sort_keys=True)
    etag = hashlib.md5(content.encode()).hexdigest()

    if request.headers.get("If-None-Match") == etag:
        return web.Response(status=304)

    response = web.json_response({"ok": True, **stats})
    response.headers["ETag"] = etag
    response.headers["Cache-Control"] = "max-age=5"
    return response
