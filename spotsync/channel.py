"""
Transport channel: the client end of the relay WebSocket

Wraps one aiohttp client WebSocket with request/ack correlation, a bounded
ack timeout and an unbounded fixed-delay reconnect loop. Events are pushed
to a single listener object exposing ``on_connect()``, ``on_disconnect()``
and ``on_message(msg_type, data)``.
"""
import asyncio
import itertools
import logging
from typing import Any, Dict, Optional

import aiohttp

from . import config
from .errors import ChannelUnavailable, ProtocolError, RequestTimeout
from .protocol import MessageType, decode_frame, encode_frame

logger = logging.getLogger("spot_sync")


class WebSocketChannel:
    def __init__(self, url: str = config.RELAY_URL, listener=None,
                 request_timeout: float = config.REQUEST_TIMEOUT,
                 reconnect_delay: float = config.RECONNECT_DELAY,
                 heartbeat: Optional[float] = config.WS_HEARTBEAT):
        self.url = url
        self.listener = listener
        self.request_timeout = request_timeout
        self.reconnect_delay = reconnect_delay
        self.heartbeat = heartbeat

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._runner: Optional[asyncio.Task] = None
        self._connected = asyncio.Event()
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Start the connection loop and wait for the socket to come up"""
        if self._runner is None:
            self._runner = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(self._connected.wait(), timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout("Connection timeout - unable to reach relay") from None

    async def close(self) -> None:
        """Stop reconnecting and drop the socket; fires on_disconnect if it was up"""
        was_connected = self.connected
        ws = self._ws
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        if ws is not None and not ws.closed:
            await ws.close()
        if self._session is not None:
            await self._session.close()
            self._session = None
        if was_connected:
            self._notify("on_disconnect")

    async def request(self, msg_type: MessageType, data: Any = None,
                      timeout: Optional[float] = None) -> Any:
        """Send a request frame and wait for its ack payload"""
        ws = self._ws
        if ws is None or ws.closed:
            raise ChannelUnavailable("Not connected to relay")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_str(encode_frame(msg_type, data, request_id))
            return await asyncio.wait_for(future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(f"No acknowledgment for {msg_type.value}") from None
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ChannelUnavailable(str(e)) from e
        finally:
            self._pending.pop(request_id, None)

    async def emit(self, msg_type: MessageType, data: Any = None) -> None:
        """Fire-and-forget frame"""
        ws = self._ws
        if ws is None or ws.closed:
            raise ChannelUnavailable("Not connected to relay")
        try:
            await ws.send_str(encode_frame(msg_type, data))
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ChannelUnavailable(str(e)) from e

    # ============================================================
    # CONNECTION LOOP
    # ============================================================

    async def _run(self):
        if self._session is None:
            self._session = aiohttp.ClientSession()
        while True:
            try:
                self._ws = await self._session.ws_connect(self.url, heartbeat=self.heartbeat)
            except (aiohttp.ClientError, OSError) as e:
                logger.debug(f"Relay unreachable ({e}), retrying in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)
                continue

            logger.info(f"🔌 Connected to relay {self.url}")
            self._connected.set()
            self._notify("on_connect")
            try:
                async for msg in self._ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        self._handle(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        break
            finally:
                self._ws = None
                self._connected.clear()
                self._fail_pending()

            logger.warning(f"⚠️ Lost relay connection, retrying in {self.reconnect_delay}s")
            self._notify("on_disconnect")
            await asyncio.sleep(self.reconnect_delay)

    def _handle(self, raw: str) -> None:
        if raw == "pong":
            return
        try:
            frame = decode_frame(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring bad frame from relay: {e}")
            return

        if frame.type is MessageType.ACK:
            future = self._pending.get(frame.id)
            if future is not None and not future.done():
                future.set_result(frame.data if frame.data is not None else {})
            return
        self._notify("on_message", frame.type, frame.data)

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ChannelUnavailable("Connection lost"))
        self._pending.clear()

    def _notify(self, event: str, *args) -> None:
        handler = getattr(self.listener, event, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            logger.exception(f"Channel listener failed on {event}")
