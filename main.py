#!/usr/bin/env python3
"""
Spot Sync relay - Entry Point
WebSocket session relay + rate limiting
"""
import logging
import os
import socket
import time
from collections import defaultdict

from aiohttp import web

from spotsync import config
from spotsync.api import api_stats, heartbeat_key, index, registry_key, ws_session
from spotsync.registry import SessionRegistry

logger = logging.getLogger("spot_sync")

# Rate limiting storage
rate_limit_store = defaultdict(list)
RATE_WINDOW = 60
_last_sweep = 0.0


def evict_idle_clients(now: float) -> None:
    """Forget IPs with no request inside the window"""
    idle = [ip for ip, hits in rate_limit_store.items() if not hits or now - hits[-1] >= RATE_WINDOW]
    for ip in idle:
        del rate_limit_store[ip]


@web.middleware
async def rate_limit_middleware(request, handler):
    """Simple rate limiting: RATE_LIMIT_PER_MINUTE requests per minute per IP"""
    global _last_sweep
    ip = request.remote
    now = time.time()

    if now - _last_sweep >= RATE_WINDOW:
        evict_idle_clients(now)
        _last_sweep = now

    # Clean old entries
    rate_limit_store[ip] = [t for t in rate_limit_store[ip] if now - t < RATE_WINDOW]

    # Check limit
    if len(rate_limit_store[ip]) >= config.RATE_LIMIT_PER_MINUTE:
        logger.warning(f"Rate limit exceeded for {ip}")
        return web.json_response(
            {"ok": False, "error": "Rate limit exceeded"},
            status=429
        )

    rate_limit_store[ip].append(now)
    return await handler(request)


def create_app(registry: SessionRegistry = None) -> web.Application:
    """Create and configure the aiohttp application"""
    app = web.Application(middlewares=[rate_limit_middleware])
    app[registry_key] = registry if registry is not None else SessionRegistry()
    app[heartbeat_key] = config.WS_HEARTBEAT

    app.router.add_get("/", index)
    app.router.add_get("/stats", api_stats)

    # Session relay
    app.router.add_get("/ws", ws_session)

    logger.info("🎧 Spot Sync relay ready")
    return app


def get_local_ip():
    """Get local LAN IP address"""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "localhost"


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    app = create_app()
    port = int(os.environ.get("PORT", 3000))
    host = os.environ.get("SERVER_HOST", "0.0.0.0")

    logger.info(f"🚀 Starting relay on {host}:{port}")
    logger.info(f"💡 Listeners connect to: ws://{get_local_ip()}:{port}/ws")

    web.run_app(app, host=host, port=port)


if __name__ == "__main__":
    main()
