"""
Runtime tunables, read from the environment at import time
"""
import os


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


# Transport channel (seconds)
REQUEST_TIMEOUT = _float("SPOTSYNC_REQUEST_TIMEOUT", 10.0)
RECONNECT_DELAY = _float("SPOTSYNC_RECONNECT_DELAY", 1.0)
WS_HEARTBEAT = _float("SPOTSYNC_WS_HEARTBEAT", 25.0)

# Registry
CODE_ATTEMPTS = _int("SPOTSYNC_CODE_ATTEMPTS", 5)
PEER_COUNT_DEBOUNCE = _float("SPOTSYNC_PEER_COUNT_DEBOUNCE", 0.1)
RATE_LIMIT_PER_MINUTE = _int("SPOTSYNC_RATE_LIMIT", 100)

# Sync engine
SAMPLE_INTERVAL = _float("SPOTSYNC_SAMPLE_INTERVAL", 1.0)
BROADCAST_INTERVAL_MS = _int("SPOTSYNC_BROADCAST_INTERVAL_MS", 700)
DRIFT_THRESHOLD_MS = _int("SPOTSYNC_DRIFT_THRESHOLD_MS", 5000)
CORRECTION_INTERVAL_MS = _int("SPOTSYNC_CORRECTION_INTERVAL_MS", 1000)
MISMATCH_INTERVAL_MS = _int("SPOTSYNC_MISMATCH_INTERVAL_MS", 5000)

# Relay endpoint the session client dials
RELAY_URL = os.environ.get("SPOTSYNC_RELAY_URL", "ws://localhost:3000/ws")
STATE_FILE = os.environ.get("SPOTSYNC_STATE_FILE", "./data/session_state.json")
