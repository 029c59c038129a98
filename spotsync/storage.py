"""
Key-value persistence for the session client's UI-facing state
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict

from . import config

logger = logging.getLogger("spot_sync")

STATE_KEYS = ("sessionState", "sessionCode", "connectionStatus", "connectedPeers", "lastJoinedName")


class StateStore:
    """In-memory store; also the interface other stores implement"""

    def __init__(self, data: Dict[str, Any] = None):
        self._data = dict(data or {})

    def load(self) -> Dict[str, Any]:
        return dict(self._data)

    def save(self, state: Dict[str, Any]) -> None:
        self._data = dict(state)


class JsonFileStore(StateStore):
    """Persists the saved state to a single JSON file"""

    def __init__(self, path: str = config.STATE_FILE):
        super().__init__()
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read saved state {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: data[k] for k in STATE_KEYS if k in data}

    def save(self, state: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
        except OSError as e:
            # Don't take the session down over a failed save
            logger.warning(f"Could not save state to {self.path}: {e}")
