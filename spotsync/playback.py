"""
Playback snapshots, commands and the Playback Oracle interface
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .utils import time_to_ms


def now_ms() -> float:
    """Wall clock in epoch milliseconds"""
    return time.time() * 1000.0


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class TrackIdentity:
    title: str = ""
    artist: str = ""

    @property
    def key(self):
        return (_normalize(self.title), _normalize(self.artist))

    def matches(self, other: "TrackIdentity") -> bool:
        """Case-insensitive, whitespace-trimmed comparison of title and artist"""
        return self.key == other.key

    @property
    def is_known(self) -> bool:
        return bool(_normalize(self.title))

    def __str__(self):
        return f"{self.title} - {self.artist}"


@dataclass
class PlaybackSnapshot:
    track: TrackIdentity
    position_ms: float = 0
    duration_ms: float = 0
    is_playing: bool = False
    captured_at: float = 0

    def projected_position(self, now: float) -> float:
        """
        Estimate where this playback is at wall-clock time ``now``.

        Playing snapshots move forward by the time elapsed since capture,
        paused ones stay put. Both are clamped to the track duration when it
        is known.
        """
        position = self.position_ms
        if self.is_playing:
            position += max(0.0, now - self.captured_at)
        if self.duration_ms > 0:
            position = min(position, self.duration_ms)
        return position

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trackIdentity": {"title": self.track.title, "artist": self.track.artist},
            "positionMs": self.position_ms,
            "durationMs": self.duration_ms,
            "isPlaying": self.is_playing,
            "capturedAtWallClock": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], captured_at: Optional[float] = None) -> "PlaybackSnapshot":
        """
        Build a snapshot from its wire form.

        Accepts the flat ``title``/``artist`` layout as well as a nested
        ``trackIdentity``, and falls back to the ``position``/``duration``
        clock strings ("3:25") when millisecond fields are absent.
        """
        ident = data.get("trackIdentity") or {}
        if not isinstance(ident, dict):
            raise ValueError("trackIdentity must be an object")
        track = TrackIdentity(
            title=str(ident.get("title", data.get("title")) or ""),
            artist=str(ident.get("artist", data.get("artist")) or ""),
        )

        position = data.get("positionMs")
        if position is None:
            position = time_to_ms(data.get("position", ""))
        duration = data.get("durationMs")
        if duration is None:
            duration = time_to_ms(data.get("duration", ""))

        captured = data.get("capturedAtWallClock")
        if captured is None:
            captured = captured_at if captured_at is not None else now_ms()

        return cls(
            track=track,
            position_ms=float(position or 0),
            duration_ms=float(duration or 0),
            is_playing=bool(data.get("isPlaying", False)),
            captured_at=float(captured),
        )


class CommandKind(Enum):
    PLAY = "play"
    PAUSE = "pause"
    TOGGLE = "toggle"
    SEEK = "seek"


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    position_ms: Optional[float] = None

    @classmethod
    def play(cls) -> "Command":
        return cls(CommandKind.PLAY)

    @classmethod
    def pause(cls) -> "Command":
        return cls(CommandKind.PAUSE)

    @classmethod
    def seek(cls, position_ms: float) -> "Command":
        return cls(CommandKind.SEEK, position_ms=position_ms)

    @classmethod
    def from_control(cls, command: str, payload: Any = None) -> "Command":
        """Parse a listener control request; raises ValueError when invalid"""
        kind = CommandKind(command)
        if kind is CommandKind.SEEK:
            if isinstance(payload, dict):
                payload = payload.get("ms", payload.get("positionMs"))
            if isinstance(payload, bool) or not isinstance(payload, (int, float)):
                raise ValueError("seek needs a position in ms")
            return cls.seek(max(0.0, float(payload)))
        return cls(kind)


class PlaybackOracle:
    """
    Reads and drives the actual media player.

    Implemented outside the core (page scraping, player APIs); the sync
    engine only talks to this interface.
    """

    async def read_local_playback(self) -> Optional[PlaybackSnapshot]:
        raise NotImplementedError

    async def apply_command(self, command: Command) -> None:
        raise NotImplementedError
