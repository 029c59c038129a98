"""
Drift correction between a host's reported playback and local playback

Host side: sample the local player and broadcast it to the room, at most
once per broadcast interval, and execute listeners' control requests.

Listener side: for every host snapshot and every local sample, decide on at
most one corrective command:

1. different track  -> no correction, a deduplicated mismatch notice
2. play state differs -> play / pause, position is left for a later cycle
3. drift over threshold -> seek to the host's projected position

Play-state and seek corrections are each throttled by the correction
interval so a command's own effect on the next sample cannot retrigger it.
Nothing here raises: failures are logged and the cycle is skipped.
"""
import asyncio
import logging
from typing import Any, Callable, Optional

from . import config
from .errors import SyncError
from .playback import Command, PlaybackOracle, PlaybackSnapshot, now_ms
from .session import Role, SessionClient, SessionListener
from .utils import ms_to_time

logger = logging.getLogger("spot_sync")


class SyncEngine(SessionListener):
    def __init__(self, client: SessionClient, oracle: PlaybackOracle,
                 clock: Callable[[], float] = now_ms,
                 sample_interval: float = config.SAMPLE_INTERVAL,
                 broadcast_interval_ms: float = config.BROADCAST_INTERVAL_MS,
                 drift_threshold_ms: float = config.DRIFT_THRESHOLD_MS,
                 correction_interval_ms: float = config.CORRECTION_INTERVAL_MS,
                 mismatch_interval_ms: float = config.MISMATCH_INTERVAL_MS):
        self.client = client
        self.oracle = oracle
        self.clock = clock
        self.sample_interval = sample_interval
        self.broadcast_interval_ms = broadcast_interval_ms
        self.drift_threshold_ms = drift_threshold_ms
        self.correction_interval_ms = correction_interval_ms
        self.mismatch_interval_ms = mismatch_interval_ms

        self._task: Optional[asyncio.Task] = None
        self.reset()
        client.add_listener(self)

    def reset(self) -> None:
        """Forget everything learned about the current session"""
        self.host_snapshot: Optional[PlaybackSnapshot] = None
        self.local_snapshot: Optional[PlaybackSnapshot] = None
        self.last_broadcast_at: Optional[float] = None
        self.last_play_state_at: Optional[float] = None
        self.last_seek_at: Optional[float] = None
        self.mismatch_key = None
        self.mismatch_at: Optional[float] = None
        self.mismatch_episode = 0

    # ============================================================
    # SAMPLING LOOP
    # ============================================================

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        while True:
            await self.tick()
            await asyncio.sleep(self.sample_interval)

    async def tick(self) -> None:
        """One periodic sample of the local player"""
        if self.client.role is Role.IDLE:
            return
        try:
            snapshot = await self.oracle.read_local_playback()
        except Exception as e:
            logger.debug(f"Playback unavailable: {e}")
            return
        if snapshot is not None:
            await self.on_local_snapshot(snapshot)

    async def on_local_snapshot(self, snapshot: PlaybackSnapshot) -> None:
        self.local_snapshot = snapshot
        if self.client.role is Role.HOSTING:
            await self.broadcast(snapshot)
        elif self.client.role is Role.JOINED:
            await self.reconcile()

    # ============================================================
    # HOST
    # ============================================================

    async def broadcast(self, snapshot: PlaybackSnapshot, force: bool = False) -> bool:
        now = self.clock()
        if (not force and self.last_broadcast_at is not None
                and now - self.last_broadcast_at < self.broadcast_interval_ms):
            return False
        self.last_broadcast_at = now
        try:
            await self.client.send_update(snapshot)
        except SyncError as e:
            logger.debug(f"Broadcast skipped: {e}")
            return False
        return True

    def on_control(self, command: str, payload: Any) -> None:
        try:
            cmd = Command.from_control(command, payload)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring control request {command!r}")
            return
        self.client.spawn(self._execute_control(cmd))

    async def _execute_control(self, command: Command) -> None:
        if not await self._apply(command):
            return
        try:
            snapshot = await self.oracle.read_local_playback()
        except Exception as e:
            logger.debug(f"Playback unavailable after control: {e}")
            return
        if snapshot is not None:
            self.local_snapshot = snapshot
            await self.broadcast(snapshot, force=True)

    # ============================================================
    # LISTENER
    # ============================================================

    def on_host_update(self, snapshot: PlaybackSnapshot) -> None:
        self.host_snapshot = snapshot
        self.client.spawn(self.reconcile())

    def on_state_changed(self, client: SessionClient) -> None:
        if client.role is Role.IDLE and (self.host_snapshot or self.local_snapshot):
            self.reset()

    async def reconcile(self) -> Optional[Command]:
        command = self.evaluate()
        if command is not None:
            await self._apply(command)
        return command

    def evaluate(self, now: Optional[float] = None) -> Optional[Command]:
        """Pick the corrective command for the current host/local pair, if any"""
        host, local = self.host_snapshot, self.local_snapshot
        if host is None or local is None:
            return None
        # nothing identified locally yet: stay out of the way
        if not local.track.is_known or not host.track.is_known:
            return None
        if now is None:
            now = self.clock()

        if not host.track.matches(local.track):
            self._notify_mismatch(host, local, now)
            return None

        if host.is_playing != local.is_playing:
            if self._throttled(self.last_play_state_at, now):
                return None
            self.last_play_state_at = now
            logger.info(f"Play state out of sync (host playing={host.is_playing}), correcting")
            return Command.play() if host.is_playing else Command.pause()

        projected = host.projected_position(now)
        drift = abs(projected - local.position_ms)
        if drift <= self.drift_threshold_ms:
            return None
        if self._throttled(self.last_seek_at, now):
            return None
        self.last_seek_at = now
        logger.info(f"Position off by {drift:.0f}ms, seeking to {ms_to_time(projected)}")
        return Command.seek(projected)

    def _throttled(self, last: Optional[float], now: float) -> bool:
        return last is not None and now - last < self.correction_interval_ms

    def _notify_mismatch(self, host: PlaybackSnapshot, local: PlaybackSnapshot, now: float) -> None:
        key = host.track.key
        if (key == self.mismatch_key and self.mismatch_at is not None
                and now - self.mismatch_at <= self.mismatch_interval_ms):
            return
        self.mismatch_key = key
        self.mismatch_at = now
        self.mismatch_episode += 1
        logger.info(f"Track mismatch: host on '{host.track}', local on '{local.track}'")
        self.client.notify("on_track_mismatch", host.track, local.track, self.mismatch_episode)

    async def _apply(self, command: Command) -> bool:
        try:
            await self.oracle.apply_command(command)
        except Exception as e:
            logger.warning(f"Could not apply {command.kind.value}: {e}")
            return False
        return True
