"""Playback synchronization between two paired peers.

The controller verifies that both peers picked media of the same duration,
then mirrors play/pause/seek intents through the broker. Two mechanisms keep
the exchange quiet:

* a synchronization guard, raised while a remote action is applied to the
  local player so the player events it provokes are not sent back, and
* a seek debounce, collapsing a scrub gesture into a single ``seek``.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from shared.protocol import (
    DURATION_EPSILON,
    SEEK_DEBOUNCE_SECONDS,
    SYNC_GUARD_SECONDS,
    BothJoined,
    Envelope,
    FileInfo,
    PeerLeft,
    PlaybackAction,
    SyncAction,
)

logger = logging.getLogger(__name__)

DURATION_MISMATCH_NOTICE = "Selected files do not have the same duration."

SendEnvelope = Callable[[Envelope], None]
NoticeCallback = Callable[[str], None]
DurationProbe = Callable[[str], Awaitable[float]]
TeardownCallback = Callable[[], Awaitable[None] | None]


class VideoPlayer(Protocol):
    """Local player capability driven by the controller."""

    @property
    def current_time(self) -> float: ...

    def load(self, source: str) -> None: ...

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, position: float) -> None: ...

    def show(self) -> None: ...

    def hide(self) -> None: ...


class PlaybackState(str, Enum):
    NO_FILE = "no_file"
    FILE_SELECTED = "file_selected"
    AWAITING_REMOTE = "awaiting_remote"
    VERIFIED = "verified"
    REJECTED = "rejected"


def durations_match(local: float, remote: float, epsilon: float = DURATION_EPSILON) -> bool:
    return abs(local - remote) < epsilon


class PlaybackSyncController:
    """State machine for file verification and play/pause/seek mirroring."""

    def __init__(
        self,
        player: VideoPlayer,
        send: SendEnvelope,
        *,
        probe: Optional[DurationProbe] = None,
        notify: Optional[NoticeCallback] = None,
        on_teardown: Optional[TeardownCallback] = None,
        on_state: Optional[Callable[[PlaybackState], None]] = None,
        guard_delay: float = SYNC_GUARD_SECONDS,
        seek_debounce: float = SEEK_DEBOUNCE_SECONDS,
        epsilon: float = DURATION_EPSILON,
    ) -> None:
        self._player = player
        self._send = send
        self._probe = probe
        self._notify = notify
        self._on_teardown = on_teardown
        self._on_state = on_state
        self._guard_delay = guard_delay
        self._seek_debounce = seek_debounce
        self._epsilon = epsilon
        self._state = PlaybackState.NO_FILE
        self._local_duration: Optional[float] = None
        self._remote_duration: Optional[float] = None
        self._is_syncing = False
        self._guard_timer: Optional[asyncio.TimerHandle] = None
        self._seek_timer: Optional[asyncio.TimerHandle] = None
        self._teardown_tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def verified(self) -> bool:
        return self._state == PlaybackState.VERIFIED

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    @property
    def local_duration(self) -> Optional[float]:
        return self._local_duration

    @property
    def remote_duration(self) -> Optional[float]:
        return self._remote_duration

    @property
    def seek_pending(self) -> bool:
        return self._seek_timer is not None

    # -- file selection and verification -------------------------------

    async def select_file(self, path: str) -> bool:
        """Load a local file, probe its duration and announce it to the peer."""

        if self._probe is None:
            raise RuntimeError("No duration probe configured")
        self._cancel_seek_timer()
        self._local_duration = None
        self._set_state(PlaybackState.FILE_SELECTED)
        self._player.load(path)
        self._player.show()
        try:
            duration = await self._probe(path)
        except Exception as exc:
            logger.exception("Failed to read duration of %s", path)
            self._player.hide()
            self._set_state(PlaybackState.NO_FILE)
            self._emit_notice(f"Could not read the selected file: {exc}")
            return False
        self.set_local_duration(duration)
        return True

    def set_local_duration(self, duration: float) -> None:
        self._local_duration = float(duration)
        logger.info("Local media duration %.3fs", self._local_duration)
        self._send(FileInfo(duration=self._local_duration))
        self._set_state(PlaybackState.AWAITING_REMOTE)
        self._verify()

    def handle_file_info(self, duration: float) -> None:
        self._remote_duration = float(duration)
        logger.info("Peer media duration %.3fs", self._remote_duration)
        if self._state == PlaybackState.REJECTED:
            # Only a fresh local selection leaves REJECTED.
            return
        self._verify()

    def _verify(self) -> None:
        if self._local_duration is None or self._remote_duration is None:
            return
        if durations_match(self._local_duration, self._remote_duration, self._epsilon):
            if self._state != PlaybackState.VERIFIED:
                logger.info("Files are verified to have the same duration")
                self._set_state(PlaybackState.VERIFIED)
                self._player.show()
            return
        logger.warning(
            "Duration mismatch: local %.3fs, remote %.3fs",
            self._local_duration,
            self._remote_duration,
        )
        self._cancel_seek_timer()
        self._set_state(PlaybackState.REJECTED)
        self._player.hide()
        self._emit_notice(DURATION_MISMATCH_NOTICE)
        self._teardown()

    # -- local player events --------------------------------------------

    def on_local_play(self) -> None:
        self._emit_action(PlaybackAction.PLAY)

    def on_local_pause(self) -> None:
        self._emit_action(PlaybackAction.PAUSE)

    def on_local_seek(self) -> None:
        if not self.verified or self._is_syncing:
            return
        self._cancel_seek_timer()
        loop = asyncio.get_running_loop()
        self._seek_timer = loop.call_later(self._seek_debounce, self._flush_seek)

    def _flush_seek(self) -> None:
        self._seek_timer = None
        if not self.verified:
            return
        self._send(SyncAction(action=PlaybackAction.SEEK, current_time=self._player.current_time))

    def _emit_action(self, action: PlaybackAction) -> None:
        if not self.verified or self._is_syncing:
            return
        logger.debug("Sending %s action to peer", action.value)
        self._send(SyncAction(action=action, current_time=self._player.current_time))

    # -- remote actions -------------------------------------------------

    def handle_sync_action(self, action: PlaybackAction, current_time: float) -> None:
        if not self.verified:
            logger.debug("Ignoring %s from peer; files not verified", action.value)
            return
        logger.debug("Action received from peer: %s at %.3f", action.value, current_time)
        # Raise the guard before touching the player; its events fire synchronously or shortly after.
        self._is_syncing = True
        if self._guard_timer is not None:
            self._guard_timer.cancel()
        try:
            self._player.seek(current_time)
            if action == PlaybackAction.PLAY:
                self._player.play()
            elif action == PlaybackAction.PAUSE:
                self._player.pause()
        finally:
            loop = asyncio.get_running_loop()
            self._guard_timer = loop.call_later(self._guard_delay, self._release_guard)

    def _release_guard(self) -> None:
        self._guard_timer = None
        self._is_syncing = False

    # -- pairing lifecycle ----------------------------------------------

    def handle_both_joined(self) -> None:
        if self._local_duration is not None:
            self._send(FileInfo(duration=self._local_duration))

    def handle_peer_left(self) -> None:
        self._cancel_seek_timer()
        self._remote_duration = None
        self._player.hide()
        if self._local_duration is not None:
            self._set_state(PlaybackState.AWAITING_REMOTE)
        elif self._state != PlaybackState.FILE_SELECTED:
            self._set_state(PlaybackState.NO_FILE)
        self._teardown()

    def dispatch(self, envelope: Envelope) -> bool:
        """Route an inbound envelope; returns False for kinds this controller ignores."""

        if isinstance(envelope, FileInfo):
            self.handle_file_info(envelope.duration)
        elif isinstance(envelope, SyncAction):
            self.handle_sync_action(envelope.action, envelope.current_time)
        elif isinstance(envelope, BothJoined):
            self.handle_both_joined()
        elif isinstance(envelope, PeerLeft):
            self.handle_peer_left()
        else:
            return False
        return True

    def close(self) -> None:
        self._cancel_seek_timer()
        if self._guard_timer is not None:
            self._guard_timer.cancel()
            self._guard_timer = None
        self._is_syncing = False

    # -- helpers ----------------------------------------------------------

    def _cancel_seek_timer(self) -> None:
        if self._seek_timer is not None:
            self._seek_timer.cancel()
            self._seek_timer = None

    def _set_state(self, state: PlaybackState) -> None:
        if state == self._state:
            return
        logger.debug("Playback state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            try:
                self._on_state(state)
            except Exception:
                logger.exception("Playback state listener failed")

    def _emit_notice(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception:
            logger.exception("Notice callback failed")

    def _teardown(self) -> None:
        if self._on_teardown is None:
            return
        try:
            result = self._on_teardown()
        except Exception:
            logger.exception("Teardown callback failed")
            return
        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._teardown_tasks.add(task)
            task.add_done_callback(self._teardown_tasks.discard)
