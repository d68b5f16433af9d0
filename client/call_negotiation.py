"""Offer/answer/ICE negotiation for the optional voice or video call.

The peer media session and the capture devices are injected; this module only
owns the negotiation state machine and the queue of remote ICE candidates that
arrive before a remote description has been applied.
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Protocol, Sequence

from shared.protocol import (
    DEFAULT_ICE_SERVERS,
    Answer,
    CallEnded,
    Envelope,
    IceCandidate,
    IceCandidateMessage,
    Offer,
    PeerLeft,
    SessionDescription,
)

logger = logging.getLogger(__name__)

CALL_IN_PROGRESS_NOTICE = "A call is already in progress."
_TERMINAL_SESSION_STATES = frozenset({"disconnected", "failed", "closed"})


class CallMode(str, Enum):
    VOICE = "voice"
    VIDEO = "video"


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWERED = "answered"
    ESTABLISHED = "established"
    CLOSED = "closed"


class MediaTrack(Protocol):
    kind: str

    def stop(self) -> None: ...


class MediaDevices(Protocol):
    async def acquire(self, mode: CallMode) -> List[Any]: ...


class PeerSession(Protocol):
    """A direct peer media session (e.g. a WebRTC peer connection)."""

    def add_tracks(self, tracks: Sequence[Any]) -> None: ...

    async def create_offer(self) -> SessionDescription: ...

    async def create_answer(self) -> SessionDescription: ...

    async def accept_remote(self, description: SessionDescription) -> None: ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    async def close(self) -> None: ...


class SessionFactory(Protocol):
    def __call__(
        self,
        ice_servers: Sequence[str],
        *,
        on_ice_candidate: Callable[[IceCandidate], None],
        on_state_change: Callable[[str], None],
        on_track: Callable[[Any], None],
    ) -> PeerSession: ...


SendEnvelope = Callable[[Envelope], None]
NoticeCallback = Callable[[str], None]


def mode_for_offer(description: SessionDescription) -> CallMode:
    return CallMode.VIDEO if "m=video" in description.sdp else CallMode.VOICE


class CallController:
    """Negotiates one call per room pairing through the broker."""

    def __init__(
        self,
        send: SendEnvelope,
        devices: MediaDevices,
        session_factory: SessionFactory,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        notify: Optional[NoticeCallback] = None,
        on_state: Optional[Callable[[NegotiationState], None]] = None,
        on_remote_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._send = send
        self._devices = devices
        self._session_factory = session_factory
        self._ice_servers = tuple(ice_servers)
        self._notify = notify
        self._on_state = on_state
        self._on_remote_track = on_remote_track
        self._state = NegotiationState.IDLE
        self._mode: Optional[CallMode] = None
        self._session: Optional[PeerSession] = None
        self._local_tracks: List[Any] = []
        self._remote_tracks: List[Any] = []
        self._pending_candidates: Deque[IceCandidate] = deque()
        self._remote_description_set = False
        self._end_task: Optional[asyncio.Task[None]] = None
        self._generation = 0

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def mode(self) -> Optional[CallMode]:
        return self._mode

    @property
    def active(self) -> bool:
        return self._state != NegotiationState.IDLE

    @property
    def local_tracks(self) -> list[Any]:
        return list(self._local_tracks)

    @property
    def remote_tracks(self) -> list[Any]:
        return list(self._remote_tracks)

    @property
    def pending_candidates(self) -> list[IceCandidate]:
        return list(self._pending_candidates)

    async def initiate(self, mode: CallMode) -> bool:
        """Start a call as the offering side."""

        if self._state != NegotiationState.IDLE or self._session is not None:
            self._emit_notice(CALL_IN_PROGRESS_NOTICE)
            return False
        mode = CallMode(mode)
        generation = self._generation
        try:
            tracks = await self._devices.acquire(mode)
        except Exception as exc:
            logger.exception("Failed to acquire %s media", mode.value)
            self._emit_notice(f"Could not access camera/microphone: {exc}")
            return False
        if generation != self._generation:
            logger.info("Call torn down while opening devices; dropping %s offer", mode.value)
            self._stop_tracks(tracks)
            return False
        if self._state != NegotiationState.IDLE or self._session is not None:
            # An offer from the peer won the race while devices were opening.
            self._stop_tracks(tracks)
            self._emit_notice(CALL_IN_PROGRESS_NOTICE)
            return False
        self._mode = mode
        self._local_tracks = list(tracks)
        try:
            session = self._ensure_session()
            session.add_tracks(self._local_tracks)
            offer = await session.create_offer()
        except Exception as exc:
            if self._superseded(generation, session=None):
                return False
            logger.exception("Failed to create call offer")
            self._emit_notice(f"Could not start the call: {exc}")
            await self.end_call()
            return False
        if self._superseded(generation, session):
            # end_call already stopped the tracks and closed the session.
            logger.info("Call torn down while creating the offer")
            return False
        self._send(Offer(offer=offer))
        self._set_state(NegotiationState.OFFER_SENT)
        logger.info("Sent %s call offer", mode.value)
        return True

    async def handle_offer(self, description: SessionDescription) -> None:
        if self._state != NegotiationState.IDLE or self._session is not None:
            logger.warning("Ignoring call offer while %s", self._state.value)
            return
        generation = self._generation
        self._set_state(NegotiationState.OFFER_RECEIVED)
        self._mode = mode_for_offer(description)
        try:
            session = self._ensure_session()
        except Exception as exc:
            logger.exception("Failed to create peer session")
            self._emit_notice(f"Could not answer the call: {exc}")
            await self.end_call()
            return
        try:
            tracks = await self._devices.acquire(self._mode)
        except Exception as exc:
            logger.warning("Answering without local media: %s", exc)
            self._emit_notice(f"Could not access camera/microphone: {exc}")
            tracks = []
        if self._superseded(generation, session):
            logger.info("Call torn down while opening devices; not answering")
            self._stop_tracks(tracks)
            return
        self._local_tracks = list(tracks)
        try:
            session.add_tracks(self._local_tracks)
            await session.accept_remote(description)
            if self._superseded(generation, session):
                return
            self._remote_description_set = True
            await self._drain_candidates()
            answer = await session.create_answer()
        except Exception as exc:
            if self._superseded(generation, session):
                return
            logger.exception("Failed to answer call offer")
            self._emit_notice(f"Could not answer the call: {exc}")
            await self.end_call(notify_peer=True)
            return
        if self._superseded(generation, session):
            logger.info("Call torn down while creating the answer")
            return
        self._send(Answer(answer=answer))
        self._set_state(NegotiationState.ANSWERED)
        logger.info("Answered %s call", self._mode.value)

    async def handle_answer(self, description: SessionDescription) -> None:
        if self._state != NegotiationState.OFFER_SENT or self._session is None:
            logger.warning("Ignoring call answer while %s", self._state.value)
            return
        generation = self._generation
        session = self._session
        try:
            await session.accept_remote(description)
            if self._superseded(generation, session):
                return
            self._remote_description_set = True
            await self._drain_candidates()
        except Exception as exc:
            if self._superseded(generation, session):
                return
            logger.exception("Failed to apply call answer")
            self._emit_notice(f"Could not connect the call: {exc}")
            await self.end_call(notify_peer=True)
            return
        if self._superseded(generation, session):
            return
        self._set_state(NegotiationState.ESTABLISHED)

    async def handle_ice_candidate(self, candidate: IceCandidate) -> None:
        if self._session is None or not self._remote_description_set:
            # Gathering starts right after the peer's local description, racing the SDP round trip.
            self._pending_candidates.append(candidate)
            return
        await self._apply_candidate(candidate)

    async def end_call(self, *, notify_peer: bool = False) -> None:
        """Tear down whatever call state exists; safe to call in any state."""

        # Any negotiation step suspended on an await sees this and backs off.
        self._generation += 1
        was_active = self._state != NegotiationState.IDLE or self._session is not None
        self._stop_tracks(self._local_tracks)
        self._local_tracks = []
        self._remote_tracks = []
        self._pending_candidates.clear()
        self._remote_description_set = False
        self._mode = None
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception:
                logger.exception("Error while closing peer session")
        if was_active:
            self._set_state(NegotiationState.CLOSED)
            if notify_peer:
                self._send(CallEnded())
            logger.info("Call ended")
        self._set_state(NegotiationState.IDLE)

    async def dispatch(self, envelope: Envelope) -> bool:
        """Route an inbound envelope; returns False for kinds this controller ignores."""

        if isinstance(envelope, Offer):
            await self.handle_offer(envelope.offer)
        elif isinstance(envelope, Answer):
            await self.handle_answer(envelope.answer)
        elif isinstance(envelope, IceCandidateMessage):
            await self.handle_ice_candidate(envelope.candidate)
        elif isinstance(envelope, CallEnded):
            if self.active:
                self._emit_notice("Peer ended the call.")
            await self.end_call()
        elif isinstance(envelope, PeerLeft):
            await self.end_call()
        else:
            return False
        return True

    def _ensure_session(self) -> PeerSession:
        if self._session is None:
            self._session = self._session_factory(
                self._ice_servers,
                on_ice_candidate=self._on_local_candidate,
                on_state_change=self._on_session_state,
                on_track=self._on_track,
            )
        return self._session

    def _superseded(self, generation: int, session: Optional[PeerSession]) -> bool:
        """True once end_call has run since ``generation`` was taken."""

        if generation != self._generation:
            return True
        return session is not None and self._session is not session

    async def _drain_candidates(self) -> None:
        while self._pending_candidates and self._session is not None:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        session = self._session
        if session is None:
            return
        try:
            await session.add_ice_candidate(candidate)
        except Exception as exc:
            logger.exception("Failed to add ICE candidate")
            self._emit_notice(f"Could not add network candidate: {exc}")

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        self._send(IceCandidateMessage(candidate=candidate))

    def _on_session_state(self, state: str) -> None:
        logger.debug("Peer session state %s", state)
        if state == "connected" and self._state == NegotiationState.ANSWERED:
            self._set_state(NegotiationState.ESTABLISHED)
        elif state in _TERMINAL_SESSION_STATES and self._session is not None:
            if self._end_task is None or self._end_task.done():
                self._end_task = asyncio.ensure_future(self.end_call())

    def _on_track(self, track: Any) -> None:
        self._remote_tracks.append(track)
        if self._on_remote_track is not None:
            try:
                self._on_remote_track(track)
            except Exception:
                logger.exception("Remote track listener failed")

    @staticmethod
    def _stop_tracks(tracks: Sequence[Any]) -> None:
        for track in tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop local track")

    def _set_state(self, state: NegotiationState) -> None:
        if state == self._state:
            return
        logger.debug("Negotiation state %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state is not None:
            try:
                self._on_state(state)
            except Exception:
                logger.exception("Call state listener failed")

    def _emit_notice(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message)
        except Exception:
            logger.exception("Notice callback failed")
