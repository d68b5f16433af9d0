import asyncio

import pytest

from client.call_negotiation import (
    CALL_IN_PROGRESS_NOTICE,
    CallController,
    CallMode,
    NegotiationState,
    mode_for_offer,
)
from shared.protocol import (
    Answer,
    CallEnded,
    IceCandidate,
    IceCandidateMessage,
    Offer,
    PeerLeft,
    SessionDescription,
)

VIDEO_SDP = "v=0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\nm=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
VOICE_SDP = "v=0\r\nm=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"


class DummyTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class DummyDevices:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.requests: list[CallMode] = []
        self.issued: list[DummyTrack] = []

    async def acquire(self, mode: CallMode) -> list[DummyTrack]:
        self.requests.append(mode)
        if self.error is not None:
            raise self.error
        tracks = [DummyTrack("audio")]
        if mode == CallMode.VIDEO:
            tracks.append(DummyTrack("video"))
        self.issued.extend(tracks)
        return tracks


class DummySession:
    def __init__(self, ice_servers, *, on_ice_candidate, on_state_change, on_track) -> None:
        self.ice_servers = tuple(ice_servers)
        self.on_ice_candidate = on_ice_candidate
        self.on_state_change = on_state_change
        self.on_track = on_track
        self.tracks: list = []
        self.remote: list[SessionDescription] = []
        self.candidates: list[IceCandidate] = []
        self.closed = False
        self.fail_candidates = False

    def add_tracks(self, tracks) -> None:
        self.tracks.extend(tracks)

    async def create_offer(self) -> SessionDescription:
        kinds = {track.kind for track in self.tracks}
        return SessionDescription(type="offer", sdp=VIDEO_SDP if "video" in kinds else VOICE_SDP)

    async def create_answer(self) -> SessionDescription:
        return SessionDescription(type="answer", sdp="v=0\r\nanswer\r\n")

    async def accept_remote(self, description: SessionDescription) -> None:
        self.remote.append(description)

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self.fail_candidates:
            raise ValueError("bad candidate")
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True


class BlockingSession(DummySession):
    """Session whose offer and answer wait until the test releases them."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def create_offer(self) -> SessionDescription:
        self.entered.set()
        await self.release.wait()
        return await super().create_offer()

    async def create_answer(self) -> SessionDescription:
        self.entered.set()
        await self.release.wait()
        return await super().create_answer()


class BlockingDevices(DummyDevices):
    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def acquire(self, mode: CallMode) -> list[DummyTrack]:
        self.entered.set()
        await self.release.wait()
        return await super().acquire(mode)


class Harness:
    def __init__(self, devices: DummyDevices | None = None, session_class: type | None = None) -> None:
        self.session_class = session_class or DummySession
        self.sent: list = []
        self.notices: list[str] = []
        self.states: list[NegotiationState] = []
        self.sessions: list[DummySession] = []
        self.devices = devices or DummyDevices()
        self.controller = CallController(
            self.sent.append,
            self.devices,
            self._factory,
            ice_servers=("stun:stun.example.org:3478",),
            notify=self.notices.append,
            on_state=self.states.append,
        )

    def _factory(self, ice_servers, **callbacks) -> DummySession:
        session = self.session_class(ice_servers, **callbacks)
        self.sessions.append(session)
        return session

    @property
    def session(self) -> DummySession:
        return self.sessions[-1]


def _candidate(index: int) -> IceCandidate:
    return IceCandidate(candidate=f"candidate:{index} 1 udp 1 10.0.0.{index} 5000 typ host", sdp_mid="0", sdp_mline_index=0)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_mode_for_offer_reads_media_sections() -> None:
    assert mode_for_offer(SessionDescription(type="offer", sdp=VIDEO_SDP)) == CallMode.VIDEO
    assert mode_for_offer(SessionDescription(type="offer", sdp=VOICE_SDP)) == CallMode.VOICE


@pytest.mark.anyio
async def test_initiate_sends_offer_with_local_media() -> None:
    harness = Harness()

    assert await harness.controller.initiate(CallMode.VIDEO) is True

    assert harness.controller.state == NegotiationState.OFFER_SENT
    assert harness.session.ice_servers == ("stun:stun.example.org:3478",)
    assert [track.kind for track in harness.session.tracks] == ["audio", "video"]
    assert harness.sent == [Offer(offer=SessionDescription(type="offer", sdp=VIDEO_SDP))]


@pytest.mark.anyio
async def test_second_initiate_is_rejected() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VOICE)

    assert await harness.controller.initiate(CallMode.VIDEO) is False

    assert harness.notices == [CALL_IN_PROGRESS_NOTICE]
    assert len(harness.sessions) == 1
    assert len(harness.sent) == 1


@pytest.mark.anyio
async def test_media_failure_leaves_controller_idle() -> None:
    harness = Harness(DummyDevices(error=PermissionError("camera denied")))

    assert await harness.controller.initiate(CallMode.VIDEO) is False

    assert harness.controller.state == NegotiationState.IDLE
    assert harness.sent == []
    assert harness.sessions == []
    assert harness.notices == ["Could not access camera/microphone: camera denied"]


@pytest.mark.anyio
async def test_callee_answers_with_media_matching_the_offer() -> None:
    harness = Harness()
    offer = SessionDescription(type="offer", sdp=VOICE_SDP)

    await harness.controller.dispatch(Offer(offer=offer))

    assert harness.devices.requests == [CallMode.VOICE]
    assert harness.controller.mode == CallMode.VOICE
    assert harness.session.remote == [offer]
    assert harness.sent == [Answer(answer=SessionDescription(type="answer", sdp="v=0\r\nanswer\r\n"))]
    assert harness.states == [NegotiationState.OFFER_RECEIVED, NegotiationState.ANSWERED]

    harness.session.on_state_change("connected")
    assert harness.controller.state == NegotiationState.ESTABLISHED


@pytest.mark.anyio
async def test_callee_without_devices_still_answers() -> None:
    harness = Harness(DummyDevices(error=OSError("no microphone")))

    await harness.controller.handle_offer(SessionDescription(type="offer", sdp=VIDEO_SDP))

    assert harness.controller.state == NegotiationState.ANSWERED
    assert harness.session.tracks == []
    assert isinstance(harness.sent[0], Answer)
    assert harness.notices == ["Could not access camera/microphone: no microphone"]


@pytest.mark.anyio
async def test_early_candidates_are_queued_then_applied_in_order() -> None:
    harness = Harness()
    early = [_candidate(1), _candidate(2)]

    for candidate in early:
        await harness.controller.dispatch(IceCandidateMessage(candidate=candidate))

    assert harness.controller.pending_candidates == early

    await harness.controller.handle_offer(SessionDescription(type="offer", sdp=VOICE_SDP))

    assert harness.session.candidates == early
    assert harness.controller.pending_candidates == []

    late = _candidate(3)
    await harness.controller.handle_ice_candidate(late)
    assert harness.session.candidates == early + [late]


@pytest.mark.anyio
async def test_answer_completes_offering_side() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VOICE)
    await harness.controller.handle_ice_candidate(_candidate(7))
    assert harness.session.candidates == []

    answer = SessionDescription(type="answer", sdp="v=0\r\n")
    await harness.controller.dispatch(Answer(answer=answer))

    assert harness.controller.state == NegotiationState.ESTABLISHED
    assert harness.session.remote == [answer]
    assert harness.session.candidates == [_candidate(7)]


@pytest.mark.anyio
async def test_stray_answer_is_ignored() -> None:
    harness = Harness()

    await harness.controller.handle_answer(SessionDescription(type="answer", sdp="v=0\r\n"))

    assert harness.controller.state == NegotiationState.IDLE
    assert harness.sessions == []


@pytest.mark.anyio
async def test_bad_candidate_raises_notice_but_keeps_call() -> None:
    harness = Harness()
    await harness.controller.handle_offer(SessionDescription(type="offer", sdp=VOICE_SDP))
    harness.session.fail_candidates = True

    await harness.controller.handle_ice_candidate(_candidate(4))

    assert harness.notices == ["Could not add network candidate: bad candidate"]
    assert harness.controller.state == NegotiationState.ANSWERED


@pytest.mark.anyio
async def test_local_candidates_are_relayed() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VOICE)

    harness.session.on_ice_candidate(_candidate(9))

    assert harness.sent[-1] == IceCandidateMessage(candidate=_candidate(9))


@pytest.mark.anyio
async def test_end_call_releases_everything_and_notifies_peer() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VIDEO)
    session = harness.session
    session.on_track(DummyTrack("video"))
    assert len(harness.controller.remote_tracks) == 1

    await harness.controller.end_call(notify_peer=True)

    assert session.closed
    assert all(track.stopped for track in harness.devices.issued)
    assert harness.controller.state == NegotiationState.IDLE
    assert harness.controller.mode is None
    assert harness.controller.local_tracks == []
    assert harness.controller.remote_tracks == []
    assert harness.sent[-1] == CallEnded()
    assert harness.states[-2:] == [NegotiationState.CLOSED, NegotiationState.IDLE]

    assert await harness.controller.initiate(CallMode.VOICE) is True
    assert len(harness.sessions) == 2


@pytest.mark.anyio
async def test_end_call_when_idle_is_silent() -> None:
    harness = Harness()

    await harness.controller.end_call(notify_peer=True)

    assert harness.sent == []
    assert harness.states == []


@pytest.mark.anyio
async def test_peer_call_ended_tears_down_without_echo() -> None:
    harness = Harness()
    await harness.controller.handle_offer(SessionDescription(type="offer", sdp=VOICE_SDP))
    harness.sent.clear()

    await harness.controller.dispatch(CallEnded())

    assert harness.controller.state == NegotiationState.IDLE
    assert harness.session.closed
    assert harness.sent == []
    assert harness.notices == ["Peer ended the call."]


@pytest.mark.anyio
async def test_peer_left_ends_call() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VOICE)

    assert await harness.controller.dispatch(PeerLeft()) is True

    assert harness.controller.state == NegotiationState.IDLE
    assert harness.session.closed


@pytest.mark.anyio
async def test_failed_session_state_ends_call() -> None:
    harness = Harness()
    await harness.controller.initiate(CallMode.VOICE)
    session = harness.session

    session.on_state_change("failed")
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert session.closed
    assert harness.controller.state == NegotiationState.IDLE


@pytest.mark.anyio
async def test_peer_leaving_while_offer_is_created_cancels_the_call() -> None:
    harness = Harness(session_class=BlockingSession)
    task = asyncio.create_task(harness.controller.initiate(CallMode.VOICE))
    await asyncio.wait_for(_wait_for_session(harness), timeout=1.0)
    session = harness.session
    await asyncio.wait_for(session.entered.wait(), timeout=1.0)

    await harness.controller.dispatch(PeerLeft())
    session.release.set()

    assert await asyncio.wait_for(task, timeout=1.0) is False
    assert harness.controller.state == NegotiationState.IDLE
    assert harness.sent == []
    assert session.closed
    assert all(track.stopped for track in harness.devices.issued)

    retry = asyncio.create_task(harness.controller.initiate(CallMode.VOICE))
    while len(harness.sessions) < 2:
        await asyncio.sleep(0)
    harness.sessions[-1].release.set()
    assert await asyncio.wait_for(retry, timeout=1.0) is True
    assert harness.controller.state == NegotiationState.OFFER_SENT


@pytest.mark.anyio
async def test_call_ended_while_devices_open_drops_the_offer() -> None:
    devices = BlockingDevices()
    harness = Harness(devices)
    task = asyncio.create_task(harness.controller.initiate(CallMode.VIDEO))
    await asyncio.wait_for(devices.entered.wait(), timeout=1.0)

    await harness.controller.end_call()
    devices.release.set()

    assert await asyncio.wait_for(task, timeout=1.0) is False
    assert harness.controller.state == NegotiationState.IDLE
    assert harness.sent == []
    assert harness.sessions == []
    assert all(track.stopped for track in devices.issued)
    assert harness.notices == []
    assert await harness.controller.initiate(CallMode.VOICE) is True


@pytest.mark.anyio
async def test_call_ended_while_answer_is_created_sends_nothing() -> None:
    harness = Harness(session_class=BlockingSession)
    task = asyncio.create_task(harness.controller.handle_offer(SessionDescription(type="offer", sdp=VOICE_SDP)))
    await asyncio.wait_for(_wait_for_session(harness), timeout=1.0)
    session = harness.session
    await asyncio.wait_for(session.entered.wait(), timeout=1.0)

    await harness.controller.dispatch(CallEnded())
    session.release.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert harness.controller.state == NegotiationState.IDLE
    assert harness.sent == []
    assert session.closed


async def _wait_for_session(harness: Harness) -> None:
    while not harness.sessions:
        await asyncio.sleep(0)
