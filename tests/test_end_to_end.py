"""Two client runtimes paired through an in-process broker."""
import asyncio
import json

import pytest

from client.app import PEER_LEFT_NOTICE, ClientApp
from client.playback_sync import PlaybackState
from server.room_broker import PeerConnection, RoomBroker
from shared.protocol import decode_envelope, encode_envelope


class LinkedBrokerClient:
    """Broker client double wired straight into a RoomBroker."""

    def __init__(self, broker: RoomBroker, name: str, url, on_message, *, on_disconnect=None) -> None:
        self._broker = broker
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._inbox: asyncio.Queue[str] = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self.frames: list[dict] = []
        self.peer = PeerConnection(connection_id=name, deliver=self._inbox.put_nowait)

    async def connect(self) -> None:
        self._pump = asyncio.create_task(self._drain())

    async def close(self) -> None:
        self._broker.close_connection(self.peer)
        if self._pump is not None:
            self._pump.cancel()

    def post(self, envelope) -> None:
        self._broker.handle_message(self.peer, encode_envelope(envelope))

    async def send(self, envelope) -> None:
        self.post(envelope)

    async def _drain(self) -> None:
        while True:
            text = await self._inbox.get()
            self.frames.append(json.loads(text))
            await self._on_message(decode_envelope(text))


class DummyDevices:
    async def acquire(self, mode):
        return []


class DummySession:
    def __init__(self, ice_servers, **callbacks) -> None:
        pass


def _make_client(broker: RoomBroker, name: str, duration: float) -> tuple[ClientApp, list]:
    links: list[LinkedBrokerClient] = []

    async def probe(path: str) -> float:
        return duration

    def factory(url, on_message, *, on_disconnect=None) -> LinkedBrokerClient:
        link = LinkedBrokerClient(broker, name, url, on_message, on_disconnect=on_disconnect)
        links.append(link)
        return link

    app = ClientApp(
        "ws://in-process/",
        devices=DummyDevices(),
        session_factory=DummySession,
        probe=probe,
        client_factory=factory,
    )
    return app, links


async def _settle() -> None:
    for _ in range(3):
        await asyncio.sleep(0.01)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_watch_party_pairs_verifies_syncs_and_parts() -> None:
    broker = RoomBroker()
    alice, alice_links = _make_client(broker, "alice", 100.0)
    bob, bob_links = _make_client(broker, "bob", 100.05)
    await alice.start()
    await bob.start()

    await alice.create_room()
    await _settle()
    room_id = alice.room_id
    assert room_id is not None and room_id.startswith("room_")

    await bob.join_room(room_id)
    await _settle()
    assert alice.peer_present and bob.peer_present
    assert bob.room_id == room_id

    await alice.select_file("/videos/a.mp4")
    await bob.select_file("/videos/b.mp4")
    await _settle()
    assert alice.playback.state == PlaybackState.VERIFIED
    assert bob.playback.state == PlaybackState.VERIFIED

    alice_frames_before = len(alice_links[0].frames)
    alice.handle_player_event("play", 10.0)
    await _settle()
    assert bob.player.current_time == 10.0

    # Bob's player reports the play it was just told to do.
    bob.handle_player_event("play", 10.0)
    await _settle()
    assert len(alice_links[0].frames) == alice_frames_before

    await alice.send_chat("nice")
    await _settle()
    assert bob.chat_history == [{"sender": "Peer", "message": "nice"}]

    await bob_links[0].close()
    await _settle()
    assert not alice.peer_present
    assert alice.playback.state == PlaybackState.AWAITING_REMOTE
    assert alice.chat_history[-1] == {"sender": "System", "message": PEER_LEFT_NOTICE}
    assert len(broker.room_members(room_id)) == 1

    await alice.stop()
    assert broker.room_count == 0


@pytest.mark.anyio
async def test_third_client_is_turned_away() -> None:
    broker = RoomBroker()
    clients = [_make_client(broker, name, 10.0)[0] for name in ("a", "b", "c")]
    for client in clients:
        await client.start()

    await clients[0].create_room()
    await _settle()
    room_id = clients[0].room_id
    await clients[1].join_room(room_id)
    await clients[2].join_room(room_id)
    await _settle()

    assert clients[2].room_id is None
    assert clients[2].notices == ["Room is full."]
    assert clients[0].peer_present and clients[1].peer_present

    for client in clients:
        await client.stop()
