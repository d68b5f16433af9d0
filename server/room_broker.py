from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from shared.protocol import (
    BROKER_ORIGINATED,
    ROOM_CAPACITY,
    BothJoined,
    Envelope,
    EnvelopeDecodeError,
    ErrorMessage,
    JoinRoom,
    MessageType,
    PeerLeft,
    RoomCreated,
    RoomJoined,
    decode_envelope,
    encode_envelope,
)

logger = logging.getLogger(__name__)

ROOM_ID_PREFIX = "room_"
ROOM_ID_LENGTH = 9
_ROOM_ID_ALPHABET = string.digits + string.ascii_lowercase
_EVENT_LOG_LIMIT = 1000

ROOM_NOT_FOUND = "Room not found."
ROOM_FULL = "Room is full."
ALREADY_IN_ROOM = "Already in a room."


@dataclass(slots=True, eq=False)
class PeerConnection:
    """Broker-side handle for one transport connection."""

    connection_id: str
    deliver: Callable[[str], None]
    room_id: Optional[str] = None
    alive: bool = True
    connected_at: float = field(default_factory=lambda: time.time())
    messages_sent: int = 0
    messages_received: int = 0

    def send(self, envelope: Envelope) -> None:
        self.send_text(encode_envelope(envelope))

    def send_text(self, text: str) -> None:
        if not self.alive:
            return
        self.messages_sent += 1
        self.deliver(text)


class RoomBroker:
    """Pairs connections into capacity-2 rooms and relays envelopes between them.

    Every operation is synchronous: each inbound message is fully handled
    (room table mutated, replies queued on the connections' outboxes) before
    control returns to the event loop.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, List[PeerConnection]] = {}
        self._issued_room_ids: set[str] = set()
        self._event_log: list[dict] = []
        self._started_at = time.time()

    def handle_message(self, connection: PeerConnection, text: str) -> None:
        """Decode one inbound frame and dispatch it."""

        connection.messages_received += 1
        try:
            envelope = decode_envelope(text)
        except EnvelopeDecodeError as exc:
            logger.warning("Rejected frame from %s: %s", connection.connection_id, exc)
            connection.send(ErrorMessage(message=str(exc)))
            return

        kind = envelope.type
        if kind == MessageType.CREATE_ROOM:
            self.create_room(connection)
        elif kind == MessageType.JOIN_ROOM:
            assert isinstance(envelope, JoinRoom)
            self.join_room(connection, envelope.room_id)
        elif kind == MessageType.LEAVE_ROOM:
            self.disconnect(connection)
        elif kind in BROKER_ORIGINATED:
            logger.warning("Client %s sent broker-only message %s", connection.connection_id, kind.value)
            connection.send(ErrorMessage(message=f"Unexpected message type: {kind.value}"))
        else:
            # Forward the received frame so payload fields pass through untouched.
            self.relay(connection, text)

    def create_room(self, connection: PeerConnection) -> Optional[str]:
        if connection.room_id is not None:
            connection.send(ErrorMessage(message=ALREADY_IN_ROOM))
            return None
        room_id = self._new_room_id()
        self._rooms[room_id] = [connection]
        connection.room_id = room_id
        logger.info("Room %s created by %s", room_id, connection.connection_id)
        self._record_event("room_created", {"room_id": room_id, "connection_id": connection.connection_id})
        connection.send(RoomCreated(room_id=room_id))
        return room_id

    def join_room(self, connection: PeerConnection, room_id: str) -> bool:
        if connection.room_id is not None:
            connection.send(ErrorMessage(message=ALREADY_IN_ROOM))
            return False
        members = self._rooms.get(room_id)
        if members is None or len(members) >= ROOM_CAPACITY:
            reason = ROOM_NOT_FOUND if members is None else ROOM_FULL
            logger.info("Join of %s by %s rejected: %s", room_id, connection.connection_id, reason)
            self._record_event(
                "join_rejected",
                {"room_id": room_id, "connection_id": connection.connection_id, "reason": reason},
            )
            connection.send(ErrorMessage(message=reason))
            return False
        members.append(connection)
        connection.room_id = room_id
        logger.info("Connection %s joined room %s", connection.connection_id, room_id)
        self._record_event("room_joined", {"room_id": room_id, "connection_id": connection.connection_id})
        connection.send(RoomJoined(room_id=room_id))
        if len(members) == ROOM_CAPACITY:
            for member in members:
                member.send(BothJoined())
        return True

    def relay(self, connection: PeerConnection, text: str) -> int:
        """Forward a frame to every other member of the sender's room."""

        if connection.room_id is None:
            return 0
        members = self._rooms.get(connection.room_id, [])
        delivered = 0
        for member in members:
            if member is connection or not member.alive:
                continue
            member.send_text(text)
            delivered += 1
        return delivered

    def disconnect(self, connection: PeerConnection) -> bool:
        """Remove a connection from its room and notify whoever remains."""

        room_id = connection.room_id
        if room_id is None:
            return False
        connection.room_id = None
        members = self._rooms.get(room_id)
        if members is None:
            return False
        if connection in members:
            members.remove(connection)
        logger.info("Connection %s left room %s", connection.connection_id, room_id)
        self._record_event("peer_left", {"room_id": room_id, "connection_id": connection.connection_id})
        for member in members:
            member.send(PeerLeft())
        if not members:
            self._rooms.pop(room_id, None)
            logger.info("Room %s closed", room_id)
            self._record_event("room_closed", {"room_id": room_id})
        return True

    def close_connection(self, connection: PeerConnection) -> None:
        """Transport went away: leave the room and stop delivering to it."""

        self.disconnect(connection)
        connection.alive = False

    def room_members(self, room_id: str) -> list[PeerConnection]:
        return list(self._rooms.get(room_id, []))

    def has_room(self, room_id: str) -> bool:
        return room_id in self._rooms

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def snapshot(self) -> dict:
        rooms = [
            {
                "room_id": room_id,
                "member_count": len(members),
                "members": [
                    {
                        "connection_id": member.connection_id,
                        "connected_at": member.connected_at,
                        "messages_sent": member.messages_sent,
                        "messages_received": member.messages_received,
                    }
                    for member in members
                ],
            }
            for room_id, members in self._rooms.items()
        ]
        return {
            "rooms": rooms,
            "room_count": len(rooms),
            "connection_count": sum(room["member_count"] for room in rooms),
            "started_at": self._started_at,
            "events": list(self._event_log[-300:]),
        }

    def get_recent_events(self, limit: int = 300) -> list[dict]:
        if limit <= 0:
            return []
        return list(self._event_log[-limit:])

    def _new_room_id(self) -> str:
        while True:
            suffix = "".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))
            room_id = f"{ROOM_ID_PREFIX}{suffix}"
            if room_id not in self._issued_room_ids:
                self._issued_room_ids.add(room_id)
                return room_id

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        event = {
            "type": event_type,
            "timestamp": time.time(),
            "details": details,
        }
        self._event_log.append(event)
        if len(self._event_log) > _EVENT_LOG_LIMIT:
            self._event_log.pop(0)
