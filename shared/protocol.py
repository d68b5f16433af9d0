"""Envelope primitives shared between the broker and its clients.

Every frame on the broker WebSocket is a single JSON object tagged by ``type``.
This module centralises the envelope schemas together with the
serialization/deserialization helpers so both halves of the application remain
in sync.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

import json
import math


DEFAULT_BROKER_HOST = "0.0.0.0"
DEFAULT_BROKER_PORT = 8080
ROOM_CAPACITY = 2
DURATION_EPSILON = 0.1  # seconds
SYNC_GUARD_SECONDS = 0.1
SEEK_DEBOUNCE_SECONDS = 0.3
DEFAULT_ICE_SERVERS = ("stun:stun.l.google.com:19302",)


class MessageType(str, Enum):
    """Envelope kinds exchanged over the broker connection."""

    CREATE_ROOM = "create_room"
    ROOM_CREATED = "room_created"
    JOIN_ROOM = "join_room"
    ROOM_JOINED = "room_joined"
    BOTH_JOINED = "both_joined"
    LEAVE_ROOM = "leave_room"
    PEER_LEFT = "peer_left"
    ERROR = "error"
    FILE_INFO = "file_info"
    SYNC_ACTION = "sync_action"
    CHAT_MESSAGE = "chat_message"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"
    CALL_ENDED = "call_ended"


# Older clients announce page unload with a bare "disconnect" message.
_TYPE_ALIASES = {"disconnect": MessageType.LEAVE_ROOM}

BROKER_ORIGINATED = frozenset(
    {
        MessageType.ROOM_CREATED,
        MessageType.ROOM_JOINED,
        MessageType.BOTH_JOINED,
        MessageType.PEER_LEFT,
        MessageType.ERROR,
    }
)

RELAYED = frozenset(
    {
        MessageType.FILE_INFO,
        MessageType.SYNC_ACTION,
        MessageType.CHAT_MESSAGE,
        MessageType.OFFER,
        MessageType.ANSWER,
        MessageType.ICE_CANDIDATE,
        MessageType.CALL_ENDED,
    }
)


class PlaybackAction(str, Enum):
    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"


class EnvelopeDecodeError(ValueError):
    """Raised when a frame is not a well-formed envelope."""


def _require(data: Dict[str, Any], key: str, kind: MessageType) -> Any:
    if key not in data or data[key] is None:
        raise EnvelopeDecodeError(f"Missing field '{key}' for {kind.value}")
    return data[key]


def _require_str(data: Dict[str, Any], key: str, kind: MessageType, *, allow_empty: bool = True) -> str:
    value = _require(data, key, kind)
    if not isinstance(value, str):
        raise EnvelopeDecodeError(f"Field '{key}' for {kind.value} must be a string")
    if not allow_empty and not value.strip():
        raise EnvelopeDecodeError(f"Field '{key}' for {kind.value} must not be empty")
    return value


def _require_number(data: Dict[str, Any], key: str, kind: MessageType) -> float:
    value = _require(data, key, kind)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise EnvelopeDecodeError(f"Field '{key}' for {kind.value} must be a number")
    return float(value)


def _require_object(data: Dict[str, Any], key: str, kind: MessageType) -> Dict[str, Any]:
    value = _require(data, key, kind)
    if not isinstance(value, dict):
        raise EnvelopeDecodeError(f"Field '{key}' for {kind.value} must be an object")
    return value


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """SDP blob plus its role, as produced by a peer media session."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: MessageType) -> "SessionDescription":
        return cls(
            type=_require_str(data, "type", kind),
            sdp=_require_str(data, "sdp", kind),
        )


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """A single ICE candidate line with its media section binding."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: MessageType) -> "IceCandidate":
        sdp_mid = data.get("sdpMid")
        mline = data.get("sdpMLineIndex")
        if sdp_mid is not None and not isinstance(sdp_mid, str):
            raise EnvelopeDecodeError(f"Field 'sdpMid' for {kind.value} must be a string")
        if mline is not None and (isinstance(mline, bool) or not isinstance(mline, int)):
            raise EnvelopeDecodeError(f"Field 'sdpMLineIndex' for {kind.value} must be an integer")
        return cls(
            candidate=_require_str(data, "candidate", kind),
            sdp_mid=sdp_mid,
            sdp_mline_index=mline,
        )


@dataclass(frozen=True, slots=True)
class CreateRoom:
    type: ClassVar[MessageType] = MessageType.CREATE_ROOM

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateRoom":
        return cls()


@dataclass(frozen=True, slots=True)
class RoomCreated:
    type: ClassVar[MessageType] = MessageType.ROOM_CREATED
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomCreated":
        return cls(room_id=_require_str(data, "roomId", cls.type, allow_empty=False))


@dataclass(frozen=True, slots=True)
class JoinRoom:
    type: ClassVar[MessageType] = MessageType.JOIN_ROOM
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JoinRoom":
        return cls(room_id=_require_str(data, "roomId", cls.type, allow_empty=False))


@dataclass(frozen=True, slots=True)
class RoomJoined:
    type: ClassVar[MessageType] = MessageType.ROOM_JOINED
    room_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "roomId": self.room_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoomJoined":
        return cls(room_id=_require_str(data, "roomId", cls.type, allow_empty=False))


@dataclass(frozen=True, slots=True)
class BothJoined:
    type: ClassVar[MessageType] = MessageType.BOTH_JOINED

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BothJoined":
        return cls()


@dataclass(frozen=True, slots=True)
class LeaveRoom:
    type: ClassVar[MessageType] = MessageType.LEAVE_ROOM

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeaveRoom":
        return cls()


@dataclass(frozen=True, slots=True)
class PeerLeft:
    type: ClassVar[MessageType] = MessageType.PEER_LEFT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerLeft":
        return cls()


@dataclass(frozen=True, slots=True)
class ErrorMessage:
    type: ClassVar[MessageType] = MessageType.ERROR
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorMessage":
        return cls(message=_require_str(data, "message", cls.type))


@dataclass(frozen=True, slots=True)
class FileInfo:
    type: ClassVar[MessageType] = MessageType.FILE_INFO
    duration: float

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "duration": self.duration}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileInfo":
        duration = _require_number(data, "duration", cls.type)
        if duration < 0:
            raise EnvelopeDecodeError("Field 'duration' for file_info must not be negative")
        return cls(duration=duration)


@dataclass(frozen=True, slots=True)
class SyncAction:
    type: ClassVar[MessageType] = MessageType.SYNC_ACTION
    action: PlaybackAction
    current_time: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "action": self.action.value,
            "currentTime": self.current_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncAction":
        raw_action = _require_str(data, "action", cls.type)
        try:
            action = PlaybackAction(raw_action)
        except ValueError as exc:
            raise EnvelopeDecodeError(f"Unknown sync action: {raw_action}") from exc
        return cls(action=action, current_time=_require_number(data, "currentTime", cls.type))


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """Payload for chat lines relayed between room-mates."""

    type: ClassVar[MessageType] = MessageType.CHAT_MESSAGE
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(message=_require_str(data, "message", cls.type))


@dataclass(frozen=True, slots=True)
class Offer:
    type: ClassVar[MessageType] = MessageType.OFFER
    offer: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "offer": self.offer.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        return cls(offer=SessionDescription.from_dict(_require_object(data, "offer", cls.type), cls.type))


@dataclass(frozen=True, slots=True)
class Answer:
    type: ClassVar[MessageType] = MessageType.ANSWER
    answer: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "answer": self.answer.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Answer":
        return cls(answer=SessionDescription.from_dict(_require_object(data, "answer", cls.type), cls.type))


@dataclass(frozen=True, slots=True)
class IceCandidateMessage:
    type: ClassVar[MessageType] = MessageType.ICE_CANDIDATE
    candidate: IceCandidate

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "candidate": self.candidate.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidateMessage":
        return cls(candidate=IceCandidate.from_dict(_require_object(data, "candidate", cls.type), cls.type))


@dataclass(frozen=True, slots=True)
class CallEnded:
    type: ClassVar[MessageType] = MessageType.CALL_ENDED

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallEnded":
        return cls()


Envelope = Union[
    CreateRoom,
    RoomCreated,
    JoinRoom,
    RoomJoined,
    BothJoined,
    LeaveRoom,
    PeerLeft,
    ErrorMessage,
    FileInfo,
    SyncAction,
    ChatMessage,
    Offer,
    Answer,
    IceCandidateMessage,
    CallEnded,
]

_ENVELOPE_TYPES: Dict[MessageType, type] = {
    envelope_cls.type: envelope_cls
    for envelope_cls in (
        CreateRoom,
        RoomCreated,
        JoinRoom,
        RoomJoined,
        BothJoined,
        LeaveRoom,
        PeerLeft,
        ErrorMessage,
        FileInfo,
        SyncAction,
        ChatMessage,
        Offer,
        Answer,
        IceCandidateMessage,
        CallEnded,
    )
}


def encode_envelope(envelope: Envelope) -> str:
    """Serialize an envelope into a compact JSON text frame."""

    return json.dumps(envelope.to_dict(), separators=(',', ':'))


def parse_message_type(data: Any) -> MessageType:
    """Return the tag of an already-parsed frame, rejecting unknown kinds."""

    if not isinstance(data, dict):
        raise EnvelopeDecodeError("Envelope must be a JSON object")
    raw_type = data.get("type")
    if not isinstance(raw_type, str) or not raw_type:
        raise EnvelopeDecodeError("Envelope is missing a 'type' tag")
    if raw_type in _TYPE_ALIASES:
        return _TYPE_ALIASES[raw_type]
    try:
        return MessageType(raw_type)
    except ValueError as exc:
        raise EnvelopeDecodeError(f"Unknown message type: {raw_type}") from exc


def decode_envelope(frame: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """Decode a text frame (or an already-parsed object) into an envelope.

    Raises :class:`EnvelopeDecodeError` for invalid JSON, unknown tags and
    missing or mistyped fields.
    """

    if isinstance(frame, (str, bytes)):
        try:
            data = json.loads(frame)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise EnvelopeDecodeError("Invalid message format.") from exc
    else:
        data = frame
    message_type = parse_message_type(data)
    return _ENVELOPE_TYPES[message_type].from_dict(data)
