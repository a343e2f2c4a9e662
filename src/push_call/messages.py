"""Signaling message schema and the events consumed by the call state machine."""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union

from .errors import ProtocolViolation


class MessageType(str, Enum):
    INCOMING_CALL = "incoming-call"
    OFFER = "offer"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    DECLINE = "decline"
    HANGUP = "hangup"


# Older clients announce calls as "voip" pushes and trickle candidates as
# "icecandidate" pushes.
_TYPE_ALIASES: dict[str, MessageType] = {
    "voip": MessageType.INCOMING_CALL,
    "incoming_call": MessageType.INCOMING_CALL,
    "icecandidate": MessageType.CANDIDATE,
    "ice-candidate": MessageType.CANDIDATE,
    "end": MessageType.HANGUP,
    "reject": MessageType.DECLINE,
}

# Critical messages fail the call when they cannot be delivered.
CRITICAL_MESSAGE_TYPES = frozenset({MessageType.INCOMING_CALL, MessageType.ANSWER})


@dataclass(frozen=True, slots=True)
class SessionDescription:
    """An SDP offer or answer."""

    type: str
    sdp: str

    def __post_init__(self) -> None:
        if self.type not in {"offer", "answer"}:
            raise ValueError(f"Unsupported session description type: {self.type!r}")
        if not isinstance(self.sdp, str) or not self.sdp.strip():
            raise ValueError("Session description SDP must be a non-empty string")

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}


@dataclass(frozen=True, slots=True)
class IceCandidate:
    """A connectivity candidate in its browser (``RTCIceCandidateInit``) form."""

    candidate: str
    sdp_mid: str | None = None
    sdp_mline_index: int | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }


# ------------------------------------------------------------------ events
@dataclass(frozen=True, slots=True)
class IncomingCall:
    call_id: str
    peer_token: str
    caller_name: str | None = None
    handle: str | None = None
    offer: SessionDescription | None = None


@dataclass(frozen=True, slots=True)
class Offer:
    call_id: str
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class Answer:
    call_id: str
    description: SessionDescription


@dataclass(frozen=True, slots=True)
class Candidate:
    call_id: str
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class Decline:
    call_id: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class Hangup:
    call_id: str


@dataclass(frozen=True, slots=True)
class LocalCandidateDiscovered:
    call_id: str
    candidate: IceCandidate


@dataclass(frozen=True, slots=True)
class RemoteTrackReceived:
    call_id: str
    stream: Any


SignalingEvent = Union[
    IncomingCall,
    Offer,
    Answer,
    Candidate,
    Decline,
    Hangup,
    LocalCandidateDiscovered,
    RemoteTrackReceived,
]


# ----------------------------------------------------------------- parsing
def normalise_message_type(value: Any) -> MessageType:
    """Return the :class:`MessageType` for *value*, honouring legacy aliases."""

    if isinstance(value, MessageType):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ProtocolViolation("Signaling message is missing its type")
    text = value.strip().lower()
    alias = _TYPE_ALIASES.get(text)
    if alias is not None:
        return alias
    try:
        return MessageType(text)
    except ValueError as exc:
        raise ProtocolViolation(f"Unknown signaling message type: {value!r}") from exc


def _decode_nested(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("{"):
            try:
                return json.loads(text)
            except ValueError as exc:
                raise ProtocolViolation("Nested signaling payload is not valid JSON") from exc
    return value


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _require_text(payload: Mapping[str, Any], *keys: str) -> str:
    value = _first(payload, *keys)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolViolation(f"Signaling message is missing {keys[0]!r}")
    return value.strip()


def _optional_text(payload: Mapping[str, Any], *keys: str) -> str | None:
    value = _first(payload, *keys)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_description(value: Any, *, expected: str) -> SessionDescription:
    value = _decode_nested(value)
    if isinstance(value, Mapping):
        kind = value.get("type", expected)
        sdp = value.get("sdp")
    else:
        kind = expected
        sdp = value
    if kind != expected:
        raise ProtocolViolation(f"Expected an {expected} description, received {kind!r}")
    try:
        return SessionDescription(type=expected, sdp=sdp)
    except ValueError as exc:
        raise ProtocolViolation(str(exc)) from exc


def _parse_mline_index(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ProtocolViolation("sdpMLineIndex must be an integer")
    try:
        index = int(value)
    except (TypeError, ValueError) as exc:
        raise ProtocolViolation("sdpMLineIndex must be an integer") from exc
    if index < 0:
        raise ProtocolViolation("sdpMLineIndex must not be negative")
    return index


def _parse_candidate(payload: Mapping[str, Any]) -> IceCandidate:
    body = _decode_nested(payload.get("candidate"))
    if isinstance(body, Mapping):
        # Browsers serialise RTCIceCandidate objects whole.
        source: Mapping[str, Any] = body
    else:
        source = payload
    candidate = source.get("candidate")
    if not isinstance(candidate, str):
        raise ProtocolViolation("Candidate message is missing 'candidate'")
    sdp_mid = source.get("sdpMid")
    return IceCandidate(
        candidate=candidate.strip(),
        sdp_mid=str(sdp_mid) if sdp_mid not in (None, "") else None,
        sdp_mline_index=_parse_mline_index(source.get("sdpMLineIndex")),
    )


def parse_message(
    message_type: Any,
    payload: Mapping[str, Any],
    *,
    sender_token: str | None = None,
) -> SignalingEvent:
    """Translate an inbound push message into a state machine event.

    Raises :class:`ProtocolViolation` when the payload does not satisfy the
    schema of its type.
    """

    if not isinstance(payload, Mapping):
        raise ProtocolViolation("Signaling payload must be a JSON object")
    kind = normalise_message_type(message_type)
    call_id = _require_text(payload, "callId", "call_id")

    if kind is MessageType.INCOMING_CALL:
        peer_token = _optional_text(payload, "peerToken", "token") or sender_token
        if not peer_token:
            raise ProtocolViolation("Incoming call does not identify the caller's token")
        offer: SessionDescription | None = None
        rtc_message = _decode_nested(_first(payload, "rtcMessage", "rtc_message"))
        if rtc_message is not None:
            if not isinstance(rtc_message, Mapping):
                raise ProtocolViolation("rtcMessage must be a JSON object")
            if rtc_message.get("type") == "offer":
                offer = _parse_description(rtc_message, expected="offer")
            elif rtc_message.get("type") is not None:
                raise ProtocolViolation(
                    f"Unsupported rtcMessage type {rtc_message.get('type')!r} in incoming call"
                )
        return IncomingCall(
            call_id=call_id,
            peer_token=peer_token,
            caller_name=_optional_text(payload, "callerName", "caller_name"),
            handle=_optional_text(payload, "handle"),
            offer=offer,
        )
    if kind is MessageType.OFFER:
        return Offer(call_id, _parse_description(_first(payload, "sdp", "description"), expected="offer"))
    if kind is MessageType.ANSWER:
        return Answer(call_id, _parse_description(_first(payload, "sdp", "description"), expected="answer"))
    if kind is MessageType.CANDIDATE:
        return Candidate(call_id, _parse_candidate(payload))
    if kind is MessageType.DECLINE:
        return Decline(call_id, reason=_optional_text(payload, "reason"))
    return Hangup(call_id)


def build_message(message_type: MessageType, call_id: str, **payload: Any) -> dict[str, Any]:
    """Compose an outbound message body; ``callId`` is always present."""

    message: dict[str, Any] = {"type": message_type.value, "callId": call_id}
    for key, value in payload.items():
        if value is not None:
            message[key] = value
    return message


__all__ = [
    "Answer",
    "CRITICAL_MESSAGE_TYPES",
    "Candidate",
    "Decline",
    "Hangup",
    "IceCandidate",
    "IncomingCall",
    "LocalCandidateDiscovered",
    "MessageType",
    "Offer",
    "RemoteTrackReceived",
    "SessionDescription",
    "SignalingEvent",
    "build_message",
    "normalise_message_type",
    "parse_message",
]
