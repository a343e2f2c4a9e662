import json

import pytest

from push_call.errors import ProtocolViolation
from push_call.messages import (
    Answer,
    Candidate,
    Decline,
    Hangup,
    IceCandidate,
    IncomingCall,
    MessageType,
    Offer,
    SessionDescription,
    build_message,
    normalise_message_type,
    parse_message,
)

OFFER_SDP = "v=0\r\no=- 1 1 IN IP4 0.0.0.0\r\ns=-\r\nt=0 0\r\n"


def test_incoming_call_with_inline_offer() -> None:
    event = parse_message(
        "incoming-call",
        {
            "callId": "c1",
            "callerName": "Alice",
            "handle": "@alice",
            "peerToken": "tok-a",
            "rtcMessage": {"type": "offer", "sdp": OFFER_SDP},
        },
    )

    assert event == IncomingCall(
        call_id="c1",
        peer_token="tok-a",
        caller_name="Alice",
        handle="@alice",
        offer=SessionDescription("offer", OFFER_SDP),
    )


def test_incoming_call_accepts_json_encoded_rtc_message_and_legacy_alias() -> None:
    event = parse_message(
        "voip",
        {
            "call_id": "c2",
            "caller_name": "Bob",
            "token": "tok-b",
            "rtcMessage": json.dumps({"type": "offer", "sdp": OFFER_SDP}),
        },
    )

    assert isinstance(event, IncomingCall)
    assert event.call_id == "c2"
    assert event.peer_token == "tok-b"
    assert event.caller_name == "Bob"
    assert event.offer is not None and event.offer.sdp == OFFER_SDP


def test_incoming_call_falls_back_to_sender_token() -> None:
    event = parse_message("incoming-call", {"callId": "c3"}, sender_token="tok-sender")

    assert isinstance(event, IncomingCall)
    assert event.peer_token == "tok-sender"
    assert event.offer is None


def test_incoming_call_without_any_token_is_rejected() -> None:
    with pytest.raises(ProtocolViolation):
        parse_message("incoming-call", {"callId": "c4"})


def test_incoming_call_rejects_answer_in_rtc_message() -> None:
    with pytest.raises(ProtocolViolation):
        parse_message(
            "incoming-call",
            {"callId": "c5", "peerToken": "t", "rtcMessage": {"type": "answer", "sdp": OFFER_SDP}},
        )


def test_answer_and_offer_messages() -> None:
    answer = parse_message("answer", {"callId": "c1", "sdp": "answer-sdp"})
    offer = parse_message("offer", {"callId": "c1", "sdp": {"type": "offer", "sdp": "offer-sdp"}})

    assert answer == Answer("c1", SessionDescription("answer", "answer-sdp"))
    assert offer == Offer("c1", SessionDescription("offer", "offer-sdp"))


@pytest.mark.parametrize(
    "payload",
    [
        {"sdp": "answer-sdp"},
        {"callId": "", "sdp": "answer-sdp"},
        {"callId": "c1"},
        {"callId": "c1", "sdp": "   "},
        {"callId": "c1", "sdp": {"type": "offer", "sdp": "x"}},
    ],
)
def test_malformed_answer_is_a_protocol_violation(payload: dict) -> None:
    with pytest.raises(ProtocolViolation):
        parse_message("answer", payload)


def test_flat_candidate_with_string_mline_index() -> None:
    event = parse_message(
        "candidate",
        {
            "callId": "c1",
            "candidate": "candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host",
            "sdpMid": "0",
            "sdpMLineIndex": "1",
        },
    )

    assert event == Candidate(
        "c1",
        IceCandidate("candidate:1 1 udp 2122260223 10.0.0.2 50000 typ host", "0", 1),
    )


def test_nested_candidate_object_from_legacy_clients() -> None:
    event = parse_message(
        "icecandidate",
        {
            "callId": "c1",
            "candidate": json.dumps(
                {"candidate": "candidate:2 1 udp 1 10.0.0.3 50001 typ host", "sdpMLineIndex": 0}
            ),
        },
    )

    assert isinstance(event, Candidate)
    assert event.candidate.sdp_mline_index == 0
    assert event.candidate.sdp_mid is None


@pytest.mark.parametrize("index", ["-1", "abc", True])
def test_invalid_mline_index_is_rejected(index: object) -> None:
    with pytest.raises(ProtocolViolation):
        parse_message("candidate", {"callId": "c1", "candidate": "candidate:x", "sdpMLineIndex": index})


def test_decline_and_hangup() -> None:
    assert parse_message("decline", {"callId": "c1", "reason": "busy"}) == Decline("c1", "busy")
    assert parse_message("reject", {"callId": "c1"}) == Decline("c1", None)
    assert parse_message("hangup", {"callId": "c1"}) == Hangup("c1")
    assert parse_message("end", {"callId": 42}) == Hangup("42")


def test_unknown_type_and_non_mapping_payload() -> None:
    with pytest.raises(ProtocolViolation):
        normalise_message_type("ringtone")
    with pytest.raises(ProtocolViolation):
        normalise_message_type("")
    with pytest.raises(ProtocolViolation):
        parse_message("hangup", ["c1"])  # type: ignore[arg-type]


def test_normalise_message_type_aliases() -> None:
    assert normalise_message_type("VOIP") is MessageType.INCOMING_CALL
    assert normalise_message_type(" ice-candidate ") is MessageType.CANDIDATE
    assert normalise_message_type(MessageType.ANSWER) is MessageType.ANSWER


def test_build_message_always_carries_call_id_and_drops_empty_fields() -> None:
    message = build_message(MessageType.CANDIDATE, "c9", candidate="candidate:x", sdpMid=None)

    assert message == {"type": "candidate", "callId": "c9", "candidate": "candidate:x"}


def test_session_description_validation() -> None:
    with pytest.raises(ValueError):
        SessionDescription("pranswer", "sdp")
    with pytest.raises(ValueError):
        SessionDescription("offer", "")
    assert IceCandidate("candidate:x", "audio", 0).to_dict() == {
        "candidate": "candidate:x",
        "sdpMid": "audio",
        "sdpMLineIndex": 0,
    }
