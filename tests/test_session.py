import pytest

from push_call.messages import IceCandidate, SessionDescription
from push_call.session import (
    IDLE_SNAPSHOT,
    CallRole,
    CallSession,
    CallSnapshot,
    CallState,
)


def _session(**kwargs) -> CallSession:
    return CallSession(call_id="c1", role=CallRole.CALLER, peer_token="tok-b", **kwargs)


def test_terminal_states() -> None:
    assert {state for state in CallState if state.terminal} == {
        CallState.ENDED,
        CallState.DECLINED,
        CallState.FAILED,
    }
    assert _session().active is True
    assert _session(state=CallState.FAILED).active is False


def test_peer_token_is_immutable_once_set() -> None:
    session = _session()
    session.peer_token = "tok-b"

    with pytest.raises(AttributeError):
        session.peer_token = "tok-other"


def test_descriptions_are_set_at_most_once() -> None:
    session = _session()
    session.remote_description = SessionDescription("answer", "sdp-1")

    with pytest.raises(AttributeError):
        session.remote_description = SessionDescription("answer", "sdp-2")
    assert session.remote_description.sdp == "sdp-1"


def test_candidate_queues_drain_in_arrival_order() -> None:
    session = _session()
    first = IceCandidate("candidate:1")
    second = IceCandidate("candidate:2")
    session.queue_remote_candidate(first)
    session.queue_remote_candidate(second)
    session.pending_local_candidates.append(second)

    assert session.drain_remote_candidates() == [first, second]
    assert session.pending_remote_candidates == []
    assert session.drain_local_candidates() == [second]
    assert session.drain_local_candidates() == []


def test_snapshot_serialisation() -> None:
    class Stream:
        def to_dict(self):
            return {"id": "s1", "tracks": ["audio"]}

    session = _session(state=CallState.CONNECTED, caller_name="Alice", handle="@alice")
    session.remote_stream = Stream()

    snapshot = CallSnapshot.from_session(session)

    assert snapshot.to_dict() == {
        "state": "connected",
        "call_id": "c1",
        "role": "caller",
        "local_stream": None,
        "remote_stream": {"id": "s1", "tracks": ["audio"]},
        "caller_info": {"callerName": "Alice", "handle": "@alice", "callId": "c1"},
        "error": None,
    }


def test_idle_snapshot() -> None:
    assert IDLE_SNAPSHOT.to_dict()["state"] == "idle"
    assert IDLE_SNAPSHOT.caller_info is None
