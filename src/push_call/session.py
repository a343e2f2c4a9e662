"""Call session data model shared by the state machine and the controller."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .messages import IceCandidate, SessionDescription


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    ENDED = "ended"
    DECLINED = "declined"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({CallState.ENDED, CallState.DECLINED, CallState.FAILED})


class CallRole(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


@dataclass
class CallSession:
    """One call attempt from creation until it reaches a terminal state."""

    call_id: str
    role: CallRole
    peer_token: str
    state: CallState = CallState.IDLE
    caller_name: str | None = None
    handle: str | None = None
    held_offer: SessionDescription | None = None
    local_description: SessionDescription | None = None
    remote_description: SessionDescription | None = None
    pending_remote_candidates: list[IceCandidate] = field(default_factory=list)
    pending_local_candidates: list[IceCandidate] = field(default_factory=list)
    local_stream: Any = None
    remote_stream: Any = None
    peer: Any = None
    signaling_ready: bool = False
    hangup_sent: bool = False
    error: str | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "peer_token" and getattr(self, "peer_token", None) not in (None, value):
            raise AttributeError("peer_token cannot change during a call")
        if name in {"local_description", "remote_description"} and value is not None:
            if getattr(self, name, None) is not None:
                raise AttributeError(f"{name} is already set")
        object.__setattr__(self, name, value)

    @property
    def active(self) -> bool:
        return not self.state.terminal

    def queue_remote_candidate(self, candidate: IceCandidate) -> None:
        self.pending_remote_candidates.append(candidate)

    def drain_remote_candidates(self) -> list[IceCandidate]:
        drained = list(self.pending_remote_candidates)
        self.pending_remote_candidates.clear()
        return drained

    def drain_local_candidates(self) -> list[IceCandidate]:
        drained = list(self.pending_local_candidates)
        self.pending_local_candidates.clear()
        return drained

    def caller_info(self) -> dict[str, str | None]:
        return {"callerName": self.caller_name, "handle": self.handle, "callId": self.call_id}


@dataclass(frozen=True, slots=True)
class CallSnapshot:
    """Read-only view of the call published to the presentation layer."""

    state: CallState = CallState.IDLE
    call_id: str | None = None
    role: CallRole | None = None
    local_stream: Any = None
    remote_stream: Any = None
    caller_info: dict[str, str | None] | None = None
    error: str | None = None

    @classmethod
    def from_session(cls, session: CallSession) -> "CallSnapshot":
        return cls(
            state=session.state,
            call_id=session.call_id,
            role=session.role,
            local_stream=session.local_stream,
            remote_stream=session.remote_stream,
            caller_info=session.caller_info(),
            error=session.error,
        )

    def to_dict(self) -> dict[str, object | None]:
        def _stream(stream: Any) -> object | None:
            if stream is None:
                return None
            to_dict = getattr(stream, "to_dict", None)
            return to_dict() if callable(to_dict) else str(stream)

        return {
            "state": self.state.value,
            "call_id": self.call_id,
            "role": self.role.value if self.role is not None else None,
            "local_stream": _stream(self.local_stream),
            "remote_stream": _stream(self.remote_stream),
            "caller_info": self.caller_info,
            "error": self.error,
        }


IDLE_SNAPSHOT = CallSnapshot()


__all__ = [
    "CallRole",
    "CallSession",
    "CallSnapshot",
    "CallState",
    "IDLE_SNAPSHOT",
    "TERMINAL_STATES",
]
