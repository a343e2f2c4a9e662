"""Exceptions raised while placing and negotiating calls.

These are safe to import from the API layer without pulling in the media stack.
"""

from __future__ import annotations


class CallError(RuntimeError):
    status_code: int = 500
    default_detail: str = "Call error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class MediaSetupError(CallError):
    status_code = 503
    default_detail = "Unable to create the RTC session."


class MediaPermissionError(CallError):
    status_code = 403
    default_detail = "Camera or microphone access was denied."


class MediaDeviceError(CallError):
    status_code = 503
    default_detail = "No matching camera or microphone is available."


class NegotiationError(CallError):
    status_code = 409
    default_detail = "Session description could not be applied."


class CandidateError(CallError):
    status_code = 409
    default_detail = "ICE candidate could not be applied."


class TransportError(CallError):
    status_code = 502
    default_detail = "Signaling message could not be delivered."


class ProtocolViolation(CallError):
    status_code = 400
    default_detail = "Malformed, duplicate or stale signaling message."


class CallBusyError(CallError):
    status_code = 409
    default_detail = "Another call is already active."


class CallStateError(CallError):
    status_code = 409
    default_detail = "Action is not valid in the current call state."


__all__ = [
    "CallBusyError",
    "CallError",
    "CallStateError",
    "CandidateError",
    "MediaDeviceError",
    "MediaPermissionError",
    "MediaSetupError",
    "NegotiationError",
    "ProtocolViolation",
    "TransportError",
]
