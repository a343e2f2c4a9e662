"""RTC session ownership: one peer connection per call attempt."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Callable, Sequence

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import SessionDescription as ParsedSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .config import IceServer, MediaConstraints
from .errors import CandidateError, MediaSetupError, NegotiationError
from .media import MediaSource, MediaStream
from .messages import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

CandidateListener = Callable[[IceCandidate], None]
TrackListener = Callable[[MediaStream], None]

_CANDIDATE_PREFIX = "candidate:"


class BasePeerSession(ABC):
    """Contract between the call state machine and the media engine.

    Listeners are plain callables invoked synchronously; they must not await
    back into the session that fired them.
    """

    def __init__(self) -> None:
        self._candidate_listeners: list[CandidateListener] = []
        self._track_listeners: list[TrackListener] = []

    # ------------------------------ events -----------------------------
    def on_local_candidate(self, listener: CandidateListener) -> None:
        self._candidate_listeners.append(listener)

    def on_remote_track(self, listener: TrackListener) -> None:
        self._track_listeners.append(listener)

    def _emit_local_candidate(self, candidate: IceCandidate) -> None:
        for listener in list(self._candidate_listeners):
            try:
                listener(candidate)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Local candidate listener failed")

    def _emit_remote_track(self, stream: MediaStream) -> None:
        for listener in list(self._track_listeners):
            try:
                listener(stream)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Remote track listener failed")

    # ---------------------------- operations ---------------------------
    @abstractmethod
    async def attach_local_media(
        self, constraints: MediaConstraints | None = None
    ) -> MediaStream:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def create_offer(self) -> SessionDescription:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def create_answer(self) -> SessionDescription:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def set_local_description(
        self, description: SessionDescription
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def set_remote_description(
        self, description: SessionDescription
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def add_remote_candidate(
        self, candidate: IceCandidate
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


PeerSessionFactory = Callable[[Sequence[IceServer]], BasePeerSession]


def build_rtc_configuration(ice_servers: Sequence[IceServer]) -> RTCConfiguration:
    servers = [
        RTCIceServer(
            urls=list(server.urls),
            username=server.username,
            credential=server.credential,
        )
        for server in ice_servers
    ]
    return RTCConfiguration(iceServers=servers)


def extract_candidates(sdp: str) -> list[IceCandidate]:
    """Return the candidates gathered into *sdp*, in media section order."""

    parsed = ParsedSessionDescription.parse(sdp)
    candidates: list[IceCandidate] = []
    for index, media in enumerate(parsed.media):
        for candidate in media.ice_candidates:
            candidates.append(
                IceCandidate(
                    candidate=_CANDIDATE_PREFIX + candidate_to_sdp(candidate),
                    sdp_mid=media.rtp.muxId,
                    sdp_mline_index=index,
                )
            )
    return candidates


class AiortcPeerSession(BasePeerSession):
    """Peer session backed by :class:`aiortc.RTCPeerConnection`."""

    def __init__(
        self,
        ice_servers: Sequence[IceServer],
        media_source: MediaSource,
        *,
        peer_connection_factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
    ) -> None:
        super().__init__()
        self._media_source = media_source
        try:
            self._pc = peer_connection_factory(configuration=build_rtc_configuration(ice_servers))
        except Exception as exc:
            raise MediaSetupError(f"Unable to create RTC session: {exc}") from exc
        self._local_stream: MediaStream | None = None
        self._remote_stream = MediaStream()
        self._closed = False

        @self._pc.on("track")
        def _on_track(track) -> None:
            logger.info("Remote %s track received", track.kind)
            self._remote_stream.add_track(track)
            self._emit_remote_track(self._remote_stream)

        @self._pc.on("connectionstatechange")
        def _on_connection_state() -> None:  # pragma: no cover - event driven
            logger.debug("RTC connection state is %s", self._pc.connectionState)

    @property
    def connection(self) -> RTCPeerConnection:
        return self._pc

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise NegotiationError("RTC session is closed")

    async def attach_local_media(
        self, constraints: MediaConstraints | None = None
    ) -> MediaStream:
        self._ensure_open()
        stream = await asyncio.to_thread(self._media_source.acquire, constraints)
        if self._closed:
            stream.stop()
            raise NegotiationError("RTC session closed while local media was opening")
        for track in stream.tracks:
            self._pc.addTrack(track)
        self._local_stream = stream
        return stream

    async def create_offer(self) -> SessionDescription:
        self._ensure_open()
        try:
            offer = await self._pc.createOffer()
        except Exception as exc:
            raise NegotiationError(f"Unable to create offer: {exc}") from exc
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        self._ensure_open()
        if self._pc.remoteDescription is None:
            raise NegotiationError("Cannot create an answer before the remote offer is applied")
        try:
            answer = await self._pc.createAnswer()
        except Exception as exc:
            raise NegotiationError(f"Unable to create answer: {exc}") from exc
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        self._ensure_open()
        try:
            await self._pc.setLocalDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as exc:
            raise NegotiationError(f"Unable to apply local {description.type}: {exc}") from exc
        # aiortc gathers before returning; surface what it found one by one.
        local = self._pc.localDescription
        if local is not None:
            for candidate in extract_candidates(local.sdp):
                self._emit_local_candidate(candidate)

    async def set_remote_description(self, description: SessionDescription) -> None:
        self._ensure_open()
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as exc:
            raise NegotiationError(f"Unable to apply remote {description.type}: {exc}") from exc

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        self._ensure_open()
        if self._pc.remoteDescription is None:
            raise CandidateError("Remote description is not set")
        text = candidate.candidate
        if text.startswith(_CANDIDATE_PREFIX):
            text = text[len(_CANDIDATE_PREFIX):]
        if not text:
            # End-of-candidates marker.
            return
        try:
            ice = candidate_from_sdp(text)
            ice.sdpMid = candidate.sdp_mid
            ice.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(ice)
        except Exception as exc:
            raise CandidateError(f"Unable to apply candidate: {exc}") from exc

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._local_stream is not None:
            self._local_stream.stop()
        with contextlib.suppress(Exception):
            await self._pc.close()


def aiortc_session_factory(media_source: MediaSource) -> PeerSessionFactory:
    """Return a factory creating :class:`AiortcPeerSession` objects for *media_source*."""

    def _factory(ice_servers: Sequence[IceServer]) -> BasePeerSession:
        return AiortcPeerSession(ice_servers, media_source)

    return _factory


__all__ = [
    "AiortcPeerSession",
    "BasePeerSession",
    "PeerSessionFactory",
    "aiortc_session_factory",
    "build_rtc_configuration",
    "extract_candidates",
]
