"""Call state machine driving offer/answer/ICE exchange over push messages.

The orchestrator owns at most one :class:`~push_call.session.CallSession`.
Every inbound push message, every local media event and every user action is
funnelled through it; transitions are serialised with an :class:`asyncio.Lock`
so callbacks never interleave inside a transition, while the arrival order of
the events themselves is never assumed.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Mapping, Sequence

from .config import IceServer, IdentitySettings, MediaConstraints, SignalingSettings
from .errors import (
    CallBusyError,
    CallError,
    CallStateError,
    CandidateError,
    NegotiationError,
    ProtocolViolation,
    TransportError,
)
from .event_log import LogCategory, SignalingLog
from .messages import (
    CRITICAL_MESSAGE_TYPES,
    Answer,
    Candidate,
    Decline,
    Hangup,
    IceCandidate,
    IncomingCall,
    LocalCandidateDiscovered,
    MessageType,
    Offer,
    RemoteTrackReceived,
    SessionDescription,
    SignalingEvent,
    build_message,
    parse_message,
)
from .peer import BasePeerSession, PeerSessionFactory
from .session import IDLE_SNAPSHOT, CallRole, CallSession, CallSnapshot, CallState
from .transport import InboundMessage, SignalingTransport

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[CallSnapshot], None]


class _SessionInvalidated(Exception):
    """Raised internally when the session was ended while a transition awaited."""


class CallOrchestrator:
    """Single-call signaling state machine."""

    def __init__(
        self,
        transport: SignalingTransport,
        peer_factory: PeerSessionFactory,
        *,
        ice_servers: Sequence[IceServer] = (),
        identity: IdentitySettings | None = None,
        signaling: SignalingSettings | None = None,
        constraints: MediaConstraints | None = None,
        event_log: SignalingLog | None = None,
        call_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._transport = transport
        self._peer_factory = peer_factory
        self._ice_servers = tuple(ice_servers)
        self._identity = identity or IdentitySettings()
        self._signaling = signaling or SignalingSettings()
        self._constraints = constraints
        self._event_log = event_log
        self._call_id_factory = call_id_factory or (lambda: uuid.uuid4().hex)
        self._session: CallSession | None = None
        self._snapshot: CallSnapshot = IDLE_SNAPSHOT
        self._listeners: list[SnapshotListener] = []
        self._lock = asyncio.Lock()
        self._action_pending = False
        self._finished: Deque[str] = deque(maxlen=self._signaling.finished_call_memory)
        self._tasks: set[asyncio.Task[None]] = set()
        self._handlers = {
            IncomingCall: self._on_incoming_call,
            Offer: self._on_offer,
            Answer: self._on_answer,
            Candidate: self._on_candidate,
            Decline: self._on_decline,
            Hangup: self._on_hangup,
            LocalCandidateDiscovered: self._on_local_candidate,
            RemoteTrackReceived: self._on_remote_track,
        }
        self._unsubscribe: Callable[[], None] | None = transport.on_message(self.handle_message)

    # ------------------------------ properties -----------------------------
    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def snapshot(self) -> CallSnapshot:
        return self._snapshot

    @property
    def state(self) -> CallState:
        return self._snapshot.state

    @property
    def identity(self) -> IdentitySettings:
        return self._identity

    def update_identity(self, identity: IdentitySettings) -> None:
        """Use *identity* for calls placed from now on."""

        self._identity = identity

    def update_ice_servers(self, ice_servers: Sequence[IceServer]) -> None:
        self._ice_servers = tuple(ice_servers)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Call *listener* with a new snapshot on every change."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _unsubscribe

    # ---------------------------- user actions -----------------------------
    async def start_call(
        self, target_token: str, metadata: Mapping[str, Any] | None = None
    ) -> CallSnapshot:
        """Place a call to *target_token*.

        Raises :class:`CallBusyError` without touching the active call when
        one exists, and :class:`CallStateError` while no local push token is
        configured. Media and delivery failures end in ``FAILED`` and are
        reported through the snapshot.
        """

        if self._session is not None or self._action_pending:
            raise CallBusyError()
        if not isinstance(target_token, str) or not target_token.strip():
            raise ValueError("Target token must be a non-empty string")
        if not self._identity.local_token:
            # The callee answers to peerToken; push services do not add a sender.
            raise CallStateError("A local push token must be configured before placing calls")
        metadata = dict(metadata or {})
        async with self._exclusive():
            if self._session is not None:
                raise CallBusyError()
            session = CallSession(
                call_id=str(metadata.get("callId") or self._call_id_factory()),
                role=CallRole.CALLER,
                peer_token=target_token.strip(),
                caller_name=metadata.get("callerName") or self._identity.display_name,
                handle=metadata.get("handle") or self._identity.handle,
            )
            self._session = session
            self._transition(session, CallState.CALLING)
            try:
                peer = self._open_peer(session)
                session.local_stream = await peer.attach_local_media(self._constraints)
                self._check_current(session)
                self._publish(session)
                offer = await peer.create_offer()
                self._check_current(session)
                await peer.set_local_description(offer)
                self._check_current(session)
                session.local_description = offer
                await self._send_critical(
                    session,
                    MessageType.INCOMING_CALL,
                    callerName=session.caller_name,
                    handle=session.handle,
                    peerToken=self._identity.local_token,
                    rtcMessage=offer.to_dict(),
                )
                self._check_current(session)
                await self._release_local_candidates(session)
            except _SessionInvalidated:
                await self._release(session)
            except CallError as exc:
                await self._fail(session, exc)
        return self._snapshot

    async def accept_call(self) -> CallSnapshot:
        """Answer the ringing call."""

        session = self._require_ringing("accept")
        if session.held_offer is None:
            raise CallStateError("The caller's offer has not arrived yet")
        async with self._exclusive():
            if self._session is not session or session.state is not CallState.RINGING:
                raise CallStateError("No incoming call to accept")
            self._transition(session, CallState.NEGOTIATING)
            try:
                peer = self._open_peer(session)
                session.local_stream = await peer.attach_local_media(self._constraints)
                self._check_current(session)
                self._publish(session)
                await self._apply_remote_description(session, session.held_offer)
                answer = await peer.create_answer()
                self._check_current(session)
                await peer.set_local_description(answer)
                self._check_current(session)
                session.local_description = answer
                await self._send_critical(session, MessageType.ANSWER, sdp=answer.sdp)
                self._check_current(session)
                await self._release_local_candidates(session)
            except _SessionInvalidated:
                await self._release(session)
            except CallError as exc:
                await self._fail(session, exc)
        return self._snapshot

    async def decline_call(self) -> CallSnapshot:
        """Reject the ringing call."""

        session = self._require_ringing("decline")
        async with self._exclusive():
            if self._session is not session or session.state is not CallState.RINGING:
                raise CallStateError("No incoming call to decline")
            await self._send_best_effort(session.peer_token, MessageType.DECLINE, session.call_id)
            await self._finish(session, CallState.DECLINED)
        return self._snapshot

    async def end_call(self) -> CallSnapshot:
        """Hang up; a no-op when no call is active.

        The session is invalidated before anything is awaited so that
        messages and in-flight transitions for it are dropped from here on.
        """

        session = self._session
        if session is None or not session.active:
            return self._snapshot
        self._session = None
        self._finished.append(session.call_id)
        session.state = CallState.ENDED
        if not session.hangup_sent:
            session.hangup_sent = True
            await self._send_best_effort(session.peer_token, MessageType.HANGUP, session.call_id)
        await self._release(session)
        self._record(LogCategory.CALL, "ended", "Call ended locally", call_id=session.call_id)
        self._publish(session)
        return self._snapshot

    # --------------------------- inbound events ----------------------------
    async def handle_message(self, message: InboundMessage) -> None:
        """Transport callback: parse *message* and feed it to :meth:`dispatch`."""

        try:
            event = parse_message(
                message.message_type, message.payload, sender_token=message.sender_token
            )
        except ProtocolViolation as exc:
            self._violation(None, f"Dropped {message.message_type!r} push: {exc}")
            return
        await self.dispatch(event)

    async def dispatch(self, event: SignalingEvent) -> None:
        """Apply one event to the state machine."""

        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported signaling event: {event!r}")
        async with self._lock:
            try:
                await handler(event)
            except ProtocolViolation as exc:
                self._violation(getattr(event, "call_id", None), str(exc))

    async def drain_events(self) -> None:
        """Wait until every scheduled media event has been dispatched."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.end_call()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def _on_incoming_call(self, event: IncomingCall) -> None:
        active = self._session
        if active is not None:
            if active.call_id == event.call_id:
                raise ProtocolViolation(f"Duplicate incoming call {event.call_id}")
            self._record(
                LogCategory.CALL,
                "busy",
                "Rejected incoming call while another call is active",
                call_id=event.call_id,
                metadata={"active_call_id": active.call_id},
            )
            await self._send_best_effort(
                event.peer_token, MessageType.DECLINE, event.call_id, reason="busy"
            )
            return
        if event.call_id in self._finished:
            raise ProtocolViolation(f"Incoming call {event.call_id} has already finished")
        session = CallSession(
            call_id=event.call_id,
            role=CallRole.CALLEE,
            peer_token=event.peer_token,
            caller_name=event.caller_name,
            handle=event.handle,
            held_offer=event.offer,
        )
        self._session = session
        logger.info("Incoming call %s from %s", session.call_id, session.caller_name or session.peer_token)
        self._transition(session, CallState.RINGING)

    async def _on_offer(self, event: Offer) -> None:
        session = self._match(event.call_id)
        if session.role is not CallRole.CALLEE:
            raise ProtocolViolation("Offer received by the calling side")
        if session.held_offer is not None or session.remote_description is not None:
            raise ProtocolViolation(f"Duplicate offer for call {session.call_id} ignored")
        if session.state is not CallState.RINGING:
            raise ProtocolViolation(f"Offer received in state {session.state.value}")
        session.held_offer = event.description
        self._record(
            LogCategory.SIGNALING,
            "offer",
            "Offer held until the call is accepted",
            call_id=session.call_id,
        )

    async def _on_answer(self, event: Answer) -> None:
        session = self._match(event.call_id)
        if session.role is not CallRole.CALLER:
            raise ProtocolViolation("Answer received by the called side")
        if session.remote_description is not None:
            raise ProtocolViolation(f"Duplicate answer for call {session.call_id} ignored")
        if session.state is not CallState.CALLING:
            raise ProtocolViolation(f"Answer received in state {session.state.value}")
        try:
            await self._apply_remote_description(session, event.description)
        except _SessionInvalidated:
            return
        except NegotiationError as exc:
            await self._fail(session, exc)
            return
        self._transition(session, CallState.NEGOTIATING)

    async def _on_candidate(self, event: Candidate) -> None:
        session = self._match(event.call_id)
        if session.remote_description is not None and session.peer is not None:
            await self._apply_candidate(session, event.candidate)
        else:
            session.queue_remote_candidate(event.candidate)
            logger.debug(
                "Queued remote candidate for call %s (%d pending)",
                session.call_id,
                len(session.pending_remote_candidates),
            )

    async def _on_decline(self, event: Decline) -> None:
        session = self._match(event.call_id)
        if session.role is not CallRole.CALLER:
            raise ProtocolViolation("Decline received by the called side")
        session.hangup_sent = True
        self._record(
            LogCategory.CALL,
            "declined",
            "Call declined by peer",
            call_id=session.call_id,
            metadata={"reason": event.reason},
        )
        await self._finish(session, CallState.ENDED)

    async def _on_hangup(self, event: Hangup) -> None:
        session = self._match(event.call_id)
        session.hangup_sent = True
        self._record(LogCategory.CALL, "hangup", "Call ended by peer", call_id=session.call_id)
        await self._finish(session, CallState.ENDED)

    async def _on_local_candidate(self, event: LocalCandidateDiscovered) -> None:
        session = self._session
        if session is None or session.call_id != event.call_id:
            logger.debug("Discarding local candidate for inactive call %s", event.call_id)
            return
        if not session.signaling_ready:
            session.pending_local_candidates.append(event.candidate)
            return
        await self._send_candidate(session, event.candidate)

    async def _on_remote_track(self, event: RemoteTrackReceived) -> None:
        session = self._session
        if session is None or session.call_id != event.call_id:
            logger.debug("Discarding remote track for inactive call %s", event.call_id)
            return
        session.remote_stream = event.stream
        if session.state is CallState.NEGOTIATING:
            self._transition(session, CallState.CONNECTED)
        else:
            self._publish(session)

    # ---------------------------- implementation ---------------------------
    @contextlib.asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        if self._action_pending:
            raise CallStateError("Another call action is still in progress")
        self._action_pending = True
        try:
            async with self._lock:
                yield
        finally:
            self._action_pending = False

    def _require_ringing(self, action: str) -> CallSession:
        if self._action_pending:
            raise CallStateError("Another call action is still in progress")
        session = self._session
        if session is None or session.state is not CallState.RINGING:
            raise CallStateError(f"No incoming call to {action}")
        return session

    def _match(self, call_id: str) -> CallSession:
        session = self._session
        if session is None or session.call_id != call_id:
            if call_id in self._finished:
                raise ProtocolViolation(f"Message for finished call {call_id}")
            raise ProtocolViolation(f"Message for unknown call {call_id}")
        return session

    def _check_current(self, session: CallSession) -> None:
        if self._session is not session:
            raise _SessionInvalidated()

    def _open_peer(self, session: CallSession) -> BasePeerSession:
        peer = self._peer_factory(self._ice_servers)
        session.peer = peer
        call_id = session.call_id
        peer.on_local_candidate(
            lambda candidate: self._schedule(LocalCandidateDiscovered(call_id, candidate))
        )
        peer.on_remote_track(lambda stream: self._schedule(RemoteTrackReceived(call_id, stream)))
        return peer

    def _schedule(self, event: SignalingEvent) -> None:
        task = asyncio.get_running_loop().create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _apply_remote_description(
        self, session: CallSession, description: SessionDescription
    ) -> None:
        await session.peer.set_remote_description(description)
        self._check_current(session)
        session.remote_description = description
        pending = session.drain_remote_candidates()
        if pending:
            logger.debug("Flushing %d queued candidates for call %s", len(pending), session.call_id)
        for candidate in pending:
            await self._apply_candidate(session, candidate)

    async def _apply_candidate(self, session: CallSession, candidate: IceCandidate) -> None:
        try:
            await session.peer.add_remote_candidate(candidate)
        except CandidateError as exc:
            logger.warning("Ignoring remote candidate for call %s: %s", session.call_id, exc)
            self._record(
                LogCategory.SIGNALING, "candidate_rejected", str(exc), call_id=session.call_id
            )

    async def _release_local_candidates(self, session: CallSession) -> None:
        session.signaling_ready = True
        for candidate in session.drain_local_candidates():
            await self._send_candidate(session, candidate)

    async def _send_candidate(self, session: CallSession, candidate: IceCandidate) -> None:
        message = build_message(MessageType.CANDIDATE, session.call_id, **candidate.to_dict())
        try:
            await self._transport.send(session.peer_token, MessageType.CANDIDATE.value, message)
        except TransportError as exc:
            logger.warning("Dropped local candidate for call %s: %s", session.call_id, exc)
            self._record(LogCategory.TRANSPORT, "candidate_lost", str(exc), call_id=session.call_id)

    async def _send_critical(
        self, session: CallSession, message_type: MessageType, **payload: Any
    ) -> None:
        if message_type not in CRITICAL_MESSAGE_TYPES:
            raise ValueError(f"{message_type.value} is not retried as a critical message")
        message = build_message(message_type, session.call_id, **payload)
        attempts = 1 + self._signaling.critical_retries
        for attempt in range(1, attempts + 1):
            try:
                await self._transport.send(session.peer_token, message_type.value, message)
                return
            except TransportError as exc:
                logger.warning(
                    "Sending %s for call %s failed (attempt %d/%d): %s",
                    message_type.value,
                    session.call_id,
                    attempt,
                    attempts,
                    exc,
                )
                self._record(
                    LogCategory.TRANSPORT,
                    "send_failed",
                    str(exc),
                    call_id=session.call_id,
                    metadata={"type": message_type.value, "attempt": attempt},
                )
                self._check_current(session)
                if attempt == attempts:
                    raise

    async def _send_best_effort(
        self, peer_token: str, message_type: MessageType, call_id: str, **payload: Any
    ) -> None:
        message = build_message(message_type, call_id, **payload)
        try:
            await self._transport.send(peer_token, message_type.value, message)
        except TransportError as exc:
            logger.warning("Unable to send %s for call %s: %s", message_type.value, call_id, exc)
            self._record(LogCategory.TRANSPORT, "send_failed", str(exc), call_id=call_id)

    async def _fail(self, session: CallSession, exc: BaseException) -> None:
        logger.error("Call %s failed: %s", session.call_id, exc)
        await self._finish(session, CallState.FAILED, error=str(exc))

    async def _finish(
        self, session: CallSession, state: CallState, *, error: str | None = None
    ) -> None:
        if not session.active:
            return
        if self._session is session:
            self._session = None
        self._finished.append(session.call_id)
        session.state = state
        session.error = error
        await self._release(session)
        self._record(
            LogCategory.CALL,
            state.value,
            f"Call {state.value}",
            call_id=session.call_id,
            metadata={"error": error},
        )
        self._publish(session)

    async def _release(self, session: CallSession) -> None:
        peer = session.peer
        if peer is not None:
            await peer.close()

    def _transition(self, session: CallSession, state: CallState) -> None:
        previous = session.state
        session.state = state
        logger.info("Call %s: %s -> %s", session.call_id, previous.value, state.value)
        self._record(
            LogCategory.CALL,
            "transition",
            f"{previous.value} -> {state.value}",
            call_id=session.call_id,
        )
        self._publish(session)

    def _publish(self, session: CallSession) -> None:
        self._snapshot = CallSnapshot.from_session(session)
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:  # pragma: no cover - logging only
                logger.exception("Call snapshot listener failed")

    def _violation(self, call_id: str | None, message: str) -> None:
        logger.warning("Protocol violation: %s", message)
        self._record(LogCategory.PROTOCOL, "violation", message, call_id=call_id)

    def _record(
        self,
        category: LogCategory,
        event: str,
        message: str,
        *,
        call_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._event_log is not None:
            self._event_log.record(category, event, message, call_id=call_id, metadata=metadata)


__all__ = ["CallOrchestrator", "SnapshotListener"]
