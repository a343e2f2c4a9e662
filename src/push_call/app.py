"""FastAPI application wiring together the push-call services."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .config import ConfigManager
from .controller import CallController
from .errors import CallError
from .event_log import LogCategory, SignalingLog
from .media import MediaSource
from .orchestrator import CallOrchestrator
from .peer import PeerSessionFactory, aiortc_session_factory
from .session import CallSnapshot
from .transport import PushTransport, SignalingTransport
from .version import APP_VERSION


class StartCallPayload(BaseModel):
    target_token: str = Field(min_length=1, max_length=4096)
    caller_name: str | None = Field(default=None, max_length=128)
    handle: str | None = Field(default=None, max_length=128)


class IdentityPayload(BaseModel):
    local_token: str | None = Field(default=None, max_length=4096)
    display_name: str | None = Field(default=None, max_length=128)
    handle: str | None = Field(default=None, max_length=128)


class IceServerPayload(BaseModel):
    urls: list[str]
    username: str | None = None
    credential: str | None = None


class IceServersPayload(BaseModel):
    servers: list[IceServerPayload]


def create_app(
    config_path: Path | str = Path("data/config.json"),
    *,
    transport: SignalingTransport | None = None,
    peer_factory: PeerSessionFactory | None = None,
    media_source: MediaSource | None = None,
) -> FastAPI:
    app = FastAPI(title="push-call", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    config_path = Path(config_path)
    config_manager = ConfigManager(config_path)
    signaling_log = SignalingLog()

    active_transport: SignalingTransport | None = transport
    orchestrator: CallOrchestrator | None = None
    controller: CallController | None = None
    update_queues: set[asyncio.Queue[dict[str, object | None]]] = set()

    app.state.config_manager = config_manager
    app.state.signaling_log = signaling_log
    app.state.transport = active_transport
    app.state.orchestrator = None
    app.state.controller = None

    def _broadcast(snapshot: CallSnapshot) -> None:
        payload = snapshot.to_dict()
        for queue in list(update_queues):
            queue.put_nowait(payload)

    def _require_controller() -> CallController:
        if controller is None:
            raise HTTPException(status_code=503, detail="Call service unavailable")
        return controller

    def _call_error(exc: CallError) -> HTTPException:
        return HTTPException(status_code=exc.status_code, detail=exc.detail)

    @app.on_event("startup")
    async def startup() -> None:
        nonlocal active_transport, orchestrator, controller
        signaling_log.record(LogCategory.SYSTEM, "startup", "push-call application starting up.")
        identity = config_manager.get_identity()
        signaling = config_manager.get_signaling_settings()
        media_settings = config_manager.get_media_settings()
        if active_transport is None:
            active_transport = PushTransport(
                config_manager.get_push_settings(),
                sender_token=identity.local_token,
                duplicate_window=signaling.duplicate_window,
            )
        factory = peer_factory
        if factory is None:
            factory = aiortc_session_factory(media_source or MediaSource(media_settings))
        orchestrator = CallOrchestrator(
            active_transport,
            factory,
            ice_servers=config_manager.get_ice_servers(),
            identity=identity,
            signaling=signaling,
            constraints=media_settings.constraints,
            event_log=signaling_log,
        )
        orchestrator.subscribe(_broadcast)
        controller = CallController(orchestrator)
        app.state.transport = active_transport
        app.state.orchestrator = orchestrator
        app.state.controller = controller
        signaling_log.record(
            LogCategory.SYSTEM,
            "startup_complete",
            "push-call startup sequence completed.",
            metadata={"media_source": media_settings.source},
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        nonlocal orchestrator, controller
        signaling_log.record(LogCategory.SYSTEM, "shutdown", "push-call application shutting down.")
        if orchestrator is not None:
            await orchestrator.aclose()
            orchestrator = None
            controller = None
        if active_transport is not None:
            await active_transport.aclose()
        app.state.orchestrator = None
        app.state.controller = None

    @app.get("/api/call")
    async def get_call() -> dict[str, object | None]:
        return _require_controller().snapshot.to_dict()

    @app.post("/api/call")
    async def start_call(payload: StartCallPayload) -> dict[str, object | None]:
        call_controller = _require_controller()
        metadata = {"callerName": payload.caller_name, "handle": payload.handle}
        try:
            snapshot = await call_controller.start_call(payload.target_token, metadata)
        except CallError as exc:
            raise _call_error(exc) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return snapshot.to_dict()

    @app.post("/api/call/accept")
    async def accept_call() -> dict[str, object | None]:
        call_controller = _require_controller()
        try:
            snapshot = await call_controller.accept_call()
        except CallError as exc:
            raise _call_error(exc) from exc
        return snapshot.to_dict()

    @app.post("/api/call/decline")
    async def decline_call() -> dict[str, object | None]:
        call_controller = _require_controller()
        try:
            snapshot = await call_controller.decline_call()
        except CallError as exc:
            raise _call_error(exc) from exc
        return snapshot.to_dict()

    @app.post("/api/call/end")
    async def end_call() -> dict[str, object | None]:
        snapshot = await _require_controller().end_call()
        return snapshot.to_dict()

    @app.post("/api/push")
    async def receive_push(
        payload: dict[str, Any], sender_token: str | None = None
    ) -> dict[str, bool]:
        _require_controller()
        if active_transport is None:  # pragma: no cover - startup guarantees a transport
            raise HTTPException(status_code=503, detail="Signaling transport unavailable")
        try:
            delivered = await active_transport.deliver(payload, sender_token=sender_token)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"delivered": delivered}

    @app.websocket("/ws/call")
    async def call_updates(websocket: WebSocket) -> None:
        await websocket.accept()
        queue: asyncio.Queue[dict[str, object | None]] = asyncio.Queue()
        update_queues.add(queue)
        receiver = asyncio.ensure_future(websocket.receive_text())
        try:
            current = controller.snapshot if controller is not None else None
            if current is not None:
                await websocket.send_json(current.to_dict())
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait(
                    {getter, receiver}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    await websocket.send_json(getter.result())
                else:
                    getter.cancel()
                if receiver in done:
                    # Inbound text is ignored; it only tells us the client is alive.
                    receiver.result()
                    receiver = asyncio.ensure_future(websocket.receive_text())
        except WebSocketDisconnect:
            logger.debug("Call update subscriber disconnected")
        finally:
            update_queues.discard(queue)
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await receiver

    @app.get("/api/logs")
    async def get_signaling_log(
        limit: int = 100, category: str | None = None, call_id: str | None = None
    ) -> dict[str, object]:
        try:
            entries = await run_in_threadpool(
                signaling_log.tail, limit, category=category, call_id=call_id
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    @app.get("/api/logs/calls")
    async def get_call_history(limit: int = 20) -> dict[str, object]:
        summaries = await run_in_threadpool(signaling_log.summarise_calls, limit)
        return {"calls": [summary.to_dict() for summary in reversed(summaries)]}

    @app.get("/api/settings/identity")
    async def get_identity() -> dict[str, str | None]:
        return config_manager.get_identity().to_dict()

    @app.post("/api/settings/identity")
    async def update_identity(payload: IdentityPayload) -> dict[str, str | None]:
        try:
            config_manager.set_identity(payload.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        identity = config_manager.get_identity()
        if orchestrator is not None:
            orchestrator.update_identity(identity)
        if isinstance(active_transport, PushTransport):
            active_transport.sender_token = identity.local_token
        return identity.to_dict()

    @app.get("/api/settings/ice")
    async def get_ice_servers() -> dict[str, object]:
        return {"servers": [server.to_dict() for server in config_manager.get_ice_servers()]}

    @app.post("/api/settings/ice")
    async def update_ice_servers(payload: IceServersPayload) -> dict[str, object]:
        try:
            servers = config_manager.set_ice_servers(
                [server.model_dump(exclude_none=True) for server in payload.servers]
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if orchestrator is not None:
            orchestrator.update_ice_servers(servers)
        return {"servers": [server.to_dict() for server in servers]}

    return app


__all__ = ["create_app"]
