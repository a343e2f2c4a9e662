"""Facade exposed to the presentation layer."""
from __future__ import annotations

from typing import Any, Callable, Mapping

from .orchestrator import CallOrchestrator, SnapshotListener
from .session import CallSnapshot


class CallController:
    """Thin pass-through over :class:`CallOrchestrator`.

    Views only ever see :class:`CallSnapshot` objects; they never touch the
    session or the peer connection directly.
    """

    def __init__(self, orchestrator: CallOrchestrator) -> None:
        self._orchestrator = orchestrator

    @property
    def snapshot(self) -> CallSnapshot:
        return self._orchestrator.snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self._orchestrator.subscribe(listener)

    async def start_call(
        self, target_token: str, metadata: Mapping[str, Any] | None = None
    ) -> CallSnapshot:
        return await self._orchestrator.start_call(target_token, metadata)

    async def accept_call(self) -> CallSnapshot:
        return await self._orchestrator.accept_call()

    async def decline_call(self) -> CallSnapshot:
        return await self._orchestrator.decline_call()

    async def end_call(self) -> CallSnapshot:
        return await self._orchestrator.end_call()


__all__ = ["CallController"]
