import asyncio

from push_call.controller import CallController
from push_call.session import IDLE_SNAPSHOT, CallSnapshot, CallState


def run_async(coro):
    return asyncio.run(coro)


class RecordingOrchestrator:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.snapshot = IDLE_SNAPSHOT
        self.listeners: list = []

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    async def start_call(self, target_token, metadata=None):
        self.calls.append(("start_call", target_token, metadata))
        self.snapshot = CallSnapshot(state=CallState.CALLING, call_id="c1")
        return self.snapshot

    async def accept_call(self):
        self.calls.append(("accept_call",))
        return self.snapshot

    async def decline_call(self):
        self.calls.append(("decline_call",))
        return self.snapshot

    async def end_call(self):
        self.calls.append(("end_call",))
        return self.snapshot


def test_controller_passes_actions_through() -> None:
    orchestrator = RecordingOrchestrator()
    controller = CallController(orchestrator)  # type: ignore[arg-type]

    async def scenario() -> CallSnapshot:
        snapshot = await controller.start_call("tok-b", {"handle": "@a"})
        await controller.accept_call()
        await controller.decline_call()
        await controller.end_call()
        return snapshot

    snapshot = run_async(scenario())

    assert snapshot.state is CallState.CALLING
    assert controller.snapshot is orchestrator.snapshot
    assert orchestrator.calls == [
        ("start_call", "tok-b", {"handle": "@a"}),
        ("accept_call",),
        ("decline_call",),
        ("end_call",),
    ]


def test_controller_subscription_can_be_cancelled() -> None:
    orchestrator = RecordingOrchestrator()
    controller = CallController(orchestrator)  # type: ignore[arg-type]
    received: list[CallSnapshot] = []

    unsubscribe = controller.subscribe(received.append)
    assert orchestrator.listeners == [received.append]
    unsubscribe()

    assert orchestrator.listeners == []
