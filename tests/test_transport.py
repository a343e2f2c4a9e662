import asyncio
import json

import httpx
import pytest

from push_call.config import PushSettings
from push_call.errors import TransportError
from push_call.transport import (
    InboundMessage,
    PushTransport,
    SignalingTransport,
    decode_push_body,
    encode_push_data,
)


def run_async(coro):
    return asyncio.run(coro)


class LoopbackTransport(SignalingTransport):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, peer_token, message_type, payload) -> None:
        self.sent.append((peer_token, message_type, dict(payload)))


def test_decode_flat_body() -> None:
    message = decode_push_body({"type": "hangup", "callId": "c1", "senderToken": "tok-a"})

    assert message == InboundMessage("tok-a", "hangup", {"callId": "c1"})


def test_decode_envelope_and_legacy_message_field() -> None:
    raw = {
        "from": "tok-b",
        "data": {"type": "voip", "message": json.dumps({"call_id": "c2", "caller_name": "Bob"})},
    }

    message = decode_push_body(raw)

    assert message.sender_token == "tok-b"
    assert message.message_type == "voip"
    assert message.payload == {"call_id": "c2", "caller_name": "Bob"}


def test_decode_prefers_explicit_sender_token_argument_over_envelope() -> None:
    message = decode_push_body({"from": "tok-env", "data": {"type": "hangup"}}, sender_token="tok-q")

    assert message.sender_token == "tok-q"


@pytest.mark.parametrize("raw", [["type"], {"callId": "c1"}, {"type": "  "}, {"type": "x", "message": "{oops"}])
def test_decode_rejects_bad_bodies(raw) -> None:
    with pytest.raises(ValueError):
        decode_push_body(raw)


def test_encode_push_data_produces_strings_only() -> None:
    data = encode_push_data(
        {"type": "candidate", "callId": "c1", "sdpMLineIndex": 0, "rtcMessage": {"type": "offer"}, "x": None}
    )

    assert data == {
        "type": "candidate",
        "callId": "c1",
        "sdpMLineIndex": "0",
        "rtcMessage": '{"type":"offer"}',
    }


def test_receive_drops_exact_duplicates() -> None:
    transport = LoopbackTransport()
    seen: list[InboundMessage] = []
    transport.on_message(seen.append)
    message = InboundMessage("tok", "hangup", {"callId": "c1"})

    async def scenario() -> tuple[bool, bool]:
        first = await transport.receive(message)
        second = await transport.receive(InboundMessage("tok", "hangup", {"callId": "c1"}))
        return first, second

    assert run_async(scenario()) == (True, False)
    assert seen == [message]


def test_duplicate_window_is_bounded() -> None:
    transport = LoopbackTransport(duplicate_window=2)
    seen: list[InboundMessage] = []
    transport.on_message(seen.append)

    async def scenario() -> list[bool]:
        results = []
        for call_id in ("a", "b", "c", "a"):
            results.append(await transport.receive(InboundMessage(None, "hangup", {"callId": call_id})))
        return results

    assert run_async(scenario()) == [True, True, True, True]
    assert len(seen) == 4


def test_async_handlers_are_awaited_and_failures_isolated() -> None:
    transport = LoopbackTransport()
    received: list[str] = []

    def broken(message: InboundMessage) -> None:
        raise RuntimeError("boom")

    async def handler(message: InboundMessage) -> None:
        await asyncio.sleep(0)
        received.append(message.payload["callId"])

    transport.on_message(broken)
    unsubscribe = transport.on_message(handler)

    run_async(transport.deliver({"type": "hangup", "callId": "c1"}))
    unsubscribe()
    run_async(transport.deliver({"type": "hangup", "callId": "c2"}))

    assert received == ["c1"]


def _push_transport(handler, **kwargs) -> tuple[PushTransport, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    settings = PushSettings(endpoint="https://push.example/send", server_key="secret")
    return PushTransport(settings, client=client, **kwargs), client


def test_push_transport_posts_string_data_map() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"success": 1})

    transport, client = _push_transport(handler, sender_token="tok-self")

    async def scenario() -> None:
        await transport.send("tok-peer", "candidate", {"callId": "c1", "sdpMLineIndex": 1})
        await transport.aclose()
        await client.aclose()

    run_async(scenario())

    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == "https://push.example/send"
    assert request.headers["Authorization"] == "key=secret"
    body = json.loads(request.content)
    assert body == {
        "to": "tok-peer",
        "data": {
            "callId": "c1",
            "sdpMLineIndex": "1",
            "type": "candidate",
            "senderToken": "tok-self",
        },
    }


def test_push_transport_maps_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    transport, client = _push_transport(handler)

    async def scenario() -> None:
        try:
            await transport.send("tok-peer", "answer", {"callId": "c1", "sdp": "x"})
        finally:
            await client.aclose()

    with pytest.raises(TransportError, match="HTTP 503"):
        run_async(scenario())


def test_push_transport_maps_network_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport, client = _push_transport(handler)

    async def scenario() -> None:
        try:
            await transport.send("tok-peer", "hangup", {"callId": "c1"})
        finally:
            await client.aclose()

    with pytest.raises(TransportError):
        run_async(scenario())


def test_push_transport_requires_peer_token() -> None:
    transport, client = _push_transport(lambda request: httpx.Response(200))

    with pytest.raises(TransportError):
        run_async(transport.send("", "hangup", {"callId": "c1"}))
    run_async(client.aclose())


def test_push_transport_does_not_close_borrowed_client() -> None:
    transport, client = _push_transport(lambda request: httpx.Response(200))

    run_async(transport.aclose())

    assert client.is_closed is False
    run_async(client.aclose())
