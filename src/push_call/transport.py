"""Signaling transport carried over a best-effort push notification service."""
from __future__ import annotations

import hashlib
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Mapping

import httpx

from .config import PushSettings
from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_DUPLICATE_WINDOW = 256


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """A push message as received from the peer."""

    sender_token: str | None
    message_type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def fingerprint(self) -> str:
        canonical = json.dumps(
            {"sender": self.sender_token, "type": self.message_type, "payload": self.payload},
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


MessageHandler = Callable[[InboundMessage], "Awaitable[None] | None"]


def decode_push_body(
    raw: Mapping[str, Any], *, sender_token: str | None = None
) -> InboundMessage:
    """Normalise a raw push body into an :class:`InboundMessage`.

    Accepts flat data maps, ``{"from": ..., "data": {...}}`` envelopes and the
    legacy ``{"type": ..., "message": "<json>"}`` shape.
    """

    if not isinstance(raw, Mapping):
        raise ValueError("Push body must be a JSON object")
    data = raw.get("data")
    if not isinstance(data, Mapping):
        data = raw
    payload: dict[str, Any] = dict(data)
    nested = payload.pop("message", None)
    if isinstance(nested, str) and nested.strip().startswith("{"):
        try:
            decoded = json.loads(nested)
        except ValueError as exc:
            raise ValueError("Push message body is not valid JSON") from exc
        if isinstance(decoded, Mapping):
            for key, value in decoded.items():
                payload.setdefault(key, value)
    elif nested is not None:
        payload["message"] = nested
    message_type = payload.pop("type", None)
    if not isinstance(message_type, str) or not message_type.strip():
        raise ValueError("Push body does not carry a message type")
    sender = payload.pop("senderToken", None) or sender_token or raw.get("from")
    return InboundMessage(
        sender_token=str(sender) if sender else None,
        message_type=message_type.strip(),
        payload=payload,
    )


def encode_push_data(message: Mapping[str, Any]) -> dict[str, str]:
    """Flatten *message* into the string-only map push services deliver."""

    data: dict[str, str] = {}
    for key, value in message.items():
        if value is None:
            continue
        if isinstance(value, str):
            data[key] = value
        else:
            data[key] = json.dumps(value, separators=(",", ":"))
    return data


class SignalingTransport(ABC):
    """Unordered, best-effort message channel between two call endpoints."""

    def __init__(self, *, duplicate_window: int = DEFAULT_DUPLICATE_WINDOW) -> None:
        if duplicate_window <= 0:
            raise ValueError("duplicate_window must be positive")
        self._handlers: list[MessageHandler] = []
        self._seen: Deque[str] = deque(maxlen=duplicate_window)
        self._seen_index: set[str] = set()

    @abstractmethod
    async def send(
        self, peer_token: str, message_type: str, payload: Mapping[str, Any]
    ) -> None:  # pragma: no cover - interface only
        """Deliver *payload* to *peer_token*; raises :class:`TransportError`."""
        raise NotImplementedError

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Register *handler* for inbound messages and return an unsubscribe callable."""

        self._handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    async def receive(self, message: InboundMessage) -> bool:
        """Dispatch *message* to the handlers unless it is an exact duplicate."""

        fingerprint = message.fingerprint()
        if fingerprint in self._seen_index:
            logger.debug(
                "Dropping duplicate %s push from %s", message.message_type, message.sender_token
            )
            return False
        if len(self._seen) == self._seen.maxlen:
            self._seen_index.discard(self._seen[0])
        self._seen.append(fingerprint)
        self._seen_index.add(fingerprint)
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # pragma: no cover - logging only
                logger.exception("Signaling handler failed for %s message", message.message_type)
        return True

    async def deliver(
        self, raw: Mapping[str, Any], *, sender_token: str | None = None
    ) -> bool:
        """Decode a raw push body and dispatch it."""

        return await self.receive(decode_push_body(raw, sender_token=sender_token))

    async def aclose(self) -> None:
        self._handlers.clear()


class PushTransport(SignalingTransport):
    """Send signaling messages through an HTTP push endpoint."""

    def __init__(
        self,
        settings: PushSettings,
        *,
        sender_token: str | None = None,
        client: httpx.AsyncClient | None = None,
        duplicate_window: int = DEFAULT_DUPLICATE_WINDOW,
    ) -> None:
        super().__init__(duplicate_window=duplicate_window)
        self._settings = settings
        self._sender_token = sender_token
        self._client = client
        self._owns_client = client is None

    @property
    def settings(self) -> PushSettings:
        return self._settings

    @property
    def sender_token(self) -> str | None:
        return self._sender_token

    @sender_token.setter
    def sender_token(self, value: str | None) -> None:
        self._sender_token = value or None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.server_key:
            headers["Authorization"] = f"key={self._settings.server_key}"
        return headers

    async def send(
        self, peer_token: str, message_type: str, payload: Mapping[str, Any]
    ) -> None:
        if not peer_token:
            raise TransportError("Peer token is not set")
        message = dict(payload)
        message["type"] = message_type
        if self._sender_token:
            message.setdefault("senderToken", self._sender_token)
        body = {"to": peer_token, "data": encode_push_data(message)}
        url = self._settings.endpoint
        client = await self._get_client()
        try:
            response = await client.post(url, json=body, headers=self._headers())
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportError(f"Push delivery to {url} timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(
                f"Push endpoint returned HTTP {status} for {message_type}: {exc.response.text.strip()}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Push request to {url} failed: {exc}") from exc
        logger.debug("Sent %s push to %s", message_type, peer_token)

    async def aclose(self) -> None:
        await super().aclose()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = [
    "InboundMessage",
    "MessageHandler",
    "PushTransport",
    "SignalingTransport",
    "decode_push_body",
    "encode_push_data",
]
