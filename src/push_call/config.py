"""Configuration management for push-call."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Mapping, Sequence

# User visible identifiers for local media backends.
MEDIA_SOURCES: dict[str, str] = {
    "auto": "Automatic (capture devices with synthetic fallback)",
    "device": "Capture devices",
    "synthetic": "Synthetic test pattern",
}

DEFAULT_MEDIA_SOURCE = "auto"
DEFAULT_PUSH_ENDPOINT = "https://fcm.googleapis.com/fcm/send"
DEFAULT_DISPLAY_NAME = "push-call"
FACING_MODES = ("user", "environment")
_ICE_SCHEMES = ("stun:", "stuns:", "turn:", "turns:")


@dataclass(frozen=True, slots=True)
class IdentitySettings:
    """How this endpoint is addressed and presented to callees."""

    local_token: str | None = None
    display_name: str = DEFAULT_DISPLAY_NAME
    handle: str | None = None

    def __post_init__(self) -> None:
        name = str(self.display_name).strip() if self.display_name is not None else ""
        if not name:
            raise ValueError("Display name must be a non-empty string")
        object.__setattr__(self, "display_name", name)
        token = str(self.local_token).strip() if self.local_token is not None else ""
        object.__setattr__(self, "local_token", token or None)
        handle = str(self.handle).strip() if self.handle is not None else ""
        object.__setattr__(self, "handle", handle or None)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "local_token": self.local_token,
            "display_name": self.display_name,
            "handle": self.handle,
        }


@dataclass(frozen=True, slots=True)
class IceServer:
    """A STUN or TURN server used for connectivity checks."""

    urls: tuple[str, ...]
    username: str | None = None
    credential: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.urls, str):
            urls: tuple[str, ...] = (self.urls,)
        else:
            urls = tuple(self.urls)
        cleaned = tuple(url.strip() for url in urls if isinstance(url, str) and url.strip())
        if not cleaned:
            raise ValueError("ICE server entries must list at least one URL")
        for url in cleaned:
            if not url.lower().startswith(_ICE_SCHEMES):
                raise ValueError(f"Unsupported ICE server URL: {url}")
        object.__setattr__(self, "urls", cleaned)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"urls": list(self.urls)}
        if self.username is not None:
            payload["username"] = self.username
        if self.credential is not None:
            payload["credential"] = self.credential
        return payload


DEFAULT_ICE_SERVERS: tuple[IceServer, ...] = (
    IceServer(("stun:stun.l.google.com:19302",)),
    IceServer(("stun:stun1.l.google.com:19302",)),
)


@dataclass(frozen=True, slots=True)
class PushSettings:
    """Where outbound signaling pushes are posted."""

    endpoint: str = DEFAULT_PUSH_ENDPOINT
    server_key: str | None = None
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if not isinstance(self.endpoint, str) or not self.endpoint.startswith(("http://", "https://")):
            raise ValueError("Push endpoint must be an http(s) URL")
        try:
            timeout = float(self.timeout)
        except (TypeError, ValueError) as exc:
            raise ValueError("Push timeout must be numeric") from exc
        if not math.isfinite(timeout) or timeout <= 0:
            raise ValueError("Push timeout must be a positive number of seconds")
        object.__setattr__(self, "timeout", timeout)

    def to_dict(self) -> dict[str, object | None]:
        return {
            "endpoint": self.endpoint,
            "server_key": self.server_key,
            "timeout": self.timeout,
        }


@dataclass(frozen=True, slots=True)
class MediaConstraints:
    """Capture constraints for the local stream."""

    audio: bool = True
    video: bool = True
    min_width: int = 500
    min_height: int = 300
    min_frame_rate: int = 30
    facing_mode: str = "user"
    device_id: str | None = None

    def __post_init__(self) -> None:
        if not self.audio and not self.video:
            raise ValueError("At least one of audio or video must be requested")
        if self.min_width <= 0 or self.min_height <= 0:
            raise ValueError("Minimum video dimensions must be positive integers")
        if self.min_frame_rate < 1 or self.min_frame_rate > 60:
            raise ValueError("Minimum frame rate must be between 1 and 60")
        if self.facing_mode not in FACING_MODES:
            raise ValueError(f"Unknown facing mode: {self.facing_mode}")

    def to_dict(self) -> dict[str, object | None]:
        return {
            "audio": self.audio,
            "video": self.video,
            "min_width": self.min_width,
            "min_height": self.min_height,
            "min_frame_rate": self.min_frame_rate,
            "facing_mode": self.facing_mode,
            "device_id": self.device_id,
        }


@dataclass(frozen=True, slots=True)
class MediaSettings:
    """Local media backend selection."""

    source: str = DEFAULT_MEDIA_SOURCE
    constraints: MediaConstraints = MediaConstraints()
    video_format: str = "v4l2"
    audio_device: str = "default"
    audio_format: str = "pulse"

    def __post_init__(self) -> None:
        if self.source not in MEDIA_SOURCES:
            raise ValueError(f"Unknown media source: {self.source}")

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "constraints": self.constraints.to_dict(),
            "video_format": self.video_format,
            "audio_device": self.audio_device,
            "audio_format": self.audio_format,
        }


@dataclass(frozen=True, slots=True)
class SignalingSettings:
    """Delivery policy for signaling messages."""

    critical_retries: int = 1
    duplicate_window: int = 256
    finished_call_memory: int = 64

    def __post_init__(self) -> None:
        if self.critical_retries < 0 or self.critical_retries > 5:
            raise ValueError("Critical retries must be between 0 and 5")
        if self.duplicate_window < 1:
            raise ValueError("Duplicate window must be positive")
        if self.finished_call_memory < 1:
            raise ValueError("Finished call memory must be positive")

    def to_dict(self) -> Dict[str, int]:
        return {
            "critical_retries": int(self.critical_retries),
            "duplicate_window": int(self.duplicate_window),
            "finished_call_memory": int(self.finished_call_memory),
        }


DEFAULT_IDENTITY = IdentitySettings()
DEFAULT_PUSH_SETTINGS = PushSettings()
DEFAULT_MEDIA_SETTINGS = MediaSettings()
DEFAULT_SIGNALING_SETTINGS = SignalingSettings()


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if math.isnan(float(value)):
            raise ValueError("Flags must be boolean values")
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError("Flags must be boolean values")


def _parse_int(value: Any, *, default: int, label: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"{label} must be an integer")
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be an integer") from exc


def _parse_identity(value: Any, *, default: IdentitySettings) -> IdentitySettings:
    if value is None:
        return default
    if isinstance(value, IdentitySettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Identity settings must be provided as a mapping")
    return IdentitySettings(
        local_token=value.get("local_token", default.local_token),
        display_name=value.get("display_name", default.display_name),
        handle=value.get("handle", default.handle),
    )


def _parse_ice_server(value: Any) -> IceServer:
    if isinstance(value, IceServer):
        return value
    if isinstance(value, str):
        return IceServer((value,))
    if isinstance(value, Mapping):
        urls = value.get("urls", value.get("url"))
        if urls is None:
            raise ValueError("ICE server entries must include 'urls'")
        if isinstance(urls, str):
            urls = (urls,)
        elif isinstance(urls, Iterable):
            urls = tuple(urls)
        else:
            raise ValueError("ICE server 'urls' must be a string or list of strings")
        username = value.get("username")
        credential = value.get("credential")
        return IceServer(
            urls,
            username=str(username) if username is not None else None,
            credential=str(credential) if credential is not None else None,
        )
    raise ValueError("Unsupported ICE server entry")


def _parse_ice_servers(
    value: Any, *, default: tuple[IceServer, ...]
) -> tuple[IceServer, ...]:
    if value is None:
        return default
    if isinstance(value, (str, Mapping)):
        return (_parse_ice_server(value),)
    if isinstance(value, Sequence):
        return tuple(_parse_ice_server(item) for item in value)
    raise ValueError("ICE servers must be provided as a list")


def _parse_push_settings(value: Any, *, default: PushSettings) -> PushSettings:
    if value is None:
        return default
    if isinstance(value, PushSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Push settings must be provided as a mapping")
    server_key = value.get("server_key", default.server_key)
    return PushSettings(
        endpoint=str(value.get("endpoint", default.endpoint)).strip(),
        server_key=str(server_key).strip() or None if server_key is not None else None,
        timeout=value.get("timeout", default.timeout),
    )


def _parse_constraints(value: Any, *, default: MediaConstraints) -> MediaConstraints:
    if value is None:
        return default
    if isinstance(value, MediaConstraints):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Media constraints must be provided as a mapping")
    device_id = value.get("device_id", default.device_id)
    facing = value.get("facing_mode", default.facing_mode)
    return MediaConstraints(
        audio=_parse_flag(value.get("audio"), default=default.audio),
        video=_parse_flag(value.get("video"), default=default.video),
        min_width=_parse_int(value.get("min_width"), default=default.min_width, label="Minimum width"),
        min_height=_parse_int(value.get("min_height"), default=default.min_height, label="Minimum height"),
        min_frame_rate=_parse_int(
            value.get("min_frame_rate"), default=default.min_frame_rate, label="Minimum frame rate"
        ),
        facing_mode=str(facing).strip().lower(),
        device_id=str(device_id).strip() or None if device_id is not None else None,
    )


def _parse_media_settings(value: Any, *, default: MediaSettings) -> MediaSettings:
    if value is None:
        return default
    if isinstance(value, MediaSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Media settings must be provided as a mapping")
    source_raw = value.get("source", default.source)
    if not isinstance(source_raw, str) or not source_raw.strip():
        raise ValueError("Media source must be a non-empty string")
    return MediaSettings(
        source=source_raw.strip().lower(),
        constraints=_parse_constraints(value.get("constraints"), default=default.constraints),
        video_format=str(value.get("video_format", default.video_format)),
        audio_device=str(value.get("audio_device", default.audio_device)),
        audio_format=str(value.get("audio_format", default.audio_format)),
    )


def _parse_signaling_settings(value: Any, *, default: SignalingSettings) -> SignalingSettings:
    if value is None:
        return default
    if isinstance(value, SignalingSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Signaling settings must be provided as a mapping")
    return SignalingSettings(
        critical_retries=_parse_int(
            value.get("critical_retries"), default=default.critical_retries, label="Critical retries"
        ),
        duplicate_window=_parse_int(
            value.get("duplicate_window"), default=default.duplicate_window, label="Duplicate window"
        ),
        finished_call_memory=_parse_int(
            value.get("finished_call_memory"),
            default=default.finished_call_memory,
            label="Finished call memory",
        ),
    )


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._identity,
            self._ice_servers,
            self._push,
            self._media,
            self._signaling,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(
        self,
    ) -> tuple[
        IdentitySettings,
        tuple[IceServer, ...],
        PushSettings,
        MediaSettings,
        SignalingSettings,
    ]:
        if not self._path.exists():
            return (
                DEFAULT_IDENTITY,
                DEFAULT_ICE_SERVERS,
                DEFAULT_PUSH_SETTINGS,
                DEFAULT_MEDIA_SETTINGS,
                DEFAULT_SIGNALING_SETTINGS,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            identity = _parse_identity(payload.get("identity"), default=DEFAULT_IDENTITY)
            ice_servers = _parse_ice_servers(payload.get("ice_servers"), default=DEFAULT_ICE_SERVERS)
            push = _parse_push_settings(payload.get("push"), default=DEFAULT_PUSH_SETTINGS)
            media = _parse_media_settings(payload.get("media"), default=DEFAULT_MEDIA_SETTINGS)
            signaling = _parse_signaling_settings(
                payload.get("signaling"), default=DEFAULT_SIGNALING_SETTINGS
            )
            return identity, ice_servers, push, media, signaling
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "identity": self._identity.to_dict(),
            "ice_servers": [server.to_dict() for server in self._ice_servers],
            "push": self._push.to_dict(),
            "media": self._media.to_dict(),
            "signaling": self._signaling.to_dict(),
        }
        self._path.write_text(json.dumps(payload, indent=2))

    def get_identity(self) -> IdentitySettings:
        with self._lock:
            identity = self._identity
        env_token = os.getenv("PUSHCALL_LOCAL_TOKEN")
        if env_token and env_token.strip():
            identity = replace(identity, local_token=env_token.strip())
        return identity

    def set_identity(self, data: Mapping[str, Any] | IdentitySettings) -> IdentitySettings:
        with self._lock:
            identity = _parse_identity(data, default=self._identity)
            self._identity = identity
            self._save()
        return identity

    def get_ice_servers(self) -> tuple[IceServer, ...]:
        with self._lock:
            return self._ice_servers

    def set_ice_servers(self, data: Any) -> tuple[IceServer, ...]:
        servers = _parse_ice_servers(data, default=())
        with self._lock:
            self._ice_servers = servers
            self._save()
        return servers

    def get_push_settings(self) -> PushSettings:
        with self._lock:
            settings = self._push
        env_endpoint = os.getenv("PUSHCALL_PUSH_ENDPOINT")
        if env_endpoint and env_endpoint.strip():
            settings = replace(settings, endpoint=env_endpoint.strip())
        env_key = os.getenv("PUSHCALL_SERVER_KEY")
        if env_key and env_key.strip():
            settings = replace(settings, server_key=env_key.strip())
        return settings

    def set_push_settings(self, data: Mapping[str, Any] | PushSettings) -> PushSettings:
        with self._lock:
            settings = _parse_push_settings(data, default=self._push)
            self._push = settings
            self._save()
        return settings

    def get_media_settings(self) -> MediaSettings:
        with self._lock:
            settings = self._media
        env_source = os.getenv("PUSHCALL_MEDIA_SOURCE")
        if env_source and env_source.strip().lower() in MEDIA_SOURCES:
            settings = replace(settings, source=env_source.strip().lower())
        return settings

    def set_media_settings(self, data: Mapping[str, Any] | MediaSettings) -> MediaSettings:
        with self._lock:
            settings = _parse_media_settings(data, default=self._media)
            self._media = settings
            self._save()
        return settings

    def get_signaling_settings(self) -> SignalingSettings:
        with self._lock:
            return self._signaling

    def set_signaling_settings(
        self, data: Mapping[str, Any] | SignalingSettings
    ) -> SignalingSettings:
        with self._lock:
            settings = _parse_signaling_settings(data, default=self._signaling)
            self._signaling = settings
            self._save()
        return settings


__all__ = [
    "ConfigManager",
    "DEFAULT_ICE_SERVERS",
    "DEFAULT_IDENTITY",
    "DEFAULT_MEDIA_SETTINGS",
    "DEFAULT_PUSH_SETTINGS",
    "DEFAULT_SIGNALING_SETTINGS",
    "IceServer",
    "IdentitySettings",
    "MEDIA_SOURCES",
    "MediaConstraints",
    "MediaSettings",
    "PushSettings",
    "SignalingSettings",
]
