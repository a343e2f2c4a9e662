"""Local media acquisition: capture devices and the synthetic test pattern."""
from __future__ import annotations

import glob
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, Sequence

import numpy as np
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from av import VideoFrame
from av.error import FFmpegError

from .config import MediaConstraints, MediaSettings
from .errors import MediaDeviceError, MediaPermissionError

logger = logging.getLogger(__name__)

VIDEO_DEVICE_PATTERN = "/dev/video*"


@dataclass(frozen=True, slots=True)
class MediaDevice:
    """A capture device reported by :func:`enumerate_devices`."""

    device_id: str
    kind: str
    label: str
    facing: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "device_id": self.device_id,
            "kind": self.kind,
            "label": self.label,
            "facing": self.facing,
        }


@dataclass
class MediaStream:
    """A set of tracks travelling together, local or remote."""

    stream_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    tracks: list[MediaStreamTrack] = field(default_factory=list)
    players: list[MediaPlayer] = field(default_factory=list)

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    @property
    def kinds(self) -> list[str]:
        return [track.kind for track in self.tracks]

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        for player in self.players:
            for track in (player.audio, player.video):
                if track is not None:
                    track.stop()
        self.players.clear()

    def to_dict(self) -> dict[str, object]:
        return {"id": self.stream_id, "tracks": self.kinds}


def _facing_from_label(label: str) -> str | None:
    lowered = label.lower()
    if any(token in lowered for token in ("front", "user", "facetime", "integrated")):
        return "user"
    if any(token in lowered for token in ("rear", "back", "environment")):
        return "environment"
    return None


def enumerate_devices(pattern: str = VIDEO_DEVICE_PATTERN) -> list[MediaDevice]:
    """Return the video capture devices visible on this host."""

    devices: list[MediaDevice] = []
    for path in sorted(glob.glob(pattern)):
        name = os.path.basename(path)
        label = name
        sysfs_name = f"/sys/class/video4linux/{name}/name"
        try:
            with open(sysfs_name, "r", encoding="utf-8") as handle:
                label = handle.read().strip() or name
        except OSError:
            pass
        devices.append(
            MediaDevice(device_id=path, kind="videoinput", label=label, facing=_facing_from_label(label))
        )
    return devices


def select_video_device(
    devices: Sequence[MediaDevice], constraints: MediaConstraints
) -> MediaDevice | None:
    """Pick the camera to open: explicit id, then facing mode, then the first one."""

    cameras = [device for device in devices if device.kind == "videoinput"]
    if constraints.device_id is not None:
        for device in cameras:
            if device.device_id == constraints.device_id:
                return device
        return None
    for device in cameras:
        if device.facing == constraints.facing_mode:
            return device
    return cameras[0] if cameras else None


class SyntheticVideoTrack(VideoStreamTrack):
    """Moving colour gradient used when no camera is available."""

    def __init__(self, width: int = 640, height: int = 480, fps: int = 30) -> None:
        super().__init__()
        self._width = int(width)
        self._height = int(height)
        self._fps = int(fps)
        self._start = time.perf_counter()

    def _render(self) -> np.ndarray:
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        return np.stack([red, green, blue], axis=2).astype(np.uint8)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = VideoFrame.from_ndarray(self._render(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base or Fraction(1, self._fps)
        return frame


PlayerFactory = Callable[..., MediaPlayer]


class MediaSource:
    """Acquire local audio/video tracks according to :class:`MediaSettings`."""

    def __init__(
        self,
        settings: MediaSettings,
        *,
        device_lister: Callable[[], list[MediaDevice]] = enumerate_devices,
        player_factory: PlayerFactory = MediaPlayer,
    ) -> None:
        self._settings = settings
        self._device_lister = device_lister
        self._player_factory = player_factory

    @property
    def settings(self) -> MediaSettings:
        return self._settings

    def enumerate_devices(self) -> list[MediaDevice]:
        return self._device_lister()

    def acquire(self, constraints: MediaConstraints | None = None) -> MediaStream:
        """Return a local stream; raises media errors when capture is impossible."""

        constraints = constraints or self._settings.constraints
        source = self._settings.source
        if source == "synthetic":
            return self._synthetic_stream(constraints)
        try:
            return self._device_stream(constraints)
        except MediaDeviceError as exc:
            if source != "auto":
                raise
            logger.warning("No capture device available (%s); using synthetic media", exc)
            return self._synthetic_stream(constraints)

    def _synthetic_stream(self, constraints: MediaConstraints) -> MediaStream:
        stream = MediaStream()
        if constraints.audio:
            stream.add_track(AudioStreamTrack())
        if constraints.video:
            stream.add_track(
                SyntheticVideoTrack(
                    constraints.min_width, constraints.min_height, constraints.min_frame_rate
                )
            )
        return stream

    def _open_player(self, *args: object, **kwargs: object) -> MediaPlayer:
        try:
            return self._player_factory(*args, **kwargs)
        except PermissionError as exc:
            raise MediaPermissionError(f"Access to {args[0]} was denied: {exc}") from exc
        except (FFmpegError, OSError, ValueError) as exc:
            raise MediaDeviceError(f"Unable to open {args[0]}: {exc}") from exc

    def _device_stream(self, constraints: MediaConstraints) -> MediaStream:
        stream = MediaStream()
        try:
            if constraints.video:
                device = select_video_device(self.enumerate_devices(), constraints)
                if device is None:
                    raise MediaDeviceError("No matching video capture device found")
                player = self._open_player(
                    device.device_id,
                    format=self._settings.video_format,
                    options={
                        "video_size": f"{constraints.min_width}x{constraints.min_height}",
                        "framerate": str(constraints.min_frame_rate),
                    },
                )
                stream.players.append(player)
                if player.video is None:
                    raise MediaDeviceError(f"{device.label} does not provide video")
                stream.add_track(player.video)
            if constraints.audio:
                player = self._open_player(
                    self._settings.audio_device, format=self._settings.audio_format
                )
                stream.players.append(player)
                if player.audio is None:
                    raise MediaDeviceError(f"{self._settings.audio_device} does not provide audio")
                stream.add_track(player.audio)
        except Exception:
            stream.stop()
            raise
        return stream


__all__ = [
    "MediaDevice",
    "MediaSource",
    "MediaStream",
    "SyntheticVideoTrack",
    "enumerate_devices",
    "select_video_device",
]
