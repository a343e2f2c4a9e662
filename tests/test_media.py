import asyncio
from pathlib import Path

import pytest

from push_call.config import MediaConstraints, MediaSettings
from push_call.errors import MediaDeviceError, MediaPermissionError
from push_call.media import (
    MediaDevice,
    MediaSource,
    SyntheticVideoTrack,
    enumerate_devices,
    select_video_device,
)


def run_async(coro):
    return asyncio.run(coro)


class StubTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class StubPlayer:
    def __init__(self, *, audio: StubTrack | None = None, video: StubTrack | None = None) -> None:
        self.audio = audio
        self.video = video


FRONT = MediaDevice("/dev/video0", "videoinput", "Integrated Camera", "user")
REAR = MediaDevice("/dev/video2", "videoinput", "Rear Camera", "environment")


def test_select_video_device_prefers_explicit_id_then_facing_mode() -> None:
    devices = [REAR, FRONT]

    assert select_video_device(devices, MediaConstraints()) is FRONT
    assert select_video_device(devices, MediaConstraints(facing_mode="environment")) is REAR
    assert select_video_device(devices, MediaConstraints(device_id="/dev/video2")) is REAR
    assert select_video_device(devices, MediaConstraints(device_id="/dev/video9")) is None
    assert select_video_device([], MediaConstraints()) is None


def test_select_video_device_falls_back_to_first_camera() -> None:
    plain = MediaDevice("/dev/video4", "videoinput", "USB Capture")

    assert select_video_device([plain], MediaConstraints()) is plain


def test_enumerate_devices_uses_node_name_when_sysfs_missing(tmp_path: Path) -> None:
    (tmp_path / "video1").touch()
    (tmp_path / "video0").touch()

    devices = enumerate_devices(str(tmp_path / "video*"))

    assert [device.label for device in devices] == ["video0", "video1"]
    assert all(device.kind == "videoinput" for device in devices)


def test_synthetic_stream_honours_constraints() -> None:
    source = MediaSource(MediaSettings(source="synthetic"))

    async def scenario():
        full = source.acquire()
        video_only = source.acquire(MediaConstraints(audio=False))
        full.stop()
        video_only.stop()
        return full.kinds, video_only.kinds

    assert run_async(scenario()) == (["audio", "video"], ["video"])


def test_synthetic_video_track_renders_requested_geometry() -> None:
    async def scenario():
        track = SyntheticVideoTrack(64, 48, 30)
        frame = await track.recv()
        track.stop()
        return frame

    frame = run_async(scenario())

    assert (frame.width, frame.height) == (64, 48)
    assert frame.to_ndarray(format="rgb24").shape == (48, 64, 3)


def test_device_stream_opens_selected_camera_and_microphone() -> None:
    calls: list[tuple[tuple, dict]] = []
    video = StubTrack("video")
    audio = StubTrack("audio")

    def factory(*args, **kwargs):
        calls.append((args, kwargs))
        if kwargs.get("format") == "v4l2":
            return StubPlayer(video=video)
        return StubPlayer(audio=audio)

    source = MediaSource(
        MediaSettings(source="device"),
        device_lister=lambda: [REAR, FRONT],
        player_factory=factory,
    )

    stream = source.acquire()

    assert stream.tracks == [video, audio]
    assert calls[0] == (
        ("/dev/video0",),
        {"format": "v4l2", "options": {"video_size": "500x300", "framerate": "30"}},
    )
    assert calls[1] == (("default",), {"format": "pulse"})


def test_auto_source_falls_back_to_synthetic_without_devices() -> None:
    source = MediaSource(MediaSettings(source="auto"), device_lister=lambda: [])

    async def scenario():
        stream = source.acquire()
        stream.stop()
        return stream.kinds

    assert run_async(scenario()) == ["audio", "video"]


def test_device_source_reports_missing_camera() -> None:
    source = MediaSource(MediaSettings(source="device"), device_lister=lambda: [])

    with pytest.raises(MediaDeviceError):
        source.acquire()


def test_permission_denied_is_never_masked_by_fallback() -> None:
    def factory(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    source = MediaSource(
        MediaSettings(source="auto"),
        device_lister=lambda: [FRONT],
        player_factory=factory,
    )

    with pytest.raises(MediaPermissionError):
        source.acquire()


def test_failed_audio_releases_opened_camera() -> None:
    video = StubTrack("video")

    def factory(*args, **kwargs):
        if kwargs.get("format") == "v4l2":
            return StubPlayer(video=video)
        raise OSError("No such audio device")

    source = MediaSource(
        MediaSettings(source="device"),
        device_lister=lambda: [FRONT],
        player_factory=factory,
    )

    with pytest.raises(MediaDeviceError):
        source.acquire()
    assert video.stopped is True
