from __future__ import annotations

import cv2
import numpy as np
import pytest

from capture.reader import (
    DeviceUnavailable,
    NullTransport,
    ReaderConfig,
    ReaderFactory,
    ScriptedSource,
)
from capture.video_source import VideoSource, _device_arg
from common.frame import Frame


def test_null_transport_paces_and_ends():
    tr = NullTransport(width=8, height=4, fps=200.0, max_frames=3)
    tr.start()
    frames = [tr.read() for _ in range(4)]
    tr.close()

    assert frames[-1] is None
    got = [f for f in frames if f is not None]
    assert [f.frame_id for f in got] == [0, 1, 2]
    assert got[0].img.shape == (4, 8, 3)
    ts = [f.pts_ms for f in got]
    assert all(b > a for a, b in zip(ts, ts[1:]))


def test_null_transport_reads_nothing_before_start():
    assert NullTransport().read() is None


def test_scripted_source_replays_then_ends():
    frames = [Frame(img=np.zeros((2, 2, 3), np.uint8), pts_ms=float(i), frame_id=i) for i in range(3)]
    src = ScriptedSource(frames)
    assert src.read() is None  # not started
    src.start()
    assert [src.read().frame_id for _ in range(3)] == [0, 1, 2]
    assert src.read() is None
    src.close()
    assert src.closed


def test_frame_helpers():
    f = Frame(img=np.zeros((48, 64, 3), np.uint8), pts_ms=0.0, frame_id=0)
    assert (f.width, f.height) == (64, 48)
    assert not f.is_empty()
    assert Frame(img=np.zeros((0, 0, 3), np.uint8), pts_ms=0.0, frame_id=0).is_empty()


def test_factory_builds_null_source():
    src = ReaderFactory.from_config(ReaderConfig(prefer="null", width=16, height=8))
    assert isinstance(src, NullTransport)
    assert (src.width, src.height) == (16, 8)


def test_factory_rejects_unknown_kind():
    with pytest.raises(ValueError):
        ReaderFactory.from_config(ReaderConfig(prefer="shm"))  # type: ignore[arg-type]


def test_reader_config_rejects_bad_size():
    with pytest.raises(ValueError):
        ReaderConfig(width=0)


def test_device_argument_parsing():
    assert _device_arg("0") == 0
    assert _device_arg(" 2 ") == 2
    assert _device_arg("/dev/video0") == "/dev/video0"
    assert _device_arg("rtsp://cam/stream") == "rtsp://cam/stream"


def test_sources_report_their_frame_rate():
    assert NullTransport(fps=12.0).fps == 12.0
    assert ScriptedSource([]).fps == 0.0
    assert ScriptedSource([], fps=30.0).fps == 30.0


def test_video_source_reports_negotiated_size_and_rate(tmp_path):
    path = tmp_path / "clip.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 12.0, (64, 48))
    assert writer.isOpened()
    for i in range(3):
        writer.write(np.full((48, 64, 3), i * 60, dtype=np.uint8))
    writer.release()

    src = VideoSource(ReaderConfig(device=str(path), width=960, height=720))
    assert (src.width, src.height) == (960, 720)
    src.start()
    try:
        assert (src.width, src.height) == (64, 48)
        assert src.fps == pytest.approx(12.0)
        frame = src.read()
        assert (frame.width, frame.height) == (64, 48)
        assert [f.frame_id for f in (src.read(), src.read())] == [1, 2]
        assert src.read() is None
    finally:
        src.close()


def test_video_source_missing_device_is_unavailable(tmp_path):
    src = VideoSource(ReaderConfig(device=str(tmp_path / "nope.avi")))
    with pytest.raises(DeviceUnavailable):
        src.start()
