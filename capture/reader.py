from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, Literal, Optional, Protocol

import numpy as np

from common.frame import Frame

SourceKind = Literal["device", "null"]


class FrameSource(Protocol):
    # Nominal delivery rate in frames per second; 0.0 when unknown.
    fps: float

    def start(self) -> None: ...
    def read(self) -> Optional[Frame]: ...  # None means end of stream
    def close(self) -> None: ...


class CaptureError(Exception):
    """Base class for frame-source errors."""


class DeviceUnavailable(CaptureError):
    """The capture device could not be opened or configured."""


class ReadFailure(CaptureError):
    """The source stopped yielding frames while the watcher was running."""


class NullTransport:
    """A tiny source that synthesizes black frames. Useful for tests/dev.

    ``read()`` blocks until the next frame is due, so the source paces
    itself at ``fps`` like a real camera would. With ``max_frames`` set the
    stream ends after that many frames.
    """

    def __init__(
        self,
        width: int = 640,
        height: int = 360,
        fps: float = 15.0,
        max_frames: Optional[int] = None,
    ):
        self.width, self.height, self.fps = width, height, fps
        self.max_frames = max_frames
        self._running = False
        self._next_ts = 0.0
        self._frame_id = 0

    def start(self) -> None:
        self._running = True
        self._next_ts = time.time() * 1000.0

    def read(self) -> Optional[Frame]:
        if not self._running:
            return None
        if self.max_frames is not None and self._frame_id >= self.max_frames:
            return None
        now_ms = time.time() * 1000.0
        if now_ms < self._next_ts:
            time.sleep((self._next_ts - now_ms) / 1000.0)
            now_ms = self._next_ts
        img = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        fid = self._frame_id
        self._frame_id += 1
        self._next_ts += 1000.0 / max(self.fps, 0.001)
        return Frame(img=img, pts_ms=now_ms, frame_id=fid)

    def close(self) -> None:
        self._running = False


class ScriptedSource:
    """Replay a fixed sequence of frames, then report end of stream.

    Handy for deterministic runs: the frames' ``pts_ms`` drive all of the
    watcher's timing, so a script fully determines the phase sequence.
    """

    def __init__(self, frames: Iterable[Frame], fps: float = 0.0):
        self._frames: Deque[Frame] = deque(frames)
        self.fps = fps
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self._started = True

    def read(self) -> Optional[Frame]:
        if not self._started or self._closed or not self._frames:
            return None
        return self._frames.popleft()

    def close(self) -> None:
        self._closed = True


# --- Discovery ---------------------------------------------------------------


@dataclass
class ReaderConfig:
    prefer: SourceKind = "device"  # or "null"
    device: str = "/dev/video0"
    width: int = 960
    height: int = 720
    null_fps: float = 15.0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"frame size must be positive: {self.width}x{self.height}")


class ReaderFactory:
    @staticmethod
    def from_config(cfg: ReaderConfig) -> FrameSource:
        if cfg.prefer == "null":
            return NullTransport(width=cfg.width, height=cfg.height, fps=cfg.null_fps)
        if cfg.prefer != "device":
            raise ValueError(f"unknown frame source: {cfg.prefer!r}")

        from capture.video_source import VideoSource

        return VideoSource(cfg)
