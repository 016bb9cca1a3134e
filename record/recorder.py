from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol

import cv2
import numpy as np

from common.time import stamp_filename, to_iso_utc

_LOG = logging.getLogger(__name__)


@dataclass
class RecorderConfig:
    """Configuration for motion-gated recordings.

    Parameters
    ----------
    out_dir:
        Directory that recordings are written under. Created on demand.
    filename_pattern:
        ``strftime`` pattern evaluated at the session start time. The
        default gives a sortable local date-time plus the zone
        abbreviation, e.g. ``2026-10-16_23-39-05_CEST.mp4``. The extension
        selects the container.
    codec:
        Four-character code handed to the video writer (``"mp4v"``,
        ``"MJPG"``, ``"avc1"``...).
    frame_rate:
        Frame rate stored in the container. ``0`` follows the rate frames
        actually arrive at, as reported when the session opens.
    fallback_frame_rate:
        Used when ``frame_rate`` is ``0`` and no arrival rate is known.
    async_close:
        Release finished sinks on a background thread so the pipeline does
        not wait on container finalisation.
    close_timeout_s:
        How long shutdown waits for background closes to finish.
    """

    out_dir: Path = Path("recordings")
    filename_pattern: str = "%Y-%m-%d_%H-%M-%S_%Z.mp4"
    codec: str = "mp4v"
    frame_rate: float = 0.0
    fallback_frame_rate: float = 5.0
    async_close: bool = True
    close_timeout_s: float = 2.0

    def __post_init__(self) -> None:
        self.out_dir = Path(self.out_dir)
        if len(self.codec) != 4:
            raise ValueError(f"codec must be a four-character code, got {self.codec!r}")
        if self.frame_rate < 0:
            raise ValueError(f"frame_rate must be >= 0, got {self.frame_rate}")
        if self.fallback_frame_rate <= 0:
            raise ValueError(
                f"fallback_frame_rate must be positive, got {self.fallback_frame_rate}"
            )
        if not self.filename_pattern:
            raise ValueError("filename_pattern must not be empty")


def container_frame_rate(cfg: RecorderConfig, arrival_fps: Optional[float] = None) -> float:
    """Frame rate to stamp on a new recording.

    An explicit ``cfg.frame_rate`` wins, then the arrival rate, then the
    fallback.
    """
    if cfg.frame_rate > 0:
        return float(cfg.frame_rate)
    if arrival_fps is not None and arrival_fps > 0:
        return float(arrival_fps)
    return float(cfg.fallback_frame_rate)


class RecordingError(Exception):
    """Base class for recording-related errors."""


class SinkUnavailable(RecordingError):
    """A recording sink could not be created (codec missing, disk unwritable...)."""


class WriteFailed(RecordingError):
    """Appending a frame to an open recording failed."""


class CloseFailure(RecordingError):
    """Releasing a recording sink failed. Logged, never propagated."""


class RecordingSink(Protocol):
    """Durable video storage.

    ``open`` returns an opaque handle that the other two calls accept.
    """

    def open(self, path: Path, codec: str, frame_rate: float, width: int, height: int) -> Any: ...
    def write(self, handle: Any, img: np.ndarray) -> None: ...
    def close(self, handle: Any) -> None: ...


@dataclass
class _WriterHandle:
    writer: cv2.VideoWriter
    size: tuple[int, int]  # (width, height)


class VideoWriterSink:
    """RecordingSink backed by ``cv2.VideoWriter``."""

    def open(
        self, path: Path, codec: str, frame_rate: float, width: int, height: int
    ) -> _WriterHandle:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SinkUnavailable(f"cannot create {path.parent}: {exc}") from exc

        fourcc = cv2.VideoWriter_fourcc(*codec)
        writer = cv2.VideoWriter(str(path), fourcc, float(frame_rate), (int(width), int(height)))
        if not writer.isOpened():
            writer.release()
            raise SinkUnavailable(
                f"video writer refused {path} (codec={codec!r} size={width}x{height})"
            )
        return _WriterHandle(writer=writer, size=(int(width), int(height)))

    def write(self, handle: _WriterHandle, img: np.ndarray) -> None:
        # VideoWriter silently drops frames whose size differs from the one
        # it was opened with; surface that instead of producing an empty file.
        h, w = img.shape[:2]
        if (w, h) != handle.size:
            raise WriteFailed(f"frame size {w}x{h} does not match recording size {handle.size}")
        handle.writer.write(img)

    def close(self, handle: _WriterHandle) -> None:
        handle.writer.release()


def _release(sink: RecordingSink, handle: Any, path: Path, log: logging.Logger) -> None:
    try:
        sink.close(handle)
    except Exception as exc:
        err = CloseFailure(f"closing {path} failed: {exc}")
        log.error("%s", err)
        return
    log.info("recording closed: %s", path)


class SinkCloser:
    """Release finished sinks off the pipeline thread.

    Each :meth:`submit` starts its own short-lived daemon thread before
    returning, so a close is always *initiated* by the time the caller moves
    on. Failures are logged and dropped.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or _LOG
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def submit(self, sink: RecordingSink, handle: Any, path: Path) -> None:
        t = threading.Thread(
            target=_release,
            args=(sink, handle, path, self._log),
            name="recording-close",
            daemon=True,
        )
        with self._lock:
            self._threads = [th for th in self._threads if th.is_alive()]
            self._threads.append(t)
        t.start()

    @property
    def pending(self) -> int:
        with self._lock:
            return sum(1 for th in self._threads if th.is_alive())

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for outstanding closes. Returns True if all of them finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            threads = list(self._threads)
        for th in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            th.join(remaining)
        with self._lock:
            self._threads = [th for th in self._threads if th.is_alive()]
            done = not self._threads
        if not done:
            self._log.warning("%d recording close(s) still running at shutdown", len(self._threads))
        return done


def recording_path(
    cfg: RecorderConfig, started_ms: float, tz: Optional[tzinfo] = None
) -> Path:
    """Derive the output path for a session starting at ``started_ms``.

    If the stamped name already exists a numeric suffix is added, so two
    sessions that start within the same second never share a file.
    """
    path = cfg.out_dir / stamp_filename(cfg.filename_pattern, started_ms, tz)
    if not path.exists():
        return path
    n = 1
    while True:
        candidate = path.with_name(f"{path.stem}-{n}{path.suffix}")
        if not candidate.exists():
            return candidate
        n += 1


class RecordingSession:
    """One open recording: created on entry to Recording, closed on exit.

    Use :meth:`open` to create one. After :meth:`close`, or after an
    append failure, the session is permanently closed.
    """

    def __init__(
        self,
        sink: RecordingSink,
        handle: Any,
        path: Path,
        started_ms: float,
        closer: Optional[SinkCloser] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._sink = sink
        self._handle = handle
        self._path = path
        self._started_ms = started_ms
        self._closer = closer
        self._log = logger or _LOG
        self._open = True
        self._frames = 0

    @classmethod
    def open(
        cls,
        sink: RecordingSink,
        cfg: RecorderConfig,
        started_ms: float,
        width: int,
        height: int,
        closer: Optional[SinkCloser] = None,
        tz: Optional[tzinfo] = None,
        logger: Optional[logging.Logger] = None,
        arrival_fps: Optional[float] = None,
    ) -> "RecordingSession":
        """Allocate a sink for a new recording.

        Raises
        ------
        SinkUnavailable
            If the sink cannot be created.
        """
        log = logger or _LOG
        path = recording_path(cfg, started_ms, tz)
        fps = container_frame_rate(cfg, arrival_fps)
        try:
            handle = sink.open(path, cfg.codec, fps, width, height)
        except SinkUnavailable:
            raise
        except Exception as exc:
            raise SinkUnavailable(f"cannot open recording {path}: {exc}") from exc

        log.info(
            "recording opened: %s (%dx%d @ %.1f fps, started %s)",
            path,
            width,
            height,
            fps,
            to_iso_utc(started_ms),
        )
        return cls(sink, handle, path, started_ms, closer=closer, logger=log)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def started_ms(self) -> float:
        return self._started_ms

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def frames_written(self) -> int:
        return self._frames

    def append(self, img: np.ndarray) -> None:
        """Write one frame.

        Raises
        ------
        WriteFailed
            On any sink error. The session is closed before the error is
            raised; the caller must treat it as the end of the recording.
        """
        if not self._open:
            raise WriteFailed(f"recording {self._path} is closed")
        try:
            self._sink.write(self._handle, img)
        except Exception as exc:
            self._log.warning("write to %s failed, closing recording: %s", self._path, exc)
            self.close()
            if isinstance(exc, WriteFailed):
                raise
            raise WriteFailed(f"write to {self._path} failed: {exc}") from exc
        self._frames += 1

    def close(self) -> None:
        """Release the sink. Idempotent; never raises."""
        if not self._open:
            return
        self._open = False
        self._log.debug("closing %s after %d frame(s)", self._path, self._frames)
        if self._closer is not None:
            self._closer.submit(self._sink, self._handle, self._path)
        else:
            _release(self._sink, self._handle, self._path, self._log)


SessionFactory = Callable[[float, int, int], RecordingSession]


def session_factory(
    sink: RecordingSink,
    cfg: RecorderConfig,
    closer: Optional[SinkCloser] = None,
    tz: Optional[tzinfo] = None,
    arrival_fps: Optional[Callable[[], float]] = None,
) -> SessionFactory:
    """Bind sink and config into a ``(started_ms, width, height) -> session`` callable.

    ``arrival_fps`` is asked for the current frame arrival rate each time a
    session opens.
    """

    def _open(started_ms: float, width: int, height: int) -> RecordingSession:
        fps = arrival_fps() if arrival_fps is not None else None
        return RecordingSession.open(
            sink, cfg, started_ms, width, height, closer=closer, tz=tz, arrival_fps=fps
        )

    return _open
