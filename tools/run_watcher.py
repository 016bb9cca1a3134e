from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from functools import partial
from pathlib import Path
from typing import Optional

from analysis.motion.engine import BackendError, MotionEngine
from analysis.motion.evaluator import MotionEvaluator
from analysis.motion.model import MotionConfig
from analysis.motion.state_machine import MotionStateMachine, WatchConfig
from analysis.motion.watcher import ReleaseError, Watcher, recording_frame_rate
from capture.reader import CaptureError, ReaderConfig, ReaderFactory
from common.time import now_ms
from preview.buffer import LatestFrameBuffer
from preview.server import PreviewConfig, PreviewServer, create_app
from record.recorder import RecorderConfig, SinkCloser, VideoWriterSink, session_factory

_LOG = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Watch a camera, preview it live, and record while motion persists.",
    )
    ap.add_argument(
        "--device",
        type=str,
        default="/dev/video0",
        help="Capture device: a camera index (e.g. 0), device path, file or stream URL.",
    )
    ap.add_argument(
        "--prefer",
        type=str,
        choices=["device", "null"],
        default="device",
        help='Frame source ("device" for a real capture, "null" for synthetic frames).',
    )
    ap.add_argument("--width", type=int, default=960, help="Requested frame width.")
    ap.add_argument("--height", type=int, default=720, help="Requested frame height.")
    ap.add_argument(
        "--max-seconds",
        type=int,
        default=0,
        help="If > 0, stop after this many seconds; otherwise run until Ctrl+C.",
    )

    # Motion detection
    ap.add_argument(
        "--min-area",
        type=float,
        default=3000.0,
        help="Minimum contour area at 960x720; rescaled to the actual resolution.",
    )
    ap.add_argument(
        "--threshold",
        type=int,
        default=25,
        help="Binary threshold applied to the foreground mask (0-255).",
    )

    # Timing
    ap.add_argument(
        "--tick-ms",
        type=float,
        default=200.0,
        help="Cycle interval in ms while watching or confirming.",
    )
    ap.add_argument(
        "--recording-tick-ms",
        type=float,
        default=0.0,
        help="Cycle interval in ms while recording (0 = back to back).",
    )
    ap.add_argument(
        "--confirm-ms",
        type=float,
        default=2000.0,
        help="Sustained motion in ms required before recording starts.",
    )
    ap.add_argument(
        "--dropoff-ms",
        type=float,
        default=2000.0,
        help="Motion-free time in ms tolerated before recording stops (0 = stop at once).",
    )

    # Recording
    ap.add_argument(
        "--out-dir",
        type=str,
        default="recordings",
        help="Directory where recordings are written.",
    )
    ap.add_argument(
        "--filename-pattern",
        type=str,
        default="%Y-%m-%d_%H-%M-%S_%Z.mp4",
        help="strftime pattern for recording names; the extension picks the container.",
    )
    ap.add_argument("--codec", type=str, default="mp4v", help="Four-character video codec.")
    ap.add_argument(
        "--record-fps",
        type=float,
        default=0.0,
        help="Frame rate written into recordings (0 = the rate frames are recorded at).",
    )

    # Preview
    ap.add_argument("--host", type=str, default="0.0.0.0", help="Preview server host.")
    ap.add_argument("--port", type=int, default=8080, help="Preview server port.")
    ap.add_argument(
        "--no-preview",
        action="store_true",
        help="Do not start the live preview server.",
    )

    ap.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return ap


def main(argv: Optional[list[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        reader_cfg = ReaderConfig(
            prefer=args.prefer, device=args.device, width=args.width, height=args.height
        )
        motion_cfg = MotionConfig(min_area=args.min_area, threshold=args.threshold)
        watch_cfg = WatchConfig(
            confirm_ms=args.confirm_ms,
            dropoff_ms=args.dropoff_ms,
            tick_ms=args.tick_ms,
            recording_tick_ms=args.recording_tick_ms,
        )
        rec_cfg = RecorderConfig(
            out_dir=Path(args.out_dir),
            filename_pattern=args.filename_pattern,
            codec=args.codec,
            frame_rate=args.record_fps,
        )
        preview_cfg = PreviewConfig(host=args.host, port=args.port, enabled=not args.no_preview)
    except ValueError as exc:
        ap.error(str(exc))

    # ------------------------------------------------------------------ motion stack

    source = ReaderFactory.from_config(reader_cfg)
    engine = MotionEngine(config=motion_cfg)
    # Resized to the processed frame once frames arrive.
    evaluator = MotionEvaluator(motion_cfg.min_area_for(reader_cfg.width, reader_cfg.height))

    closer = SinkCloser() if rec_cfg.async_close else None
    machine = MotionStateMachine(
        config=watch_cfg,
        open_session=session_factory(
            VideoWriterSink(),
            rec_cfg,
            closer=closer,
            arrival_fps=partial(recording_frame_rate, source, watch_cfg),
        ),
        now_ms=now_ms(),
    )

    # ------------------------------------------------------------------ preview

    buffer: Optional[LatestFrameBuffer] = None
    if preview_cfg.enabled:
        buffer = LatestFrameBuffer(max_clients=preview_cfg.max_clients)

    watcher = Watcher(
        source,
        engine,
        evaluator,
        machine,
        publisher=buffer,
        closer=closer,
        area_config=motion_cfg,
        jpeg_quality=preview_cfg.jpeg_quality,
        close_timeout_s=rec_cfg.close_timeout_s,
    )

    server: Optional[PreviewServer] = None
    if buffer is not None:
        server = PreviewServer(create_app(buffer, watcher.status, preview_cfg), preview_cfg)
        server.start()

    # ------------------------------------------------------------------ main loop

    stop = threading.Event()

    def _on_signal(signum, _frame) -> None:
        _LOG.info("received signal %d, shutting down.", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    timer: Optional[threading.Timer] = None
    if args.max_seconds > 0:

        def _expire() -> None:
            _LOG.info("Reached max-seconds=%d, exiting loop.", args.max_seconds)
            stop.set()

        timer = threading.Timer(args.max_seconds, _expire)
        timer.daemon = True
        timer.start()

    try:
        watcher.run(stop)
    except (CaptureError, BackendError, ReleaseError) as exc:
        _LOG.error("%s", exc)
        return 1
    finally:
        if timer is not None:
            timer.cancel()
        if server is not None:
            server.stop()

    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
