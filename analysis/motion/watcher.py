"""Fixed-tick cycle driver.

One thread runs :meth:`Watcher.run`: read a frame, find motion regions,
reduce them to a signal, advance the state machine, draw the overlay,
publish it, and append it to the recording while one is open. Cycles are
spaced ``tick_ms`` apart while Watching/Confirming and
``recording_tick_ms`` apart (back to back by default) while Recording.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from capture.reader import FrameSource, ReadFailure
from common.frame import Frame
from preview.buffer import FramePublisher
from record.recorder import SinkCloser

from .annotate import encode_jpeg, render
from .engine import MotionEngine
from .evaluator import MotionEvaluator
from .model import MotionConfig, MotionSignal
from .state_machine import Decision, MotionStateMachine, WatchConfig

_LOG = logging.getLogger(__name__)


class ReleaseError(RuntimeError):
    """One or more resources failed to release at shutdown."""

    def __init__(self, errors: List[Tuple[str, BaseException]]) -> None:
        self.errors = errors
        detail = "; ".join(f"{name}: {exc}" for name, exc in errors)
        super().__init__(f"{len(errors)} resource(s) failed to release: {detail}")


@dataclass
class WatcherStats:
    frames: int = 0
    empty_skipped: int = 0
    encode_failures: int = 0


def recording_frame_rate(source: FrameSource, config: WatchConfig) -> float:
    """Rate at which frames reach a recording, in frames per second.

    With a recording tick the cycle cadence sets the rate, capped by what
    the source can deliver. Back to back cycles run at the source's own
    rate. Returns 0.0 when neither is known.
    """
    source_fps = max(float(source.fps or 0.0), 0.0)
    if config.recording_tick_ms > 0:
        tick_fps = 1000.0 / config.recording_tick_ms
        return min(tick_fps, source_fps) if source_fps > 0 else tick_fps
    return source_fps


class Watcher:
    def __init__(
        self,
        source: FrameSource,
        engine: MotionEngine,
        evaluator: MotionEvaluator,
        machine: MotionStateMachine,
        publisher: Optional[FramePublisher] = None,
        closer: Optional[SinkCloser] = None,
        area_config: Optional[MotionConfig] = None,
        jpeg_quality: int = 80,
        close_timeout_s: float = 2.0,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._source = source
        self._engine = engine
        self._evaluator = evaluator
        self._machine = machine
        self._publisher = publisher
        self._closer = closer
        self._area_config = area_config
        self._sized_for: Optional[Tuple[int, int]] = None
        self._jpeg_quality = int(jpeg_quality)
        self._close_timeout_s = float(close_timeout_s)
        self._monotonic = monotonic
        self._log = logger or _LOG
        self._stats = WatcherStats()
        self._status: Dict[str, Any] = self._snapshot(None)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def machine(self) -> MotionStateMachine:
        return self._machine

    def stats(self) -> WatcherStats:
        return self._stats

    def status(self) -> Dict[str, Any]:
        """Latest cycle summary. Safe to call from other threads."""
        return dict(self._status)

    # ------------------------------------------------------------------ #
    # Cycle
    # ------------------------------------------------------------------ #

    def run_once(self, stop: Optional[threading.Event] = None) -> Optional[Decision]:
        """Run a single read/process/publish cycle.

        Returns ``None`` if ``stop`` was set while skipping empty frames.

        Raises
        ------
        ReadFailure
            If the source reports end of stream.
        """
        frame = self._read_frame(stop)
        if frame is None:
            return None
        self._stats.frames += 1
        area_cfg = self._area_config
        if area_cfg is not None and (frame.width, frame.height) != self._sized_for:
            self._rescale(area_cfg, frame.width, frame.height)

        signal = self._evaluator.evaluate(self._engine.step(frame))
        now_ms = float(frame.pts_ms)
        decision = self._machine.step(signal, now_ms, frame.width, frame.height)

        annotated = self._render(frame, decision, signal)
        if decision.append:
            decision = self._machine.record(annotated, now_ms)
            if decision.write_failed:
                # Keep the overlay honest about the phase we ended up in.
                annotated = self._render(frame, decision, signal)

        self._publish(annotated)
        self._status = self._snapshot(signal)
        return decision

    def run(self, stop: Optional[threading.Event] = None) -> None:
        """Run cycles until ``stop`` is set.

        Raises
        ------
        DeviceUnavailable
            If the source cannot be started.
        ReadFailure
            If the source runs dry.
        ReleaseError
            If the loop ended cleanly but some resource failed to release.
        """
        stop = stop or threading.Event()
        try:
            self._source.start()
            next_tick = self._monotonic()
            while not stop.is_set():
                self.run_once(stop)
                tick_s = self._machine.config.tick_for(self._machine.phase) / 1000.0
                now = self._monotonic()
                if tick_s <= 0:
                    next_tick = now
                    continue
                next_tick += tick_s
                if next_tick <= now:
                    # Fell behind; like a ticker, drop missed ticks instead of bursting.
                    next_tick = now
                    continue
                stop.wait(next_tick - now)
        except BaseException:
            self._release(raise_errors=False)
            raise
        self._log.info("watcher stopped after %d frame(s)", self._stats.frames)
        self._release(raise_errors=True)

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _read_frame(self, stop: Optional[threading.Event]) -> Optional[Frame]:
        while True:
            frame = self._source.read()
            if frame is None:
                raise ReadFailure(f"frame source ended after {self._stats.frames} frame(s)")
            if not frame.is_empty():
                return frame
            self._stats.empty_skipped += 1
            if stop is not None and stop.is_set():
                return None

    def _rescale(self, cfg: MotionConfig, width: int, height: int) -> None:
        # Area cut-offs are in pixels of the frame actually processed, which
        # may differ from the size requested from the device.
        min_area = cfg.min_area_for(width, height)
        self._evaluator = MotionEvaluator(min_area)
        self._sized_for = (width, height)
        self._log.info("minimum motion area %.0f px at %dx%d", min_area, width, height)

    def _render(self, frame: Frame, decision: Decision, signal: MotionSignal) -> np.ndarray:
        cfg = self._machine.config
        return render(
            frame.img,
            cfg.label_for(decision.phase),
            cfg.color_for(decision.phase, decision.present),
            signal.regions,
            cfg.region_color,
        )

    def _publish(self, img: np.ndarray) -> None:
        if self._publisher is None:
            return
        try:
            payload = encode_jpeg(img, self._jpeg_quality)
        except ValueError as exc:
            self._stats.encode_failures += 1
            self._log.warning("skipping preview frame: %s", exc)
            return
        self._publisher.publish(payload)

    def _snapshot(self, signal: Optional[MotionSignal]) -> Dict[str, Any]:
        m = self._machine
        session = m.session
        return {
            "phase": m.phase.value,
            "status": m.config.label_for(m.phase),
            "motion": bool(signal.present) if signal is not None else False,
            "regions": len(signal.regions) if signal is not None else 0,
            "min_area": self._evaluator.min_area,
            "recording": session is not None and session.is_open,
            "recording_path": str(session.path) if session is not None else None,
            "sessions_opened": m.sessions_opened,
            "sessions_closed": m.sessions_closed,
            "write_failures": m.write_failures,
            "sink_failures": m.sink_failures,
            **asdict(self._stats),
        }

    def _release(self, raise_errors: bool) -> None:
        steps: List[Tuple[str, Callable[[], Any]]] = [("recording", self._machine.shutdown)]
        if self._closer is not None:
            closer = self._closer
            steps.append(("closer", lambda: closer.join(self._close_timeout_s)))
        steps.append(("engine", self._engine.close))
        steps.append(("source", self._source.close))
        if self._publisher is not None:
            steps.append(("preview", self._publisher.close))

        errors: List[Tuple[str, BaseException]] = []
        for name, fn in steps:
            try:
                fn()
            except Exception as exc:
                self._log.error("failed to release %s: %s", name, exc)
                errors.append((name, exc))

        if errors and raise_errors:
            raise ReleaseError(errors)
