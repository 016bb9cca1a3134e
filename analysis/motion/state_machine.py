"""Watch / confirm / record state machine.

The transition logic lives in :func:`advance`, a pure function of the
current phase, this cycle's motion signal, the phase clock and the
configuration. :class:`MotionStateMachine` owns the phase and the clock,
applies each decision, and runs the recording side effects (open, append,
close) that a decision asks for.

Transitions::

    Watching   --motion-->                         Confirming
    Confirming --no motion-->                      Watching
    Confirming --motion, in phase > confirm_ms-->  Recording  (open session)
    Recording  --no motion for > dropoff_ms-->     Watching   (close session)

A sink that cannot be opened, or a failed append, sends the machine back
to Watching with no session open.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from record.recorder import RecordingSession, SessionFactory, SinkUnavailable, WriteFailed

from .clock import PhaseClock
from .model import MotionSignal

_LOG = logging.getLogger(__name__)

BGR = Tuple[int, int, int]


class Phase(str, Enum):
    WATCHING = "watching"
    CONFIRMING = "confirming"
    RECORDING = "recording"


@dataclass(frozen=True)
class WatchConfig:
    """
    Timing and presentation knobs for the state machine and cycle driver.

    ``recording_tick_ms=0`` runs cycles back to back while Recording, which
    samples the camera as fast as it delivers frames; set it equal to
    ``tick_ms`` for a uniform cadence.
    """

    confirm_ms: float = 2000.0
    dropoff_ms: float = 2000.0
    tick_ms: float = 200.0
    recording_tick_ms: float = 0.0

    # Status labels
    watching_label: str = "Watching"
    confirming_label: str = "Motion Detected"
    recording_label: str = "Recording"

    # Overlay colours (BGR)
    watching_color: BGR = (0, 255, 0)
    confirming_color: BGR = (0, 255, 255)
    recording_color: BGR = (0, 0, 255)
    recording_idle_color: BGR = (0, 165, 255)
    region_color: BGR = (255, 0, 0)

    def __post_init__(self) -> None:
        for name in ("confirm_ms", "dropoff_ms", "tick_ms", "recording_tick_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")

    def label_for(self, phase: Phase) -> str:
        if phase is Phase.RECORDING:
            return self.recording_label
        if phase is Phase.CONFIRMING:
            return self.confirming_label
        return self.watching_label

    def color_for(self, phase: Phase, present: bool) -> BGR:
        if phase is Phase.RECORDING:
            return self.recording_color if present else self.recording_idle_color
        if phase is Phase.CONFIRMING:
            return self.confirming_color
        return self.watching_color

    def tick_for(self, phase: Phase) -> float:
        return self.recording_tick_ms if phase is Phase.RECORDING else self.tick_ms


@dataclass(frozen=True)
class Decision:
    """Outcome of one cycle: the phase to be in and the side effects to run."""

    phase: Phase
    previous: Phase
    present: bool
    open_session: bool = False
    append: bool = False
    close_session: bool = False
    # Set when a recording failure overrode the normal transition.
    sink_failed: bool = False
    write_failed: bool = False

    @property
    def transitioned(self) -> bool:
        return self.phase is not self.previous


def advance(
    phase: Phase,
    signal: MotionSignal,
    clock: PhaseClock,
    now_ms: float,
    cfg: WatchConfig,
) -> Decision:
    """Compute the next phase and side effects for one cycle.

    ``clock.last_motion_ms`` must already include this cycle's motion;
    the clock is read, never written.
    """
    present = bool(signal.present)

    if phase is Phase.WATCHING:
        if present:
            return Decision(Phase.CONFIRMING, phase, present)
        return Decision(Phase.WATCHING, phase, present)

    if phase is Phase.CONFIRMING:
        if not present:
            return Decision(Phase.WATCHING, phase, present)
        if clock.since_phase(now_ms) > cfg.confirm_ms:
            return Decision(Phase.RECORDING, phase, present, open_session=True, append=True)
        return Decision(Phase.CONFIRMING, phase, present)

    if phase is Phase.RECORDING:
        if clock.since_motion(now_ms) > cfg.dropoff_ms:
            return Decision(Phase.WATCHING, phase, present, close_session=True)
        return Decision(Phase.RECORDING, phase, present, append=True)

    raise ValueError(f"unknown phase: {phase!r}")  # pragma: no cover


class MotionStateMachine:
    """Stateful orchestrator around :func:`advance`.

    ``open_session`` is called as ``open_session(started_ms, width, height)``
    on entry to Recording. Without one the machine still walks through the
    phases but nothing is persisted.
    """

    def __init__(
        self,
        config: Optional[WatchConfig] = None,
        open_session: Optional[SessionFactory] = None,
        now_ms: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._cfg = config or WatchConfig()
        self._open_session = open_session
        self._log = logger or _LOG
        self._phase = Phase.WATCHING
        self._clock = PhaseClock(now_ms)
        self._session: Optional[RecordingSession] = None
        self._last: Optional[Decision] = None

        self.sessions_opened = 0
        self.sessions_closed = 0
        self.sink_failures = 0
        self.write_failures = 0

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def clock(self) -> PhaseClock:
        return self._clock

    @property
    def config(self) -> WatchConfig:
        return self._cfg

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def last_decision(self) -> Optional[Decision]:
        return self._last

    # ------------------------------------------------------------------ #
    # Cycle API
    # ------------------------------------------------------------------ #

    def step(self, signal: MotionSignal, now_ms: float, width: int = 0, height: int = 0) -> Decision:
        """Advance one cycle and run the open/close side effects.

        ``width`` and ``height`` size a recording opened on this cycle.
        """
        if signal.present:
            self._clock.observe_motion(now_ms)

        decision = advance(self._phase, signal, self._clock, now_ms, self._cfg)

        if decision.close_session:
            self._close_session()
        if decision.transitioned:
            self._enter(decision.phase, now_ms)

        if decision.open_session:
            try:
                self._start_session(now_ms, width, height)
            except SinkUnavailable as exc:
                self.sink_failures += 1
                self._log.warning("cannot start recording, back to watching: %s", exc)
                self._enter(Phase.WATCHING, now_ms)
                decision = replace(
                    decision,
                    phase=Phase.WATCHING,
                    open_session=False,
                    append=False,
                    sink_failed=True,
                )

        self._last = decision
        return decision

    def record(self, img: np.ndarray, now_ms: float) -> Decision:
        """Append ``img`` to the open session, if any.

        Returns the decision that now holds: unchanged on success, or a
        forced return to Watching if the write failed.
        """
        last = self._last
        if last is None or not last.append or self._phase is not Phase.RECORDING:
            raise RuntimeError("record() is only valid after a step() that asks for append")

        if self._session is None:
            return last
        try:
            self._session.append(img)
        except WriteFailed as exc:
            self.write_failures += 1
            self._log.error("recording write failed, back to watching: %s", exc)
            self._close_session()
            self._enter(Phase.WATCHING, now_ms)
            last = replace(
                last,
                phase=Phase.WATCHING,
                append=False,
                close_session=True,
                write_failed=True,
            )
            self._last = last
        return last

    def shutdown(self) -> None:
        """Close any open session. Safe to call more than once."""
        self._close_session()

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _enter(self, phase: Phase, now_ms: float) -> None:
        if phase is self._phase:
            return
        self._log.info("phase %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        self._clock.enter_phase(now_ms)

    def _start_session(self, now_ms: float, width: int, height: int) -> None:
        if self._open_session is None:
            return
        # Two sinks never write at once.
        if self._session is not None and self._session.is_open:
            raise RuntimeError(f"recording {self._session.path} is still open")
        self._session = self._open_session(now_ms, width, height)
        self.sessions_opened += 1

    def _close_session(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        # A failed append has already closed the session; close() is idempotent.
        session.close()
        self.sessions_closed += 1
