from __future__ import annotations

import math
from typing import Optional


class PhaseClock:
    """
    Two timestamps (epoch ms) the state machine compares against its
    thresholds.

    ``last_motion_ms`` moves forward on every cycle that saw motion and is
    never reset, not even when the machine returns to Watching.
    ``phase_started_ms`` is reset at each phase transition and only then.
    """

    def __init__(self, now_ms: float = 0.0) -> None:
        self._last_motion_ms: Optional[float] = None
        self._phase_started_ms = float(now_ms)

    @property
    def last_motion_ms(self) -> Optional[float]:
        return self._last_motion_ms

    @property
    def phase_started_ms(self) -> float:
        return self._phase_started_ms

    def observe_motion(self, now_ms: float) -> None:
        # Non-decreasing even if a source hands back an out-of-order stamp.
        if self._last_motion_ms is None or now_ms > self._last_motion_ms:
            self._last_motion_ms = float(now_ms)

    def enter_phase(self, now_ms: float) -> None:
        self._phase_started_ms = float(now_ms)

    def since_phase(self, now_ms: float) -> float:
        return float(now_ms) - self._phase_started_ms

    def since_motion(self, now_ms: float) -> float:
        if self._last_motion_ms is None:
            return math.inf
        return float(now_ms) - self._last_motion_ms
