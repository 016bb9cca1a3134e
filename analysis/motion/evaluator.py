from __future__ import annotations

from typing import Iterable

from .model import MotionRegion, MotionSignal


class MotionEvaluator:
    """Reduce candidate regions to a single per-frame motion signal.

    Stateless: the same candidates and ``min_area`` always produce the same
    signal, with surviving regions in input order.
    """

    def __init__(self, min_area: float) -> None:
        if min_area < 0:
            raise ValueError(f"min_area must be >= 0, got {min_area}")
        self._min_area = float(min_area)

    @property
    def min_area(self) -> float:
        return self._min_area

    def evaluate(self, candidates: Iterable[MotionRegion]) -> MotionSignal:
        kept = tuple(c for c in candidates if c.area >= self._min_area)
        return MotionSignal(present=bool(kept), regions=kept)
