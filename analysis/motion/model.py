from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    w: int
    h: int

    def as_xyxy(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.x + self.w, self.y + self.h


@dataclass(frozen=True)
class MotionRegion:
    """A candidate moving object: bounding box plus contour area.

    ``contour`` keeps the backend's point array for drawing the outline; it
    takes no part in equality.
    """

    bbox: Rect
    area: float  # contour area, in pixels of the processed frame
    contour: Optional[Any] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class MotionSignal:
    """
    Per-cycle output of the evaluator.

    Computed fresh for every frame and never merged across cycles.
    ``regions`` holds only regions that passed the minimum-area filter,
    in the order the backend reported them.
    """

    present: bool
    regions: Tuple[MotionRegion, ...] = field(default_factory=tuple)


NO_MOTION = MotionSignal(present=False)


@dataclass(frozen=True)
class MotionConfig:
    """
    Configuration knobs for the vision pipeline.

    ``threshold`` and ``dilate_kernel`` are applied to the foreground
    mask exactly as given. ``min_area`` is expressed at the reference
    resolution; use :meth:`min_area_for` to get the cut-off for the
    resolution actually being processed.
    """

    # Binary mask clean-up
    threshold: int = 25  # cut-off on the 0..255 foreground mask
    dilate_kernel: int = 3  # square structuring element side, px

    # Region gating
    min_area: float = 3000.0
    reference_width: int = 960
    reference_height: int = 720

    # Background subtractor (MOG2)
    fg_history: int = 500
    fg_var_threshold: float = 16.0
    fg_detect_shadows: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.threshold <= 255:
            raise ValueError(f"threshold must be in [0, 255], got {self.threshold}")
        if self.dilate_kernel < 1:
            raise ValueError(f"dilate_kernel must be >= 1, got {self.dilate_kernel}")
        if self.min_area < 0:
            raise ValueError(f"min_area must be >= 0, got {self.min_area}")
        if self.reference_width <= 0 or self.reference_height <= 0:
            raise ValueError("reference resolution must be positive")

    def min_area_for(self, width: int, height: int) -> float:
        """Rescale ``min_area`` from the reference resolution to ``width`` x ``height``."""
        if width <= 0 or height <= 0:
            return float(self.min_area)
        ratio = (float(width) * float(height)) / (
            float(self.reference_width) * float(self.reference_height)
        )
        return float(self.min_area) * ratio
