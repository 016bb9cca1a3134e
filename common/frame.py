from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class Frame:
    img: np.ndarray  # BGR (H,W,3), uint8
    pts_ms: float  # epoch ms (float)
    frame_id: int

    @property
    def width(self) -> int:
        return int(self.img.shape[1]) if self.img is not None and self.img.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self.img.shape[0]) if self.img is not None and self.img.ndim >= 2 else 0

    def is_empty(self) -> bool:
        # A capture can succeed yet hand back a buffer with no pixels.
        return self.img is None or self.img.size == 0
