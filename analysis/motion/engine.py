"""Background-subtraction motion engine.

The engine turns one frame into the list of candidate motion regions
found in it. The pixel work is delegated to a :class:`VisionBackend`:

- ``subtract_background`` feeds the frame to an adaptive model and gets
  back a foreground mask (the model learns as a side effect);
- the mask is binarised with a fixed cut-off and dilated with a fixed
  square kernel to close small holes;
- external contours are extracted and each one becomes a
  :class:`MotionRegion` carrying its bounding box and area.

Area filtering is *not* done here; that is the evaluator's job, so the
engine reports every contour it finds.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol, Sequence

import cv2
import numpy as np

from common.frame import Frame

from .model import MotionConfig, MotionRegion, Rect

_LOG = logging.getLogger(__name__)

Contour = Any  # backend-specific point array


class BackendError(RuntimeError):
    """The vision backend failed in a way the watcher cannot recover from."""


class VisionBackend(Protocol):
    def subtract_background(self, img: np.ndarray) -> np.ndarray: ...
    def threshold(self, mask: np.ndarray, cutoff: int) -> np.ndarray: ...
    def dilate(self, mask: np.ndarray, kernel_size: int) -> np.ndarray: ...
    def find_external_contours(self, mask: np.ndarray) -> Sequence[Contour]: ...
    def contour_area(self, contour: Contour) -> float: ...
    def bounding_rect(self, contour: Contour) -> Rect: ...
    def close(self) -> None: ...


class OpenCVBackend:
    """VisionBackend on top of OpenCV's MOG2 background subtractor."""

    def __init__(self, config: Optional[MotionConfig] = None) -> None:
        self._cfg = config or MotionConfig()
        self._bg: Optional[cv2.BackgroundSubtractorMOG2] = cv2.createBackgroundSubtractorMOG2(
            history=int(self._cfg.fg_history),
            varThreshold=float(self._cfg.fg_var_threshold),
            detectShadows=bool(self._cfg.fg_detect_shadows),
        )
        # Structuring elements are cached per size; the kernel never changes
        # between frames so there is no point rebuilding it every cycle.
        self._kernels: dict[int, np.ndarray] = {}

    def subtract_background(self, img: np.ndarray) -> np.ndarray:
        if self._bg is None:
            raise BackendError("background model already released")
        return self._bg.apply(img)

    def threshold(self, mask: np.ndarray, cutoff: int) -> np.ndarray:
        _, binary = cv2.threshold(mask, int(cutoff), 255, cv2.THRESH_BINARY)
        return binary

    def dilate(self, mask: np.ndarray, kernel_size: int) -> np.ndarray:
        ksize = int(kernel_size)
        kernel = self._kernels.get(ksize)
        if kernel is None:
            kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (ksize, ksize))
            self._kernels[ksize] = kernel
        return cv2.dilate(mask, kernel)

    def find_external_contours(self, mask: np.ndarray) -> Sequence[Contour]:
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        return contours

    def contour_area(self, contour: Contour) -> float:
        return float(cv2.contourArea(contour))

    def bounding_rect(self, contour: Contour) -> Rect:
        x, y, w, h = cv2.boundingRect(contour)
        return Rect(int(x), int(y), int(w), int(h))

    def close(self) -> None:
        self._bg = None
        self._kernels.clear()


class MotionEngine:
    """Stateful adapter that runs the backend pipeline for one frame at a time.

    Only the pipeline thread may call :meth:`step`; the backend's adaptive
    model is not synchronised.
    """

    def __init__(
        self,
        config: Optional[MotionConfig] = None,
        backend: Optional[VisionBackend] = None,
    ) -> None:
        self._cfg = config or MotionConfig()
        self._backend: VisionBackend = backend or OpenCVBackend(self._cfg)
        self._closed = False

    @property
    def config(self) -> MotionConfig:
        return self._cfg

    def step(self, frame: Frame) -> List[MotionRegion]:
        """Return every contour region found in ``frame``, unfiltered."""
        if self._closed:
            raise BackendError("motion engine is closed")

        be = self._backend
        try:
            delta = be.subtract_background(frame.img)
            mask = be.threshold(delta, self._cfg.threshold)
            mask = be.dilate(mask, self._cfg.dilate_kernel)
            contours = be.find_external_contours(mask)
            return [
                MotionRegion(bbox=be.bounding_rect(c), area=be.contour_area(c), contour=c)
                for c in contours
            ]
        except BackendError:
            raise
        except cv2.error as exc:
            raise BackendError(f"vision backend failed on frame {frame.frame_id}: {exc}") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._backend.close()
        _LOG.debug("motion engine released")
