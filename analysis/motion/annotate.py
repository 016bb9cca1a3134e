from __future__ import annotations

from typing import Iterable, Tuple

import cv2
import numpy as np

from .model import MotionRegion

BGR = Tuple[int, int, int]

STATUS_ORIGIN = (10, 20)
STATUS_FONT = cv2.FONT_HERSHEY_PLAIN
STATUS_SCALE = 1.2
LINE_THICKNESS = 2


def render(
    img: np.ndarray,
    status: str,
    status_color: BGR,
    regions: Iterable[MotionRegion] = (),
    region_color: BGR = (255, 0, 0),
) -> np.ndarray:
    """Return a copy of ``img`` with region outlines, boxes and the status text.

    Outlines are drawn in the status colour, boxes in ``region_color``.
    """
    out = img.copy()
    for region in regions:
        if region.contour is not None:
            cv2.drawContours(out, [region.contour], -1, status_color, LINE_THICKNESS)
        x1, y1, x2, y2 = region.bbox.as_xyxy()
        cv2.rectangle(out, (x1, y1), (x2, y2), region_color, LINE_THICKNESS)
    cv2.putText(
        out,
        status,
        STATUS_ORIGIN,
        STATUS_FONT,
        STATUS_SCALE,
        status_color,
        LINE_THICKNESS,
    )
    return out


def encode_jpeg(img: np.ndarray, quality: int = 80) -> bytes:
    ok, buf = cv2.imencode(".jpg", img, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()
