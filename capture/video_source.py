from __future__ import annotations

import logging
import time
from typing import Optional, Union

import cv2

from common.frame import Frame

from .reader import DeviceUnavailable, ReaderConfig

_LOG = logging.getLogger(__name__)


def _device_arg(device: str) -> Union[int, str]:
    # "0" selects camera index 0; anything else is a path or stream URL.
    dev = device.strip()
    return int(dev) if dev.isdigit() else dev


class VideoSource:
    """FrameSource backed by ``cv2.VideoCapture``.

    ``start()`` opens and configures the device and raises
    :class:`DeviceUnavailable` when that fails. ``read()`` returns ``None``
    once the capture stops yielding frames; a successful read that carries
    no pixels is handed back as an empty :class:`Frame` so the caller can
    decide to skip it.

    ``width``, ``height`` and ``fps`` hold what the device actually
    negotiated once started; before that they are the requested values
    (``fps`` is 0.0 until the driver reports one).
    """

    def __init__(self, cfg: ReaderConfig):
        self._cfg = cfg
        self._cap: Optional[cv2.VideoCapture] = None
        self._frame_id = 0
        self.width = cfg.width
        self.height = cfg.height
        self.fps = 0.0

    def start(self) -> None:
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(_device_arg(self._cfg.device))
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"cannot open video capture device {self._cfg.device!r}")

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self._cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self._cfg.height)
        self.width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)) or self._cfg.width
        self.height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) or self._cfg.height
        self.fps = max(float(cap.get(cv2.CAP_PROP_FPS)), 0.0)
        _LOG.info(
            "opened %s at %dx%d @ %.1f fps (requested %dx%d)",
            self._cfg.device,
            self.width,
            self.height,
            self.fps,
            self._cfg.width,
            self._cfg.height,
        )
        self._cap = cap

    def read(self) -> Optional[Frame]:
        if self._cap is None:
            return None
        ok, img = self._cap.read()
        if not ok:
            return None
        frame = Frame(img=img, pts_ms=time.time() * 1000.0, frame_id=self._frame_id)
        self._frame_id += 1
        return frame

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
