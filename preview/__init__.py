"""Live preview: drop-latest frame buffer and MJPEG HTTP server."""

from .buffer import FramePublisher, LatestFrameBuffer
from .server import PreviewConfig, PreviewServer, create_app

__all__ = [
    "FramePublisher",
    "LatestFrameBuffer",
    "PreviewConfig",
    "PreviewServer",
    "create_app",
]
