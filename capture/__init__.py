# capture/__init__.py
"""Capture package: frame sources (OpenCV device, synthetic, scripted)."""

from .reader import (
    CaptureError,
    DeviceUnavailable,
    FrameSource,
    NullTransport,
    ReaderConfig,
    ReaderFactory,
    ReadFailure,
    ScriptedSource,
)

__all__ = [
    "FrameSource",
    "ReaderFactory",
    "ReaderConfig",
    "NullTransport",
    "ScriptedSource",
    "CaptureError",
    "DeviceUnavailable",
    "ReadFailure",
]

__version__ = "0.1.0"
