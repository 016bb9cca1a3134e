"""Public exports for the motion analysis package."""

from __future__ import annotations

from .clock import PhaseClock
from .engine import BackendError, MotionEngine, OpenCVBackend, VisionBackend
from .evaluator import MotionEvaluator
from .model import MotionConfig, MotionRegion, MotionSignal, Rect
from .state_machine import Decision, MotionStateMachine, Phase, WatchConfig, advance
from .watcher import ReleaseError, Watcher

__all__ = [
    "MotionEngine",
    "OpenCVBackend",
    "VisionBackend",
    "BackendError",
    "MotionEvaluator",
    "MotionConfig",
    "MotionRegion",
    "MotionSignal",
    "Rect",
    "PhaseClock",
    "Phase",
    "WatchConfig",
    "Decision",
    "advance",
    "MotionStateMachine",
    "Watcher",
    "ReleaseError",
]
