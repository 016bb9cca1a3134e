# tests/conftest.py
import os
import sys
from pathlib import Path
from typing import Any, List, Optional, Tuple

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

pp = os.getenv("PYTHONPATH")
if pp:
    for p in pp.split(os.pathsep):
        if p:
            sys.path.insert(0, p)

from record.recorder import SinkUnavailable  # noqa: E402


class FakeSink:
    """In-memory RecordingSink that can be told to fail."""

    def __init__(
        self,
        fail_open: bool = False,
        fail_write_at: Optional[int] = None,
        fail_close: bool = False,
    ) -> None:
        self.fail_open = fail_open
        self.fail_write_at = fail_write_at
        self.fail_close = fail_close
        self.opened: List[Tuple[Path, str, float, int, int]] = []
        self.written: List[Tuple[int, Any]] = []
        self.closed: List[int] = []
        self.write_attempts = 0

    def open(self, path: Path, codec: str, frame_rate: float, width: int, height: int) -> int:
        if self.fail_open:
            raise SinkUnavailable("codec missing")
        self.opened.append((path, codec, frame_rate, width, height))
        return len(self.opened)

    def write(self, handle: int, img: np.ndarray) -> None:
        self.write_attempts += 1
        if self.fail_write_at is not None and self.write_attempts >= self.fail_write_at:
            raise OSError("disk full")
        self.written.append((handle, img))

    def close(self, handle: int) -> None:
        if self.fail_close:
            raise OSError("flush failed")
        self.closed.append(handle)


@pytest.fixture
def fake_sink():
    return FakeSink
