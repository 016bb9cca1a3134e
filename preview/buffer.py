from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

_LOG = logging.getLogger(__name__)


class FramePublisher(Protocol):
    def publish(self, frame: bytes) -> None: ...
    def close(self) -> None: ...


class LatestFrameBuffer:
    """
    Holds the most recent encoded frame for any number of readers.

    ``publish()`` swaps the frame in and wakes waiting readers; it never
    waits for them. A reader that falls behind simply skips to whatever is
    newest the next time it asks, so a slow client cannot stall frame
    production.
    """

    def __init__(self, max_clients: int = 10, client_timeout_s: float = 30.0) -> None:
        self._cond = threading.Condition()
        self._frame: Optional[bytes] = None
        self._seq = 0
        self._closed = False
        self._max_clients = max_clients
        self._client_timeout_s = client_timeout_s
        self._last_access: Dict[str, float] = {}

    # ------------------------------------------------------------------ producer

    def publish(self, frame: bytes) -> None:
        with self._cond:
            if self._closed:
                return
            self._frame = frame
            self._seq += 1
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ------------------------------------------------------------------ readers

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def seq(self) -> int:
        with self._cond:
            return self._seq

    def latest(self) -> Tuple[int, Optional[bytes]]:
        with self._cond:
            return self._seq, self._frame

    def wait_for_frame(
        self, after_seq: int, timeout: Optional[float] = None, client_id: Optional[str] = None
    ) -> Tuple[int, Optional[bytes]]:
        """Block until a frame newer than ``after_seq`` exists.

        Returns ``(seq, frame)``; ``frame`` is ``None`` on timeout or once
        the buffer is closed with nothing newer to hand out.
        """
        with self._cond:
            if client_id is not None:
                self._last_access[client_id] = time.time()
            if self._seq <= after_seq and not self._closed:
                self._cond.wait_for(lambda: self._seq > after_seq or self._closed, timeout)
            if self._seq > after_seq:
                return self._seq, self._frame
            return after_seq, None

    def register_client(self, client_id: str) -> bool:
        """Register a reader. Returns False if the client limit is reached."""
        with self._cond:
            if len(self._last_access) >= self._max_clients:
                now = time.time()
                stale = [
                    cid
                    for cid, last in self._last_access.items()
                    if now - last > self._client_timeout_s
                ]
                for cid in stale:
                    del self._last_access[cid]
                if len(self._last_access) >= self._max_clients:
                    return False
            self._last_access[client_id] = time.time()
            return True

    def unregister_client(self, client_id: str) -> None:
        with self._cond:
            self._last_access.pop(client_id, None)

    @property
    def client_count(self) -> int:
        with self._cond:
            return len(self._last_access)
