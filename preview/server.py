"""Live MJPEG preview over HTTP.

Routes:

- ``GET /``       tiny HTML page embedding the stream
- ``GET /stream`` ``multipart/x-mixed-replace`` MJPEG stream
- ``GET /status`` JSON summary of the watcher state
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, StreamingResponse

from .buffer import LatestFrameBuffer

_LOG = logging.getLogger(__name__)

BOUNDARY = "frame"

StatusProvider = Callable[[], Dict[str, Any]]

INDEX_HTML = """<!DOCTYPE html>
<html>
<head><title>Watcher</title></head>
<body style="margin:0;background:#111">
  <img src="/stream" style="display:block;margin:auto;max-width:100%" alt="live preview">
</body>
</html>
"""


@dataclass
class PreviewConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    max_clients: int = 10
    jpeg_quality: int = 80
    enabled: bool = True
    wait_timeout_s: float = 1.0

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be in [1, 100], got {self.jpeg_quality}")


def _mjpeg_parts(
    buffer: LatestFrameBuffer, client_id: str, wait_timeout_s: float
) -> Iterator[bytes]:
    seq = 0
    try:
        while True:
            seq, frame = buffer.wait_for_frame(seq, timeout=wait_timeout_s, client_id=client_id)
            if frame is None:
                if buffer.closed:
                    return
                continue
            yield (
                f"--{BOUNDARY}\r\n"
                "Content-Type: image/jpeg\r\n"
                f"Content-Length: {len(frame)}\r\n\r\n"
            ).encode("ascii") + frame + b"\r\n"
    finally:
        buffer.unregister_client(client_id)
        _LOG.info("preview client %s disconnected (%d active)", client_id, buffer.client_count)


def create_app(
    buffer: LatestFrameBuffer,
    status: Optional[StatusProvider] = None,
    config: Optional[PreviewConfig] = None,
) -> FastAPI:
    cfg = config or PreviewConfig()
    app = FastAPI(title="motion-watcher preview")

    @app.get("/", response_class=HTMLResponse)
    def index() -> str:
        return INDEX_HTML

    @app.get("/stream")
    def stream(request: Request) -> StreamingResponse:
        client_id = f"{request.client.host if request.client else 'unknown'}-{uuid.uuid4().hex[:8]}"
        if not buffer.register_client(client_id):
            _LOG.warning("maximum preview clients reached, rejecting %s", client_id)
            raise HTTPException(
                status_code=503,
                detail="Server busy. Maximum number of clients reached.",
            )
        _LOG.info("preview client %s connected (%d active)", client_id, buffer.client_count)
        # A plain generator is iterated in the threadpool, so blocking waits
        # on the buffer never hold up the event loop.
        return StreamingResponse(
            _mjpeg_parts(buffer, client_id, cfg.wait_timeout_s),
            media_type=f"multipart/x-mixed-replace; boundary={BOUNDARY}",
        )

    @app.get("/status")
    def get_status() -> Dict[str, Any]:
        body: Dict[str, Any] = dict(status()) if status is not None else {}
        body["preview_clients"] = buffer.client_count
        body["preview_seq"] = buffer.seq
        return body

    return app


class PreviewServer:
    """Run the preview app under uvicorn on a background thread."""

    def __init__(self, app: FastAPI, config: Optional[PreviewConfig] = None) -> None:
        self._cfg = config or PreviewConfig()
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self._cfg.host,
                port=self._cfg.port,
                log_level="warning",
                access_log=False,
            )
        )
        self._thr: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = threading.Thread(target=self._server.run, name="preview-http", daemon=True)
        self._thr.start()
        _LOG.info("preview listening on http://%s:%d/", self._cfg.host, self._cfg.port)

    def stop(self, timeout: float = 2.0) -> None:
        self._server.should_exit = True
        if self._thr:
            self._thr.join(timeout=timeout)
            self._thr = None
