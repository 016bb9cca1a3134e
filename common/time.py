from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Optional


def now_ms() -> float:
    return datetime.now(tz=timezone.utc).timestamp() * 1000.0


def to_iso_utc(ts_ms: float) -> str:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).isoformat()


def stamp_filename(pattern: str, ts_ms: float, tz: Optional[tzinfo] = None) -> str:
    """Render a strftime ``pattern`` at epoch-ms ``ts_ms``.

    With ``tz=None`` the local zone is used, so ``%Z`` yields the local
    abbreviation (e.g. ``CEST``). Path separators in the result are kept,
    which lets patterns place recordings in dated sub-directories.
    """
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
    dt = dt.astimezone(tz) if tz is not None else dt.astimezone()
    return dt.strftime(pattern)
