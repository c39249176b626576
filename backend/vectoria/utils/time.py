"""Clock helpers."""

from __future__ import annotations

import time
from datetime import datetime, timezone


def now_ms() -> int:
    """Wall-clock milliseconds, used for blob ``updated_at`` stamps."""
    return int(time.time() * 1000)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.perf_counter()`` reading."""
    return int((time.perf_counter() - started) * 1000)
