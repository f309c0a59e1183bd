"""Time source shared by sessions, the cache and the monitor.

Components take a `clock` argument so tests can step time explicitly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
