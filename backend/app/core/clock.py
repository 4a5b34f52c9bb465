"""
Clock helpers.

All persisted timestamps are naive UTC so that PostgreSQL and SQLite
compare them the same way. Lock leases and undo windows read time through
``utcnow`` only, so tests can move the clock with ``set_now``.
"""

from datetime import datetime, timezone
from typing import Callable, Optional


def _system_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


_now: Callable[[], datetime] = _system_now


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return _now()


def set_now(source: Optional[Callable[[], datetime]] = None) -> None:
    """Replace the time source; ``None`` restores the system clock."""
    global _now
    _now = source or _system_now
