"""
All timestamps are stored as naive UTC. Aware values coming in through the
API are converted on the way in; JSON output always carries a trailing Z.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Aware -> UTC with tzinfo stripped. Naive values are already UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse discount windows and other request timestamps.

    Accepts "2026-10-19T09:30", "...Z" and "...+05:30". Blank -> None.
    Raises ValueError on anything else.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(text))


def to_utc_z(value: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing Z (naive input is UTC)."""
    if value is None:
        return None
    value = to_utc_naive(value).replace(microsecond=0)
    return value.isoformat() + "Z"
