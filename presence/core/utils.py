"""
Geo Presence — Shared utilities.

Pure functions used across the whole package. No imports from other presence
modules; only the standard library.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    """Default clock: timezone-aware ``datetime`` in UTC."""
    return datetime.now(timezone.utc)


def truncate_ms(ts: datetime) -> datetime:
    """Drop sub-millisecond precision so a timestamp survives the wire format."""
    return ts.replace(microsecond=(ts.microsecond // 1000) * 1000)


def epoch_ms(ts: datetime) -> int:
    """Milliseconds since the Unix epoch (UTC)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    delta = ts - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def to_iso(ts: datetime) -> str:
    """ISO-8601 with millisecond precision, e.g. ``2026-01-01T09:00:00.000+00:00``."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime.

    Returns ``None`` for anything unparseable instead of raising; callers
    decide whether a missing timestamp is fatal.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip()
        # JavaScript's toISOString() uses a trailing Z
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


# ---------------------------------------------------------------------------
# Math helpers
# ---------------------------------------------------------------------------

def clamp(value: float, lo: float, hi: float) -> float:
    """Clamp ``value`` to the range [lo, hi]."""
    return max(lo, min(hi, value))


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: ``base * 2**attempt`` capped at ``cap``."""
    if attempt < 0:
        attempt = 0
    # Cap the exponent so huge attempt counts cannot overflow the float
    return min(cap, base * (2 ** min(attempt, 32)))
