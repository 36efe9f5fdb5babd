"""Small time utilities shared by the aggregator, spot log and CLI.

WSPR transmissions start on even UTC minutes, so every spot belongs to the
120-second cycle that begins at ``epoch // 120 * 120``.
"""

from __future__ import annotations

from datetime import datetime, timezone

CYCLE_SECONDS = 120


def cycle_start(epoch_seconds: float) -> int:
    """Return the start of the WSPR cycle containing ``epoch_seconds``."""
    return (int(epoch_seconds) // CYCLE_SECONDS) * CYCLE_SECONDS


def seconds_until_next_cycle(epoch_seconds: float) -> float:
    """Seconds from ``epoch_seconds`` to the next even 2-minute mark.

    Exactly on a boundary the next mark is a full cycle away.
    """
    return float(cycle_start(epoch_seconds) + CYCLE_SECONDS) - epoch_seconds


def from_epoch(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


def format_cycle(epoch_seconds: int) -> str:
    """Render a cycle start as ``HH:MM`` UTC."""
    return from_epoch(epoch_seconds).strftime("%H:%M")


def isoformat_utc(epoch_seconds: float) -> str:
    return from_epoch(epoch_seconds).isoformat()


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Returns None when the value is missing or unparseable. Naive values are
    assumed to be UTC.
    """
    if not value:
        return None
    normalized = value.strip().replace("Z", "+00:00").replace("z", "+00:00")
    try:
        dt = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
