# propflow/core/utils/clock.py
"""UTC time helpers shared by the stores and engine components."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hour_bucket(value: datetime) -> str:
    """UTC hour bucket used in event dedupe keys, e.g. '2024-01-05T09'."""
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H')
