"""Time helpers. All stored timestamps are naive UTC."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_after(start: datetime, hours: Optional[float]) -> Optional[datetime]:
    if hours is None:
        return None
    return start + timedelta(hours=hours)
