from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class Period:
    slug: str
    start: Optional[datetime]


_WINDOWS = {
    "week": timedelta(days=7),
    "month": timedelta(days=30),
}


def resolve_period(period: Optional[str], *, now: Optional[datetime] = None) -> Period:
    """Rolling window ending now; anything unrecognised means all time."""
    slug = (period or "").strip().lower()
    window = _WINDOWS.get(slug)
    if window is None:
        return Period("none", None)
    now = now or datetime.utcnow()
    return Period(slug, now - window)
