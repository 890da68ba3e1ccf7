from datetime import datetime, timezone
from typing import Optional

from .status_rules import AUTO

SECONDS_PER_DAY = 60 * 60 * 24


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ageing_days(
    running_status: Optional[str],
    manual_at: Optional[datetime],
    not_running_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> int:
    """Whole days since the earliest ageing basis. Zero when Auto or when no basis exists."""
    if (running_status or AUTO) == AUTO:
        return 0
    bases = [b for b in (as_utc(manual_at), as_utc(not_running_at)) if b is not None]
    if not bases:
        return 0
    now = as_utc(now) or datetime.now(timezone.utc)
    elapsed = (now - min(bases)).total_seconds()
    return max(int(elapsed // SECONDS_PER_DAY), 0)
