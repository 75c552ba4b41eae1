# zaptrix_app/utils/time_utils.py
import datetime
from datetime import timezone
from typing import Optional


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """SQLite hands back naive datetimes even for timezone-aware columns; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
