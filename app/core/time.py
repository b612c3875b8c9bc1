from __future__ import annotations

import time
from datetime import date, datetime, timezone
from typing import Optional


def now_ts() -> int:
    return int(time.time())


def today() -> date:
    return datetime.now(timezone.utc).date()


def parse_date(value: object) -> Optional[date]:
    """Accept ``YYYY-MM-DD`` or a full ISO-8601 timestamp; anything else is ``None``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None
