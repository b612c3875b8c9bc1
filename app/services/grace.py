from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Union

from app.core.time import parse_date

DateLike = Union[date, str, None]


@dataclass(frozen=True)
class GraceStatus:
    in_grace: bool
    grace_ends_at: Optional[date] = None


def is_in_grace(canceled_date: DateLike, now: DateLike, grace_days: int) -> GraceStatus:
    """Whether ``now`` falls within ``grace_days`` of ``canceled_date``, boundary day included."""
    canceled = parse_date(canceled_date)
    today = parse_date(now)
    if canceled is None or today is None:
        return GraceStatus(False)
    ends_at = canceled + timedelta(days=max(0, int(grace_days)))
    if today <= ends_at:
        return GraceStatus(True, ends_at)
    return GraceStatus(False)
