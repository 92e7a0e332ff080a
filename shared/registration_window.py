"""
Registration window evaluation.

A tournament accepts registrations while its status is OPEN and the current
instant lies inside [registration_start, registration_end], both ends
inclusive. The enforcement path and the informational helpers below all go
through is_registration_open so they agree on the boundaries.
"""
import math
from datetime import datetime, timezone
from typing import Optional

OPEN_STATUS = "OPEN"

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _status_value(status) -> str:
    return getattr(status, 'value', status)


def is_registration_open(tournament, now: datetime = None) -> bool:
    now = now or _now()
    return (
        _status_value(tournament.status) == OPEN_STATUS
        and tournament.registration_start <= now <= tournament.registration_end
    )


def get_registration_status_message(tournament, now: datetime = None) -> str:
    now = now or _now()

    if _status_value(tournament.status) != OPEN_STATUS:
        return "Registration not available"

    if now < tournament.registration_start:
        delta_ms = (tournament.registration_start - now).total_seconds() * 1000
        days = math.ceil(delta_ms / MS_PER_DAY)
        return f"Registration opens in {days} day{'' if days == 1 else 's'}"

    if now > tournament.registration_end:
        return "Registration closed"

    return "Registration open"


def get_registration_time_remaining(tournament, now: datetime = None) -> Optional[dict]:
    """Remaining time until registration closes, or None when not open."""
    now = now or _now()
    if not is_registration_open(tournament, now):
        return None

    total_ms = int((tournament.registration_end - now).total_seconds() * 1000)
    return {
        'days': total_ms // MS_PER_DAY,
        'hours': (total_ms % MS_PER_DAY) // MS_PER_HOUR,
        'minutes': (total_ms % MS_PER_HOUR) // MS_PER_MINUTE,
        'total_ms': total_ms,
    }


def registration_summary(tournament, now: datetime = None) -> dict:
    now = now or _now()
    return {
        'is_open': is_registration_open(tournament, now),
        'message': get_registration_status_message(tournament, now),
        'time_remaining': get_registration_time_remaining(tournament, now),
    }
