"""Credit arithmetic: charges for paid hours and time-proportional refunds."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

_MICROSECOND = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def validate_hours(hours: int) -> int:
    if isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0:
        raise ValueError(f"hours must be a positive integer, got {hours!r}")
    return hours


def credits_needed(hours: int, credits_per_hour: int) -> int:
    return validate_hours(hours) * credits_per_hour


def paid_until_after(start: datetime, hours: int) -> datetime:
    return start + timedelta(hours=hours)


def compute_refund(
    credits_charged: int,
    created_at: datetime,
    paid_until: datetime,
    now: datetime,
) -> int:
    """floor(credits_charged × unused share of the paid window).

    The paid window runs from creation to paid_until, so extensions widen
    it together with credits_charged. A window of zero length refunds
    nothing.
    """
    total = (paid_until - created_at) // _MICROSECOND
    if total <= 0 or credits_charged <= 0:
        return 0
    unused = min(total, max(0, (paid_until - now) // _MICROSECOND))
    # Integer floor division keeps exact halves exact
    return credits_charged * unused // total
