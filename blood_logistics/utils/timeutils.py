from datetime import datetime, timezone, timedelta


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days from ``now`` until ``moment``, rounded down."""
    return (moment - now) // timedelta(days=1)
