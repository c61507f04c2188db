"""Time utilities for decay calculations and DB timestamps."""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def utcnow_naive() -> datetime:
    """UTC now without tzinfo, matching the DateTime columns in TiDB."""
    return utcnow().replace(tzinfo=None)


def as_utc(when: datetime) -> datetime:
    # naive timestamps from the database are stored in UTC
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


def days_between(when: datetime, ref: datetime) -> float:
    """Days elapsed from `when` to `ref`; never negative."""
    delta = as_utc(ref) - as_utc(when)
    return max(0.0, delta.total_seconds() / 86400.0)


def half_life_decay(days: float, half_life_days: float) -> float:
    """
    Half-life decay factor:
    - days = 0      → 1.0
    - days = T      → 0.5  (T = half_life_days)
    - days = 2 * T  → 0.25
    """
    if half_life_days <= 0 or days <= 0:
        return 1.0
    return 0.5 ** (days / half_life_days)


def from_millis(ts_ms: int) -> datetime:
    """Epoch milliseconds → naive UTC datetime."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
