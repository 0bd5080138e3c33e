"""Time helpers for consistent UTC timestamps across the watcher."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC datetime with timezone attached."""

    return datetime.now(timezone.utc)


def from_epoch_ms(value: int) -> datetime:
    """Convert ledger millisecond timestamps to aware UTC datetimes."""

    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)
