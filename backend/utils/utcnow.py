"""Cross-version UTC helpers (Python 3.9 – 3.12+).

``datetime.utcnow()`` and ``datetime.utcfromtimestamp()`` are deprecated
since Python 3.12.  These thin wrappers produce the **naive** UTC datetimes
stored by the ORM layer, plus the epoch-millisecond conversions used at the
exchange API boundary (Hyperliquid reports fill times in ms).
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def utcfromtimestamp_ms(ts_ms: float) -> datetime:
    """Convert an epoch-millisecond timestamp to a naive UTC datetime."""
    return utcfromtimestamp(float(ts_ms) / 1000.0)


def to_epoch_ms(dt: datetime) -> int:
    """Inverse of ``utcfromtimestamp_ms`` for naive UTC datetimes."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def minute_bucket(dt: datetime) -> int:
    """Whole minutes since the epoch; two timestamps in the same minute collide."""
    return to_epoch_ms(dt) // 60_000
