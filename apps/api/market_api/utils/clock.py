"""Time helpers.

All stored timestamps are naive UTC. Ledger timestamps count seconds from
the ledger epoch (2000-01-01T00:00:00Z) instead of the Unix epoch.
"""

from datetime import datetime, timezone

LEDGER_EPOCH_OFFSET = 946684800


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ledger_time(moment: datetime) -> int:
    """Convert a naive UTC datetime to ledger epoch seconds."""
    return int(moment.replace(tzinfo=timezone.utc).timestamp()) - LEDGER_EPOCH_OFFSET


def from_ledger_time(seconds: int) -> datetime:
    """Convert ledger epoch seconds to a naive UTC datetime."""
    return datetime.fromtimestamp(seconds + LEDGER_EPOCH_OFFSET, tz=timezone.utc).replace(tzinfo=None)
