"""
Clock used by the store and the sweeper.

All timestamps are naive UTC, matching what SQLite hands back.
"""
from datetime import datetime, timezone


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)
