"""Injectable time source.

Services never call ``datetime.now()`` directly; they receive a clock so that
sweeps and due-date arithmetic can be replayed deterministically in tests.
All datetimes are naive UTC, matching how they are stored.
"""

from datetime import datetime, timedelta, timezone


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock that returns the same instant until moved."""

    def __init__(self, fixed_time: datetime = None):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._fixed_time

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time

    def advance(self, **delta) -> datetime:
        self._fixed_time = self._fixed_time + timedelta(**delta)
        return self._fixed_time
