from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo


class SystemClock:
    def __init__(self, tz_name: str = "UTC"):
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(tz=self.tz)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock pinned to a calendar date; tests move it with advance()."""

    def __init__(self, today: date):
        self._today = today

    def now(self) -> datetime:
        return datetime.combine(self._today, datetime.min.time(), tzinfo=timezone.utc)

    def today(self) -> date:
        return self._today

    def set(self, today: date) -> None:
        self._today = today

    def advance(self, days: int = 1) -> date:
        self._today = self._today + timedelta(days=days)
        return self._today
