# carecenter/timeutils.py
# All persisted timestamps are naive UTC.
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Optional

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_dt(value: Any) -> Optional[datetime]:
    """Coerce a stored/posted date value (datetime, date or ISO string) to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min)


def end_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.max)


def day_key(value: datetime) -> str:
    return value.date().isoformat()


def parse_hhmm(value: str) -> int:
    """'HH:mm' -> minutes since midnight."""
    match = _HHMM.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:mm")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive [start, end] filter; either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @classmethod
    def from_query(cls, start_date: Optional[str], end_date: Optional[str]) -> "DateWindow":
        start = parse_dt(start_date) if start_date else None
        end = parse_dt(end_date) if end_date else None
        if (start_date and start is None) or (end_date and end is None):
            raise ValueError("Dates must be ISO formatted (YYYY-MM-DD)")
        if end is not None:
            end = end_of_day(end)
        return cls(start, end)

    @property
    def is_active(self) -> bool:
        return self.start is not None or self.end is not None

    def contains(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True

    def matches(self, *candidates: Optional[datetime]) -> bool:
        """True when no filter is set or any candidate timestamp falls inside it."""
        if not self.is_active:
            return True
        return any(self.contains(c) for c in candidates)

    def as_dict(self) -> dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }

