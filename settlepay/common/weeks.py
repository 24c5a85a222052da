"""UTC week windows used to key payout ledgers."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from settlepay.common.config import settings
from settlepay.common.errors import ValidationError

WEEK_SPAN = timedelta(days=6, hours=23, minutes=59, seconds=59, milliseconds=999)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_to_week_start(value: date | datetime, week_start_weekday: int | None = None) -> datetime:
    """Midnight UTC of the configured first weekday on or before `value`."""

    first_day = settings.week_start_weekday if week_start_weekday is None else week_start_weekday
    day = as_utc(value).date() if isinstance(value, datetime) else value
    offset = (day.weekday() - first_day) % 7
    return datetime.combine(day - timedelta(days=offset), time.min, tzinfo=timezone.utc)


@dataclass(frozen=True)
class WeekWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError(
                f"week window start {self.start.isoformat()} is after end {self.end.isoformat()}",
                code="invalid_window",
            )

    @classmethod
    def containing(cls, value: date | datetime, week_start_weekday: int | None = None) -> "WeekWindow":
        start = floor_to_week_start(value, week_start_weekday)
        return cls(start=start, end=start + WEEK_SPAN)

    @classmethod
    def current(cls, now: datetime | None = None) -> "WeekWindow":
        return cls.containing(now or datetime.now(timezone.utc))

    def contains(self, moment: datetime) -> bool:
        return self.start <= as_utc(moment) <= self.end

    def as_dict(self) -> dict[str, str]:
        return {"start_date": self.start.isoformat(), "end_date": self.end.isoformat()}
