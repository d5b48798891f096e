"""Cron expression parsing and next-fire computation."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.errors import ScheduleError


ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, min, max, names)
FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("weekday", 0, 7, DAY_NAMES),
)

# Give up searching after this many years (e.g. "0 0 30 2 *" never fires)
MAX_SEARCH_YEARS = 5


def _parse_value(token: str, field: str, names: dict[str, int], expression: str) -> int:
    token = token.strip().lower()
    if token in names:
        return names[token]
    try:
        return int(token)
    except ValueError:
        raise ScheduleError(
            f"Invalid {field} value '{token}' in cron expression '{expression}'",
            expression=expression,
        )


def _parse_field(text: str, field: str, low: int, high: int, names: dict[str, int], expression: str) -> frozenset:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ScheduleError(f"Empty {field} list item in '{expression}'", expression=expression)

        step = 1
        if "/" in part:
            part, step_str = part.split("/", 1)
            step = _parse_value(step_str, field, {}, expression)
            if step < 1:
                raise ScheduleError(f"Step must be >= 1 in '{expression}'", expression=expression)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_str, end_str = part.split("-", 1)
            start = _parse_value(start_str, field, names, expression)
            end = _parse_value(end_str, field, names, expression)
        else:
            start = _parse_value(part, field, names, expression)
            # "5/15" means every 15 starting at 5
            end = high if step > 1 else start

        if not (low <= start <= high and low <= end <= high) or start > end:
            raise ScheduleError(
                f"{field} out of range {low}-{high} in '{expression}'",
                expression=expression,
            )
        values.update(range(start, end + 1, step))

    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """
    A parsed 5-field cron expression (minute hour day month weekday).

    Supports ``*``, lists, ranges, steps, month and weekday names and the
    common ``@daily``-style aliases. When both day-of-month and
    day-of-week are restricted a time matches if either does.
    """
    expression: str
    minutes: frozenset
    hours: frozenset
    days: frozenset
    months: frozenset
    weekdays: frozenset
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        if not isinstance(expression, str) or not expression.strip():
            raise ScheduleError("Empty cron expression", expression=expression)

        normalized = ALIASES.get(expression.strip().lower(), expression.strip())
        parts = normalized.split()
        if len(parts) != 5:
            raise ScheduleError(
                f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'",
                expression=expression,
            )

        parsed = [
            _parse_field(text, name, low, high, names, expression)
            for text, (name, low, high, names) in zip(parts, FIELDS)
        ]
        minutes, hours, days, months, weekdays = parsed
        # Sunday is both 0 and 7
        if 7 in weekdays:
            weekdays = frozenset((weekdays - {7}) | {0})

        return cls(
            expression=expression,
            minutes=minutes,
            hours=hours,
            days=days,
            months=months,
            weekdays=weekdays,
            day_restricted=not parts[2].startswith("*"),
            weekday_restricted=not parts[4].startswith("*"),
        )

    def _day_matches(self, dt: datetime) -> bool:
        # Python: Monday=0 .. Sunday=6; cron: Sunday=0 .. Saturday=6
        cron_weekday = (dt.weekday() + 1) % 7
        if self.day_restricted and self.weekday_restricted:
            return dt.day in self.days or cron_weekday in self.weekdays
        if self.day_restricted:
            return dt.day in self.days
        if self.weekday_restricted:
            return cron_weekday in self.weekdays
        return True

    def matches(self, dt: datetime) -> bool:
        """Check if the minute containing ``dt`` is a fire time."""
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_after(self, dt: datetime) -> datetime:
        """First fire time strictly after ``dt`` (minute resolution)."""
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit_year = candidate.year + MAX_SEARCH_YEARS

        while candidate.year <= limit_year:
            if candidate.month not in self.months:
                if candidate.month == 12:
                    candidate = candidate.replace(year=candidate.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    candidate = candidate.replace(month=candidate.month + 1, day=1, hour=0, minute=0)
                continue

            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue

            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue

            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue

            return candidate

        raise ScheduleError(
            f"Cron expression never fires: '{self.expression}'",
            expression=self.expression,
        )

    def __str__(self) -> str:
        return self.expression
