"""
Cron expression parser and next-fire calculator.

Supports the standard 5-field format: minute hour day month weekday.

Day-of-month and day-of-week are combined with AND: "0 0 13 * 5" fires only
on a Friday the 13th, not on every 13th and every Friday as classic cron
would. Fire instants are computed on the civil calendar of an IANA time zone.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone as dt_timezone, tzinfo
from typing import FrozenSet, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from colored_logger import get_colored_logger

from .errors import InvalidCronExpression

logger = get_colored_logger(__name__)

TimeZoneLike = Union[str, tzinfo]

# One full Gregorian cycle; any satisfiable expression matches within it.
_MAX_SEARCH_YEARS = 400


@dataclass(frozen=True)
class CronExpression:
    """Represents a parsed cron expression as sets of allowed values."""

    minute: FrozenSet[int]
    hour: FrozenSet[int]
    day: FrozenSet[int]
    month: FrozenSet[int]
    weekday: FrozenSet[int]
    original_expression: str

    def __post_init__(self):
        """Validate parsed values are within valid ranges."""
        self._validate_field("minute", self.minute, 0, 59)
        self._validate_field("hour", self.hour, 0, 23)
        self._validate_field("day", self.day, 1, 31)
        self._validate_field("month", self.month, 1, 12)
        self._validate_field("weekday", self.weekday, 0, 6)

    def _validate_field(
        self, field_name: str, values: FrozenSet[int], min_val: int, max_val: int
    ):
        """Validate that field values are within acceptable ranges."""
        if not values:
            raise ValueError(f"Empty {field_name} field")
        for value in values:
            if not min_val <= value <= max_val:
                raise ValueError(
                    f"Invalid {field_name} value: {value} (must be {min_val}-{max_val})"
                )

    def matches(self, moment: datetime) -> bool:
        """Check whether the wall-clock fields of a datetime satisfy every field."""
        return (
            moment.minute in self.minute
            and moment.hour in self.hour
            and moment.day in self.day
            and moment.month in self.month
            and _cron_weekday(moment.date()) in self.weekday
        )


def _cron_weekday(day: date) -> int:
    """Convert Python's weekday (0=Monday) to cron's (0=Sunday)."""
    return (day.weekday() + 1) % 7


def resolve_timezone(tz: TimeZoneLike) -> tzinfo:
    """
    Turn an IANA zone name into a tzinfo; tzinfo objects pass through.

    Raises:
        ValueError: If the zone name is unknown
    """
    if isinstance(tz, tzinfo):
        return tz
    try:
        return ZoneInfo(str(tz))
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone: {tz}") from e


class CronParser:
    """
    Parses cron expressions strictly and computes fire instants.

    Each field accepts:
    - Wildcards: *
    - Single values: 5
    - Lists: 1,3,5
    - Ranges: 1-5
    - Steps: */15, 1-10/2

    Out-of-range values, reversed ranges, zero steps and steps on a single
    value ("5/10") are rejected rather than silently clamped.
    """

    FIELD_NAMES = ("minute", "hour", "day", "month", "weekday")

    # Field constraints
    FIELD_RANGES = {
        0: (0, 59),  # minute
        1: (0, 23),  # hour
        2: (1, 31),  # day
        3: (1, 12),  # month
        4: (0, 6),  # weekday (0 = Sunday)
    }

    def __init__(self):
        """Initialize the cron parser."""
        self._term_regex = re.compile(
            r"^(?:(?P<star>\*)|(?P<start>[0-9]+)(?:-(?P<end>[0-9]+))?)(?:/(?P<step>[0-9]+))?$"
        )

    def parse(self, expression: str) -> CronExpression:
        """
        Parse a cron expression into a CronExpression object.

        Args:
            expression: The cron expression string

        Returns:
            CronExpression object with parsed fields

        Raises:
            InvalidCronExpression: If the expression violates the grammar
        """
        if not isinstance(expression, str):
            raise InvalidCronExpression(repr(expression), "expression must be a string")

        normalized = expression.strip()
        if not normalized:
            raise InvalidCronExpression(expression, "empty expression")

        fields = normalized.split()
        if len(fields) != 5:
            raise InvalidCronExpression(
                expression, f"expected exactly 5 fields, got {len(fields)}"
            )

        parsed_fields = []
        for i, field_text in enumerate(fields):
            min_val, max_val = self.FIELD_RANGES[i]
            try:
                parsed_fields.append(self._parse_field(field_text, min_val, max_val))
            except ValueError as e:
                raise InvalidCronExpression(
                    expression, f"{self.FIELD_NAMES[i]} field '{field_text}': {e}"
                ) from None

        return CronExpression(
            minute=parsed_fields[0],
            hour=parsed_fields[1],
            day=parsed_fields[2],
            month=parsed_fields[3],
            weekday=parsed_fields[4],
            original_expression=" ".join(fields),
        )

    def _parse_field(self, field_text: str, min_val: int, max_val: int) -> FrozenSet[int]:
        """
        Parse a single field of a cron expression.

        Args:
            field_text: The field string (e.g., "*/15", "1-5", "1,3,5")
            min_val: Minimum allowed value
            max_val: Maximum allowed value

        Returns:
            Set of integer values for this field
        """
        values = set()

        for term in field_text.split(","):
            if not term:
                raise ValueError("empty list element")

            match = self._term_regex.match(term)
            if not match:
                raise ValueError(f"malformed term '{term}'")

            step = 1
            if match.group("step") is not None:
                step = int(match.group("step"))
                if step <= 0:
                    raise ValueError(f"step must be positive, got {step}")
                if step > max_val:
                    raise ValueError(f"step {step} exceeds maximum {max_val}")
                if match.group("start") is not None and match.group("end") is None:
                    raise ValueError(f"step requires '*' or a range, got '{term}'")

            if match.group("star"):
                start, end = min_val, max_val
            else:
                start = int(match.group("start"))
                end = int(match.group("end")) if match.group("end") is not None else start
                for value in (start, end):
                    if not min_val <= value <= max_val:
                        raise ValueError(
                            f"value {value} out of range [{min_val}-{max_val}]"
                        )
                if start > end:
                    raise ValueError(f"invalid range {start}-{end}")

            values.update(range(start, end + 1, step))

        return frozenset(values)

    def validate_expression(self, expression: str) -> bool:
        """
        Validate a cron expression without raising.

        Args:
            expression: The cron expression to validate

        Returns:
            True if valid, False otherwise
        """
        try:
            self.parse(expression)
            return True
        except InvalidCronExpression:
            return False

    def next_execution(
        self,
        cron_expr: CronExpression,
        from_time: datetime,
        timezone: TimeZoneLike,
    ) -> datetime:
        """
        Calculate the earliest fire instant strictly after from_time.

        Args:
            cron_expr: The parsed cron expression
            from_time: Reference instant; a naive value is read as wall-clock
                time in ``timezone``
            timezone: IANA zone name or tzinfo whose civil calendar applies

        Returns:
            Aware datetime in ``timezone``

        Raises:
            InvalidCronExpression: If the expression can never fire
        """
        tz = resolve_timezone(timezone)
        if from_time.tzinfo is None:
            local_from = from_time.replace(tzinfo=tz)
        else:
            local_from = from_time.astimezone(tz)
        from_utc = local_from.astimezone(dt_timezone.utc)

        start_wall = local_from.replace(tzinfo=None, second=0, microsecond=0, fold=0)
        start_day = start_wall.date()

        months = sorted(cron_expr.month)
        days = sorted(cron_expr.day)
        hours = sorted(cron_expr.hour)
        minutes = sorted(cron_expr.minute)

        for year in range(start_day.year, start_day.year + _MAX_SEARCH_YEARS):
            for month in months:
                if (year, month) < (start_day.year, start_day.month):
                    continue
                last_day = calendar.monthrange(year, month)[1]
                for day in days:
                    if day > last_day:
                        break
                    current = date(year, month, day)
                    if current < start_day:
                        continue
                    if _cron_weekday(current) not in cron_expr.weekday:
                        continue
                    for hour in hours:
                        for minute in minutes:
                            wall = datetime(year, month, day, hour, minute)
                            if wall < start_wall:
                                continue
                            candidate = self._localize(wall, tz)
                            if candidate is None:
                                continue
                            if candidate.astimezone(dt_timezone.utc) > from_utc:
                                return candidate

        raise InvalidCronExpression(
            cron_expr.original_expression,
            f"no fire time within {_MAX_SEARCH_YEARS} years",
        )

    @staticmethod
    def _localize(wall: datetime, tz: tzinfo) -> Optional[datetime]:
        """
        Attach a zone to a wall-clock time.

        Returns None for times skipped by a forward DST transition; ambiguous
        times resolve to their first occurrence.
        """
        aware = wall.replace(tzinfo=tz, fold=0)
        roundtrip = aware.astimezone(dt_timezone.utc).astimezone(tz)
        if roundtrip.replace(tzinfo=None, fold=0) != wall:
            return None
        return roundtrip

    def upcoming(
        self,
        cron_expr: CronExpression,
        from_time: datetime,
        timezone: TimeZoneLike,
        count: int = 5,
    ) -> List[datetime]:
        """Return the next ``count`` fire instants after from_time."""
        times = []
        current = from_time
        for _ in range(max(0, count)):
            current = self.next_execution(cron_expr, current, timezone)
            times.append(current)
        return times


_default_parser = CronParser()


def validate(expression: str) -> bool:
    """Return True if the expression satisfies the 5-field grammar."""
    return _default_parser.validate_expression(expression)


def next_fire_after(
    expression: str, from_time: datetime, timezone: TimeZoneLike
) -> datetime:
    """
    Parse an expression and return its first fire instant after from_time.

    Raises:
        InvalidCronExpression: If the expression is malformed or never fires
    """
    parsed = _default_parser.parse(expression)
    next_time = _default_parser.next_execution(parsed, from_time, timezone)
    logger.debug("Next fire for '%s' after %s: %s", expression, from_time, next_time)
    return next_time
