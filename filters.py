import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from errors import InvalidInput

END_OF_DAY = timedelta(days=1) - timedelta(microseconds=1)


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class AmountRange:
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass
class TransactionFilters:
    username: Optional[str] = None
    usernames: Optional[list[str]] = None
    category: Optional[str] = None
    dates: DateRange = field(default_factory=DateRange)
    amounts: AmountRange = field(default_factory=AmountRange)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO date or timestamp into a naive UTC datetime."""
    try:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidInput("Invalid Date") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def resolve_date_range(
    day: Optional[str], start: Optional[str], up_to: Optional[str]
) -> DateRange:
    if not day and not start and not up_to:
        return DateRange()
    if day and (start or up_to):
        raise InvalidInput("Invalid Date")

    if day:
        first = parse_timestamp(day)
        return DateRange(first, first + END_OF_DAY)

    lower = parse_timestamp(start) if start else None
    upper = parse_timestamp(up_to) + END_OF_DAY if up_to else None
    if lower is not None and upper is not None and lower > upper:
        raise InvalidInput("Invalid Date")
    return DateRange(lower, upper)


def parse_number(value: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInput("Invalid Parameters") from exc
    if not math.isfinite(number):
        raise InvalidInput("Invalid Parameters")
    return number


def resolve_amount_range(
    minimum: Optional[str], maximum: Optional[str]
) -> AmountRange:
    lower = parse_number(minimum) if minimum else None
    upper = parse_number(maximum) if maximum else None
    if lower is not None and upper is not None and lower > upper:
        raise InvalidInput("Invalid Parameters")
    return AmountRange(lower, upper)
