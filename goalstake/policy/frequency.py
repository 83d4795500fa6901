"""
Frequency Policy

Pure functions answering two questions for a goal's date range:
1. Which days are obligated (used to scan for missed days)
2. How many completions are required (used for progress and pricing)

DESIGN DECISION: One canonical calendar.
Days are plain `datetime.date` values already normalized to the reference
time zone. Weekdays follow the Sun=1..Sat=7 convention; the weekend is
Saturday and Sunday. No locale is ever consulted.

For X_OF_N_DAYS every day in the range is scanned, but only
min(day_count, floor(total / amount_per_success)) completions are required.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Iterator, Optional

from goalstake.models.goal import Frequency, Goal


SUNDAY = 1
SATURDAY = 7
WEEKEND = frozenset({SUNDAY, SATURDAY})


def calendar_weekday(day: date) -> int:
    """Weekday number with Sunday=1 through Saturday=7."""
    return day.isoweekday() % 7 + 1


def iter_days(start_date: date, end_date: date) -> Iterator[date]:
    """Every calendar day in [start_date, end_date], inclusive."""
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def day_count(start_date: date, end_date: date) -> int:
    """Number of days in the inclusive range (0 if the range is inverted)."""
    return max(0, (end_date - start_date).days + 1)


def _keeps(frequency: Frequency, day: date) -> bool:
    if frequency == Frequency.WEEKDAYS:
        return calendar_weekday(day) not in WEEKEND
    if frequency == Frequency.WEEKENDS:
        return calendar_weekday(day) in WEEKEND
    # DAILY and X_OF_N_DAYS scan every day
    return True


def obligated_dates(
    frequency: Frequency,
    start_date: date,
    end_date: date,
) -> list[date]:
    """
    Ordered obligated days in [start_date, end_date].

    A zero-length range (start == end) yields that single day
    if the frequency keeps it.
    """
    return [d for d in iter_days(start_date, end_date) if _keeps(frequency, d)]


def required_completions(
    frequency: Frequency,
    start_date: date,
    end_date: date,
    total_amount: Optional[Decimal] = None,
    amount_per_success: Optional[Decimal] = None,
) -> int:
    """
    Number of completions a goal needs over its whole range.

    Raises:
        ValueError: X_OF_N_DAYS without a positive amount_per_success
    """
    if frequency == Frequency.X_OF_N_DAYS:
        if total_amount is None or not amount_per_success or amount_per_success <= 0:
            raise ValueError("x-of-n goals need total_amount and a positive amount_per_success")
        affordable = int(Decimal(total_amount) // Decimal(amount_per_success))
        return max(0, min(day_count(start_date, end_date), affordable))

    return len(obligated_dates(frequency, start_date, end_date))


def required_completions_for(goal: Goal) -> int:
    return required_completions(
        goal.frequency,
        goal.start_date,
        goal.end_date,
        goal.total_amount,
        goal.amount_per_success,
    )


def total_amount_for(
    frequency: Frequency,
    start_date: date,
    end_date: date,
    amount_per_success: Decimal,
    target_completions: Optional[int] = None,
) -> Decimal:
    """
    Amount to commit so that total == amount_per_success * required.

    X_OF_N_DAYS goals pick their own target; it is capped at the day count
    and must be at least one.
    """
    if frequency == Frequency.X_OF_N_DAYS:
        if target_completions is None or target_completions < 1:
            raise ValueError("x-of-n goals need a target of at least one completion")
        count = min(target_completions, day_count(start_date, end_date))
    else:
        count = len(obligated_dates(frequency, start_date, end_date))
    return amount_per_success * count
