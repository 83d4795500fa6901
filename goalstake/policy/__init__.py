"""Frequency policy package."""

from goalstake.policy.frequency import (
    calendar_weekday,
    day_count,
    iter_days,
    obligated_dates,
    required_completions,
    required_completions_for,
    total_amount_for,
)

__all__ = [
    "calendar_weekday",
    "day_count",
    "iter_days",
    "obligated_dates",
    "required_completions",
    "required_completions_for",
    "total_amount_for",
]
