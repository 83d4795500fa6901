"""
Completion Ledger

In-memory projection of one goal's completions, keyed by calendar day.

GUARANTEES:
- At most one record per day (raw inserts never overwrite)
- Iteration is always in day order
- Derived figures are recomputed from the records, never cached

Persistence is the caller's job; the ledger only mutates its own map.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from goalstake.models.goal import (
    ATTESTED_STATUSES,
    COMPLETED_STATUSES,
    EARNED_STATUSES,
    CompletionRecord,
    Goal,
    GoalProgress,
)
from goalstake.policy.frequency import required_completions_for


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class DuplicateEntryError(LedgerError):
    """A record already exists for this day."""

    def __init__(self, existing: CompletionRecord):
        self.existing = existing
        super().__init__(
            f"Completion already recorded for {existing.goal_id} "
            f"on {existing.day.isoformat()} ({existing.status.value})"
        )


class EntryNotFoundError(LedgerError):
    """No record exists for this day."""
    pass


class GoalMismatchError(LedgerError):
    """Record belongs to a different goal than the ledger."""
    pass


class CompletionLedger:
    """
    Mapping from day to CompletionRecord for a single goal.

    `put` is the only way to add a day. `replace` is reserved for state
    machine transitions and requires the day to exist already.
    """

    def __init__(self, goal: Goal, records: Iterable[CompletionRecord] = ()):
        self._goal = goal
        self._entries: dict[date, CompletionRecord] = {}
        for record in records:
            self.put(record)

    @property
    def goal(self) -> Goal:
        return self._goal

    @property
    def goal_id(self) -> str:
        return self._goal.id

    def rebind(self, goal: Goal) -> None:
        """Point the ledger at a refreshed copy of the same goal."""
        if goal.id != self._goal.id:
            raise GoalMismatchError(f"Cannot rebind ledger {self._goal.id} to {goal.id}")
        self._goal = goal

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _check_owner(self, record: CompletionRecord) -> None:
        if record.goal_id != self._goal.id:
            raise GoalMismatchError(
                f"Record for goal {record.goal_id} cannot enter ledger {self._goal.id}"
            )

    def put(self, record: CompletionRecord) -> None:
        """
        Insert a record for a previously empty day.

        Raises:
            DuplicateEntryError: A record already exists for that day
        """
        self._check_owner(record)
        existing = self._entries.get(record.day)
        if existing is not None:
            raise DuplicateEntryError(existing)
        self._entries[record.day] = record

    def replace(self, record: CompletionRecord) -> CompletionRecord:
        """
        Swap in the result of a status transition.

        Returns the record that was replaced.

        Raises:
            EntryNotFoundError: Nothing recorded for that day yet
        """
        self._check_owner(record)
        previous = self._entries.get(record.day)
        if previous is None:
            raise EntryNotFoundError(
                f"No completion for {self._goal.id} on {record.day.isoformat()}"
            )
        self._entries[record.day] = record
        return previous

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, day: date) -> Optional[CompletionRecord]:
        return self._entries.get(day)

    def __contains__(self, day: date) -> bool:
        return day in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CompletionRecord]:
        for day in sorted(self._entries):
            yield self._entries[day]

    def records(self) -> list[CompletionRecord]:
        return list(self)

    def completed_count(self) -> int:
        """Records that count toward progress (verified or refunded)."""
        return sum(1 for r in self._entries.values() if r.status in COMPLETED_STATUSES)

    def earned_amount(self) -> Decimal:
        """
        Money earned back so far.

        Only refunded records count; verified-but-unrefunded days
        count toward progress, not toward money.
        """
        refunded = sum(1 for r in self._entries.values() if r.status in EARNED_STATUSES)
        return self._goal.amount_per_success * refunded

    def has_completion_for_date(self, day: date) -> bool:
        record = self._entries.get(day)
        return record is not None and record.status in ATTESTED_STATUSES

    def required_completions(self) -> int:
        return required_completions_for(self._goal)

    def progress(self) -> GoalProgress:
        return GoalProgress(
            goal_id=self._goal.id,
            required_completions=self.required_completions(),
            completed_count=self.completed_count(),
            earned_amount=self.earned_amount(),
        )
