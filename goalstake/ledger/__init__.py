"""Completion ledger package: per-goal ledger, state machine and aggregation."""

from goalstake.ledger.aggregator import GoalAggregator
from goalstake.ledger.completion_ledger import (
    CompletionLedger,
    DuplicateEntryError,
    EntryNotFoundError,
    GoalMismatchError,
    LedgerError,
)
from goalstake.ledger.state_machine import (
    ALLOWED_TRANSITIONS,
    REFUNDABLE_STATUSES,
    CompletionStateMachine,
    InvalidStateTransitionError,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "REFUNDABLE_STATUSES",
    "CompletionLedger",
    "CompletionStateMachine",
    "DuplicateEntryError",
    "EntryNotFoundError",
    "GoalAggregator",
    "GoalMismatchError",
    "InvalidStateTransitionError",
    "LedgerError",
]
