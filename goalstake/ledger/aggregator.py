"""
Goal Aggregator

Folds every ledger of a user into one balance:

    balance = sum(earned_amount(goal) - total_amount(goal))

Pure and read-only. Recomputed in full whenever a ledger changes;
there is no incremental state to drift.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Iterable

from goalstake.ledger.completion_ledger import CompletionLedger
from goalstake.models.goal import BalanceSummary


class GoalAggregator:
    """Reducer over a user's completion ledgers."""

    @staticmethod
    def balance(ledgers: Iterable[CompletionLedger]) -> Decimal:
        """Earned minus committed across all goals (0 for no goals)."""
        return sum(
            (ledger.earned_amount() - ledger.goal.total_amount for ledger in ledgers),
            Decimal("0"),
        )

    @staticmethod
    def summarize(ledgers: Iterable[CompletionLedger]) -> BalanceSummary:
        """Balance plus its parts, and a per-currency breakdown."""
        committed = Decimal("0")
        earned = Decimal("0")
        by_currency: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        count = 0

        for ledger in ledgers:
            goal_earned = ledger.earned_amount()
            committed += ledger.goal.total_amount
            earned += goal_earned
            by_currency[ledger.goal.currency] += goal_earned - ledger.goal.total_amount
            count += 1

        return BalanceSummary(
            goal_count=count,
            total_committed=committed,
            total_earned=earned,
            balance=earned - committed,
            by_currency=dict(by_currency),
        )
