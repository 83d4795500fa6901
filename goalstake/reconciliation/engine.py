"""
Reconciliation Engine

Backfills `missed` records for obligated days that elapsed with nothing
recorded.

PROCESS:
1. Scan (pure): obligated days from the goal's start up to yesterday
   (or the goal's end, whichever is earlier) that have no ledger entry
2. Persist: one create-if-absent write per day, issued together
3. Apply: only days whose write succeeded enter the in-memory ledger

CRITICAL: A synthesized `missed` record never overwrites anything. The
store-side write is create-if-absent, and the ledger insert falls back to
the state machine's creation rule, so a real attestation always wins.

A pass for a goal that is already being reconciled is coalesced: the
running pass loops once more with the latest arguments instead of two
passes racing over the same date range.
"""

import asyncio
from datetime import date, timedelta
from typing import Optional

import structlog

from goalstake.audit import AuditLogger
from goalstake.ledger import (
    CompletionLedger,
    CompletionStateMachine,
    DuplicateEntryError,
)
from goalstake.models.goal import CompletionRecord, Goal, ReconciliationReport
from goalstake.policy import obligated_dates
from goalstake.services.storage import (
    GoalDocumentStoreInterface,
    completion_path,
    encode_completion,
)


logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """Synthesizes and persists missed completions, one goal at a time."""

    def __init__(
        self,
        store: GoalDocumentStoreInterface,
        state_machine: CompletionStateMachine,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._state_machine = state_machine
        self._audit = audit_logger or AuditLogger()
        self._running: set[str] = set()
        self._pending: dict[str, tuple[Goal, CompletionLedger, date]] = {}

    # =========================================================================
    # SCAN
    # =========================================================================

    def find_missed(
        self,
        goal: Goal,
        ledger: CompletionLedger,
        today: date,
    ) -> list[CompletionRecord]:
        """
        Missed records that a pass would create, without touching anything.

        Only days strictly before `today` are considered.
        """
        end_for_missed = min(today - timedelta(days=1), goal.end_date)
        if goal.start_date > end_for_missed:
            return []
        return [
            self._state_machine.synthesize_missed(goal.id, day)
            for day in obligated_dates(goal.frequency, goal.start_date, end_for_missed)
            if day not in ledger
        ]

    # =========================================================================
    # RECONCILE
    # =========================================================================

    def is_running(self, goal_id: str) -> bool:
        return goal_id in self._running

    async def reconcile_missed(
        self,
        goal: Goal,
        ledger: CompletionLedger,
        today: date,
    ) -> ReconciliationReport:
        """
        Backfill missed days for one goal.

        Idempotent: a second run on the same ledger state finds nothing to do.

        Returns:
            ReconciliationReport listing the records applied and the days
            whose write failed (retried on the next pass)
        """
        if goal.id in self._running:
            self._pending[goal.id] = (goal, ledger, today)
            logger.debug("reconciliation_coalesced", goal_id=goal.id)
            return ReconciliationReport(goal_id=goal.id, coalesced=True)

        self._running.add(goal.id)
        try:
            report = await self._run_pass(goal, ledger, today)
            while goal.id in self._pending:
                goal, ledger, today = self._pending.pop(goal.id)
                report = report.merge(await self._run_pass(goal, ledger, today))
        finally:
            self._running.discard(goal.id)
            self._pending.pop(goal.id, None)

        if report.synthesized:
            await self._audit.log_missed_backfilled(
                goal.id, [r.day for r in report.synthesized]
            )
        if report.failed_dates:
            await self._audit.log_reconciliation_failure(goal.id, report.failed_dates)
        return report

    async def _run_pass(
        self,
        goal: Goal,
        ledger: CompletionLedger,
        today: date,
    ) -> ReconciliationReport:
        missed = self.find_missed(goal, ledger, today)
        if not missed:
            return ReconciliationReport(goal_id=goal.id)

        results = await asyncio.gather(
            *(
                self._store.create_field(
                    goal.id, completion_path(record.day), encode_completion(record)
                )
                for record in missed
            ),
            return_exceptions=True,
        )

        synthesized: list[CompletionRecord] = []
        failed: list[date] = []
        for record, result in zip(missed, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                failed.append(record.day)
                logger.warning(
                    "missed_write_failed",
                    goal_id=goal.id,
                    day=record.day.isoformat(),
                    error=str(result),
                )
                continue
            if result is False:
                # Remote already holds a record for that day; the next
                # snapshot brings it into the ledger
                continue
            if self._apply(ledger, record):
                synthesized.append(record)

        logger.info(
            "reconciliation_pass",
            goal_id=goal.id,
            synthesized=len(synthesized),
            failed=len(failed),
        )
        return ReconciliationReport(
            goal_id=goal.id,
            synthesized=synthesized,
            failed_dates=failed,
        )

    def _apply(self, ledger: CompletionLedger, record: CompletionRecord) -> bool:
        """Insert a persisted missed record; False if the day was taken meanwhile."""
        try:
            ledger.put(record)
            return True
        except DuplicateEntryError as e:
            winner = self._state_machine.resolve_creation(e.existing, record)
            if winner is not e.existing:
                ledger.replace(winner)
                return True
            return False
