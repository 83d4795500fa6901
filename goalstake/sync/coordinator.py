"""
Sync Coordinator

Owns the user's in-memory ledgers and keeps them in step with the remote
goal collection.

PROCESS (per remote snapshot):
1. Decode every goal document on its own; a bad one is skipped and logged
2. Rebuild each ledger from the remote completions (last writer wins per day)
3. Keep local records for days with a pending local write ("dirty" days)
4. If the set of goal ids changed, reconcile missed days for every goal
5. Push a read-only projection to registered listeners

CRITICAL: This is the only component that replaces ledgers wholesale.
Everything else mutates single days through the state machine.

Snapshots carry the full goal set, never a delta. A goal that disappears
from the snapshot disappears locally, together with its pending writes.
"""

import asyncio
from datetime import date, datetime, timezone, tzinfo
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from goalstake.audit import AuditLogger
from goalstake.clock import Clock
from goalstake.ledger import CompletionLedger, GoalAggregator
from goalstake.models.goal import (
    CompletionRecord,
    Goal,
    GoalCollectionSnapshot,
    GoalOverview,
    GoalSnapshot,
    ReconciliationReport,
    SyncReport,
    UserProjection,
)
from goalstake.reconciliation import ReconciliationEngine
from goalstake.services.storage import (
    DecodeError,
    GoalDocumentStoreInterface,
    StorageError,
    completion_path,
    decode_goal_document,
    encode_completion,
)


logger = structlog.get_logger(__name__)

ProjectionListener = Callable[[UserProjection], None]


class PendingWrite(BaseModel):
    """A local record the remote store has not confirmed yet."""

    record: CompletionRecord
    since: datetime
    flushed: bool = Field(
        default=False,
        description="Written remotely; waiting for a snapshot to echo it"
    )


class SyncCoordinator:
    """
    Holds goal id -> ledger for one user and applies remote snapshots.

    Usage:
        coordinator = SyncCoordinator(user_id, store, engine, clock)
        coordinator.add_listener(render)
        coordinator.start()
    """

    def __init__(
        self,
        user_id: str,
        store: GoalDocumentStoreInterface,
        engine: ReconciliationEngine,
        clock: Clock,
        tz: tzinfo = timezone.utc,
        audit_logger: Optional[AuditLogger] = None,
        default_currency: str = "USD",
        resubscribe_seconds: float = 5.0,
    ):
        self._user_id = user_id
        self._store = store
        self._engine = engine
        self._clock = clock
        self._tz = tz
        self._audit = audit_logger or AuditLogger()
        self._default_currency = default_currency
        self._resubscribe_seconds = resubscribe_seconds

        self._goals: dict[str, Goal] = {}
        self._ledgers: dict[str, CompletionLedger] = {}
        self._known_ids: Optional[frozenset[str]] = None
        self._dirty: dict[tuple[str, date], PendingWrite] = {}
        self._needs_reconcile: set[str] = set()
        self._listeners: list[ProjectionListener] = []
        self._apply_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> str:
        return self._user_id

    # =========================================================================
    # READ ACCESS
    # =========================================================================

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        return self._goals.get(goal_id)

    def get_ledger(self, goal_id: str) -> Optional[CompletionLedger]:
        return self._ledgers.get(goal_id)

    def goals(self) -> list[Goal]:
        return sorted(self._goals.values(), key=lambda g: (g.start_date, g.title, g.id))

    def ledgers(self) -> list[CompletionLedger]:
        return [self._ledgers[g.id] for g in self.goals()]

    def projection(self) -> UserProjection:
        """Read-only view of every goal, its progress and the overall balance."""
        ledgers = self.ledgers()
        return UserProjection(
            user_id=self._user_id,
            goals=[
                GoalOverview(
                    goal=ledger.goal,
                    progress=ledger.progress(),
                    completions=ledger.records(),
                )
                for ledger in ledgers
            ],
            balance=GoalAggregator.summarize(ledgers),
        )

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, listener: ProjectionListener) -> Callable[[], None]:
        """Register for projections; returns a function that unregisters."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self) -> None:
        if not self._listeners:
            return
        projection = self.projection()
        for listener in list(self._listeners):
            try:
                listener(projection)
            except Exception as e:
                logger.error("projection_listener_failed", error=str(e))

    # =========================================================================
    # PENDING LOCAL WRITES
    # =========================================================================

    def mark_dirty(self, record: CompletionRecord) -> None:
        """Keep `record` over remote data until the store confirms it."""
        self._dirty[(record.goal_id, record.day)] = PendingWrite(
            record=record,
            since=self._clock.now(),
        )

    def clear_dirty(self, goal_id: str, day: date) -> None:
        self._dirty.pop((goal_id, day), None)

    def is_dirty(self, goal_id: str, day: date) -> bool:
        return (goal_id, day) in self._dirty

    async def flush_pending(self) -> int:
        """
        Retry remote writes for dirty days.

        Returns the number of writes that went through.
        """
        written = 0
        for key, pending in list(self._dirty.items()):
            goal_id, day = key
            if goal_id not in self._goals:
                self._dirty.pop(key, None)
                continue
            if pending.flushed:
                continue
            path = completion_path(day)
            try:
                await self._store.write_field(goal_id, path, encode_completion(pending.record))
            except StorageError as e:
                logger.warning("pending_write_failed", goal_id=goal_id, path=path, error=str(e))
                continue
            current = self._dirty.get(key)
            if current is pending:
                self._dirty[key] = pending.model_copy(update={"flushed": True})
            written += 1
        return written

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def adopt_goal(self, goal: Goal) -> CompletionLedger:
        """Track a goal created locally before its snapshot arrives."""
        ledger = self._ledgers.get(goal.id)
        if ledger is None:
            ledger = CompletionLedger(goal)
            self._ledgers[goal.id] = ledger
        else:
            ledger.rebind(goal)
        self._goals[goal.id] = goal
        return ledger

    async def apply_snapshot(self, snapshot: GoalCollectionSnapshot) -> SyncReport:
        """
        Replace the ledgers with the snapshot's contents.

        Never raises for a malformed document; the goal is skipped.
        """
        async with self._apply_lock:
            decoded, skipped = await self._decode(snapshot)

            goals: dict[str, Goal] = {}
            ledgers: dict[str, CompletionLedger] = {}
            for goal_id, goal_snapshot in decoded.items():
                goals[goal_id] = goal_snapshot.goal
                ledgers[goal_id] = self._rebuild(goal_snapshot)
            for document_id in skipped:
                # Still present remotely; keep what we had until it decodes again
                if document_id in self._ledgers and document_id not in ledgers:
                    goals[document_id] = self._goals[document_id]
                    ledgers[document_id] = self._ledgers[document_id]

            ids = frozenset(goals)
            goal_set_changed = self._known_ids is None or ids != self._known_ids
            self._known_ids = ids
            self._goals = goals
            self._ledgers = ledgers
            self._dirty = {k: v for k, v in self._dirty.items() if k[0] in ids}
            self._needs_reconcile &= ids

        targets = set(ids) if goal_set_changed else set()
        targets |= self._needs_reconcile
        reconciliations = await self._reconcile(targets, self._clock.today())
        await self.flush_pending()

        await self._audit.log_snapshot_applied(
            self._user_id,
            goal_count=len(ids),
            skipped=len(skipped),
            goal_set_changed=goal_set_changed,
            from_cache=snapshot.from_cache,
        )
        self.notify()

        return SyncReport(
            applied_goal_ids=sorted(decoded),
            skipped_documents=skipped,
            goal_set_changed=goal_set_changed,
            from_cache=snapshot.from_cache,
            reconciliations=reconciliations,
        )

    async def _decode(
        self,
        snapshot: GoalCollectionSnapshot,
    ) -> tuple[dict[str, GoalSnapshot], list[str]]:
        decoded: dict[str, GoalSnapshot] = {}
        skipped: list[str] = []
        for position, document in enumerate(snapshot.documents):
            try:
                goal_snapshot = decode_goal_document(document, self._tz, self._default_currency)
                if goal_snapshot.goal.user_id != self._user_id:
                    raise DecodeError(goal_snapshot.goal.id, "belongs to another user")
            except DecodeError as e:
                document_id = e.document_id if e.document_id != "<unknown>" else f"#{position}"
                skipped.append(document_id)
                logger.warning("goal_decode_failed", document_id=document_id, error=str(e))
                await self._audit.log_goal_decode_failed(document_id, str(e))
                continue
            decoded[goal_snapshot.goal.id] = goal_snapshot
        return decoded, skipped

    def _rebuild(self, goal_snapshot: GoalSnapshot) -> CompletionLedger:
        goal = goal_snapshot.goal
        by_day = {record.day: record for record in goal_snapshot.completions}

        for (goal_id, day), pending in list(self._dirty.items()):
            if goal_id != goal.id:
                continue
            remote = by_day.get(day)
            if remote is not None and remote.status == pending.record.status:
                # Echoed back; the remote copy is now authoritative
                self._dirty.pop((goal_id, day), None)
            elif pending.flushed and remote is not None:
                # Our write landed and someone wrote after it
                self._dirty.pop((goal_id, day), None)
            else:
                by_day[day] = pending.record

        return CompletionLedger(goal, by_day.values())

    # =========================================================================
    # RECONCILIATION
    # =========================================================================

    async def _reconcile(
        self,
        goal_ids: set[str],
        today: date,
    ) -> list[ReconciliationReport]:
        targets = [g for g in sorted(goal_ids) if g in self._ledgers]
        if not targets:
            return []
        reports = await asyncio.gather(*(
            self._engine.reconcile_missed(self._goals[g], self._ledgers[g], today)
            for g in targets
        ))
        for report in reports:
            if report.has_failures:
                self._needs_reconcile.add(report.goal_id)
            elif not report.coalesced:
                self._needs_reconcile.discard(report.goal_id)
        return list(reports)

    async def reconcile_all(self, today: Optional[date] = None) -> list[ReconciliationReport]:
        """Foreground trigger: reconcile every goal and retry pending writes."""
        reports = await self._reconcile(set(self._ledgers), today or self._clock.today())
        await self.flush_pending()
        self.notify()
        return reports

    # =========================================================================
    # SUBSCRIPTION LOOP
    # =========================================================================

    async def run(self) -> None:
        """Apply snapshots from the store until cancelled."""
        while True:
            try:
                async for snapshot in self._store.subscribe(self._user_id):
                    await self.apply_snapshot(snapshot)
                return
            except StorageError as e:
                logger.error("subscription_failed", user_id=self._user_id, error=str(e))
                await asyncio.sleep(self._resubscribe_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
