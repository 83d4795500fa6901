"""
Main Orchestrator for Goalstake

This module ties together all the components and defines the operations
the UI calls:
1. Goal creation (policy -> charge -> store)
2. Attesting a day (window check -> compare-and-write -> ledger -> refund)
3. Status updates and refunds (state machine -> gateway -> store -> ledger)
4. Read-side figures (balance, per-goal progress, projection)

DESIGN DECISION: The orchestrator enforces the boundaries:
- No refund request without passing the state machine's guard first
- No local ledger change before the remote write for it succeeded
  (the one exception: a refund that already moved money is kept locally
  and marked dirty when its status write fails)
- Every step is audited

CRITICAL: Transitions on one (goal, day) run under that day's lock, so two
concurrent attempts can never both pass the same guard.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

import structlog

from goalstake.audit import AuditLogger, create_correlation_id
from goalstake.clock import Clock, SystemClock, normalize_day
from goalstake.config import LedgerSettings, get_settings
from goalstake.ledger import (
    CompletionLedger,
    CompletionStateMachine,
    DuplicateEntryError,
    EntryNotFoundError,
    GoalAggregator,
    InvalidStateTransitionError,
)
from goalstake.models.goal import (
    BalanceSummary,
    ChargeResult,
    CompletionRecord,
    CompletionStatus,
    Frequency,
    Goal,
    GoalProgress,
    RefundOutcome,
    ReconciliationReport,
    UserProjection,
    VerificationMethod,
    to_minor_units,
)
from goalstake.policy import total_amount_for
from goalstake.reconciliation import ReconciliationEngine
from goalstake.services.payments import (
    GatewayError,
    HttpPaymentGateway,
    PaymentGatewayInterface,
)
from goalstake.services.storage import (
    GoalDocumentStoreInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsGoalStore,
    InMemoryGoalDocumentStore,
    StorageError,
    completion_path,
    decode_goal_document,
    encode_completion,
    encode_goal,
    transition_updates,
)
from goalstake.sync import SyncCoordinator


logger = structlog.get_logger(__name__)


class GoalServiceError(Exception):
    """Base exception for goal service operations."""
    pass


class GoalNotFoundError(GoalServiceError):
    """No goal with that id is tracked for the user."""
    pass


class CompletionWindowError(GoalServiceError):
    """The day cannot be attested (outside the goal, in the future, or too old)."""
    pass


class GoalService:
    """
    Upward interface of the completion ledger.

    Reads come from the coordinator's in-memory ledgers. Writes go to the
    store first and reach the ledger only once the store accepted them.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        store: GoalDocumentStoreInterface,
        gateway: PaymentGatewayInterface,
        state_machine: CompletionStateMachine,
        clock: Clock,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[LedgerSettings] = None,
        gateway_timeout: float = 15.0,
    ):
        self._coordinator = coordinator
        self._store = store
        self._gateway = gateway
        self._state_machine = state_machine
        self._clock = clock
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or LedgerSettings()
        self._gateway_timeout = gateway_timeout
        self._tz = self._settings.tzinfo

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require(self, goal_id: str) -> tuple[Goal, CompletionLedger]:
        goal = self._coordinator.get_goal(goal_id)
        ledger = self._coordinator.get_ledger(goal_id)
        if goal is None or ledger is None:
            raise GoalNotFoundError(f"Goal not found: {goal_id}")
        return goal, ledger

    def _apply_local(self, record: CompletionRecord) -> None:
        """Put or replace a record in whichever ledger currently tracks the goal."""
        ledger = self._coordinator.get_ledger(record.goal_id)
        if ledger is None:
            return
        if record.day in ledger:
            ledger.replace(record)
        else:
            ledger.put(record)

    def _check_window(self, goal: Goal, day: date) -> None:
        today = self._clock.today()
        if day < goal.start_date or day > goal.end_date:
            raise CompletionWindowError(
                f"{day.isoformat()} is outside the goal ({goal.start_date} to {goal.end_date})"
            )
        if day > today:
            raise CompletionWindowError(f"{day.isoformat()} is in the future")
        if (today - day).days > self._settings.backdating_window_days:
            raise CompletionWindowError(
                f"{day.isoformat()} is more than {self._settings.backdating_window_days} "
                "day(s) in the past"
            )

    def _resolve(
        self,
        existing: Optional[CompletionRecord],
        incoming: CompletionRecord,
    ) -> CompletionRecord:
        """Creation rule, with a collision of two real records settled for the existing one."""
        try:
            return self._state_machine.resolve_creation(existing, incoming)
        except DuplicateEntryError as e:
            logger.info(
                "completion_already_recorded",
                goal_id=incoming.goal_id,
                day=incoming.day.isoformat(),
                status=e.existing.status.value,
            )
            return e.existing

    def _current(self, goal_id: str, day: date, fallback: CompletionRecord) -> CompletionRecord:
        ledger = self._coordinator.get_ledger(goal_id)
        record = ledger.get(day) if ledger is not None else None
        return record or fallback

    async def _refresh(self, goal: Goal, record: CompletionRecord) -> CompletionRecord:
        """
        The day's record as the store holds it now.

        A day with a pending local write keeps the local record; otherwise a
        remote record with a different status replaces the local one.
        """
        if self._coordinator.is_dirty(goal.id, record.day):
            return record
        remote = await self._remote_completion(goal, record.day)
        if remote is None or remote.status == record.status:
            return record
        logger.info(
            "completion_refreshed_from_store",
            goal_id=goal.id,
            day=record.day.isoformat(),
            local_status=record.status.value,
            remote_status=remote.status.value,
        )
        self._apply_local(remote)
        return remote

    async def _remote_completion(self, goal: Goal, day: date) -> Optional[CompletionRecord]:
        document = await self._store.read_document(goal.id)
        if document is None:
            raise GoalNotFoundError(f"Goal not found remotely: {goal.id}")
        snapshot = decode_goal_document(document, self._tz, self._settings.default_currency)
        for record in snapshot.completions:
            if record.day == day:
                return record
        return None

    # =========================================================================
    # GOALS
    # =========================================================================

    async def create_goal(
        self,
        title: str,
        frequency: Frequency,
        amount_per_success: Decimal,
        start_date: date,
        end_date: date,
        verification_method: VerificationMethod,
        currency: Optional[str] = None,
        target_completions: Optional[int] = None,
    ) -> tuple[Goal, ChargeResult]:
        """
        Create and fund a goal.

        The charge is created first; nothing is stored if it fails.

        Returns:
            (goal, charge) - the client confirms the charge with its secret

        Raises:
            GoalServiceError: The goal has no obligated days
            GatewayError: The charge could not be created
            StorageError: The goal document could not be stored
        """
        correlation_id = create_correlation_id()
        currency = (currency or self._settings.default_currency).upper()
        total = total_amount_for(
            frequency, start_date, end_date, amount_per_success, target_completions
        )
        if total <= 0:
            raise GoalServiceError("Goal has no obligated days in its date range")

        goal = Goal(
            user_id=self._coordinator.user_id,
            title=title,
            frequency=frequency,
            amount_per_success=amount_per_success,
            currency=currency,
            start_date=start_date,
            end_date=end_date,
            total_amount=total,
            verification_method=verification_method,
        )

        try:
            charge = await asyncio.wait_for(
                self._gateway.create_charge(to_minor_units(total, currency), currency),
                self._gateway_timeout,
            )
        except asyncio.TimeoutError:
            await self._audit.log_external_service_error(
                "payment_gateway", "Charge creation timed out", correlation_id
            )
            raise GatewayError("Charge creation timed out")
        except GatewayError as e:
            await self._audit.log_external_service_error(
                "payment_gateway", str(e), correlation_id
            )
            raise

        goal = goal.model_copy(update={"payment_intent_id": charge.payment_reference})
        await self._store.create_document(encode_goal(goal))
        self._coordinator.adopt_goal(goal)

        await self._audit.log_goal_created(
            goal.id, goal.title, goal.total_amount, goal.currency, correlation_id
        )
        self._coordinator.notify()
        return goal, charge

    # =========================================================================
    # COMPLETIONS
    # =========================================================================

    async def add_completion(
        self,
        goal_id: str,
        day: Union[date, datetime],
        verification_photo_url: Optional[str] = None,
    ) -> CompletionRecord:
        """
        Attest a day.

        Self-attested goals go straight to verified (and are refunded when
        auto refunds are on); photo goals wait in pendingVerification.

        Returns:
            The day's record after any automatic refund

        Raises:
            GoalNotFoundError / CompletionWindowError: Bad goal or day
            StorageError: The write failed; nothing was applied
        """
        day = normalize_day(day, self._tz)
        goal, _ = self._require(goal_id)
        self._check_window(goal, day)
        if goal.verification_method == VerificationMethod.PHOTO_ATTESTED and not verification_photo_url:
            raise GoalServiceError("Photo verification requires a photo")

        correlation_id = create_correlation_id()
        async with self._state_machine.lock(goal.id, day):
            _, ledger = self._require(goal_id)
            record = self._state_machine.attest(
                goal, day, self._clock.now(), verification_photo_url
            )
            existing = ledger.get(day)
            if existing is not None and self._resolve(existing, record) is existing:
                return existing

            path = completion_path(day)
            try:
                # A local missed record may be stale; the store decides
                created = existing is None and await self._store.create_field(
                    goal.id, path, encode_completion(record)
                )
                if not created:
                    remote = await self._remote_completion(goal, day)
                    if remote is not None and self._resolve(remote, record) is remote:
                        self._apply_local(remote)
                        return remote
                    await self._store.write_field(goal.id, path, encode_completion(record))
            except StorageError as e:
                await self._audit.log_persistence_failed(goal.id, path, str(e), correlation_id)
                raise

            self._apply_local(record)

        await self._audit.log_completion_attested(
            goal.id, day, record.status.value, correlation_id
        )
        self._coordinator.notify()

        if record.status == CompletionStatus.VERIFIED and self._settings.auto_refund_verified:
            await self.trigger_refund(goal.id, day)
        return self._current(goal.id, day, record)

    async def update_completion_status(
        self,
        goal_id: str,
        day: Union[date, datetime],
        new_status: CompletionStatus,
    ) -> CompletionRecord:
        """
        Move a day through review (pendingVerification -> verified | rejected).

        Delivering the same status twice is a no-op. Refund statuses are
        only reachable through `trigger_refund`.

        Raises:
            InvalidStateTransitionError: Transition not allowed
            EntryNotFoundError: Nothing recorded for the day
            StorageError: The write failed; nothing was applied
        """
        day = normalize_day(day, self._tz)
        goal, _ = self._require(goal_id)

        async with self._state_machine.lock(goal.id, day):
            _, ledger = self._require(goal_id)
            record = ledger.get(day)
            if record is None:
                raise EntryNotFoundError(f"No completion for {goal.id} on {day.isoformat()}")
            record = await self._refresh(goal, record)
            if record.status == new_status or (
                new_status == CompletionStatus.VERIFIED
                and record.status in (CompletionStatus.REFUNDED, CompletionStatus.REFUND_FAILED)
            ):
                # Repeated delivery of a review that already happened
                return record
            if new_status in (CompletionStatus.REFUNDED, CompletionStatus.REFUND_FAILED):
                raise InvalidStateTransitionError(
                    record.status, new_status, "Refund statuses are set by trigger_refund"
                )

            updated = self._state_machine.transition(record, new_status, at=self._clock.now())
            try:
                await self._store.write_fields(goal.id, transition_updates(record, updated))
            except StorageError as e:
                await self._audit.log_persistence_failed(goal.id, completion_path(day), str(e))
                raise
            self._apply_local(updated)

        await self._audit.log_status_changed(
            goal.id, day, record.status.value, updated.status.value
        )
        self._coordinator.notify()

        if updated.status == CompletionStatus.VERIFIED and self._settings.auto_refund_verified:
            await self.trigger_refund(goal.id, day)
            return self._current(goal.id, day, updated)
        return updated

    async def trigger_refund(
        self,
        goal_id: str,
        day: Union[date, datetime],
    ) -> RefundOutcome:
        """
        Refund one success worth of money for a verified day.

        CRITICAL: The state machine guard runs before the gateway is called,
        against the store's current record rather than the local copy, so a
        day another client already refunded is never refunded again.
        A failed or timed-out call leaves the day in refundFailed, retryable.

        Raises:
            InvalidStateTransitionError: Day is not verified or refundFailed
            EntryNotFoundError: Nothing recorded for the day
            StorageError: The store could not be read; no money moved
        """
        day = normalize_day(day, self._tz)
        goal, _ = self._require(goal_id)

        async with self._state_machine.lock(goal.id, day):
            goal, ledger = self._require(goal_id)
            record = ledger.get(day)
            if record is None:
                raise EntryNotFoundError(f"No completion for {goal.id} on {day.isoformat()}")
            record = await self._refresh(goal, record)
            if record.status == CompletionStatus.REFUNDED:
                return RefundOutcome(
                    goal_id=goal.id, day=day, status=record.status,
                    refunded=True, already_processed=True,
                )
            self._state_machine.ensure_refundable(record)
            if not self._state_machine.claim_refund(record):
                return RefundOutcome(
                    goal_id=goal.id, day=day, status=record.status,
                    refunded=False, already_processed=True,
                )

            correlation_id = create_correlation_id()
            error: Optional[str] = None
            try:
                try:
                    if not goal.payment_intent_id:
                        raise GatewayError("Goal has no payment reference to refund against")
                    await asyncio.wait_for(
                        self._gateway.refund(
                            goal.payment_intent_id,
                            to_minor_units(goal.amount_per_success, goal.currency),
                        ),
                        self._gateway_timeout,
                    )
                except asyncio.TimeoutError:
                    error = f"Refund timed out after {self._gateway_timeout:g}s"
                except GatewayError as e:
                    error = str(e) or type(e).__name__
                except Exception as e:
                    # Unexpected gateway failure still ends in refundFailed
                    logger.error(
                        "refund_gateway_error",
                        goal_id=goal.id,
                        day=day.isoformat(),
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    error = str(e) or type(e).__name__

                if error is None:
                    updated = self._state_machine.transition(
                        record, CompletionStatus.REFUNDED, at=self._clock.now()
                    )
                else:
                    updated = self._state_machine.transition(
                        record, CompletionStatus.REFUND_FAILED, error=error
                    )

                persisted = True
                try:
                    await self._store.write_fields(goal.id, transition_updates(record, updated))
                except StorageError as e:
                    persisted = False
                    self._coordinator.mark_dirty(updated)
                    await self._audit.log_persistence_failed(
                        goal.id, completion_path(day), str(e), correlation_id
                    )
                self._apply_local(updated)
            finally:
                # From here on the record's status guards the day
                self._state_machine.release_refund(record)

        if error is None:
            await self._audit.log_refund_succeeded(
                goal.id, day, goal.amount_per_success, goal.currency, correlation_id
            )
        else:
            logger.warning("refund_failed", goal_id=goal.id, day=day.isoformat(), error=error)
            await self._audit.log_refund_failed(goal.id, day, error, correlation_id)
        self._coordinator.notify()

        return RefundOutcome(
            goal_id=goal.id,
            day=day,
            status=updated.status,
            refunded=error is None,
            persisted=persisted,
            error=error,
        )

    # =========================================================================
    # READS AND TRIGGERS
    # =========================================================================

    def current_balance(self) -> Decimal:
        return GoalAggregator.balance(self._coordinator.ledgers())

    def balance_summary(self) -> BalanceSummary:
        return GoalAggregator.summarize(self._coordinator.ledgers())

    def goal_progress(self, goal_id: str) -> GoalProgress:
        _, ledger = self._require(goal_id)
        return ledger.progress()

    def projection(self) -> UserProjection:
        return self._coordinator.projection()

    async def reconcile(self, today: Optional[date] = None) -> list[ReconciliationReport]:
        """App-foreground trigger: backfill missed days and retry pending writes."""
        return await self._coordinator.reconcile_all(today)


def create_app_components(
    user_id: str,
    use_storage: bool = True,
    gateway: Optional[PaymentGatewayInterface] = None,
    clock: Optional[Clock] = None,
) -> tuple[GoalService, SyncCoordinator, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        user_id: Owner of the goal collection
        use_storage: Whether to use Google Sheets storage.
                    Set to False to run against an in-memory store.

    Returns:
        (goal_service, sync_coordinator, sheets_client)
    """
    settings = get_settings()
    ledger_settings = settings.ledger
    sheets_client = None
    store: Optional[GoalDocumentStoreInterface] = None
    audit_logger = None

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            store = GoogleSheetsGoalStore(
                user_id, sheets_client, ledger_settings.snapshot_poll_seconds
            )
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            store = None

    if store is None:
        store = InMemoryGoalDocumentStore(user_id)
        audit_logger = AuditLogger()  # Local-only logging

    gateway_settings = settings.payment_gateway
    clock = clock or SystemClock(ledger_settings.tzinfo)
    state_machine = CompletionStateMachine()
    engine = ReconciliationEngine(store, state_machine, audit_logger)
    coordinator = SyncCoordinator(
        user_id,
        store,
        engine,
        clock,
        tz=ledger_settings.tzinfo,
        audit_logger=audit_logger,
        default_currency=ledger_settings.default_currency,
        resubscribe_seconds=ledger_settings.resubscribe_seconds,
    )
    service = GoalService(
        coordinator,
        store,
        gateway or HttpPaymentGateway(gateway_settings),
        state_machine,
        clock,
        audit_logger=audit_logger,
        settings=ledger_settings,
        gateway_timeout=gateway_settings.timeout_seconds,
    )
    return service, coordinator, sheets_client
