"""
Completion State Machine

Governs how a completion record moves between statuses:

    pendingVerification -> verified | rejected
    verified            -> refunded | refundFailed
    refundFailed        -> refunded | refundFailed   (caller-initiated retries)
    (absent)            -> missed                    (reconciliation only)

missed, rejected and refunded are terminal.

CRITICAL: A refund may only be attempted from verified or refundFailed.
The guard runs BEFORE any gateway call so a bad request never moves money.

The machine also owns the per-day locks that serialize transitions and the
refund claims that stop a duplicated "verified" notification from
refunding the same day twice.
"""

import asyncio
import weakref
from datetime import date, datetime
from typing import Optional

from goalstake.ledger.completion_ledger import DuplicateEntryError
from goalstake.models.goal import (
    CompletionRecord,
    CompletionStatus,
    Goal,
    VerificationMethod,
)


class InvalidStateTransitionError(Exception):
    """The requested transition is not allowed from the record's status."""

    def __init__(
        self,
        current: CompletionStatus,
        target: CompletionStatus,
        message: Optional[str] = None,
    ):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot move completion from {current.value} to {target.value}"
        )


ALLOWED_TRANSITIONS: dict[CompletionStatus, frozenset[CompletionStatus]] = {
    CompletionStatus.PENDING_VERIFICATION: frozenset({
        CompletionStatus.VERIFIED,
        CompletionStatus.REJECTED,
    }),
    CompletionStatus.VERIFIED: frozenset({
        CompletionStatus.REFUNDED,
        CompletionStatus.REFUND_FAILED,
    }),
    CompletionStatus.REFUND_FAILED: frozenset({
        CompletionStatus.REFUNDED,
        CompletionStatus.REFUND_FAILED,
    }),
    CompletionStatus.REFUNDED: frozenset(),
    CompletionStatus.REJECTED: frozenset(),
    CompletionStatus.MISSED: frozenset(),
}

REFUNDABLE_STATUSES = frozenset({
    CompletionStatus.VERIFIED,
    CompletionStatus.REFUND_FAILED,
})

RefundKey = tuple[str, date, Optional[datetime]]


class CompletionStateMachine:
    """Transition rules plus per-day serialization for completion records."""

    def __init__(self):
        # Locks live only while some caller holds or awaits them
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()
        self._refund_claims: set[RefundKey] = set()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def can_transition(current: CompletionStatus, target: CompletionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[current]

    def transition(
        self,
        record: CompletionRecord,
        target: CompletionStatus,
        at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> CompletionRecord:
        """
        Produce the record that results from moving to `target`.

        The input record is left untouched.

        Raises:
            InvalidStateTransitionError: Transition not allowed
        """
        if not self.can_transition(record.status, target):
            raise InvalidStateTransitionError(record.status, target)

        update: dict = {"status": target}
        if target == CompletionStatus.VERIFIED:
            update["verified_at"] = at
        elif target == CompletionStatus.REFUNDED:
            update["refunded_at"] = at
            update["refund_error"] = None
        elif target == CompletionStatus.REFUND_FAILED:
            update["refund_error"] = (error or "Refund failed")[:500]
        return record.model_copy(update=update)

    def ensure_refundable(self, record: CompletionRecord) -> None:
        """
        Raises:
            InvalidStateTransitionError: Record is not verified or refundFailed
        """
        if record.status not in REFUNDABLE_STATUSES:
            raise InvalidStateTransitionError(
                record.status,
                CompletionStatus.REFUNDED,
                f"Cannot refund a completion in {record.status.value} state. "
                "Only verified or refundFailed completions can be refunded.",
            )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @staticmethod
    def initial_status(method: VerificationMethod) -> CompletionStatus:
        """Self-attested completions skip review and start out verified."""
        if method == VerificationMethod.SELF_ATTESTED:
            return CompletionStatus.VERIFIED
        return CompletionStatus.PENDING_VERIFICATION

    def attest(
        self,
        goal: Goal,
        day: date,
        at: datetime,
        verification_photo_url: Optional[str] = None,
    ) -> CompletionRecord:
        status = self.initial_status(goal.verification_method)
        return CompletionRecord(
            goal_id=goal.id,
            day=day,
            status=status,
            verification_photo_url=verification_photo_url,
            verified_at=at if status == CompletionStatus.VERIFIED else None,
        )

    @staticmethod
    def synthesize_missed(goal_id: str, day: date) -> CompletionRecord:
        return CompletionRecord(goal_id=goal_id, day=day, status=CompletionStatus.MISSED)

    @staticmethod
    def resolve_creation(
        existing: Optional[CompletionRecord],
        incoming: CompletionRecord,
    ) -> CompletionRecord:
        """
        Decide which record owns a day when two creations collide.

        - nothing there yet: the incoming record
        - same status: the existing record (no-op)
        - a synthesized missed record never beats a real attestation

        Raises:
            DuplicateEntryError: Two different real records for the same day
        """
        if existing is None:
            return incoming
        if existing.status == incoming.status:
            return existing
        if incoming.is_synthesized:
            return existing
        if existing.is_synthesized:
            return incoming
        raise DuplicateEntryError(existing)

    # ------------------------------------------------------------------
    # Serialization and refund de-duplication
    # ------------------------------------------------------------------

    def lock(self, goal_id: str, day: date) -> asyncio.Lock:
        """Lock serializing every transition on (goal_id, day)."""
        key = (goal_id, day)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @staticmethod
    def _refund_key(record: CompletionRecord) -> RefundKey:
        return (record.goal_id, record.day, record.verified_at)

    def claim_refund(self, record: CompletionRecord) -> bool:
        """
        Reserve the refund for this verification event.

        Returns False if the same event already claimed it.
        """
        key = self._refund_key(record)
        if key in self._refund_claims:
            return False
        self._refund_claims.add(key)
        return True

    def release_refund(self, record: CompletionRecord) -> None:
        """
        Drop the claim once the attempt has settled.

        After a failure the day can be retried; after a success the
        refunded status blocks any further attempt.
        """
        self._refund_claims.discard(self._refund_key(record))
