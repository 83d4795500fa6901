"""
Core Data Models for Goalstake

These models define the strict schemas for everything flowing through the
completion ledger. They are designed to:
1. Enforce type safety at runtime
2. Keep money in Decimal from end to end
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Completion records are immutable values.
A status change produces a new record that replaces the old one under the
same (goal_id, day) key. The day itself never changes.
"""

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class Frequency(str, Enum):
    """
    Which calendar days a goal obligates.

    Older documents stored the display label instead of the key,
    so those labels are still accepted when decoding.
    """
    DAILY = "daily"
    WEEKDAYS = "weekdays"
    WEEKENDS = "weekends"
    X_OF_N_DAYS = "x_of_n_days"

    @classmethod
    def _missing_(cls, value):
        return _LEGACY_FREQUENCIES.get(value)


_LEGACY_FREQUENCIES = {
    "Every day": Frequency.DAILY,
    "Weekdays only": Frequency.WEEKDAYS,
    "Weekends only": Frequency.WEEKENDS,
    "X days over the period": Frequency.X_OF_N_DAYS,
    "xDays": Frequency.X_OF_N_DAYS,
}


class VerificationMethod(str, Enum):
    """How a completion proves itself."""
    SELF_ATTESTED = "self_attested"
    PHOTO_ATTESTED = "photo_attested"

    @classmethod
    def _missing_(cls, value):
        return _LEGACY_VERIFICATION_METHODS.get(value)


_LEGACY_VERIFICATION_METHODS = {
    "Self Verify": VerificationMethod.SELF_ATTESTED,
    "Photo Verification": VerificationMethod.PHOTO_ATTESTED,
}


class CompletionStatus(str, Enum):
    """
    Lifecycle of a single completion record.

    Values are part of the stored document schema and must not change.
    """
    PENDING_VERIFICATION = "pendingVerification"  # Photo submitted, awaiting review
    VERIFIED = "verified"                         # Counts toward progress
    REFUNDED = "refunded"                         # Money returned, counts toward earned
    REFUND_FAILED = "refundFailed"                # Gateway refused, retryable
    REJECTED = "rejected"                         # Photo review denied
    MISSED = "missed"                             # Synthesized by reconciliation


# Statuses that count toward progress against required completions
COMPLETED_STATUSES = frozenset({CompletionStatus.VERIFIED, CompletionStatus.REFUNDED})

# Statuses that count toward money earned back
EARNED_STATUSES = frozenset({CompletionStatus.REFUNDED})

# Statuses that mean "the user did something for this day"
ATTESTED_STATUSES = frozenset({
    CompletionStatus.VERIFIED,
    CompletionStatus.PENDING_VERIFICATION,
})

TERMINAL_STATUSES = frozenset({
    CompletionStatus.REFUNDED,
    CompletionStatus.REJECTED,
    CompletionStatus.MISSED,
})


# =============================================================================
# MONEY HELPERS
# =============================================================================

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a Decimal amount to the integer minor units a gateway expects."""
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    scaled = (amount * (Decimal(10) ** exponent)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(scaled)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CORE MODELS
# =============================================================================

class Goal(BaseModel):
    """
    A committed, time-boxed, recurring obligation with a monetary stake.

    Dates are calendar days in the reference time zone.
    Completions are NOT part of this model - they live in the goal's ledger.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: str = Field(
        default_factory=lambda: uuid4().hex,
        min_length=1,
        description="Opaque goal identifier (document id)"
    )
    user_id: str = Field(
        ...,
        min_length=1,
        description="Owner of the goal"
    )

    title: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="What the user is committing to"
    )
    frequency: Frequency
    amount_per_success: Annotated[
        Decimal,
        Field(gt=0, description="Amount earned back per completed day")
    ]
    currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="ISO 4217 currency code"
    )
    start_date: date
    end_date: date
    total_amount: Annotated[
        Decimal,
        Field(ge=0, description="Total amount committed up front")
    ]
    verification_method: VerificationMethod
    payment_intent_id: Optional[str] = Field(
        default=None,
        description="Reference of the charge that funded this goal"
    )

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode='after')
    def validate_dates(self) -> 'Goal':
        """Validate date relationships."""
        if self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self


class CompletionRecord(BaseModel):
    """
    The ledger entry for one obligated day of one goal.

    CRITICAL: (goal_id, day) is unique within a ledger.
    Records are created by a user attestation or by reconciliation,
    never both for the same day.
    """
    model_config = ConfigDict(frozen=True)

    goal_id: str = Field(..., min_length=1)
    day: date = Field(
        ...,
        description="Calendar day this record covers (immutable)"
    )
    status: CompletionStatus
    verification_photo_url: Optional[str] = None
    verified_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_error: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Last gateway error when status is refundFailed"
    )

    @property
    def is_synthesized(self) -> bool:
        """True for records created by reconciliation rather than the user."""
        return self.status == CompletionStatus.MISSED


class GoalProgress(BaseModel):
    """Progress figures shown for a single goal."""

    goal_id: str
    required_completions: int = Field(ge=0)
    completed_count: int = Field(ge=0)
    earned_amount: Decimal = Field(ge=0)

    @property
    def is_complete(self) -> bool:
        return self.completed_count >= self.required_completions

    @property
    def ratio_label(self) -> str:
        """Progress as shown to the user, e.g. '3/5'."""
        return f"{self.completed_count}/{self.required_completions}"


class GoalSnapshot(BaseModel):
    """A decoded goal document: the goal plus its stored completions."""

    goal: Goal
    completions: list[CompletionRecord] = Field(default_factory=list)


class GoalCollectionSnapshot(BaseModel):
    """
    One notification from the document store.

    Carries the FULL goal set for the user, never a delta.
    Documents stay raw here; decoding happens per document so one
    malformed goal cannot spoil the others.
    """

    user_id: str
    documents: list[dict[str, Any]] = Field(default_factory=list)
    from_cache: bool = Field(
        default=False,
        description="Served from a local cache rather than the server"
    )
    received_at: datetime = Field(default_factory=_utcnow)


class ChargeResult(BaseModel):
    """Result of funding a goal through the payment gateway."""

    client_secret: str
    payment_reference: str


class RefundOutcome(BaseModel):
    """What happened when a refund was requested for one completion."""

    goal_id: str
    day: date
    status: CompletionStatus
    refunded: bool
    already_processed: bool = Field(
        default=False,
        description="Duplicate trigger for a refund that was already handled"
    )
    persisted: bool = Field(
        default=True,
        description="False if the new status is only held locally pending a retry"
    )
    error: Optional[str] = None


class ReconciliationReport(BaseModel):
    """Result of one missed-day reconciliation pass over a goal."""

    goal_id: str
    synthesized: list[CompletionRecord] = Field(default_factory=list)
    failed_dates: list[date] = Field(default_factory=list)
    coalesced: bool = Field(
        default=False,
        description="Another pass was already running; this trigger was folded into it"
    )

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_dates)

    def merge(self, other: 'ReconciliationReport') -> 'ReconciliationReport':
        """Combine a follow-up pass into this report."""
        synthesized_days = {record.day for record in other.synthesized}
        return ReconciliationReport(
            goal_id=self.goal_id,
            synthesized=[
                r for r in self.synthesized if r.day not in synthesized_days
            ] + list(other.synthesized),
            failed_dates=sorted(
                (set(self.failed_dates) - synthesized_days) | set(other.failed_dates)
            ),
        )


class BalanceSummary(BaseModel):
    """Aggregate earned-minus-committed figures across a user's goals."""

    goal_count: int = Field(ge=0)
    total_committed: Decimal = Decimal("0")
    total_earned: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    by_currency: dict[str, Decimal] = Field(default_factory=dict)


class GoalOverview(BaseModel):
    """Read-only view of one goal for the UI."""

    goal: Goal
    progress: GoalProgress
    completions: list[CompletionRecord] = Field(default_factory=list)


class UserProjection(BaseModel):
    """Read-only projection of a user's ledgers, pushed to change listeners."""

    user_id: str
    goals: list[GoalOverview] = Field(default_factory=list)
    balance: BalanceSummary
    generated_at: datetime = Field(default_factory=_utcnow)


class SyncReport(BaseModel):
    """Outcome of applying one remote snapshot."""

    applied_goal_ids: list[str] = Field(default_factory=list)
    skipped_documents: list[str] = Field(
        default_factory=list,
        description="Ids (or positions) of documents that failed to decode"
    )
    goal_set_changed: bool = False
    from_cache: bool = False
    reconciliations: list[ReconciliationReport] = Field(default_factory=list)
