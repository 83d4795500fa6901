"""
Data Models Package

This package contains all Pydantic models used in Goalstake.
All data flowing through the ledger must conform to these schemas.
"""

from goalstake.models.goal import (
    ATTESTED_STATUSES,
    COMPLETED_STATUSES,
    EARNED_STATUSES,
    TERMINAL_STATUSES,
    BalanceSummary,
    ChargeResult,
    CompletionRecord,
    CompletionStatus,
    Frequency,
    Goal,
    GoalCollectionSnapshot,
    GoalOverview,
    GoalProgress,
    GoalSnapshot,
    ReconciliationReport,
    RefundOutcome,
    SyncReport,
    UserProjection,
    VerificationMethod,
    to_minor_units,
)
from goalstake.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Goal and ledger models
    "ATTESTED_STATUSES",
    "COMPLETED_STATUSES",
    "EARNED_STATUSES",
    "TERMINAL_STATUSES",
    "BalanceSummary",
    "ChargeResult",
    "CompletionRecord",
    "CompletionStatus",
    "Frequency",
    "Goal",
    "GoalCollectionSnapshot",
    "GoalOverview",
    "GoalProgress",
    "GoalSnapshot",
    "ReconciliationReport",
    "RefundOutcome",
    "SyncReport",
    "UserProjection",
    "VerificationMethod",
    "to_minor_units",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
