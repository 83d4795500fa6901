"""
Audit Models for Goalstake

Every ledger mutation is logged for audit purposes.
This provides:
1. Complete traceability of money-relevant state changes
2. Debugging information when reconciliation or refunds go wrong
3. A way to reconstruct why a day ended up missed or refunded

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Goals
    GOAL_CREATED = "goal_created"
    GOAL_DECODE_FAILED = "goal_decode_failed"

    # Completions
    COMPLETION_ATTESTED = "completion_attested"
    COMPLETION_STATUS_CHANGED = "completion_status_changed"

    # Reconciliation
    MISSED_BACKFILLED = "missed_backfilled"
    RECONCILIATION_PARTIAL_FAILURE = "reconciliation_partial_failure"

    # Money movement
    REFUND_SUCCEEDED = "refund_succeeded"
    REFUND_FAILED = "refund_failed"

    # Sync
    SNAPSHOT_APPLIED = "snapshot_applied"
    PERSISTENCE_FAILED = "persistence_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every ledger mutation creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'goal', 'completion', 'snapshot')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="Goal id, or 'goal_id/day' for completions"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = None

    description: str = Field(..., max_length=500)
    details: dict[str, Any] = Field(default_factory=dict)

    # Error information (if applicable)
    error_message: Optional[str] = None

    is_user_action: bool = False

    def to_log_dict(self) -> dict:
        """Convert to a dictionary suitable for structured logging."""
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         correlation_id, description, details_json, error_message, is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            self.entity_id or "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


def completion_entity_id(goal_id: str, day: date) -> str:
    return f"{goal_id}/{day.isoformat()}"


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.goal_created(goal_id, title, total, currency)
        event = AuditEventBuilder.refund_failed(goal_id, day, error)
    """

    @staticmethod
    def goal_created(
        goal_id: str,
        title: str,
        total_amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_CREATED,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Goal created: {title} ({total_amount} {currency})",
            details={
                "title": title,
                "total_amount": total_amount,
                "currency": currency,
            },
            is_user_action=True,
        )

    @staticmethod
    def goal_decode_failed(
        document_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GOAL_DECODE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="goal",
            entity_id=document_id,
            correlation_id=correlation_id,
            description="Remote goal document could not be decoded; skipped",
            error_message=error_message,
        )

    @staticmethod
    def completion_attested(
        goal_id: str,
        day: date,
        status: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPLETION_ATTESTED,
            entity_type="completion",
            entity_id=completion_entity_id(goal_id, day),
            correlation_id=correlation_id,
            description=f"Completion attested for {day.isoformat()} ({status})",
            details={"status": status},
            is_user_action=True,
        )

    @staticmethod
    def completion_status_changed(
        goal_id: str,
        day: date,
        old_status: str,
        new_status: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMPLETION_STATUS_CHANGED,
            entity_type="completion",
            entity_id=completion_entity_id(goal_id, day),
            correlation_id=correlation_id,
            description=f"Completion {day.isoformat()}: {old_status} -> {new_status}",
            details={
                "old_status": old_status,
                "new_status": new_status,
            },
        )

    @staticmethod
    def missed_backfilled(
        goal_id: str,
        days: list[date],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MISSED_BACKFILLED,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Backfilled {len(days)} missed days",
            details={"days": [d.isoformat() for d in days]},
        )

    @staticmethod
    def reconciliation_partial_failure(
        goal_id: str,
        failed_days: list[date],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECONCILIATION_PARTIAL_FAILURE,
            severity=AuditSeverity.WARNING,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"{len(failed_days)} missed days could not be persisted",
            details={"failed_days": [d.isoformat() for d in failed_days]},
        )

    @staticmethod
    def refund_succeeded(
        goal_id: str,
        day: date,
        amount: str,
        currency: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REFUND_SUCCEEDED,
            entity_type="completion",
            entity_id=completion_entity_id(goal_id, day),
            correlation_id=correlation_id,
            description=f"Refunded {amount} {currency}",
            details={
                "amount": amount,
                "currency": currency,
            },
        )

    @staticmethod
    def refund_failed(
        goal_id: str,
        day: date,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REFUND_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="completion",
            entity_id=completion_entity_id(goal_id, day),
            correlation_id=correlation_id,
            description="Refund request failed",
            error_message=error_message,
        )

    @staticmethod
    def snapshot_applied(
        user_id: str,
        goal_count: int,
        skipped: int,
        goal_set_changed: bool,
        from_cache: bool,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SNAPSHOT_APPLIED,
            severity=AuditSeverity.WARNING if skipped else AuditSeverity.INFO,
            entity_type="snapshot",
            entity_id=user_id,
            correlation_id=correlation_id,
            description=f"Snapshot applied: {goal_count} goals, {skipped} skipped",
            details={
                "goal_count": goal_count,
                "skipped": skipped,
                "goal_set_changed": goal_set_changed,
                "from_cache": from_cache,
            },
        )

    @staticmethod
    def persistence_failed(
        goal_id: str,
        path: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERSISTENCE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="goal",
            entity_id=goal_id,
            correlation_id=correlation_id,
            description=f"Write failed for {path}",
            details={"path": path},
            error_message=error_message,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
            correlation_id=correlation_id,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
