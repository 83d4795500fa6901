"""
Audit Logger

DESIGN DECISION: Every ledger mutation and every money movement is logged.
This provides:
1. A trail of who attested what, and when
2. A record of every refund attempt and its outcome
3. Visibility into writes that failed and were deferred

The audit logger:
- Is async so it sits naturally in the ledger's async flows
- Never raises (a failed audit write must not undo a ledger change)
- Supports correlation IDs to trace related events
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from goalstake.models.audit import AuditEvent, AuditEventBuilder
from goalstake.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage, when configured (Google Sheets in production)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger(__name__)

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_goal_created(
        self,
        goal_id: str,
        title: str,
        total_amount: Decimal,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.goal_created(
            goal_id=goal_id,
            title=title,
            total_amount=str(total_amount),
            currency=currency,
            correlation_id=correlation_id,
        ))

    async def log_goal_decode_failed(self, document_id: str, error_message: str) -> None:
        await self.log(AuditEventBuilder.goal_decode_failed(document_id, error_message))

    async def log_completion_attested(
        self,
        goal_id: str,
        day: date,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.completion_attested(
            goal_id, day, status, correlation_id=correlation_id,
        ))

    async def log_status_changed(
        self,
        goal_id: str,
        day: date,
        old_status: str,
        new_status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.completion_status_changed(
            goal_id, day, old_status, new_status, correlation_id=correlation_id,
        ))

    async def log_missed_backfilled(self, goal_id: str, days: list[date]) -> None:
        await self.log(AuditEventBuilder.missed_backfilled(goal_id, days))

    async def log_reconciliation_failure(self, goal_id: str, failed_days: list[date]) -> None:
        await self.log(AuditEventBuilder.reconciliation_partial_failure(goal_id, failed_days))

    async def log_refund_succeeded(
        self,
        goal_id: str,
        day: date,
        amount: Decimal,
        currency: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.refund_succeeded(
            goal_id, day, str(amount), currency, correlation_id=correlation_id,
        ))

    async def log_refund_failed(
        self,
        goal_id: str,
        day: date,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.refund_failed(
            goal_id, day, error_message, correlation_id=correlation_id,
        ))

    async def log_snapshot_applied(
        self,
        user_id: str,
        goal_count: int,
        skipped: int,
        goal_set_changed: bool,
        from_cache: bool,
    ) -> None:
        await self.log(AuditEventBuilder.snapshot_applied(
            user_id, goal_count, skipped, goal_set_changed, from_cache,
        ))

    async def log_persistence_failed(
        self,
        goal_id: str,
        path: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.persistence_failed(
            goal_id, path, error_message, correlation_id=correlation_id,
        ))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        await self.log(AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a user action (e.g. attesting a day).
    Pass it through all subsequent operations.
    """
    return uuid4()
