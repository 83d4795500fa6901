"""
Abstract Storage Interface

DESIGN DECISION: The remote goal store is an abstract, subscribable
document collection. This allows us to:
1. Swap Google Sheets for a real document database later
2. Use in-memory storage for testing
3. Keep the ledger logic decoupled from any transport

Each goal is one document. Completions live inside it under
`completions.<isoDate>`, so every per-day write is a dotted-path field
write on a single document. That (goal_id, day) path is the unit of
optimistic concurrency: `create_field` only writes when the path is absent.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

from goalstake.models.audit import AuditEvent
from goalstake.models.goal import GoalCollectionSnapshot


class GoalDocumentStoreInterface(ABC):
    """
    Abstract interface for the user's goal documents.

    Any store implementation must implement these methods.
    """

    @abstractmethod
    def subscribe(self, user_id: str) -> AsyncIterator[GoalCollectionSnapshot]:
        """
        Stream full snapshots of the user's goal collection.

        The first snapshot is the current state; later ones follow changes.
        Every snapshot is the complete goal set, not a delta.
        """
        pass

    @abstractmethod
    async def read_document(self, goal_id: str) -> Optional[dict[str, Any]]:
        """
        Read one goal document.

        Returns:
            The raw document, or None if it does not exist

        Raises:
            StorageError: If the read fails
        """
        pass

    @abstractmethod
    async def write_field(self, goal_id: str, path: str, value: Any) -> bool:
        """
        Set a single dotted-path field, e.g. `completions.2024-09-01.status`.

        Returns:
            True if written

        Raises:
            NotFoundError: Goal document does not exist
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def write_fields(self, goal_id: str, updates: dict[str, Any]) -> bool:
        """
        Set several dotted-path fields of one document together.

        Raises:
            NotFoundError: Goal document does not exist
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def create_field(self, goal_id: str, path: str, value: Any) -> bool:
        """
        Write a field only if nothing is stored at `path` yet.

        Returns:
            True if written, False if the path already held a value

        Raises:
            NotFoundError: Goal document does not exist
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def create_document(self, document: dict[str, Any]) -> str:
        """
        Store a new goal document.

        Returns:
            The document id

        Raises:
            PersistenceError: If the write fails
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity, in chronological order.
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class PersistenceError(StorageError):
    """A remote write failed; the caller retries on the next pass."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
