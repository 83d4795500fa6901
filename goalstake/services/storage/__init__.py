"""
Storage Services Package

Provides abstract interfaces and concrete implementations for goal documents
and the audit log. Ships an in-memory store and a Google Sheets backend.
"""

from goalstake.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    GoalDocumentStoreInterface,
    NotFoundError,
    PersistenceError,
    StorageError,
)
from goalstake.services.storage.codec import (
    DecodeError,
    completion_path,
    day_key,
    decode_goal_document,
    encode_completion,
    encode_goal,
    parse_day_key,
    transition_updates,
)
from goalstake.services.storage.memory import InMemoryGoalDocumentStore
from goalstake.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsGoalStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "GoalDocumentStoreInterface",
    # Exceptions
    "ConnectionError",
    "DecodeError",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
    # Document codec
    "completion_path",
    "day_key",
    "decode_goal_document",
    "encode_completion",
    "encode_goal",
    "parse_day_key",
    "transition_updates",
    # Implementations
    "InMemoryGoalDocumentStore",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsGoalStore",
]
