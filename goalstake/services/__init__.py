"""Services package."""

from goalstake.services.payments import (
    GatewayError,
    GatewayTimeoutError,
    HttpPaymentGateway,
    PaymentGatewayInterface,
)
from goalstake.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DecodeError,
    GoalDocumentStoreInterface,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsGoalStore,
    InMemoryGoalDocumentStore,
    NotFoundError,
    PersistenceError,
    StorageError,
)

__all__ = [
    # Payment services
    "GatewayError",
    "GatewayTimeoutError",
    "HttpPaymentGateway",
    "PaymentGatewayInterface",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DecodeError",
    "GoalDocumentStoreInterface",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsGoalStore",
    "InMemoryGoalDocumentStore",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
]
