"""
In-Memory Goal Store

Document store kept in process memory. Used by tests and for running the
ledger without a backend. Behaves like a push-based document database:
every write publishes a fresh full snapshot to all subscribers.
"""

import asyncio
import copy
from typing import Any, AsyncIterator, Iterable, Optional

from goalstake.models.goal import GoalCollectionSnapshot
from goalstake.services.storage.interface import (
    GoalDocumentStoreInterface,
    NotFoundError,
)


_MISSING = object()


def get_path(document: dict[str, Any], path: str) -> Any:
    """Value at a dotted path, or _MISSING."""
    node: Any = document
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted path, creating intermediate mappings."""
    parts = path.split(".")
    node = document
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = copy.deepcopy(value)


def has_path(document: dict[str, Any], path: str) -> bool:
    return get_path(document, path) is not _MISSING


class InMemoryGoalDocumentStore(GoalDocumentStoreInterface):
    """Goal documents for one user, held in a dict keyed by goal id."""

    def __init__(self, user_id: str, documents: Iterable[dict[str, Any]] = ()):
        self._user_id = user_id
        self._documents: dict[str, dict[str, Any]] = {}
        self._subscribers: list[asyncio.Queue] = []
        for document in documents:
            self._documents[str(document["id"])] = copy.deepcopy(document)

    # ------------------------------------------------------------------
    # Helpers for tests and simulated remote changes
    # ------------------------------------------------------------------

    def snapshot(self, from_cache: bool = False) -> GoalCollectionSnapshot:
        return GoalCollectionSnapshot(
            user_id=self._user_id,
            documents=[copy.deepcopy(d) for d in self._documents.values()],
            from_cache=from_cache,
        )

    def put_document(self, document: dict[str, Any]) -> None:
        """Replace a whole document, as another client would."""
        self._documents[str(document["id"])] = copy.deepcopy(document)
        self._publish()

    def remove_document(self, goal_id: str) -> None:
        self._documents.pop(goal_id, None)
        self._publish()

    def document(self, goal_id: str) -> Optional[dict[str, Any]]:
        document = self._documents.get(goal_id)
        return copy.deepcopy(document) if document is not None else None

    def _publish(self) -> None:
        for queue in self._subscribers:
            queue.put_nowait(self.snapshot())

    def _require(self, goal_id: str) -> dict[str, Any]:
        document = self._documents.get(goal_id)
        if document is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return document

    # ------------------------------------------------------------------
    # GoalDocumentStoreInterface
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str) -> AsyncIterator[GoalCollectionSnapshot]:
        if user_id != self._user_id:
            raise NotFoundError(f"No goal collection for user {user_id}")
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield self.snapshot()
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    async def read_document(self, goal_id: str) -> Optional[dict[str, Any]]:
        return self.document(goal_id)

    async def write_field(self, goal_id: str, path: str, value: Any) -> bool:
        return await self.write_fields(goal_id, {path: value})

    async def write_fields(self, goal_id: str, updates: dict[str, Any]) -> bool:
        document = self._require(goal_id)
        for path, value in updates.items():
            set_path(document, path, value)
        self._publish()
        return True

    async def create_field(self, goal_id: str, path: str, value: Any) -> bool:
        document = self._require(goal_id)
        if has_path(document, path):
            return False
        set_path(document, path, value)
        self._publish()
        return True

    async def create_document(self, document: dict[str, Any]) -> str:
        goal_id = str(document["id"])
        self._documents[goal_id] = copy.deepcopy(document)
        self._publish()
        return goal_id
