"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets can back the goal store because:
1. Users can inspect their goals and completions directly
2. No database setup required
3. Built-in backup (Google's infrastructure)

Each goal is one row; the full goal document is a JSON column.
Dotted-path writes are read-modify-write on that row.

TRADEOFFS:
- No push notifications: `subscribe` polls and emits a snapshot when
  the user's rows change
- No transactions: `create_field` re-reads the row right before writing,
  which narrows but does not close the race with other writers
- Sheets API calls are synchronous (we call them from async code as-is)
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from goalstake.config import get_settings
from goalstake.models.audit import AuditEvent, AuditEventType, AuditSeverity
from goalstake.models.goal import GoalCollectionSnapshot
from goalstake.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    GoalDocumentStoreInterface,
    NotFoundError,
    PersistenceError,
    StorageError,
)
from goalstake.services.storage.memory import has_path, set_path


# Column mappings for Goals sheet
GOAL_COLUMNS = [
    "id",
    "user_id",
    "document_json",
    "updated_at",
]

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}") from e

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_goals_sheet(self) -> gspread.Worksheet:
        """Get or create the Goals worksheet."""
        return self._get_or_create(self._settings.goals_sheet_name, GOAL_COLUMNS, 1000)

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self._get_or_create(self._settings.audit_sheet_name, AUDIT_COLUMNS, 5000)


class GoogleSheetsGoalStore(GoalDocumentStoreInterface):
    """
    Google Sheets implementation of the goal document store.

    Scoped to one user: only rows whose user_id matches are visible.
    """

    def __init__(
        self,
        user_id: str,
        client: Optional[GoogleSheetsClient] = None,
        poll_seconds: Optional[float] = None,
    ):
        self._user_id = user_id
        self._client = client or GoogleSheetsClient()
        self._poll_seconds = poll_seconds or get_settings().ledger.snapshot_poll_seconds

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _user_rows(self) -> list[tuple[int, dict[str, Any]]]:
        """(sheet row number, document) for every goal of this user."""
        sheet = self._client.get_goals_sheet()
        rows = []
        # Start from 2 (row 1 is header)
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if len(row) < 3 or not row[0] or row[1] != self._user_id:
                continue
            try:
                document = json.loads(row[2])
            except json.JSONDecodeError:
                document = None
            if not isinstance(document, dict):
                # Surface it to the decoder so the coordinator can skip and log
                document = {"id": row[0], "_raw": row[2]}
            rows.append((idx, document))
        return rows

    def _find(self, goal_id: str) -> tuple[int, dict[str, Any]]:
        try:
            rows = self._user_rows()
        except Exception as e:
            raise StorageError(f"Failed to read goals: {e}") from e
        for idx, document in rows:
            if str(document.get("id")) == goal_id:
                return idx, document
        raise NotFoundError(f"Goal not found: {goal_id}")

    def _write_row(self, idx: int, document: dict[str, Any]) -> None:
        row = [
            str(document["id"]),
            self._user_id,
            json.dumps(document, sort_keys=True),
            datetime.now(timezone.utc).isoformat(),
        ]
        sheet = self._client.get_goals_sheet()
        sheet.update(range_name=f"A{idx}:D{idx}", values=[row])

    def _snapshot(self) -> GoalCollectionSnapshot:
        return GoalCollectionSnapshot(
            user_id=self._user_id,
            documents=[document for _, document in self._user_rows()],
        )

    async def subscribe(self, user_id: str) -> AsyncIterator[GoalCollectionSnapshot]:
        if user_id != self._user_id:
            raise NotFoundError(f"Store is scoped to user {self._user_id}")
        last_digest = None
        while True:
            try:
                snapshot = self._snapshot()
            except Exception as e:
                raise StorageError(f"Failed to poll goals: {e}") from e
            digest = hashlib.sha256(
                json.dumps(snapshot.documents, sort_keys=True).encode("utf-8")
            ).hexdigest()
            if digest != last_digest:
                last_digest = digest
                yield snapshot
            await asyncio.sleep(self._poll_seconds)

    async def read_document(self, goal_id: str) -> Optional[dict[str, Any]]:
        try:
            _, document = self._find(goal_id)
        except NotFoundError:
            return None
        return document

    async def write_field(self, goal_id: str, path: str, value: Any) -> bool:
        return await self.write_fields(goal_id, {path: value})

    async def write_fields(self, goal_id: str, updates: dict[str, Any]) -> bool:
        idx, document = self._find(goal_id)
        for path, value in updates.items():
            set_path(document, path, value)
        try:
            self._write_row(idx, document)
        except Exception as e:
            raise PersistenceError(f"Failed to update goal {goal_id}: {e}") from e
        return True

    async def create_field(self, goal_id: str, path: str, value: Any) -> bool:
        idx, document = self._find(goal_id)
        if has_path(document, path):
            return False
        set_path(document, path, value)
        try:
            self._write_row(idx, document)
        except Exception as e:
            raise PersistenceError(f"Failed to update goal {goal_id}: {e}") from e
        return True

    async def create_document(self, document: dict[str, Any]) -> str:
        goal_id = str(document["id"])
        try:
            sheet = self._client.get_goals_sheet()
            sheet.append_row(
                [
                    goal_id,
                    self._user_id,
                    json.dumps(document, sort_keys=True),
                    datetime.now(timezone.utc).isoformat(),
                ],
                value_input_option="RAW",
            )
        except Exception as e:
            raise PersistenceError(f"Failed to create goal {goal_id}: {e}") from e
        return goal_id


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=safe_get(0),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=safe_get(5) or None,
            correlation_id=safe_get(6) or None,
            description=safe_get(7),
            details=json.loads(safe_get(8)) if safe_get(8) else {},
            error_message=safe_get(9) or None,
            is_user_action=safe_get(10).lower() == "true",
        )

    def _all_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, IndexError):
                continue  # Skip malformed rows
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        sheet = self._client.get_audit_sheet()
        sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
        return True

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        try:
            events = [
                e for e in self._all_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            events = self._all_events()
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
