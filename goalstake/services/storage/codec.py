"""
Goal Document Codec

Translates between the pydantic models and the stored document layout:

    { id, userId, title, frequency, amountPerSuccess, startDate, endDate,
      totalAmount, currency, verificationMethod, paymentIntentId?,
      completions: { <isoDate>: { goalId, date, status, verificationPhotoUrl?,
                                  verifiedAt?, refundedAt?, refundError? } } }

DESIGN DECISION: Day keys are plain ISO calendar dates (YYYY-MM-DD).
This is a schema contract. Older documents keyed completions by full
ISO-8601 timestamps; those keys are still read and normalized to the
calendar day in the reference time zone, but never written.

Amounts are written as strings so no float ever touches money.
"""

from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import ValidationError

from goalstake.clock import normalize_day
from goalstake.models.goal import (
    CompletionRecord,
    CompletionStatus,
    Frequency,
    Goal,
    GoalSnapshot,
    VerificationMethod,
)
from goalstake.services.storage.interface import StorageError


COMPLETIONS_FIELD = "completions"


class DecodeError(StorageError):
    """A remote goal document could not be decoded."""

    def __init__(self, document_id: str, message: str):
        self.document_id = document_id
        super().__init__(f"Goal {document_id}: {message}")


# =============================================================================
# KEYS AND PATHS
# =============================================================================

def day_key(day: date) -> str:
    return day.isoformat()


def parse_day_key(key: str, tz: tzinfo = timezone.utc) -> date:
    """
    Parse a completion key.

    Accepts canonical `2024-09-01` and legacy `2024-09-01T00:00:00Z`.

    Raises:
        ValueError: Not a date or timestamp
    """
    if len(key) == 10:
        return date.fromisoformat(key)
    return normalize_day(_parse_timestamp(key), tz)


def completion_path(day: date, field: Optional[str] = None) -> str:
    """Dotted path of a completion, or of one of its fields."""
    path = f"{COMPLETIONS_FIELD}.{day_key(day)}"
    return f"{path}.{field}" if field else path


# =============================================================================
# ENCODING
# =============================================================================

def _encode_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def encode_completion(record: CompletionRecord) -> dict[str, Any]:
    """Completion as stored under `completions.<isoDate>` (None fields omitted)."""
    data = {
        "goalId": record.goal_id,
        "date": day_key(record.day),
        "status": record.status.value,
        "verificationPhotoUrl": record.verification_photo_url,
        "verifiedAt": _encode_timestamp(record.verified_at),
        "refundedAt": _encode_timestamp(record.refunded_at),
        "refundError": record.refund_error,
    }
    return {k: v for k, v in data.items() if v is not None}


def transition_updates(
    previous: CompletionRecord,
    record: CompletionRecord,
) -> dict[str, Any]:
    """
    Dotted-path updates that turn `previous` into `record` in the store.

    Only changed fields are written; cleared fields are written as None.
    """
    before = encode_completion(previous)
    after = encode_completion(record)
    updates: dict[str, Any] = {}
    for field in sorted(set(before) | set(after)):
        if before.get(field) != after.get(field):
            updates[completion_path(record.day, field)] = after.get(field)
    return updates


def encode_goal(
    goal: Goal,
    completions: Optional[list[CompletionRecord]] = None,
) -> dict[str, Any]:
    """Full goal document."""
    document = {
        "id": goal.id,
        "userId": goal.user_id,
        "title": goal.title,
        "frequency": goal.frequency.value,
        "amountPerSuccess": str(goal.amount_per_success),
        "startDate": goal.start_date.isoformat(),
        "endDate": goal.end_date.isoformat(),
        "totalAmount": str(goal.total_amount),
        "currency": goal.currency,
        "verificationMethod": goal.verification_method.value,
        COMPLETIONS_FIELD: {
            day_key(r.day): encode_completion(r) for r in (completions or [])
        },
    }
    if goal.payment_intent_id:
        document["paymentIntentId"] = goal.payment_intent_id
    return document


# =============================================================================
# DECODING
# =============================================================================

def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return _parse_timestamp(value)


def _decimal(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not an amount: {value!r}")
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError(f"Not a finite amount: {value!r}")
    return amount


def _day(value: Any, tz: tzinfo) -> date:
    if isinstance(value, datetime):
        return normalize_day(value, tz)
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return parse_day_key(value, tz)
    raise ValueError(f"Not a date: {value!r}")


def decode_completion(
    goal_id: str,
    key: str,
    data: dict[str, Any],
    tz: tzinfo = timezone.utc,
) -> CompletionRecord:
    """
    Decode one completion entry. The key, not the inner `date`, is authoritative.

    Raises:
        ValueError / ValidationError: Malformed entry
    """
    if not isinstance(data, dict):
        raise ValueError(f"Completion {key} is not a mapping")
    return CompletionRecord(
        goal_id=data.get("goalId") or goal_id,
        day=parse_day_key(key, tz),
        status=CompletionStatus(data["status"]),
        verification_photo_url=data.get("verificationPhotoUrl") or None,
        verified_at=_optional_timestamp(data.get("verifiedAt")),
        refunded_at=_optional_timestamp(data.get("refundedAt")),
        refund_error=data.get("refundError") or None,
    )


def decode_goal_document(
    document: dict[str, Any],
    tz: tzinfo = timezone.utc,
    default_currency: str = "USD",
) -> GoalSnapshot:
    """
    Decode one goal document and its completions.

    Raises:
        DecodeError: Anything about the document is malformed
    """
    document_id = str(document.get("id") or "<unknown>") if isinstance(document, dict) else "<unknown>"
    try:
        if not isinstance(document, dict):
            raise ValueError("document is not a mapping")

        goal = Goal(
            id=document["id"],
            user_id=document["userId"],
            title=document["title"],
            frequency=Frequency(document["frequency"]),
            amount_per_success=_decimal(document["amountPerSuccess"]),
            currency=document.get("currency") or default_currency,
            start_date=_day(document["startDate"], tz),
            end_date=_day(document["endDate"], tz),
            total_amount=_decimal(document["totalAmount"]),
            verification_method=VerificationMethod(document["verificationMethod"]),
            payment_intent_id=document.get("paymentIntentId") or None,
        )

        raw_completions = document.get(COMPLETIONS_FIELD) or {}
        if not isinstance(raw_completions, dict):
            raise ValueError("completions is not a mapping")

        by_day: dict[date, CompletionRecord] = {}
        for key, data in raw_completions.items():
            record = decode_completion(goal.id, key, data, tz)
            if record.goal_id != goal.id:
                raise ValueError(f"completion {key} belongs to goal {record.goal_id}")
            current = by_day.get(record.day)
            # Legacy and canonical keys may both name the same day
            if current is None or (current.is_synthesized and not record.is_synthesized):
                by_day[record.day] = record

    except (KeyError, TypeError, ValueError, InvalidOperation, ValidationError) as e:
        raise DecodeError(document_id, f"{type(e).__name__}: {e}") from e

    return GoalSnapshot(
        goal=goal,
        completions=[by_day[d] for d in sorted(by_day)],
    )
