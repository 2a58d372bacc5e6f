"""Queue data model and typed operation payloads."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from fieldsync.error_handling import PayloadError

NATURAL_KEY_FIELD = "roll_number"


class OperationType(Enum):
    """Kinds of offline-originated actions awaiting upload."""

    REGISTRATION = "registration"
    VERIFICATION = "verification"
    RECORD_UPDATE = "record_update"

    @property
    def priority(self) -> int:
        return OPERATION_PRIORITIES[self]


OPERATION_PRIORITIES = {
    OperationType.REGISTRATION: 2,
    OperationType.VERIFICATION: 1,
    OperationType.RECORD_UPDATE: 0,
}


class OperationStatus(Enum):
    """Lifecycle status of a queued operation."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class QueuedOperation:
    """A durable record of one action awaiting upload."""

    id: int
    operation_type: OperationType
    payload: str
    priority: int
    created_at: datetime
    scheduled_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    status: OperationStatus = OperationStatus.PENDING
    synced_at: datetime | None = None
    updated_at: datetime | None = None

    def __str__(self) -> str:
        key = self.natural_key or "?"
        return f"{self.operation_type.value} #{self.id} [{key}] ({self.status.value})"

    def decode_payload(self) -> dict[str, Any]:
        """Parse the stored JSON payload, raising PayloadError when corrupt."""
        try:
            data = json.loads(self.payload)
        except (json.JSONDecodeError, TypeError) as e:
            msg = f"Failed to parse operation data: {e}"
            raise PayloadError(msg, original_error=e) from e
        if not isinstance(data, dict):
            msg = "Failed to parse operation data: payload is not an object"
            raise PayloadError(msg)
        return data

    @property
    def natural_key(self) -> str | None:
        """The roll number carried in the payload, if it can be read."""
        try:
            value = self.decode_payload().get(NATURAL_KEY_FIELD)
        except PayloadError:
            return None
        return str(value) if value not in (None, "") else None

    @property
    def is_retryable(self) -> bool:
        return (
            self.status == OperationStatus.FAILED
            and self.attempts < self.max_attempts
        )


def _timestamp(value: datetime | str | None) -> str:
    if value is None:
        value = datetime.now(UTC)
    if isinstance(value, str):
        return value
    return value.isoformat()


def _require_roll_number(data: dict[str, Any]) -> str:
    roll_number = data.get(NATURAL_KEY_FIELD)
    if roll_number in (None, ""):
        msg = f"Operation payload is missing '{NATURAL_KEY_FIELD}'"
        raise PayloadError(msg, solution="Provide the student roll number")
    return str(roll_number)


@dataclass
class RegistrationPayload:
    """Biometric enrollment captured on the device."""

    roll_number: str
    fingerprint_template: str
    quality_score: int = 0
    fingerprint_image: str | None = None
    captured_at: datetime | str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.fingerprint_template:
            msg = "Registration is missing a fingerprint template"
            raise PayloadError(msg)
        return {
            "roll_number": self.roll_number,
            "fingerprint_template": self.fingerprint_template,
            "fingerprint_image": self.fingerprint_image,
            "quality_score": self.quality_score,
            "captured_at": _timestamp(self.captured_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegistrationPayload":
        return cls(
            roll_number=_require_roll_number(data),
            fingerprint_template=data.get("fingerprint_template", ""),
            quality_score=int(data.get("quality_score", 0)),
            fingerprint_image=data.get("fingerprint_image"),
            captured_at=data.get("captured_at"),
        )


@dataclass
class VerificationPayload:
    """Outcome of an identity check performed on the device."""

    roll_number: str
    match_result: str  # "match" or "no_match"
    confidence_score: float = 0.0
    entry_allowed: bool = False
    verified_at: datetime | str | None = None
    remarks: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "roll_number": self.roll_number,
            "match_result": self.match_result,
            "confidence_score": self.confidence_score,
            "entry_allowed": self.entry_allowed,
            "verified_at": _timestamp(self.verified_at),
            "remarks": self.remarks,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerificationPayload":
        return cls(
            roll_number=_require_roll_number(data),
            match_result=data.get("match_result", "no_match"),
            confidence_score=float(data.get("confidence_score", 0.0)),
            entry_allowed=bool(data.get("entry_allowed", False)),
            verified_at=data.get("verified_at"),
            remarks=data.get("remarks"),
        )


@dataclass
class RecordUpdatePayload:
    """Local edit to a cached person record."""

    roll_number: str
    changes: dict[str, Any] = field(default_factory=dict)
    edited_at: datetime | str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.changes:
            msg = "Record update has no changes"
            raise PayloadError(msg)
        return {
            "roll_number": self.roll_number,
            "changes": dict(self.changes),
            "edited_at": _timestamp(self.edited_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecordUpdatePayload":
        return cls(
            roll_number=_require_roll_number(data),
            changes=dict(data.get("changes") or {}),
            edited_at=data.get("edited_at"),
        )


PAYLOAD_TYPES: dict[OperationType, type] = {
    OperationType.REGISTRATION: RegistrationPayload,
    OperationType.VERIFICATION: VerificationPayload,
    OperationType.RECORD_UPDATE: RecordUpdatePayload,
}


def normalize_payload(
    operation_type: OperationType,
    data: Any,
) -> dict[str, Any]:
    """Validate caller data for ``operation_type`` and return its wire dict."""
    payload_cls = PAYLOAD_TYPES[operation_type]
    if isinstance(data, payload_cls):
        payload = data
    elif isinstance(data, dict):
        payload = payload_cls.from_dict(data)
    else:
        msg = f"Unsupported payload for {operation_type.value}: {type(data).__name__}"
        raise PayloadError(msg)
    _require_roll_number({NATURAL_KEY_FIELD: payload.roll_number})
    return payload.to_dict()
