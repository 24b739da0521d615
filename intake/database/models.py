from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class UploadStatus:
    PENDING = "pending"
    UPLOADED = "uploaded"
    FAILED = "failed"
    REJECTED = "rejected"
    DEDUPLICATED = "deduplicated"
    DELETED_BY_USER = "deleted-by-user"


# A canonical record in one of these states may be superseded by a new upload.
REPLACEABLE_STATUSES = frozenset(
    {UploadStatus.FAILED, UploadStatus.REJECTED, UploadStatus.DELETED_BY_USER}
)
# A canonical record in one of these states turns new uploads into duplicates.
BLOCKING_STATUSES = frozenset({UploadStatus.PENDING, UploadStatus.UPLOADED})
DELETABLE_STATUSES = frozenset({UploadStatus.UPLOADED, UploadStatus.DEDUPLICATED})


class OutboxStatus:
    PENDING = "pending"
    SENDING = "sending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_A_CV = "not-a-cv"


TERMINAL_STATUSES = frozenset(
    {OutboxStatus.COMPLETED, OutboxStatus.FAILED, OutboxStatus.NOT_A_CV}
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    OutboxStatus.PENDING: frozenset({OutboxStatus.SENDING, OutboxStatus.FAILED}),
    OutboxStatus.SENDING: frozenset(
        {OutboxStatus.PROCESSING, OutboxStatus.PENDING, OutboxStatus.FAILED}
    ),
    OutboxStatus.PROCESSING: TERMINAL_STATUSES,
    OutboxStatus.COMPLETED: frozenset(),
    OutboxStatus.FAILED: frozenset(),
    OutboxStatus.NOT_A_CV: frozenset(),
}

ARTIFACT_PROCESSING = "artifact-processing"


def is_replaceable_status(status: str) -> bool:
    return status in REPLACEABLE_STATUSES


def is_blocking_status(status: str) -> bool:
    return status in BLOCKING_STATUSES


def can_transition(current: str, target: str) -> bool:
    """True if an event with ``target`` status may follow one with ``current``."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class UploadRecord:
    """Represents a row from the upload_records table."""

    upload_id: str
    owner_id: str
    storage_key: str
    bucket: str
    original_filename: str
    declared_content_type: str
    status: str
    write_window_expiry: datetime
    content_hash: str | None = None
    is_canonical: bool = False
    duplicate_of: str | None = None
    size_bytes: int | None = None
    rejection_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_mutable(self) -> bool:
        return self.status == UploadStatus.PENDING


@dataclass
class OutboxEvent:
    """Represents a row from the outbox_events table."""

    job_id: str
    sequence: int
    kind: str
    status: str
    upload_id: str
    owner_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    result: dict[str, Any] | None = None
    id: int | None = None
    created_at: datetime | None = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
