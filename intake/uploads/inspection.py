"""Admission checks for uploaded artifacts: names, declared types and content."""

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass

from intake.exceptions import ValidationError

CONTENT_TYPE_TO_FILE_TYPE: dict[str, str] = {
    "application/pdf": "PDF",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "DOCX",
}

_MAGIC_PREFIXES: dict[str, tuple[bytes, ...]] = {
    "PDF": (b"%PDF-",),
    # DOCX is an OOXML zip container
    "DOCX": (b"PK\x03\x04",),
}
_HEAD_SIZE = 8
_MAX_FILENAME_LENGTH = 255
_FORBIDDEN_FILENAME_CHARS = frozenset({"/", "\\", "\x00"})


@dataclass(frozen=True)
class ContentDigest:
    """Server-side measurement of an artifact's bytes."""

    sha256: str
    size_bytes: int
    head: bytes


def validate_filename(filename: object) -> str:
    """Return the trimmed filename.

    Raises:
        ValidationError: if the name is empty, too long, or contains path separators.
    """
    if not isinstance(filename, str) or not filename.strip():
        raise ValidationError("`filename` is required")
    name = filename.strip()
    if len(name) > _MAX_FILENAME_LENGTH:
        raise ValidationError(
            f"`filename` must not exceed {_MAX_FILENAME_LENGTH} characters"
        )
    if any(char in _FORBIDDEN_FILENAME_CHARS for char in name):
        raise ValidationError("`filename` must not contain path separators")
    return name


def resolve_file_type(content_type: object) -> str:
    """Map a declared MIME type to the stored file type (PDF or DOCX).

    Raises:
        ValidationError: if the content type is not accepted.
    """
    if not isinstance(content_type, str):
        raise ValidationError("`contentType` is required")
    file_type = CONTENT_TYPE_TO_FILE_TYPE.get(content_type.strip().lower())
    if file_type is None:
        raise ValidationError(
            f"Invalid content type: {content_type}. Allowed: PDF, DOCX"
        )
    return file_type


def digest_chunks(chunks: Iterable[bytes]) -> ContentDigest:
    """Hash a byte stream without holding it in memory."""
    sha256 = hashlib.sha256()
    size = 0
    head = b""
    for chunk in chunks:
        if len(head) < _HEAD_SIZE:
            head += chunk[: _HEAD_SIZE - len(head)]
        sha256.update(chunk)
        size += len(chunk)
    return ContentDigest(sha256=sha256.hexdigest(), size_bytes=size, head=head)


def content_mismatch_reason(file_type: str, head: bytes) -> str | None:
    """Return why the leading bytes contradict the declared type, or None if they match."""
    prefixes = _MAGIC_PREFIXES.get(file_type)
    if prefixes is None:
        return f"Unsupported file type '{file_type}'"
    if not any(head.startswith(prefix) for prefix in prefixes):
        return f"Content does not look like a {file_type} file"
    return None
