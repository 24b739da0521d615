import io
import threading
import zipfile
from collections.abc import Iterator
from datetime import timedelta

import pytest

from intake.exceptions import NotFoundError, TransientIOError
from intake.storage.base import BaseArtifactStore, ObjectInfo


class InMemoryArtifactStore(BaseArtifactStore):
    """Thread-safe dict-backed store so lifecycle tests need no object storage."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._objects[(bucket, key)] = data

    def head(self, bucket: str, key: str) -> ObjectInfo | None:
        with self._lock:
            data = self._objects.get((bucket, key))
        return ObjectInfo(key=key, size=len(data)) if data is not None else None

    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        with self._lock:
            data = self._objects.get((bucket, key))
        if data is None:
            raise NotFoundError(f"Object {bucket}/{key} not found")
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]

    def copy(self, bucket: str, source_key: str, dest_key: str) -> None:
        with self._lock:
            data = self._objects.get((bucket, source_key))
            if data is None:
                # MinIO reports a missing copy source as an S3 error
                raise TransientIOError(f"Copy source {bucket}/{source_key} not found")
            self._objects[(bucket, dest_key)] = data

    def delete(self, bucket: str, key: str) -> None:
        with self._lock:
            self._objects.pop((bucket, key), None)

    def presigned_put_url(self, bucket: str, key: str, expires: timedelta) -> str:
        return f"memory://{bucket}/{key}?mode=put"

    def presigned_get_url(self, bucket: str, key: str, expires: timedelta) -> str:
        return f"memory://{bucket}/{key}?mode=get"

    def exists(self, bucket: str, key: str) -> bool:
        with self._lock:
            return (bucket, key) in self._objects


@pytest.fixture
def store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore()


@pytest.fixture()
def pdf_bytes() -> bytes:
    """A minimal byte stream that starts like a PDF file."""
    return (
        b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [] /Count 0 >>\nendobj\n"
        b"trailer\n<< /Root 1 0 R >>\n%%EOF\n"
    )


@pytest.fixture()
def docx_bytes() -> bytes:
    """A zip container with the entry every DOCX file has."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr("word/document.xml", "<w:document/>")
    return buf.getvalue()


@pytest.fixture()
def text_bytes() -> bytes:
    return b"Jane Doe\nSenior Engineer\n"
