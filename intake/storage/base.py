from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class ObjectInfo:
    """Metadata of a stored object as reported by the store."""

    key: str
    size: int
    etag: str | None = None


class BaseArtifactStore(ABC):
    """Contract for the object store holding quarantined and promoted artifacts.

    Every method raises TransientIOError when the store cannot be reached or
    answers with an unexpected error.
    """

    @abstractmethod
    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        """Store ``data`` under ``key``."""

    @abstractmethod
    def head(self, bucket: str, key: str) -> ObjectInfo | None:
        """Return object metadata, or None if the object does not exist."""

    @abstractmethod
    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Stream the object's bytes.

        Raises:
            NotFoundError: if the object does not exist.
        """

    @abstractmethod
    def copy(self, bucket: str, source_key: str, dest_key: str) -> None:
        """Server-side copy within a bucket."""

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""

    @abstractmethod
    def presigned_put_url(self, bucket: str, key: str, expires: timedelta) -> str:
        """Return a time-boxed URL a client can PUT the object to."""

    @abstractmethod
    def presigned_get_url(self, bucket: str, key: str, expires: timedelta) -> str:
        """Return a time-boxed URL a client can GET the object from."""
