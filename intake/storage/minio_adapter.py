import io
from collections.abc import Callable, Iterator
from datetime import timedelta
from typing import TypeVar

import urllib3
from minio import Minio
from minio.commonconfig import CopySource
from minio.error import S3Error

from intake.config.settings import Settings
from intake.exceptions import NotFoundError, TransientIOError
from intake.logging.logger import Log
from intake.storage.base import BaseArtifactStore, ObjectInfo

T = TypeVar("T")

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchObject", "ResourceNotFound"})


class MinioArtifactStore(BaseArtifactStore):
    """Artifact store adapter over an S3-compatible MinIO endpoint."""

    def __init__(self, client: Minio) -> None:
        self._client = client

    def ensure_bucket_exists(self, bucket: str) -> None:
        """Create the bucket if it doesn't exist."""
        created = self._call(
            f"ensure bucket {bucket}",
            lambda: self._create_bucket_if_missing(bucket),
        )
        if created:
            Log.info(f"Created bucket '{bucket}'")

    def put(self, bucket: str, key: str, data: bytes, content_type: str) -> None:
        self._call(
            f"put {bucket}/{key}",
            lambda: self._client.put_object(
                bucket_name=bucket,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            ),
        )

    def head(self, bucket: str, key: str) -> ObjectInfo | None:
        try:
            stat = self._client.stat_object(bucket_name=bucket, object_name=key)
        except S3Error as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                return None
            raise TransientIOError(f"Object store error on head {bucket}/{key}: {exc}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientIOError(f"Object store unreachable on head {bucket}/{key}: {exc}") from exc
        return ObjectInfo(key=key, size=int(stat.size or 0), etag=stat.etag)

    def iter_chunks(self, bucket: str, key: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        try:
            response = self._client.get_object(bucket_name=bucket, object_name=key)
        except S3Error as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                raise NotFoundError(f"Object {bucket}/{key} not found") from exc
            raise TransientIOError(f"Object store error on get {bucket}/{key}: {exc}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientIOError(f"Object store unreachable on get {bucket}/{key}: {exc}") from exc
        try:
            yield from response.stream(chunk_size)
        except urllib3.exceptions.HTTPError as exc:
            raise TransientIOError(f"Stream of {bucket}/{key} interrupted: {exc}") from exc
        finally:
            response.close()
            response.release_conn()

    def copy(self, bucket: str, source_key: str, dest_key: str) -> None:
        self._call(
            f"copy {bucket}/{source_key} -> {dest_key}",
            lambda: self._client.copy_object(
                bucket_name=bucket,
                object_name=dest_key,
                source=CopySource(bucket_name=bucket, object_name=source_key),
            ),
        )

    def delete(self, bucket: str, key: str) -> None:
        try:
            self._client.remove_object(bucket_name=bucket, object_name=key)
        except S3Error as exc:
            if exc.code in _MISSING_OBJECT_CODES:
                return
            raise TransientIOError(f"Object store error on delete {bucket}/{key}: {exc}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientIOError(f"Object store unreachable on delete {bucket}/{key}: {exc}") from exc

    def presigned_put_url(self, bucket: str, key: str, expires: timedelta) -> str:
        return self._call(
            f"presign put {bucket}/{key}",
            lambda: self._client.presigned_put_object(
                bucket_name=bucket, object_name=key, expires=expires
            ),
        )

    def presigned_get_url(self, bucket: str, key: str, expires: timedelta) -> str:
        return self._call(
            f"presign get {bucket}/{key}",
            lambda: self._client.presigned_get_object(
                bucket_name=bucket, object_name=key, expires=expires
            ),
        )

    def _create_bucket_if_missing(self, bucket: str) -> bool:
        if self._client.bucket_exists(bucket_name=bucket):
            return False
        self._client.make_bucket(bucket_name=bucket)
        return True

    @staticmethod
    def _call(operation: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except S3Error as exc:
            raise TransientIOError(f"Object store error on {operation}: {exc}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientIOError(f"Object store unreachable on {operation}: {exc}") from exc


def build_minio_client(settings: Settings) -> Minio:
    """Build a MinIO client whose requests time out instead of hanging."""
    timeout = settings.storage_timeout_seconds
    http_client = urllib3.PoolManager(
        timeout=urllib3.Timeout(connect=timeout, read=timeout),
        retries=urllib3.Retry(
            total=2,
            backoff_factor=0.2,
            status_forcelist=[500, 502, 503, 504],
        ),
    )
    return Minio(
        endpoint=settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
        http_client=http_client,
    )


def build_artifact_store(settings: Settings) -> MinioArtifactStore:
    """Create the store adapter and make sure the artifact bucket exists."""
    store = MinioArtifactStore(build_minio_client(settings))
    store.ensure_bucket_exists(settings.artifact_bucket)
    Log.info(f"Connected to object store at '{settings.minio_endpoint}'")
    return store
