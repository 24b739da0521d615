from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import urllib3

from intake.exceptions import NotFoundError, TransientIOError
from intake.storage.base import ObjectInfo
from intake.storage.minio_adapter import MinioArtifactStore, build_minio_client


class _FakeS3Error(Exception):
    """Stands in for minio.error.S3Error, whose constructor differs between releases."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


def _make_store() -> tuple[MinioArtifactStore, MagicMock]:
    mock_client = MagicMock()
    return MinioArtifactStore(mock_client), mock_client


@patch("intake.storage.minio_adapter.S3Error", _FakeS3Error)
class TestHead:
    def test_returns_object_info(self) -> None:
        store, mock_client = _make_store()
        mock_client.stat_object.return_value = MagicMock(size=2048, etag="abc")

        info = store.head("artifacts", "quarantine/u-1")

        assert info == ObjectInfo(key="quarantine/u-1", size=2048, etag="abc")
        mock_client.stat_object.assert_called_once_with(
            bucket_name="artifacts", object_name="quarantine/u-1"
        )

    @pytest.mark.parametrize("code", ["NoSuchKey", "NoSuchObject", "ResourceNotFound"])
    def test_missing_object_returns_none(self, code: str) -> None:
        store, mock_client = _make_store()
        mock_client.stat_object.side_effect = _FakeS3Error(code)

        assert store.head("artifacts", "quarantine/u-1") is None

    def test_access_denied_is_transient(self) -> None:
        store, mock_client = _make_store()
        mock_client.stat_object.side_effect = _FakeS3Error("AccessDenied")

        with pytest.raises(TransientIOError, match="head"):
            store.head("artifacts", "quarantine/u-1")

    def test_timeout_is_transient(self) -> None:
        store, mock_client = _make_store()
        mock_client.stat_object.side_effect = urllib3.exceptions.ReadTimeoutError(
            None, "/", "read timed out"
        )

        with pytest.raises(TransientIOError, match="unreachable"):
            store.head("artifacts", "quarantine/u-1")


@patch("intake.storage.minio_adapter.S3Error", _FakeS3Error)
class TestIterChunks:
    def test_streams_and_releases_connection(self) -> None:
        store, mock_client = _make_store()
        response = MagicMock()
        response.stream.return_value = iter([b"%PDF-", b"1.7"])
        mock_client.get_object.return_value = response

        chunks = list(store.iter_chunks("artifacts", "quarantine/u-1", chunk_size=5))

        assert chunks == [b"%PDF-", b"1.7"]
        response.stream.assert_called_once_with(5)
        response.close.assert_called_once()
        response.release_conn.assert_called_once()

    def test_missing_object_raises_not_found(self) -> None:
        store, mock_client = _make_store()
        mock_client.get_object.side_effect = _FakeS3Error("NoSuchKey")

        with pytest.raises(NotFoundError):
            list(store.iter_chunks("artifacts", "quarantine/u-1"))

    def test_interrupted_stream_is_transient(self) -> None:
        store, mock_client = _make_store()
        response = MagicMock()
        response.stream.side_effect = urllib3.exceptions.ProtocolError("reset")
        mock_client.get_object.return_value = response

        with pytest.raises(TransientIOError, match="interrupted"):
            list(store.iter_chunks("artifacts", "quarantine/u-1"))
        response.release_conn.assert_called_once()


@patch("intake.storage.minio_adapter.S3Error", _FakeS3Error)
class TestMutations:
    def test_copy_within_bucket(self) -> None:
        store, mock_client = _make_store()

        store.copy("artifacts", "quarantine/u-1", "cv/owner-1/u-1")

        kwargs = mock_client.copy_object.call_args.kwargs
        assert kwargs["bucket_name"] == "artifacts"
        assert kwargs["object_name"] == "cv/owner-1/u-1"
        assert kwargs["source"].object_name == "quarantine/u-1"

    def test_copy_error_is_transient(self) -> None:
        store, mock_client = _make_store()
        mock_client.copy_object.side_effect = _FakeS3Error("InternalError")

        with pytest.raises(TransientIOError, match="copy"):
            store.copy("artifacts", "quarantine/u-1", "cv/owner-1/u-1")

    def test_delete_missing_object_is_ok(self) -> None:
        store, mock_client = _make_store()
        mock_client.remove_object.side_effect = _FakeS3Error("NoSuchKey")

        store.delete("artifacts", "quarantine/u-1")

    def test_delete_error_is_transient(self) -> None:
        store, mock_client = _make_store()
        mock_client.remove_object.side_effect = _FakeS3Error("SlowDown")

        with pytest.raises(TransientIOError):
            store.delete("artifacts", "quarantine/u-1")

    def test_put_uploads_bytes(self) -> None:
        store, mock_client = _make_store()

        store.put("artifacts", "quarantine/u-1", b"%PDF-1.7", "application/pdf")

        kwargs = mock_client.put_object.call_args.kwargs
        assert kwargs["length"] == 8
        assert kwargs["data"].read() == b"%PDF-1.7"


class TestPresignedUrls:
    def test_put_url(self) -> None:
        store, mock_client = _make_store()
        mock_client.presigned_put_object.return_value = "https://minio/put"

        url = store.presigned_put_url("artifacts", "quarantine/u-1", timedelta(seconds=15))

        assert url == "https://minio/put"
        mock_client.presigned_put_object.assert_called_once_with(
            bucket_name="artifacts",
            object_name="quarantine/u-1",
            expires=timedelta(seconds=15),
        )

    def test_get_url(self) -> None:
        store, mock_client = _make_store()
        mock_client.presigned_get_object.return_value = "https://minio/get"

        url = store.presigned_get_url("artifacts", "cv/owner-1/u-1", timedelta(minutes=5))

        assert url == "https://minio/get"


class TestEnsureBucket:
    def test_creates_missing_bucket(self) -> None:
        store, mock_client = _make_store()
        mock_client.bucket_exists.return_value = False

        store.ensure_bucket_exists("artifacts")

        mock_client.make_bucket.assert_called_once_with(bucket_name="artifacts")

    def test_keeps_existing_bucket(self) -> None:
        store, mock_client = _make_store()
        mock_client.bucket_exists.return_value = True

        store.ensure_bucket_exists("artifacts")

        mock_client.make_bucket.assert_not_called()


class TestBuildMinioClient:
    @patch("intake.storage.minio_adapter.Minio")
    def test_passes_timeout_bound_http_client(self, mock_minio: MagicMock) -> None:
        settings = MagicMock(
            storage_timeout_seconds=4,
            minio_endpoint="minio:9000",
            minio_access_key="key",
            minio_secret_key="secret",
            minio_secure=False,
        )

        build_minio_client(settings)

        kwargs = mock_minio.call_args.kwargs
        assert kwargs["endpoint"] == "minio:9000"
        assert isinstance(kwargs["http_client"], urllib3.PoolManager)
