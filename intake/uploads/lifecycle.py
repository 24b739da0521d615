import uuid
from datetime import datetime, timedelta, timezone

from intake.config.settings import Settings
from intake.database.connection import transaction
from intake.database.models import (
    ARTIFACT_PROCESSING,
    DELETABLE_STATUSES,
    OutboxEvent,
    UploadRecord,
    UploadStatus,
)
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.database.repositories.upload_repository import UploadRepository
from intake.exceptions import (
    AlreadyProcessingError,
    FatalStateError,
    NotFoundError,
    NotReadyError,
    TransientIOError,
    ValidationError,
)
from intake.logging.logger import Log
from intake.outbox.producer import OutboxProducer
from intake.storage.base import BaseArtifactStore
from intake.uploads.inspection import (
    ContentDigest,
    content_mismatch_reason,
    digest_chunks,
    resolve_file_type,
    validate_filename,
)
from intake.uploads.models import CompletionResult, DownloadLink, WriteLocation

_MAX_CHAIN_LENGTH = 32


class UploadLifecycle:
    """Drives an artifact from write-location issue to a promoted, deduplicated record.

    Bytes flow directly between the client and the object store; this class
    only inspects them server-side after the client reports the write done.
    """

    def __init__(
        self,
        upload_repo: UploadRepository,
        outbox_repo: OutboxRepository,
        store: BaseArtifactStore,
        settings: Settings,
        producer: OutboxProducer | None = None,
    ) -> None:
        self._upload_repo = upload_repo
        self._outbox_repo = outbox_repo
        self._store = store
        self._settings = settings
        self._producer = producer

    def issue_write_location(
        self,
        owner_id: str,
        filename: str,
        declared_content_type: str,
    ) -> WriteLocation:
        """Reserve an upload id and return a presigned URL the client can PUT to."""
        if not owner_id:
            raise ValidationError("`ownerId` is required")
        original_filename = validate_filename(filename)
        file_type = resolve_file_type(declared_content_type)

        upload_id = str(uuid.uuid4())
        storage_key = f"{self._settings.quarantine_prefix}/{upload_id}"
        ttl = timedelta(seconds=self._settings.write_location_ttl_seconds)
        write_target = self._store.presigned_put_url(
            self._settings.artifact_bucket, storage_key, ttl
        )
        expiry = datetime.now(timezone.utc) + ttl

        self._upload_repo.create_pending(
            upload_id=upload_id,
            owner_id=owner_id,
            storage_key=storage_key,
            bucket=self._settings.artifact_bucket,
            original_filename=original_filename,
            declared_content_type=file_type,
            write_window_expiry=expiry,
        )
        Log.info(f"Issued write location for upload {upload_id} ({file_type})")
        return WriteLocation(
            upload_id=upload_id,
            write_target=write_target,
            expiry=expiry,
            storage_key=storage_key,
        )

    def complete_upload(self, upload_id: str, owner_id: str) -> CompletionResult:
        """Inspect the quarantined bytes, deduplicate, and promote the artifact.

        Raises:
            NotFoundError: unknown upload or owned by someone else.
            FatalStateError: the upload is no longer pending.
            NotReadyError: the bytes have not arrived in quarantine yet.
            ValidationError: the artifact is empty, too large or not what it claims to be.
            TransientIOError: the object store failed; the upload can be completed again.
        """
        record = self._require_owned(upload_id, owner_id)
        if not record.is_mutable():
            Log.error(f"Upload {upload_id} completed again in status '{record.status}'")
            raise FatalStateError(
                f"Upload {upload_id} has status '{record.status}' and cannot be completed"
            )

        bucket = record.bucket
        quarantine_key = record.storage_key
        info = self._store.head(bucket, quarantine_key)
        if info is None:
            raise NotReadyError(f"Upload {upload_id} has not arrived yet")
        self._check_size(record, info.size)

        try:
            digest = digest_chunks(self._store.iter_chunks(bucket, quarantine_key))
        except NotFoundError as exc:
            raise NotReadyError(f"Upload {upload_id} disappeared while reading") from exc
        self._check_size(record, digest.size_bytes)
        self._check_content(record, digest)

        resolution = self._upload_repo.resolve_canonical(
            upload_id, owner_id, digest.sha256, digest.size_bytes
        )
        if resolution.deduplicated:
            Log.info(
                f"Upload {upload_id} deduplicated against {resolution.canonical_upload_id}"
            )
            self._discard_quarantine(record)
            return CompletionResult(
                upload_id=upload_id,
                status=UploadStatus.DEDUPLICATED,
                deduplicated=True,
                duplicate_of=resolution.canonical_upload_id,
            )

        try:
            event = self._promote(record, digest)
        except TransientIOError:
            # let other uploads of this content claim it while this one is stuck
            if self._upload_repo.release_canonical(upload_id):
                Log.warning("Promotion failed, canonical claim released", upload_id=upload_id)
            raise
        self._discard_quarantine(record)
        Log.info("Upload promoted, processing job queued", upload_id=upload_id, job_id=event.job_id)
        self._dispatch_eagerly(event.job_id)
        return CompletionResult(
            upload_id=upload_id,
            status=UploadStatus.UPLOADED,
            job_id=event.job_id,
        )

    def delete_upload(self, upload_id: str, owner_id: str) -> UploadRecord:
        """Mark an upload as deleted by its owner. Stored bytes are kept."""
        record = self._require_owned(upload_id, owner_id)
        if record.status not in DELETABLE_STATUSES:
            Log.error(f"Upload {upload_id} cannot be deleted in status '{record.status}'")
            raise FatalStateError(
                f"Upload {upload_id} has status '{record.status}' and cannot be deleted"
            )
        if not self._upload_repo.mark_deleted_by_user(upload_id, owner_id):
            raise FatalStateError(f"Upload {upload_id} changed status while deleting")

        Log.info("Upload deleted by owner", upload_id=upload_id)
        record.status = UploadStatus.DELETED_BY_USER
        return record

    def resolve_payload(self, upload_id: str, owner_id: str) -> UploadRecord:
        """Return the canonical record that actually holds the bytes for an upload.

        Follows ``duplicate_of`` links. A link to a superseded record jumps to
        whichever record is canonical for that content now.
        """
        record = self._require_owned(upload_id, owner_id)
        if record.status not in DELETABLE_STATUSES:
            raise NotFoundError(f"Upload {upload_id} has no payload ({record.status})")

        visited: set[str] = set()
        current = record
        while len(visited) < _MAX_CHAIN_LENGTH:
            if current.upload_id in visited:
                raise NotFoundError(f"Cycle in duplicate chain of upload {upload_id}")
            visited.add(current.upload_id)

            if current.duplicate_of is not None:
                target = self._upload_repo.find_owned(current.duplicate_of, owner_id)
                if target is None:
                    raise NotFoundError(
                        f"Broken duplicate chain: {current.upload_id} -> {current.duplicate_of}"
                    )
                current = target
                continue

            if current.is_canonical:
                return self._payload_holder(current)

            # superseded: whoever holds canonical status for this content now
            live = None
            if current.content_hash is not None:
                live = self._upload_repo.find_canonical(owner_id, current.content_hash)
            if live is None:
                raise NotFoundError(f"No live payload for upload {upload_id}")
            current = live

        raise NotFoundError(f"Duplicate chain of upload {upload_id} is too long")

    def get_download_url(self, upload_id: str, owner_id: str) -> DownloadLink:
        requested = self._require_owned(upload_id, owner_id)
        payload = self.resolve_payload(upload_id, owner_id)
        ttl = timedelta(seconds=self._settings.download_url_ttl_seconds)
        url = self._store.presigned_get_url(payload.bucket, payload.storage_key, ttl)
        return DownloadLink(
            url=url,
            filename=requested.original_filename,
            expiry=datetime.now(timezone.utc) + ttl,
        )

    def list_uploads(self, owner_id: str) -> list[UploadRecord]:
        return self._upload_repo.list_for_owner(owner_id)

    def _require_owned(self, upload_id: str, owner_id: str) -> UploadRecord:
        record = self._upload_repo.find_owned(upload_id, owner_id)
        if record is None:
            raise NotFoundError(f"Upload {upload_id} not found")
        return record

    def _check_size(self, record: UploadRecord, size: int) -> None:
        limit = self._settings.max_artifact_size_bytes
        if 0 < size <= limit:
            return
        self._store.delete(record.bucket, record.storage_key)
        self._upload_repo.mark_failed(record.upload_id)
        if size == 0:
            Log.warning(f"Upload {record.upload_id} is empty, marked failed")
            raise ValidationError("Artifact is empty")
        Log.warning(f"Upload {record.upload_id} is {size} bytes, marked failed")
        raise ValidationError(
            f"Artifact is {size} bytes, maximum allowed is {limit} bytes"
        )

    def _check_content(self, record: UploadRecord, digest: ContentDigest) -> None:
        reason = content_mismatch_reason(record.declared_content_type, digest.head)
        if reason is None:
            return
        self._upload_repo.mark_rejected(
            record.upload_id,
            reason=reason,
            content_hash=digest.sha256,
            size_bytes=digest.size_bytes,
        )
        self._discard_quarantine(record)
        Log.warning(f"Upload {record.upload_id} rejected: {reason}")
        raise ValidationError(reason)

    def _promote(self, record: UploadRecord, digest: ContentDigest) -> OutboxEvent:
        """Copy to the healthy namespace, verify, then persist status and job together."""
        bucket = record.bucket
        destination_key = (
            f"{self._settings.artifact_prefix}/{record.owner_id}/{record.upload_id}"
        )
        self._store.copy(bucket, record.storage_key, destination_key)
        self._verify_copy(record, destination_key, digest)

        try:
            with transaction() as conn:
                self._upload_repo.mark_uploaded(
                    conn,
                    record.upload_id,
                    storage_key=destination_key,
                    content_hash=digest.sha256,
                    size_bytes=digest.size_bytes,
                )
                return self._outbox_repo.create_job(
                    conn,
                    job_id=str(uuid.uuid4()),
                    kind=ARTIFACT_PROCESSING,
                    upload_id=record.upload_id,
                    owner_id=record.owner_id,
                    payload={"file_type": record.declared_content_type},
                )
        except FatalStateError:
            self._release_destination(record, destination_key)
            raise

    def _verify_copy(
        self,
        record: UploadRecord,
        destination_key: str,
        digest: ContentDigest,
    ) -> None:
        bucket = record.bucket
        info = self._store.head(bucket, destination_key)
        copied = None
        if info is not None and info.size == digest.size_bytes:
            copied = digest_chunks(self._store.iter_chunks(bucket, destination_key))
        if copied is not None and copied.sha256 == digest.sha256:
            return

        self._release_destination(record, destination_key)
        raise TransientIOError(
            f"Promoted copy of upload {record.upload_id} does not match the original"
        )

    def _release_destination(self, record: UploadRecord, destination_key: str) -> None:
        """Delete a promoted copy unless a concurrent completion already recorded it."""
        current = self._upload_repo.find_by_id(record.upload_id)
        if (
            current is not None
            and current.status == UploadStatus.UPLOADED
            and current.storage_key == destination_key
        ):
            Log.warning(
                "Promoted copy belongs to a concurrent completion, keeping it",
                upload_id=record.upload_id,
            )
            return
        self._store.delete(record.bucket, destination_key)

    def _discard_quarantine(self, record: UploadRecord) -> None:
        try:
            self._store.delete(record.bucket, record.storage_key)
        except TransientIOError as exc:
            Log.warning(
                f"Could not delete quarantined object for upload {record.upload_id}: {exc}"
            )

    def _dispatch_eagerly(self, job_id: str) -> None:
        if self._producer is None:
            return
        try:
            self._producer.dispatch(job_id)
        except AlreadyProcessingError:
            Log.debug(f"Job {job_id} already claimed by another dispatcher")
        except TransientIOError as exc:
            Log.warning(f"Eager dispatch of job {job_id} failed, sweep will retry: {exc}")

    @staticmethod
    def _payload_holder(record: UploadRecord) -> UploadRecord:
        if record.status == UploadStatus.PENDING:
            raise NotReadyError(f"Payload of upload {record.upload_id} is still being promoted")
        # a canonical record deleted by its owner still holds bytes for its duplicates
        if record.status in (UploadStatus.UPLOADED, UploadStatus.DELETED_BY_USER):
            return record
        raise NotFoundError(f"Upload {record.upload_id} holds no payload ({record.status})")
