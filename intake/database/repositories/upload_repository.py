from dataclasses import dataclass
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from intake.database.connection import get_connection, transaction
from intake.database.models import (
    DELETABLE_STATUSES,
    UploadRecord,
    UploadStatus,
    is_blocking_status,
    is_replaceable_status,
)
from intake.exceptions import FatalStateError
from intake.logging.logger import Log

_COLUMNS = """
    upload_id, owner_id, storage_key, bucket, original_filename,
    declared_content_type, status, write_window_expiry, content_hash,
    is_canonical, duplicate_of, size_bytes, rejection_reason,
    created_at, updated_at
"""


@dataclass(frozen=True)
class CanonicalResolution:
    """Outcome of the canonical claim for one completed upload."""

    action: str  # "become_canonical" or "deduplicate"
    canonical_upload_id: str

    BECOME_CANONICAL = "become_canonical"
    DEDUPLICATE = "deduplicate"

    @property
    def deduplicated(self) -> bool:
        return self.action == self.DEDUPLICATE


class UploadRepository:
    """Database operations for the upload_records table.

    Every mutation carries its expected current status in the WHERE clause,
    so a record that has left ``pending`` is never rewritten.
    """

    def create_pending(
        self,
        *,
        upload_id: str,
        owner_id: str,
        storage_key: str,
        bucket: str,
        original_filename: str,
        declared_content_type: str,
        write_window_expiry: datetime,
    ) -> UploadRecord:
        """Insert a new upload record in ``pending`` status."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO upload_records
                    (upload_id, owner_id, storage_key, bucket, original_filename,
                     declared_content_type, status, write_window_expiry)
                    VALUES (%s, %s, %s, %s, %s, %s, 'pending', %s)
                    RETURNING {_COLUMNS}
                    """,
                    (
                        upload_id,
                        owner_id,
                        storage_key,
                        bucket,
                        original_filename,
                        declared_content_type,
                        write_window_expiry,
                    ),
                )
                row = cur.fetchone()
            conn.commit()

        if row is None:
            raise FatalStateError(f"Upload {upload_id} was not created")
        return UploadRecord(**row)

    def find_by_id(self, upload_id: str) -> UploadRecord | None:
        """Find an upload by ID regardless of owner. For system callers."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM upload_records WHERE upload_id = %s",
                    (upload_id,),
                )
                row = cur.fetchone()

        return UploadRecord(**row) if row is not None else None

    def find_owned(self, upload_id: str, owner_id: str) -> UploadRecord | None:
        """Find an upload by ID, scoped to its owner."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM upload_records
                    WHERE upload_id = %s AND owner_id = %s
                    """,
                    (upload_id, owner_id),
                )
                row = cur.fetchone()

        return UploadRecord(**row) if row is not None else None

    def find_canonical(self, owner_id: str, content_hash: str) -> UploadRecord | None:
        """Return the canonical record for an owner's content hash, if any."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM upload_records
                    WHERE owner_id = %s AND content_hash = %s AND is_canonical
                    """,
                    (owner_id, content_hash),
                )
                row = cur.fetchone()

        return UploadRecord(**row) if row is not None else None

    def list_for_owner(self, owner_id: str) -> list[UploadRecord]:
        """Return an owner's live uploads, newest first."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM upload_records
                    WHERE owner_id = %s AND status = ANY(%s)
                    ORDER BY created_at DESC
                    """,
                    (owner_id, [UploadStatus.UPLOADED, UploadStatus.DEDUPLICATED]),
                )
                rows = cur.fetchall()

        return [UploadRecord(**row) for row in rows]

    def find_stale_pending(self, cutoff: datetime, limit: int) -> list[UploadRecord]:
        """Pending uploads created before ``cutoff``, oldest first."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM upload_records
                    WHERE status = 'pending' AND created_at < %s
                    ORDER BY created_at
                    LIMIT %s
                    """,
                    (cutoff, limit),
                )
                rows = cur.fetchall()

        return [UploadRecord(**row) for row in rows]

    def mark_failed(self, upload_id: str) -> bool:
        """Move a pending upload to ``failed``. Returns False if it was not pending."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE upload_records
                    SET status = 'failed', updated_at = NOW()
                    WHERE upload_id = %s AND status = 'pending'
                    """,
                    (upload_id,),
                )
                updated = cur.rowcount == 1
            conn.commit()
        return updated

    def release_canonical(self, upload_id: str) -> bool:
        """Give up the canonical claim of a pending upload whose promotion failed.

        Later uploads of the same content can then claim it instead of
        deduplicating against a record that may never receive its bytes.
        """
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE upload_records
                    SET is_canonical = FALSE, updated_at = NOW()
                    WHERE upload_id = %s AND status = 'pending' AND is_canonical
                    """,
                    (upload_id,),
                )
                updated = cur.rowcount == 1
            conn.commit()
        return updated

    def mark_rejected(
        self,
        upload_id: str,
        *,
        reason: str,
        content_hash: str,
        size_bytes: int,
    ) -> bool:
        """Move a pending upload to ``rejected``. Returns False if it was not pending."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE upload_records
                    SET status = 'rejected', rejection_reason = %s,
                        content_hash = %s, size_bytes = %s, updated_at = NOW()
                    WHERE upload_id = %s AND status = 'pending'
                    """,
                    (reason, content_hash, size_bytes, upload_id),
                )
                updated = cur.rowcount == 1
            conn.commit()
        return updated

    def mark_deleted_by_user(self, upload_id: str, owner_id: str) -> bool:
        """Move an uploaded/deduplicated record to ``deleted-by-user``."""
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE upload_records
                    SET status = 'deleted-by-user', updated_at = NOW()
                    WHERE upload_id = %s AND owner_id = %s AND status = ANY(%s)
                    """,
                    (upload_id, owner_id, sorted(DELETABLE_STATUSES)),
                )
                updated = cur.rowcount == 1
            conn.commit()
        return updated

    def mark_uploaded(
        self,
        conn: psycopg.Connection[Any],
        upload_id: str,
        *,
        storage_key: str,
        content_hash: str,
        size_bytes: int,
    ) -> None:
        """Promote a canonical pending record to ``uploaded`` on the caller's transaction.

        Raises:
            FatalStateError: if the record is no longer pending or lost canonical status.
        """
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE upload_records
                SET status = 'uploaded', storage_key = %s, content_hash = %s,
                    size_bytes = %s, updated_at = NOW()
                WHERE upload_id = %s AND status = 'pending' AND is_canonical
                """,
                (storage_key, content_hash, size_bytes, upload_id),
            )
            if cur.rowcount == 0:
                raise FatalStateError(
                    f"Upload {upload_id} cannot be promoted: not a pending canonical record"
                )

    def resolve_canonical(
        self,
        upload_id: str,
        owner_id: str,
        content_hash: str,
        size_bytes: int,
    ) -> CanonicalResolution:
        """Decide, atomically, whether this upload becomes canonical for its hash.

        Completions of the same (owner, hash) are serialised with a
        transaction-scoped advisory lock; the partial unique index on
        canonical records backs the invariant at the storage level.

        Raises:
            FatalStateError: if the upload left ``pending`` while we were working.
        """
        with transaction() as conn:
            conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                (f"{owner_id}:{content_hash}",),
            )
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM upload_records
                    WHERE owner_id = %s AND content_hash = %s AND is_canonical
                    FOR UPDATE
                    """,
                    (owner_id, content_hash),
                )
                row = cur.fetchone()
            current = UploadRecord(**row) if row is not None else None

            if current is not None and current.upload_id == upload_id:
                Log.info(f"Upload {upload_id} already holds canonical status, resuming")
                return CanonicalResolution(CanonicalResolution.BECOME_CANONICAL, upload_id)

            if current is not None and is_blocking_status(current.status):
                self._mark_deduplicated(
                    conn, upload_id, current.upload_id, content_hash, size_bytes
                )
                return CanonicalResolution(CanonicalResolution.DEDUPLICATE, current.upload_id)

            if current is not None:
                if not is_replaceable_status(current.status):
                    raise FatalStateError(
                        f"Canonical upload {current.upload_id} has status "
                        f"'{current.status}' which can never be canonical"
                    )
                conn.execute(
                    """
                    UPDATE upload_records
                    SET is_canonical = FALSE, updated_at = NOW()
                    WHERE upload_id = %s
                    """,
                    (current.upload_id,),
                )
                Log.info(
                    f"Superseding canonical upload {current.upload_id} "
                    f"({current.status}) with {upload_id}"
                )

            self._claim_canonical(conn, upload_id, content_hash, size_bytes)
            return CanonicalResolution(CanonicalResolution.BECOME_CANONICAL, upload_id)

    def _claim_canonical(
        self,
        conn: psycopg.Connection[Any],
        upload_id: str,
        content_hash: str,
        size_bytes: int,
    ) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE upload_records
                SET is_canonical = TRUE, content_hash = %s, size_bytes = %s,
                    updated_at = NOW()
                WHERE upload_id = %s AND status = 'pending'
                """,
                (content_hash, size_bytes, upload_id),
            )
            if cur.rowcount == 0:
                raise FatalStateError(f"Upload {upload_id} is no longer pending")

    def _mark_deduplicated(
        self,
        conn: psycopg.Connection[Any],
        upload_id: str,
        canonical_upload_id: str,
        content_hash: str,
        size_bytes: int,
    ) -> None:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE upload_records
                SET status = 'deduplicated', duplicate_of = %s, content_hash = %s,
                    size_bytes = %s, updated_at = NOW()
                WHERE upload_id = %s AND status = 'pending'
                """,
                (canonical_upload_id, content_hash, size_bytes, upload_id),
            )
            if cur.rowcount == 0:
                raise FatalStateError(f"Upload {upload_id} is no longer pending")
