from collections.abc import Iterable
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from intake.database.connection import get_connection
from intake.database.models import OutboxEvent, OutboxStatus
from intake.exceptions import FatalStateError

_COLUMNS = """
    id, job_id, sequence, kind, status, upload_id, owner_id,
    payload, error, result, created_at
"""

_NON_TERMINAL_STATUSES = (
    OutboxStatus.PENDING,
    OutboxStatus.SENDING,
    OutboxStatus.PROCESSING,
)


class OutboxRepository:
    """Append-only access to the outbox_events table.

    The current status of a job is its highest-sequence event. Appends are a
    single conditional INSERT: the new row is only written if the latest event
    has one of the expected statuses, and UNIQUE (job_id, sequence) makes two
    concurrent appends on the same predecessor collapse to one.
    """

    def create_job(
        self,
        conn: psycopg.Connection[Any],
        *,
        job_id: str,
        kind: str,
        upload_id: str,
        owner_id: str,
        payload: dict[str, Any],
    ) -> OutboxEvent:
        """Insert the first (``pending``) event of a job on the caller's transaction."""
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                INSERT INTO outbox_events
                (job_id, sequence, kind, status, upload_id, owner_id, payload)
                VALUES (%s, 1, %s, 'pending', %s, %s, %s)
                RETURNING {_COLUMNS}
                """,
                (job_id, kind, upload_id, owner_id, Jsonb(payload)),
            )
            row = cur.fetchone()

        if row is None:
            raise FatalStateError(f"Outbox job {job_id} was not created")
        return OutboxEvent(**row)

    def append(
        self,
        job_id: str,
        status: str,
        *,
        expected: Iterable[str],
        error: str | None = None,
        result: dict[str, Any] | None = None,
        conn: psycopg.Connection[Any] | None = None,
    ) -> OutboxEvent | None:
        """Append an event if the job's current status is one of ``expected``.

        Returns the new event, or None when the job is unknown, its current
        status is not expected, or a concurrent append won the race.
        Commits on its own connection unless ``conn`` is given.
        """
        params = {
            "job_id": job_id,
            "status": status,
            "expected": list(expected),
            "error": error,
            "result": Jsonb(result) if result is not None else None,
        }
        if conn is not None:
            return self._append(conn, params)
        with get_connection() as own_conn:
            event = self._append(own_conn, params)
            own_conn.commit()
        return event

    def append_failed(self, job_id: str, error: str) -> OutboxEvent | None:
        """Abort a job that has not reached a terminal state yet."""
        return self.append(
            job_id,
            OutboxStatus.FAILED,
            expected=_NON_TERMINAL_STATUSES,
            error=error,
        )

    def find_latest(self, job_id: str) -> OutboxEvent | None:
        """Return the current (highest-sequence) event of a job."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM outbox_events
                    WHERE job_id = %s
                    ORDER BY sequence DESC
                    LIMIT 1
                    """,
                    (job_id,),
                )
                row = cur.fetchone()

        return OutboxEvent(**row) if row is not None else None

    def find_history(self, job_id: str) -> list[OutboxEvent]:
        """Return every event of a job in the order they were appended."""
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM outbox_events
                    WHERE job_id = %s
                    ORDER BY sequence
                    """,
                    (job_id,),
                )
                rows = cur.fetchall()

        return [OutboxEvent(**row) for row in rows]

    def find_current_in_status(
        self,
        status: str,
        limit: int,
        older_than: datetime | None = None,
    ) -> list[OutboxEvent]:
        """Jobs whose current event has ``status``, oldest event first.

        With ``older_than``, only jobs whose current event was created before it.
        """
        with get_connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS} FROM (
                        SELECT DISTINCT ON (job_id) {_COLUMNS}
                        FROM outbox_events
                        ORDER BY job_id, sequence DESC
                    ) AS latest
                    WHERE status = %(status)s
                      AND (%(older_than)s::timestamptz IS NULL
                           OR created_at < %(older_than)s::timestamptz)
                    ORDER BY created_at
                    LIMIT %(limit)s
                    """,
                    {"status": status, "older_than": older_than, "limit": limit},
                )
                rows = cur.fetchall()

        return [OutboxEvent(**row) for row in rows]

    def _append(
        self,
        conn: psycopg.Connection[Any],
        params: dict[str, Any],
    ) -> OutboxEvent | None:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                f"""
                WITH latest AS (
                    SELECT job_id, sequence, kind, status, upload_id, owner_id, payload
                    FROM outbox_events
                    WHERE job_id = %(job_id)s
                    ORDER BY sequence DESC
                    LIMIT 1
                )
                INSERT INTO outbox_events
                (job_id, sequence, kind, status, upload_id, owner_id, payload, error, result)
                SELECT job_id, sequence + 1, kind, %(status)s::text, upload_id, owner_id,
                       payload, %(error)s::text, %(result)s::jsonb
                FROM latest
                WHERE status = ANY(%(expected)s::text[])
                ON CONFLICT (job_id, sequence) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                params,
            )
            row = cur.fetchone()

        return OutboxEvent(**row) if row is not None else None
