import uuid
from typing import Any

from intake.database.models import (
    ARTIFACT_PROCESSING,
    OutboxEvent,
    OutboxStatus,
    can_transition,
)
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.exceptions import AlreadyProcessingError, FatalStateError, NotFoundError
from intake.jobqueue.base import BaseJobQueue
from intake.logging.logger import Log
from intake.outbox.models import JobOutcome

# Fixed so a job always maps to the same queue message id across restarts.
IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c9a52-3d7e-4b8a-9c41-2e5d8f0a7b13")
SUPPORTED_KINDS = frozenset({ARTIFACT_PROCESSING})


def idempotency_key(kind: str, job_id: str) -> str:
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{kind}:{job_id}"))


def build_message(event: OutboxEvent) -> dict[str, Any]:
    """Queue message body for a claimed job."""
    return {
        **event.payload,
        "job_id": event.job_id,
        "upload_id": event.upload_id,
        "owner_id": event.owner_id,
        "kind": event.kind,
    }


class OutboxProducer:
    """Moves outbox jobs onto the job queue and records what the worker reports back.

    Every transition is an appended event conditioned on the job's current
    status, so concurrent dispatchers or duplicate callbacks cannot both win.
    """

    def __init__(self, outbox_repo: OutboxRepository, job_queue: BaseJobQueue) -> None:
        self._outbox_repo = outbox_repo
        self._job_queue = job_queue

    def dispatch(self, job_id: str) -> OutboxEvent:
        """Claim a pending job, enqueue it and mark it processing.

        Raises:
            AlreadyProcessingError: the job is unknown or not pending anymore.
            FatalStateError: the job kind has no queue mapping.
            TransientIOError: the queue rejected the message; the job stays in ``sending``.
        """
        current = self._outbox_repo.find_latest(job_id)
        if current is None:
            raise AlreadyProcessingError(job_id)
        if current.kind not in SUPPORTED_KINDS:
            Log.error(f"Job {job_id} has unsupported kind '{current.kind}'")
            raise FatalStateError(f"Unsupported outbox job kind '{current.kind}'")

        claimed = self._outbox_repo.append(
            job_id, OutboxStatus.SENDING, expected=(OutboxStatus.PENDING,)
        )
        if claimed is None:
            raise AlreadyProcessingError(job_id)

        self._job_queue.enqueue(
            build_message(claimed), idempotency_key(claimed.kind, job_id)
        )

        processing = self._outbox_repo.append(
            job_id, OutboxStatus.PROCESSING, expected=(OutboxStatus.SENDING,)
        )
        if processing is None:
            Log.warning(f"Job {job_id} left 'sending' while it was being enqueued")
            raise AlreadyProcessingError(job_id)

        Log.info("Dispatched job", job_id=job_id, upload_id=processing.upload_id)
        return processing

    def record_outcome(self, job_id: str, outcome: JobOutcome) -> OutboxEvent:
        """Append the terminal event for a job the worker has finished.

        Raises:
            NotFoundError: unknown job.
            FatalStateError: the job is not currently processing.
        """
        current = self._outbox_repo.find_latest(job_id)
        if current is None:
            raise NotFoundError(f"Job {job_id} not found")
        if not can_transition(current.status, outcome.status):
            reason = "already finished" if current.is_terminal() else "not dispatched yet"
            Log.error(
                f"Rejected outcome '{outcome.status}' for job {job_id} "
                f"in status '{current.status}' ({reason})"
            )
            raise FatalStateError(
                f"Job {job_id} is '{current.status}', expected 'processing'"
            )

        event = self._outbox_repo.append(
            job_id,
            outcome.status,
            expected=(OutboxStatus.PROCESSING,),
            error=outcome.error,
            result=outcome.result,
        )
        if event is None:
            Log.error(f"Job {job_id} received a concurrent outcome")
            raise FatalStateError(f"Job {job_id} already has an outcome")

        Log.info(f"Job finished with status '{event.status}'", job_id=job_id)
        return event

    def job_history(self, job_id: str) -> list[OutboxEvent]:
        history = self._outbox_repo.find_history(job_id)
        if not history:
            raise NotFoundError(f"Job {job_id} not found")
        return history

    def current_status(self, job_id: str) -> str:
        current = self._outbox_repo.find_latest(job_id)
        if current is None:
            raise NotFoundError(f"Job {job_id} not found")
        return current.status
