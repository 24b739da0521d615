from datetime import datetime, timedelta, timezone

from intake.config.settings import Settings
from intake.database.models import OutboxStatus
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.database.repositories.upload_repository import UploadRepository
from intake.exceptions import AlreadyProcessingError, TransientIOError
from intake.logging.logger import Log
from intake.outbox.producer import OutboxProducer
from intake.storage.base import BaseArtifactStore


class OutboxSweep:
    """Dispatch jobs that are still pending, e.g. after a failed eager dispatch."""

    name = "outbox"

    def __init__(
        self,
        outbox_repo: OutboxRepository,
        producer: OutboxProducer,
        settings: Settings,
    ) -> None:
        self._outbox_repo = outbox_repo
        self._producer = producer
        self._batch_size = settings.outbox_sweep_batch_size

    def run(self) -> dict[str, int]:
        jobs = self._outbox_repo.find_current_in_status(
            OutboxStatus.PENDING, self._batch_size
        )
        summary = {"found": len(jobs), "dispatched": 0, "skipped": 0, "deferred": 0, "failed": 0}
        for job in jobs:
            try:
                self._producer.dispatch(job.job_id)
                summary["dispatched"] += 1
            except AlreadyProcessingError:
                summary["skipped"] += 1
            except TransientIOError as exc:
                Log.warning(f"Job {job.job_id} could not be enqueued, left in 'sending': {exc}")
                summary["deferred"] += 1
            except Exception as exc:
                self._handle_failure(job.job_id, exc)
                summary["failed"] += 1
        return summary

    def _handle_failure(self, job_id: str, exc: Exception) -> None:
        Log.error(f"Dispatch failed: {exc}", job_id=job_id)
        if self._outbox_repo.append_failed(job_id, str(exc)) is None:
            Log.warning(f"Job {job_id} reached a terminal state before it could be failed")


class StaleUploadSweep:
    """Fail uploads whose bytes never arrived and drop their quarantine objects."""

    name = "stale-uploads"

    def __init__(
        self,
        upload_repo: UploadRepository,
        store: BaseArtifactStore,
        settings: Settings,
    ) -> None:
        self._upload_repo = upload_repo
        self._store = store
        self._timeout = timedelta(seconds=settings.stale_upload_timeout_seconds)
        self._batch_size = settings.stale_upload_sweep_batch_size

    def run(self) -> dict[str, int]:
        cutoff = datetime.now(timezone.utc) - self._timeout
        records = self._upload_repo.find_stale_pending(cutoff, self._batch_size)
        summary = {"found": len(records), "failed": 0, "cleanup_errors": 0}
        for record in records:
            # guarded on 'pending': a completion that won the race is left alone
            if not self._upload_repo.mark_failed(record.upload_id):
                continue
            summary["failed"] += 1
            Log.info(f"Upload {record.upload_id} expired before completion, marked failed")
            try:
                self._store.delete(record.bucket, record.storage_key)
            except TransientIOError as exc:
                Log.warning(f"Could not delete quarantined object {record.storage_key}: {exc}")
                summary["cleanup_errors"] += 1
        return summary


class StuckDispatchSweep:
    """Re-arm jobs parked in 'sending' so the outbox sweep dispatches them again."""

    name = "stuck-dispatch"

    def __init__(self, outbox_repo: OutboxRepository, settings: Settings) -> None:
        self._outbox_repo = outbox_repo
        self._timeout = timedelta(seconds=settings.stuck_dispatch_timeout_seconds)
        self._batch_size = settings.stuck_dispatch_sweep_batch_size

    def run(self) -> dict[str, int]:
        cutoff = datetime.now(timezone.utc) - self._timeout
        jobs = self._outbox_repo.find_current_in_status(
            OutboxStatus.SENDING, self._batch_size, older_than=cutoff
        )
        summary = {"found": len(jobs), "rearmed": 0}
        for job in jobs:
            event = self._outbox_repo.append(
                job.job_id, OutboxStatus.PENDING, expected=(OutboxStatus.SENDING,)
            )
            if event is not None:
                Log.warning("Job was stuck in 'sending', re-armed", job_id=job.job_id)
                summary["rearmed"] += 1
        return summary
