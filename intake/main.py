import time
from dataclasses import dataclass
from typing import Any

from intake.config.settings import Settings
from intake.database.connection import apply_schema, close_pool, init_pool
from intake.database.models import OutboxEvent
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.database.repositories.upload_repository import UploadRepository
from intake.jobqueue.celery_adapter import build_job_queue
from intake.logging.logger import Log
from intake.outbox.models import build_outcome
from intake.outbox.producer import OutboxProducer
from intake.storage.minio_adapter import build_artifact_store
from intake.uploads.lifecycle import UploadLifecycle
from intake.worker.scheduler import ReconcilerScheduler, build_scheduler


@dataclass
class IntakeService:
    """The assembled components an embedding application calls into."""

    lifecycle: UploadLifecycle
    producer: OutboxProducer
    scheduler: ReconcilerScheduler

    def complete_upload(self, upload_id: str, owner_id: str) -> dict[str, Any]:
        """Complete an upload and return the response body for the caller."""
        return self.lifecycle.complete_upload(upload_id, owner_id).as_response()

    def handle_job_callback(self, job_id: str, body: Any) -> OutboxEvent:
        """Record the outcome a worker posted for a job; the body is validated first."""
        return self.producer.record_outcome(job_id, build_outcome(body))


def build_service(settings: Settings) -> IntakeService:
    """Build adapters, repositories and components. The pool must already be initialized."""
    store = build_artifact_store(settings)
    job_queue = build_job_queue(settings)
    upload_repo = UploadRepository()
    outbox_repo = OutboxRepository()

    producer = OutboxProducer(outbox_repo, job_queue)
    lifecycle = UploadLifecycle(upload_repo, outbox_repo, store, settings, producer)
    scheduler = build_scheduler(settings, upload_repo, outbox_repo, store, producer)
    return IntakeService(lifecycle=lifecycle, producer=producer, scheduler=scheduler)


def main() -> None:
    """Entry point: initialize pool -> build dependencies -> run reconcilers until interrupted."""
    settings = Settings()
    Log.configure(settings.log_level)
    init_pool(settings)

    try:
        apply_schema()
        service = build_service(settings)
        service.scheduler.start()
        Log.info("Intake reconcilers running, press Ctrl+C to stop")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            Log.info("Shutting down gracefully")
        finally:
            service.scheduler.stop()
    finally:
        close_pool()


if __name__ == "__main__":
    main()
