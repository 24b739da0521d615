import threading
import uuid
from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from intake.database.connection import transaction
from intake.database.models import OutboxEvent, UploadRecord
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.exceptions import AlreadyProcessingError, FatalStateError, TransientIOError
from intake.outbox.models import JobOutcome
from intake.outbox.producer import OutboxProducer, idempotency_key
from intake.worker.sweeps import OutboxSweep, StuckDispatchSweep


@pytest.fixture
def seed_job(
    outbox_repo: OutboxRepository,
    seed_pending: Callable[[], UploadRecord],
) -> Callable[[], OutboxEvent]:
    def _seed() -> OutboxEvent:
        record = seed_pending()
        with transaction() as conn:
            return outbox_repo.create_job(
                conn,
                job_id=str(uuid.uuid4()),
                kind="artifact-processing",
                upload_id=record.upload_id,
                owner_id=record.owner_id,
                payload={"file_type": "PDF"},
            )

    return _seed


def _sweep_settings() -> MagicMock:
    return MagicMock(
        outbox_sweep_batch_size=500,
        stuck_dispatch_timeout_seconds=-60,  # cutoff in the future: every parked job counts
        stuck_dispatch_sweep_batch_size=500,
    )


@pytest.mark.integration
class TestAppend:
    def test_history_is_append_only(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()

        outbox_repo.append(job.job_id, "sending", expected=("pending",))
        outbox_repo.append(job.job_id, "processing", expected=("sending",))

        history = outbox_repo.find_history(job.job_id)
        assert [(e.sequence, e.status) for e in history] == [
            (1, "pending"),
            (2, "sending"),
            (3, "processing"),
        ]
        assert all(e.payload == {"file_type": "PDF"} for e in history)

    def test_unexpected_status_appends_nothing(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()

        assert outbox_repo.append(job.job_id, "processing", expected=("sending",)) is None
        assert len(outbox_repo.find_history(job.job_id)) == 1

    def test_concurrent_claims_have_one_winner(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()
        contenders = 8
        barrier = threading.Barrier(contenders)
        claims: list[OutboxEvent | None] = []

        def claim() -> None:
            barrier.wait(timeout=10)
            claims.append(outbox_repo.append(job.job_id, "sending", expected=("pending",)))

        threads = [threading.Thread(target=claim) for _ in range(contenders)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(claims) == contenders
        assert len([c for c in claims if c is not None]) == 1
        assert [e.status for e in outbox_repo.find_history(job.job_id)] == ["pending", "sending"]


@pytest.mark.integration
class TestProducer:
    def test_dispatch_then_outcome(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()
        queue = MagicMock()
        producer = OutboxProducer(outbox_repo, queue)

        producer.dispatch(job.job_id)
        event = producer.record_outcome(job.job_id, JobOutcome.completed({"name": "Jane"}))

        assert event.result == {"name": "Jane"}
        assert [e.status for e in producer.job_history(job.job_id)] == [
            "pending",
            "sending",
            "processing",
            "completed",
        ]
        with pytest.raises(FatalStateError):
            producer.record_outcome(job.job_id, JobOutcome.failed("late duplicate"))
        assert producer.current_status(job.job_id) == "completed"

    def test_concurrent_dispatch_enqueues_once(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()
        queue = MagicMock()
        producer = OutboxProducer(outbox_repo, queue)
        contenders = 5
        barrier = threading.Barrier(contenders)
        lost: list[AlreadyProcessingError] = []

        def dispatch() -> None:
            barrier.wait(timeout=10)
            try:
                producer.dispatch(job.job_id)
            except AlreadyProcessingError as exc:
                lost.append(exc)

        threads = [threading.Thread(target=dispatch) for _ in range(contenders)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert queue.enqueue.call_count == 1
        assert len(lost) == contenders - 1
        assert producer.current_status(job.job_id) == "processing"


@pytest.mark.integration
class TestStuckDispatchRecovery:
    def test_parked_job_is_rearmed_and_redelivered_with_same_key(
        self, outbox_repo: OutboxRepository, seed_job: Callable[[], OutboxEvent]
    ) -> None:
        job = seed_job()
        queue = MagicMock()
        queue.enqueue.side_effect = [TransientIOError("broker down"), None]
        producer = OutboxProducer(outbox_repo, queue)

        with pytest.raises(TransientIOError):
            producer.dispatch(job.job_id)
        assert producer.current_status(job.job_id) == "sending"

        StuckDispatchSweep(outbox_repo, _sweep_settings()).run()
        assert producer.current_status(job.job_id) == "pending"

        OutboxSweep(outbox_repo, producer, _sweep_settings()).run()
        assert producer.current_status(job.job_id) == "processing"

        keys = {c.args[1] for c in queue.enqueue.call_args_list}
        assert keys == {idempotency_key("artifact-processing", job.job_id)}
        assert [e.status for e in producer.job_history(job.job_id)] == [
            "pending",
            "sending",
            "pending",
            "sending",
            "processing",
        ]
