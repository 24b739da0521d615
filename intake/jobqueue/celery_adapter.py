from typing import Any

from celery import Celery
from kombu.exceptions import OperationalError

from intake.config.settings import Settings
from intake.exceptions import TransientIOError
from intake.jobqueue.base import BaseJobQueue
from intake.logging.logger import Log


class CeleryJobQueue(BaseJobQueue):
    """Publishes processing jobs as Celery tasks.

    The idempotency key becomes the Celery task id, so the consumer sees the
    same id on every redelivery of one job.
    """

    def __init__(self, app: Celery, *, task_name: str, queue_name: str) -> None:
        self._app = app
        self._task_name = task_name
        self._queue_name = queue_name

    def enqueue(self, message: dict[str, Any], idempotency_key: str) -> None:
        try:
            self._app.send_task(
                self._task_name,
                kwargs=message,
                task_id=idempotency_key,
                queue=self._queue_name,
                retry=False,
            )
        except (OperationalError, ConnectionError, TimeoutError) as exc:
            raise TransientIOError(
                f"Queue publish failed for task {idempotency_key}: {exc}"
            ) from exc
        Log.debug(f"Published task {idempotency_key} to queue '{self._queue_name}'")


def build_celery_app(settings: Settings) -> Celery:
    """Producer-side Celery app: JSON messages, bounded broker timeouts, no result backend."""
    app = Celery("intake", broker=settings.celery_broker_url)
    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_ignore_result=True,
        task_default_queue=settings.queue_name,
        broker_connection_timeout=settings.queue_timeout_seconds,
        broker_transport_options={
            "socket_timeout": settings.queue_timeout_seconds,
            "socket_connect_timeout": settings.queue_timeout_seconds,
            "max_retries": 0,
        },
    )
    Log.info(f"Celery producer configured for queue '{settings.queue_name}'")
    return app


def build_job_queue(settings: Settings) -> CeleryJobQueue:
    return CeleryJobQueue(
        build_celery_app(settings),
        task_name=settings.queue_task_name,
        queue_name=settings.queue_name,
    )
