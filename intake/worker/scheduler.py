import threading
from collections.abc import Callable

from intake.config.settings import Settings
from intake.database.repositories.outbox_repository import OutboxRepository
from intake.database.repositories.upload_repository import UploadRepository
from intake.logging.logger import Log
from intake.outbox.producer import OutboxProducer
from intake.storage.base import BaseArtifactStore
from intake.worker.sweeps import OutboxSweep, StaleUploadSweep, StuckDispatchSweep

Summary = dict[str, int]


class PeriodicTask:
    """Runs one sweep on a fixed interval in a daemon thread.

    At most one run is in flight at a time: a cycle that finds the previous
    run still going is skipped, including calls to run_once from other threads.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Summary],
        interval_seconds: float,
    ) -> None:
        self.name = name
        self._func = func
        self._interval = interval_seconds
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> Summary | None:
        """Run the sweep now. Returns its summary, or None if a run was already in flight."""
        if not self._running.acquire(blocking=False):
            Log.warning("Previous run still in progress, skipping this cycle", sweep=self.name)
            return None
        try:
            summary = self._func()
        finally:
            self._running.release()

        if any(summary.values()):
            Log.info(f"Sweep finished: {summary}", sweep=self.name)
        else:
            Log.debug("Nothing to do", sweep=self.name)
        return summary

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"sweep-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as exc:
                Log.exception(f"Sweep failed, will retry: {exc}", sweep=self.name)
            self._stop.wait(self._interval)


class ReconcilerScheduler:
    """Owns the periodic sweeps that repair state left behind by failures."""

    def __init__(self, tasks: list[PeriodicTask]) -> None:
        self._tasks = tasks

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        Log.info(f"Reconcilers started: {', '.join(task.name for task in self._tasks)}")

    def stop(self) -> None:
        for task in self._tasks:
            task.stop()
        Log.info("Reconcilers stopped")


def build_scheduler(
    settings: Settings,
    upload_repo: UploadRepository,
    outbox_repo: OutboxRepository,
    store: BaseArtifactStore,
    producer: OutboxProducer,
) -> ReconcilerScheduler:
    """Wire the three sweeps with their configured intervals."""
    outbox = OutboxSweep(outbox_repo, producer, settings)
    stale_uploads = StaleUploadSweep(upload_repo, store, settings)
    stuck_dispatch = StuckDispatchSweep(outbox_repo, settings)
    return ReconcilerScheduler(
        [
            PeriodicTask(outbox.name, outbox.run, settings.outbox_sweep_interval_seconds),
            PeriodicTask(
                stale_uploads.name,
                stale_uploads.run,
                settings.stale_upload_sweep_interval_seconds,
            ),
            PeriodicTask(
                stuck_dispatch.name,
                stuck_dispatch.run,
                settings.stuck_dispatch_sweep_interval_seconds,
            ),
        ]
    )
