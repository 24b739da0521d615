class IntakeError(Exception):
    """Base exception for all upload lifecycle and outbox errors."""


class ValidationError(IntakeError):
    """Raised on bad input or an artifact that fails admission checks. Not retried."""


class NotReadyError(IntakeError):
    """Raised when the artifact is not yet visible in quarantine. Caller retries."""


class NotFoundError(IntakeError):
    """Raised for unknown records, records owned by someone else, or broken chains."""


class AlreadyProcessingError(IntakeError):
    """Raised when a dispatch claim is lost because the job is no longer pending."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Outbox job {job_id} is no longer pending - already being processed")
        self.job_id = job_id


class TransientIOError(IntakeError):
    """Raised when the object store or queue fails. Reconciliation retries."""


class FatalStateError(IntakeError):
    """Raised when a write would violate a state invariant (e.g. mutating a terminal record)."""
