"""Outcomes reported back by the document worker."""

from dataclasses import dataclass
from typing import Any

from intake.database.models import OutboxStatus
from intake.exceptions import ValidationError

DEFAULT_FAILURE_ERROR = "Processing failed"
_OUTCOME_STATUSES = frozenset(
    {OutboxStatus.COMPLETED, OutboxStatus.FAILED, OutboxStatus.NOT_A_CV}
)


@dataclass(frozen=True)
class JobOutcome:
    status: str
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def completed(cls, result: dict[str, Any]) -> "JobOutcome":
        if not isinstance(result, dict):
            raise ValidationError("A completed outcome requires a result object")
        return cls(status=OutboxStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error: str | None = None) -> "JobOutcome":
        return cls(status=OutboxStatus.FAILED, error=error or DEFAULT_FAILURE_ERROR)

    @classmethod
    def not_a_cv(cls) -> "JobOutcome":
        return cls(status=OutboxStatus.NOT_A_CV)


def build_outcome(data: Any) -> JobOutcome:
    """Validate a worker callback body and build a JobOutcome.

    Accepts ``{"status": "completed", "result": {...}}``,
    ``{"status": "failed", "error": "..."}`` and ``{"status": "not-a-cv"}``.

    Raises:
        ValidationError: on any malformed body.
    """
    if not isinstance(data, dict):
        raise ValidationError("Outcome must be an object")
    status = data.get("status")
    if status not in _OUTCOME_STATUSES:
        raise ValidationError(
            f"Invalid outcome status: {status!r}. "
            f"Allowed: {', '.join(sorted(_OUTCOME_STATUSES))}"
        )

    if status == OutboxStatus.COMPLETED:
        return JobOutcome.completed(data.get("result"))
    if status == OutboxStatus.FAILED:
        error = data.get("error")
        if error is not None and not isinstance(error, str):
            raise ValidationError("'error' must be a string or null")
        return JobOutcome.failed(error)
    return JobOutcome.not_a_cv()
