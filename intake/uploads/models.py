from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class WriteLocation:
    """Where and until when a client may write an artifact's bytes."""

    upload_id: str
    write_target: str
    expiry: datetime
    storage_key: str


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of completing one upload."""

    upload_id: str
    status: str
    deduplicated: bool = False
    duplicate_of: str | None = None
    job_id: str | None = None

    def as_response(self) -> dict[str, Any]:
        response: dict[str, Any] = {"uploadId": self.upload_id, "status": self.status}
        if self.deduplicated:
            response["deduplicated"] = True
            response["existingUploadId"] = self.duplicate_of
        return response


@dataclass(frozen=True)
class DownloadLink:
    url: str
    filename: str
    expiry: datetime
