from intake.uploads.lifecycle import UploadLifecycle
from intake.uploads.models import CompletionResult, DownloadLink, WriteLocation

__all__ = ["CompletionResult", "DownloadLink", "UploadLifecycle", "WriteLocation"]
