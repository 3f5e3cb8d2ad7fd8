"""
Error taxonomy for the analysis pipeline and the status client.

Each error knows the HTTP status it maps to, the short text returned to the
caller (`error`), and the short text recorded on the job (`job_message`).
`detail` carries the operator-facing diagnostic, when there is one.
"""

from typing import Optional


class VyncError(Exception):
    """Base for every known failure condition."""

    status_code = 500
    error = "Internal error"
    job_message = "Analysis failed unexpectedly"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.error
        self.detail = detail
        super().__init__(self.message if detail is None else f"{self.message}: {detail}")

    def to_response(self) -> dict:
        body = {"error": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class BadRequestError(VyncError):
    status_code = 400
    error = "Missing video_id or webhook record"


class NotFoundError(VyncError):
    status_code = 404
    error = "Video not found or no storage_path"


class ConfigurationError(VyncError):
    """The server cannot run analyses as configured. No job is touched."""

    error = "GEMINI_API_KEY not configured"


# -- Transport ---------------------------------------------------------------

class TransportError(VyncError):
    """A download, upload or generation call failed."""


class StorageDownloadError(TransportError):
    error = "Failed to download video from storage"
    job_message = "Failed to download video"


class UploadInitError(TransportError):
    error = "Gemini upload start failed"
    job_message = "Gemini upload initialization failed"


class UploadTransferError(TransportError):
    error = "Gemini file upload failed"
    job_message = "Gemini file upload failed"


class MissingFileUriError(UploadTransferError):
    pass


class GenerationError(TransportError):
    status_code = 502
    error = "Gemini analysis failed"
    job_message = "Gemini analysis failed"


class EmptyResponseError(GenerationError):
    pass


class MalformedAnalysisError(VyncError):
    status_code = 502
    error = "Gemini analysis failed"
    job_message = "Gemini analysis failed"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None,
                 preview: str = ""):
        self.preview = preview
        super().__init__(message, detail)


# -- Store -------------------------------------------------------------------

class StoreError(VyncError):
    """The job store could not be read."""

    error = "Job store unavailable"


class PersistenceError(StoreError):
    error = "Failed to save analysis"
    job_message = "Failed to save analysis"


class StatusUpdateError(PersistenceError):
    error = "Failed to update video status"
    job_message = "Failed to update video status"


class SchemaDriftError(StoreError):
    """Requested columns or tables do not exist. Soft: the next poll may succeed."""

    error = "Job store schema mismatch"


# -- Client ------------------------------------------------------------------

class SyncTimeoutError(VyncError):
    error = "timeout"
