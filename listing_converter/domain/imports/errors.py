"""
Exceptions raised by the import pipeline.

Row-scoped errors (``RowRejected``, ``RowSkipped``) never abort a batch;
``StageFailure`` halts the whole job.
"""
from typing import Any, Dict, List, Optional


class ImportPipelineError(Exception):
    """Base class for import pipeline errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ImportPipelineError):
    """Raised when import settings or template input fail validation."""

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        self.errors = errors
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        super().__init__(message or f"Invalid import settings. {summary}")


class NotFoundError(ImportPipelineError):
    """Raised when a template or importer does not exist."""


class JobInProgressError(ImportPipelineError):
    """Raised when a job is submitted while another one runs for the same importer."""

    def __init__(self, importer_id: str, message: Optional[str] = None):
        self.importer_id = importer_id
        super().__init__(
            message or f"An import is already running for importer '{importer_id}'. Abort it or restart explicitly."
        )


class RowRejected(ImportPipelineError):
    """A row could not produce a usable record; counted as failed."""

    def __init__(self, message: str, title: str = ""):
        self.title = title
        super().__init__(message)


class RowSkipped(ImportPipelineError):
    """A row was intentionally excluded; counted as skipped."""

    def __init__(self, message: str, title: str = ""):
        self.title = title
        super().__init__(message)


class StageFailure(ImportPipelineError):
    """A structural error inside a stage; halts the job."""


class CollaboratorError(ImportPipelineError):
    """An external collaborator (store, geocoder, media fetch) failed."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)
