"""
Shared dependencies and helpers for the API routers.

Holds the process-wide collaborator bundle the import pipeline writes into
and the translation of pipeline errors into HTTP responses.
"""
import threading
from typing import Optional

from fastapi import HTTPException

from listing_converter.core.config import settings
from listing_converter.domain.imports.collaborators import ImportCollaborators
from listing_converter.domain.imports.errors import (
    ImportPipelineError,
    JobInProgressError,
    NotFoundError,
    ValidationError,
)
from listing_converter.domain.imports.importers import get_importer
from listing_converter.domain.imports.scheduler import Scheduler
from listing_converter.integrations.directory import InMemoryDirectory
from listing_converter.integrations.geocoder import NominatimGeocoder
from listing_converter.integrations.media import HttpMediaImporter

_collaborators: Optional[ImportCollaborators] = None
_collaborators_lock = threading.Lock()


def build_default_collaborators() -> ImportCollaborators:
    directory = InMemoryDirectory()
    return ImportCollaborators(
        records=directory,
        taxonomies=directory,
        fields=directory,
        media=HttpMediaImporter(),
        geocoder=NominatimGeocoder() if settings.geocoder_enabled else None,
    )


def get_collaborators() -> ImportCollaborators:
    global _collaborators
    if _collaborators is None:
        with _collaborators_lock:
            if _collaborators is None:
                _collaborators = build_default_collaborators()
    return _collaborators


def set_collaborators(collaborators: Optional[ImportCollaborators]) -> None:
    """Replace the collaborator bundle; ``None`` restores the default on next use."""
    global _collaborators
    with _collaborators_lock:
        _collaborators = collaborators


def get_scheduler(importer_id: str) -> Scheduler:
    """
    Build the scheduler bound to one importer slot.

    Raises:
    - HTTPException: 404 if the importer id is unknown
    """
    try:
        importer = get_importer(importer_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return Scheduler(importer, get_collaborators())


def http_error_from(exc: ImportPipelineError) -> HTTPException:
    """Map a pipeline error onto the HTTP status the API reports for it."""
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"message": exc.message, "errors": exc.errors})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, JobInProgressError):
        return HTTPException(status_code=409, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)
