"""
Endpoints that preview CSV exports, list mapping fields, and submit, advance,
abort and poll import jobs.
"""
import json
import logging

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from listing_converter.api.dependencies import get_collaborators, get_scheduler, http_error_from
from listing_converter.api.schemas.shared import (
    CsvPreviewResponse,
    JobStatusResponse,
    MappingFieldsResponse,
    SubmitJobRequest,
    SubmitJobResponse,
    TickResponse,
)
from listing_converter.domain.imports.errors import ImportPipelineError
from listing_converter.domain.imports.mapper import mapping_fields
from listing_converter.domain.imports.processors.csv_processor import (
    build_sample_data,
    extract_raw_csv_rows,
    process_csv,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["imports"])

PREVIEW_ROWS = 20


@router.post("/imports/{importer_id}", response_model=SubmitJobResponse)
async def submit_import(importer_id: str, request: SubmitJobRequest):
    """
    Start an import job from rows that were already parsed by the caller.

    Returns 422 with every offending field when the settings are invalid and
    409 when a job is running for the importer and ``restart`` is not set.
    """
    scheduler = get_scheduler(importer_id)
    try:
        handle = scheduler.submit(request.settings, request.rows, restart=request.restart)
    except ImportPipelineError as e:
        raise http_error_from(e)

    in_progress = scheduler.is_in_progress()
    return SubmitJobResponse(
        importer_id=importer_id,
        row_count=handle.row_count,
        in_progress=in_progress,
        progress=scheduler.progress.get_progress(in_progress),
    )


@router.post("/imports/{importer_id}/csv", response_model=SubmitJobResponse)
async def submit_csv_import(
    importer_id: str,
    file: UploadFile = File(...),
    settings_json: str = Form("{}"),
    restart: bool = Form(False),
):
    """Start an import job from an uploaded CSV export."""
    try:
        raw_settings = json.loads(settings_json or "{}")
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=422, detail=f"settings_json is not valid JSON: {e}")
    if not isinstance(raw_settings, dict):
        raise HTTPException(status_code=422, detail="settings_json must be a JSON object")

    scheduler = get_scheduler(importer_id)
    content = await file.read()
    try:
        rows, headers = process_csv(content, delimiter=str(raw_settings.get("delimiter") or ","))
        handle = scheduler.submit(raw_settings, rows, restart=restart, file_name=file.filename)
    except ImportPipelineError as e:
        raise http_error_from(e)

    logger.info("Queued CSV import of %s (%d rows)", file.filename, handle.row_count)
    in_progress = scheduler.is_in_progress()
    return SubmitJobResponse(
        importer_id=importer_id,
        row_count=handle.row_count,
        in_progress=in_progress,
        progress=scheduler.progress.get_progress(in_progress),
        headers=headers,
        sample_data=build_sample_data(rows, headers),
    )


@router.post("/imports/{importer_id}/csv/preview", response_model=CsvPreviewResponse)
async def preview_csv(
    importer_id: str,
    file: UploadFile = File(...),
    delimiter: str = Form(","),
):
    """
    Parse an uploaded CSV without starting a job.

    Returns the headers to map, one sample value per column and the first raw
    rows, so a client can build the column mapping before submitting.
    """
    get_scheduler(importer_id)
    content = await file.read()
    try:
        rows, headers = process_csv(content, delimiter=delimiter)
    except ImportPipelineError as e:
        raise http_error_from(e)

    return CsvPreviewResponse(
        importer_id=importer_id,
        file_name=file.filename,
        row_count=len(rows),
        headers=headers,
        sample_data=build_sample_data(rows, headers),
        raw_rows=extract_raw_csv_rows(content, delimiter=delimiter, num_rows=PREVIEW_ROWS),
    )


@router.get("/imports/{importer_id}/fields", response_model=MappingFieldsResponse)
async def list_mapping_fields(importer_id: str, post_type: str = "gd_place"):
    """Destination fields a source column can be mapped to."""
    get_scheduler(importer_id)
    collaborators = get_collaborators()
    if post_type not in collaborators.records.post_types():
        raise HTTPException(status_code=404, detail=f"Unknown post type '{post_type}'")

    try:
        fields = mapping_fields(post_type, collaborators.fields)
    except ImportPipelineError as e:
        raise http_error_from(e)

    return MappingFieldsResponse(importer_id=importer_id, post_type=post_type, fields=fields)


@router.post("/imports/{importer_id}/tick", response_model=TickResponse)
async def tick_import(importer_id: str):
    """Advance the job by one unit of work."""
    scheduler = get_scheduler(importer_id)
    result = scheduler.tick()
    return TickResponse(
        importer_id=importer_id,
        processed=result.processed,
        action=result.action,
        in_progress=result.in_progress,
        progress=result.progress,
    )


@router.get("/imports/{importer_id}/status", response_model=JobStatusResponse)
async def import_status(importer_id: str, skip_logs: int = 0):
    """Progress, counters and the log entries after the first ``skip_logs``."""
    scheduler = get_scheduler(importer_id)
    return scheduler.poll_status(skip_logs=max(0, skip_logs))


@router.post("/imports/{importer_id}/abort", response_model=JobStatusResponse)
async def abort_import(importer_id: str):
    scheduler = get_scheduler(importer_id)
    if not scheduler.abort():
        raise HTTPException(status_code=409, detail="No import is running for this importer")
    return scheduler.poll_status()
