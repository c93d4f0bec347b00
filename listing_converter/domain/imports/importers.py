"""
Importer types and their stage handlers.

An importer declares a fixed, ordered list of stages. The scheduler owns the
stage cursor; handlers only advance ``offset`` and their own payload fields,
and may spawn payloads for the following stage through the stage context.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import ValidationError as PydanticValidationError

from listing_converter.api.schemas.shared import ImportSettings, ImportStats, Task
from listing_converter.core.config import settings
from listing_converter.db import state
from listing_converter.domain.imports.collaborators import ImportCollaborators
from listing_converter.domain.imports.errors import (
    CollaboratorError,
    NotFoundError,
    RowRejected,
    RowSkipped,
    StageFailure,
    ValidationError,
)
from listing_converter.domain.imports.fingerprinting import calculate_row_fingerprint, fingerprint_field
from listing_converter.domain.imports.mapper import MappingPlan, build_mapping_plan, map_row
from listing_converter.domain.imports.progress import ProgressStore
from listing_converter.domain.imports.upsert import ImportStatus, upsert
from listing_converter.utils.date import detect_date_format

logger = logging.getLogger(__name__)

LOG_TEMPLATE_STARTED = "%s: Import started."
LOG_TEMPLATE_SUCCESS = "Imported %s: %s"
LOG_TEMPLATE_SKIPPED = "Skipped %s: %s"
LOG_TEMPLATE_FAILED = "Failed to import %s: %s"
LOG_TEMPLATE_UPDATED = "Updated %s: %s"
LOG_TEMPLATE_FINISHED = "%s: Import completed. Processed: %d, Imported: %d, Updated: %d, Skipped: %d, Failed: %d"

ACTION_PARSE = "parse"
ACTION_IMPORT = "import"

FINGERPRINT_FIELD_TYPE = "hidden"


@dataclass
class StageContext:
    """Everything a stage handler may touch during one tick."""
    importer_id: str
    settings: ImportSettings
    collaborators: ImportCollaborators
    progress: ProgressStore
    spawned: List[Dict[str, Any]] = field(default_factory=list)

    def spawn(self, payload: Dict[str, Any]) -> None:
        """Queue a payload for the next stage; the scheduler stamps its action."""
        self.spawned.append(dict(payload))

    def log(self, message: str, status: str = "info") -> None:
        self.progress.append_log(message, status)


StageHandler = Callable[[Task, StageContext], Optional[Task]]


def _pydantic_errors(exc: PydanticValidationError) -> List[Dict[str, str]]:
    errors = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
        message = error.get("msg", "Invalid value.")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": location, "message": message})
    return errors


class Importer(ABC):
    """Base importer: a stage list plus one handler per stage."""

    importer_id: str = ""
    title: str = ""
    stages: Tuple[str, ...] = ()

    @abstractmethod
    def handlers(self) -> Dict[str, StageHandler]:
        """Map every action in ``stages`` to its handler."""

    def handler_for(self, action: str) -> StageHandler:
        handler = self.handlers().get(action)
        if handler is None:
            raise StageFailure(f"No handler registered for action '{action}'.")
        return handler

    def validate_settings(
        self,
        raw_settings: Dict[str, Any],
        rows: List[Dict[str, Any]],
        collaborators: ImportCollaborators,
    ) -> ImportSettings:
        """
        Build the immutable settings snapshot for a new job.

        Raises:
            ValidationError: listing every offending field
        """
        errors: List[Dict[str, str]] = []
        import_settings: Optional[ImportSettings] = None

        try:
            import_settings = ImportSettings(**(raw_settings or {}))
        except PydanticValidationError as exc:
            errors.extend(_pydantic_errors(exc))

        post_type = (
            import_settings.post_type
            if import_settings
            else str((raw_settings or {}).get("post_type") or "gd_place")
        )
        if post_type not in collaborators.records.post_types():
            errors.append({"field": "post_type", "message": f"Invalid post type '{post_type}'."})

        if import_settings is not None and not import_settings.mapping:
            errors.append({"field": "mapping", "message": "map at least one source column to a destination field"})

        if not rows:
            errors.append({"field": "rows", "message": "No rows to import."})

        if errors:
            raise ValidationError(errors)

        return import_settings.model_copy(update={"row_count": len(rows)})

    def summary(self, stats: ImportStats) -> str:
        return LOG_TEMPLATE_FINISHED % (
            self.title,
            stats.processed,
            stats.succeeded - stats.updated,
            stats.updated,
            stats.skipped,
            stats.failed,
        )


class CsvImporter(Importer):
    """Imports listings from parsed CSV rows in two stages: parse, then import."""

    importer_id = "csv"
    title = "CSV"
    stages = (ACTION_PARSE, ACTION_IMPORT)

    def handlers(self) -> Dict[str, StageHandler]:
        return {
            ACTION_PARSE: self.task_parse,
            ACTION_IMPORT: self.task_import,
        }

    def validate_settings(
        self,
        raw_settings: Dict[str, Any],
        rows: List[Dict[str, Any]],
        collaborators: ImportCollaborators,
    ) -> ImportSettings:
        import_settings = super().validate_settings(raw_settings, rows, collaborators)

        plan = build_mapping_plan(import_settings.mapping, import_settings.post_type, collaborators.fields)
        date_formats = detect_column_date_formats(rows, plan.date_columns())
        if date_formats:
            logger.info("Detected date formats for %s: %s", self.importer_id, date_formats)
        return import_settings.model_copy(update={"date_formats": date_formats})

    def task_parse(self, task: Task, context: StageContext) -> Optional[Task]:
        """
        Page through the stored rows and spawn one import task per chunk.

        The total is counted once, on the first page.
        """
        import_settings = context.settings
        offset = task.offset
        total = state.count_rows(context.importer_id)

        if offset == 0:
            context.progress.increase(total=total)
            context.log(f"Found {total} listings.", "info")
            if not import_settings.test_mode:
                self._register_fingerprint_field(context)

        end = min(offset + import_settings.batch_size, total)
        chunk_size = import_settings.import_chunk_size
        for start in range(offset, end, chunk_size):
            context.spawn({"start": start, "end": min(start + chunk_size, end)})

        if end < total:
            return task.model_copy(update={"offset": end})
        return None

    def _register_fingerprint_field(self, context: StageContext) -> None:
        """Register the hidden field that stores row fingerprints, once per post type."""
        key = fingerprint_field(context.importer_id)
        post_type = context.settings.post_type
        fields = context.collaborators.fields
        try:
            if fields.get_field_type(key, post_type) is None:
                fields.register_field(key, post_type, FINGERPRINT_FIELD_TYPE)
                logger.info("Registered fingerprint field '%s' for %s", key, post_type)
        except CollaboratorError as exc:
            context.log(f'Could not register field "{key}": {exc.message}', "warning")

    def task_import(self, task: Task, context: StageContext) -> Optional[Task]:
        """Map, fingerprint and upsert one chunk of stored rows."""
        if "start" not in task.payload:
            return None

        start = int(task.payload["start"])
        end = int(task.payload.get("end", start))
        rows = state.fetch_rows(context.importer_id, start, end)
        plan = build_mapping_plan(
            context.settings.mapping,
            context.settings.post_type,
            context.collaborators.fields,
        )

        counts = {"succeeded": 0, "updated": 0, "skipped": 0, "failed": 0}
        for index, row in enumerate(rows, start=start):
            status = self._import_row(index, row, plan, context)
            if status is ImportStatus.SUCCESS:
                counts["succeeded"] += 1
            elif status is ImportStatus.UPDATED:
                counts["succeeded"] += 1
                counts["updated"] += 1
            elif status is ImportStatus.SKIPPED:
                counts["skipped"] += 1
            else:
                counts["failed"] += 1

        context.progress.increase(**counts)
        return None

    def _import_row(
        self,
        index: int,
        row: Dict[str, Any],
        plan: MappingPlan,
        context: StageContext,
    ) -> ImportStatus:
        fallback = f"row {index + 1}"
        try:
            mapped = map_row(row, plan, context.settings, context.collaborators, log=context.log)
        except RowSkipped as exc:
            context.log(f"{LOG_TEMPLATE_SKIPPED % ('listing', exc.title or fallback)} ({exc.message})", "warning")
            return ImportStatus.SKIPPED
        except RowRejected as exc:
            context.log(f"{LOG_TEMPLATE_FAILED % ('listing', exc.title or fallback)} ({exc.message})", "warning")
            return ImportStatus.FAILED
        except CollaboratorError as exc:
            context.log(f"{LOG_TEMPLATE_FAILED % ('listing', fallback)} ({exc.message})", "error")
            return ImportStatus.FAILED

        title = mapped.title or fallback
        result = upsert(
            mapped.record,
            mapped.taxonomy_terms,
            calculate_row_fingerprint(row),
            plan.post_type,
            context.settings.test_mode,
            importer_id=context.importer_id,
            collaborators=context.collaborators,
            log=context.log,
        )

        if result.status is ImportStatus.SUCCESS:
            context.log(LOG_TEMPLATE_SUCCESS % ("listing", title), "success")
        elif result.status is ImportStatus.UPDATED:
            context.log(LOG_TEMPLATE_UPDATED % ("listing", title), "warning")
        elif result.status is ImportStatus.SKIPPED:
            context.log(LOG_TEMPLATE_SKIPPED % ("listing", title), "warning")
        else:
            context.log(LOG_TEMPLATE_FAILED % ("listing", title), "warning")
        return result.status


def detect_column_date_formats(rows: List[Dict[str, Any]], columns: List[str]) -> Dict[str, str]:
    """Detect one date format per column from its first non-empty sample values."""
    formats: Dict[str, str] = {}
    for column in columns:
        samples = []
        for row in rows:
            value = str(row.get(column) or "").strip()
            if value:
                samples.append(value)
            if len(samples) >= settings.date_sample_size:
                break
        formats[column] = detect_date_format(samples)
    return formats


IMPORTERS: Dict[str, Type[Importer]] = {
    CsvImporter.importer_id: CsvImporter,
}


def get_importer(importer_id: str) -> Importer:
    importer_class = IMPORTERS.get(importer_id)
    if importer_class is None:
        raise NotFoundError(f"Unknown importer '{importer_id}'.")
    return importer_class()
