"""
Resumable task-queue scheduler for import jobs.

One scheduler instance drives the persisted job slot of one importer. Each
``tick()`` runs exactly one queued task, so an import of any size progresses
in short, bounded units that can be triggered from a request, a timer or the
worker CLI, and resumed from another process.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from listing_converter.api.schemas.shared import ImportSettings, JobStatusResponse, Task
from listing_converter.db import state
from listing_converter.domain.imports.collaborators import ImportCollaborators
from listing_converter.domain.imports.errors import JobInProgressError, StageFailure
from listing_converter.domain.imports.importers import LOG_TEMPLATE_STARTED, Importer, StageContext
from listing_converter.domain.imports.progress import ProgressStore

logger = logging.getLogger(__name__)

SETTINGS_KEY = "settings"
QUEUE_KEY = "queue"
ABORT_KEY = "abort"


@dataclass
class JobHandle:
    importer_id: str
    row_count: int


@dataclass
class TickResult:
    processed: bool
    action: Optional[str] = None
    in_progress: bool = False
    progress: int = 100


class Scheduler:
    """Submit, advance, abort and poll the import job of one importer."""

    def __init__(self, importer: Importer, collaborators: ImportCollaborators, clock=time.time):
        self.importer = importer
        self.importer_id = importer.importer_id
        self.collaborators = collaborators
        self.progress = ProgressStore(self.importer_id, clock=clock)

    # Persisted state

    def _load_queue(self) -> List[Task]:
        return [Task(**task) for task in state.get_option(self.importer_id, QUEUE_KEY) or []]

    def _save_queue(self, queue: List[Task]) -> None:
        if queue:
            state.update_option(self.importer_id, QUEUE_KEY, [task.model_dump() for task in queue])
        else:
            state.delete_options(self.importer_id, [QUEUE_KEY])

    def _abort_requested(self) -> bool:
        return bool(state.get_option(self.importer_id, ABORT_KEY, False))

    def get_settings(self) -> Optional[ImportSettings]:
        stored = state.get_option(self.importer_id, SETTINGS_KEY)
        return ImportSettings(**stored) if stored else None

    def _discard_job(self) -> None:
        state.delete_options(self.importer_id, [QUEUE_KEY, ABORT_KEY])
        state.clear_rows(self.importer_id)

    # Operations

    def submit(
        self,
        raw_settings: Dict[str, Any],
        rows: List[Dict[str, Any]],
        *,
        restart: bool = False,
        file_name: Optional[str] = None,
    ) -> JobHandle:
        """
        Validate and start a new job for this importer.

        A running job is only replaced when ``restart`` is set; otherwise the
        submission is rejected with ``JobInProgressError``.
        """
        import_settings = self.importer.validate_settings(raw_settings, rows, self.collaborators)
        if file_name:
            import_settings = import_settings.model_copy(update={"file_name": file_name})

        if self.is_in_progress():
            if not restart:
                raise JobInProgressError(self.importer_id)
            logger.warning("Restarting import for %s; the running job is discarded", self.importer_id)

        self._discard_job()
        state.delete_options(self.importer_id, [SETTINGS_KEY])
        self.progress.start()

        state.update_option(self.importer_id, SETTINGS_KEY, import_settings.model_dump())
        row_count = state.store_rows(self.importer_id, rows)

        self.progress.append_log(LOG_TEMPLATE_STARTED % self.importer.title, "info")
        if import_settings.test_mode:
            self.progress.append_log("Test mode is enabled. No listings will be created or updated.", "warning")

        first_stage = Task(action=self.importer.stages[0], stage=0)
        self._save_queue([first_stage])
        logger.info("Submitted %s import with %d rows", self.importer_id, row_count)
        return JobHandle(importer_id=self.importer_id, row_count=row_count)

    def tick(self) -> TickResult:
        """
        Run the task at the head of the queue.

        Idempotent when nothing is pending. A pending abort discards the queue
        instead of running a task.
        """
        queue = self._load_queue()
        if not queue:
            return self._result(processed=False)

        if self._abort_requested():
            self._discard_job()
            self.progress.append_log("Import aborted.", "warning")
            return self._result(processed=False)

        task = queue.pop(0)
        try:
            queue = self._run_task(task, queue)
        except Exception as exc:
            logger.exception("Stage '%s' failed for %s", task.action, self.importer_id)
            message = exc.message if isinstance(exc, StageFailure) else str(exc)
            self.progress.append_log(f"Import stopped during {task.action}: {message}", "error")
            self._discard_job()
            return self._result(processed=True, action=task.action)

        self._save_queue(queue)
        if not queue:
            self._complete()
        return self._result(processed=True, action=task.action)

    def _run_task(self, task: Task, queue: List[Task]) -> List[Task]:
        stages = self.importer.stages
        if task.stage >= len(stages) or stages[task.stage] != task.action:
            raise StageFailure(f"Task action '{task.action}' does not match stage {task.stage}.")

        import_settings = self.get_settings()
        if import_settings is None:
            raise StageFailure("Import settings are missing.")

        context = StageContext(
            importer_id=self.importer_id,
            settings=import_settings,
            collaborators=self.collaborators,
            progress=self.progress,
        )
        result = self.importer.handler_for(task.action)(task, context)

        if result is not None and (result.action != task.action or result.stage != task.stage):
            raise StageFailure(f"Stage '{task.action}' handler tried to change the task action.")

        next_stage = task.stage + 1
        has_next_stage = next_stage < len(stages)
        if context.spawned and not has_next_stage:
            raise StageFailure(f"Stage '{task.action}' spawned tasks but is the last stage.")

        if result is not None:
            queue.insert(0, result)

        queue.extend(
            Task(action=stages[next_stage], stage=next_stage, payload=payload)
            for payload in context.spawned
        )

        if result is None and has_next_stage and not any(queued.stage > task.stage for queued in queue):
            queue.append(Task(action=stages[next_stage], stage=next_stage))

        return queue

    def _complete(self) -> None:
        stats = self.progress.get_stats()
        self.progress.append_log(self.importer.summary(stats), "success")
        state.clear_rows(self.importer_id)
        logger.info("Import %s finished: %s", self.importer_id, stats.model_dump())

    def abort(self) -> bool:
        """Request cancellation; honoured at the start of the next tick."""
        if not self._load_queue():
            return False
        state.update_option(self.importer_id, ABORT_KEY, True)
        logger.info("Abort requested for %s", self.importer_id)
        return True

    def is_in_progress(self) -> bool:
        return bool(self._load_queue()) and not self._abort_requested()

    def _result(self, processed: bool, action: Optional[str] = None) -> TickResult:
        in_progress = self.is_in_progress()
        return TickResult(
            processed=processed,
            action=action,
            in_progress=in_progress,
            progress=self.progress.get_progress(in_progress),
        )

    def poll_status(self, skip_logs: int = 0) -> JobStatusResponse:
        in_progress = self.is_in_progress()
        stats = self.progress.get_stats()
        logs = self.progress.get_logs(skip_logs)
        return JobStatusResponse(
            importer_id=self.importer_id,
            in_progress=in_progress,
            progress=self.progress.get_progress(in_progress, stats),
            message="Import in progress." if in_progress else "Import completed.",
            stats=stats,
            logs=logs,
            logs_shown=max(0, skip_logs) + len(logs),
        )
