"""
Tests for the resumable import scheduler.

This suite validates:
1. Submission validation and the one-job-per-importer policy
2. Stage sequencing: parse pages rows and spawns import chunks
3. Idempotent re-imports through fingerprints
4. Abort, stage failure and progress semantics
5. Collaborator failures degrade single rows without halting the job
"""

import pytest

from listing_converter.api.schemas.shared import Task
from listing_converter.db import state
from listing_converter.domain.imports import importers
from listing_converter.domain.imports.collaborators import ImportCollaborators
from listing_converter.domain.imports.errors import CollaboratorError, JobInProgressError, ValidationError
from listing_converter.domain.imports.importers import CsvImporter, Importer, get_importer
from listing_converter.domain.imports.scheduler import QUEUE_KEY, Scheduler
from listing_converter.integrations.directory import InMemoryDirectory
from tests.utils.fakes import log_lines

MAPPING = {"Name": "post_title", "Tags": "post_tags", "City": "city"}


def _rows(count, prefix="Listing"):
    return [{"Name": f"{prefix} {index}", "Tags": "food,coffee", "City": "Sydney"} for index in range(count)]


def _drain(scheduler, limit=100):
    ticks = 0
    while scheduler.is_in_progress():
        scheduler.tick()
        ticks += 1
        assert ticks < limit, "queue never drained"
    return ticks


def _queued_actions(importer_id="csv"):
    return [(task["action"], task["payload"]) for task in state.get_option(importer_id, QUEUE_KEY) or []]


class TestSubmit:

    def test_every_offending_field_is_reported(self, scheduler):
        with pytest.raises(ValidationError) as excinfo:
            scheduler.submit({"post_type": "unknown", "mapping": {}}, [])

        fields = {error["field"] for error in excinfo.value.errors}
        assert fields == {"mapping", "post_type", "rows"}
        assert not scheduler.is_in_progress()

    def test_invalid_delimiter_is_reported(self, scheduler):
        with pytest.raises(ValidationError) as excinfo:
            scheduler.submit({"mapping": MAPPING, "delimiter": ";;"}, _rows(1))

        assert [error["field"] for error in excinfo.value.errors] == ["delimiter"]

    def test_submit_enqueues_first_stage_and_stores_settings(self, scheduler):
        handle = scheduler.submit({"mapping": MAPPING, "post_type": "gd_place"}, _rows(3))

        assert handle.row_count == 3
        assert scheduler.is_in_progress()
        assert _queued_actions() == [("parse", {})]
        stored = scheduler.get_settings()
        assert stored.mapping == MAPPING
        assert stored.row_count == 3
        assert log_lines(scheduler.progress.get_logs()) == ["CSV: Import started."]

    def test_date_formats_are_detected_at_submission(self, scheduler):
        rows = [
            {"Name": "A", "Opened": ""},
            {"Name": "B", "Opened": "15/11/2024"},
        ]
        scheduler.submit({"mapping": {"Name": "post_title", "Opened": "opening_date"}}, rows)

        assert scheduler.get_settings().date_formats == {"Opened": "d/m/Y"}

    def test_second_submission_is_rejected_while_running(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(3))

        with pytest.raises(JobInProgressError):
            scheduler.submit({"mapping": MAPPING}, _rows(5))

        assert scheduler.get_settings().row_count == 3

    def test_restart_replaces_the_running_job(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(3))
        scheduler.tick()

        handle = scheduler.submit({"mapping": MAPPING}, _rows(5), restart=True)

        assert handle.row_count == 5
        assert _queued_actions() == [("parse", {})]
        assert scheduler.progress.get_stats().total == 0

    def test_test_mode_notice_is_logged(self, scheduler):
        scheduler.submit({"mapping": MAPPING, "test_mode": "yes"}, _rows(1))

        assert scheduler.get_settings().test_mode is True
        assert "Test mode is enabled" in log_lines(scheduler.progress.get_logs())[-1]


class TestStages:

    def test_parse_spawns_one_import_task_per_chunk(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(25))

        result = scheduler.tick()

        assert result.processed and result.action == "parse"
        assert _queued_actions() == [
            ("import", {"start": 0, "end": 10}),
            ("import", {"start": 10, "end": 20}),
            ("import", {"start": 20, "end": 25}),
        ]
        assert scheduler.progress.get_stats().total == 25

    def test_parse_pages_through_rows_in_batches(self, scheduler):
        scheduler.submit({"mapping": MAPPING, "batch_size": 10}, _rows(25))

        actions = []
        while scheduler.is_in_progress():
            actions.append(scheduler.tick().action)

        assert actions == ["parse", "parse", "parse", "import", "import", "import"]
        assert scheduler.progress.get_stats().succeeded == 25

    def test_rows_are_imported_in_source_order(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING, "import_chunk_size": 2}, _rows(5))
        _drain(scheduler)

        titles = [record["post_title"] for record in directory.records()]
        assert titles == [f"Listing {index}" for index in range(5)]

    def test_full_run_creates_records_and_logs_summary(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING}, _rows(3))
        _drain(scheduler)

        stats = scheduler.progress.get_stats()
        assert (stats.total, stats.succeeded, stats.updated, stats.skipped, stats.failed) == (3, 3, 0, 0, 0)
        assert len(directory.records()) == 3
        assert directory.records()[0]["tax_input"] == {"gd_place_tags": ["food", "coffee"]}

        lines = log_lines(scheduler.progress.get_logs())
        assert "Found 3 listings." in lines
        assert "Imported listing: Listing 0" in lines
        assert lines[-1] == "CSV: Import completed. Processed: 3, Imported: 3, Updated: 0, Skipped: 0, Failed: 0"
        assert state.count_rows("csv") == 0

    def test_skipped_and_failed_rows_are_counted(self, scheduler):
        rows = [
            {"Name": "Cafe X", "Tags": "", "City": ""},
            {"Name": "", "Tags": "", "City": ""},
            {"Name": "", "Tags": "food", "City": ""},
        ]
        scheduler.submit({"mapping": MAPPING}, rows)
        _drain(scheduler)

        stats = scheduler.progress.get_stats()
        assert (stats.succeeded, stats.skipped, stats.failed) == (1, 1, 1)
        lines = log_lines(scheduler.progress.get_logs())
        assert any(line.startswith("Skipped listing: row 2") for line in lines)
        assert any(line.startswith("Failed to import listing: row 3") for line in lines)

    def test_test_mode_writes_nothing(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING, "test_mode": True}, _rows(4))
        _drain(scheduler)

        assert directory.records() == []
        assert scheduler.progress.get_stats().succeeded == 4

    def test_tick_without_pending_task_is_a_no_op(self, scheduler):
        result = scheduler.tick()

        assert result.processed is False
        assert result.in_progress is False
        assert result.progress == 100
        assert scheduler.progress.get_logs() == []

    def test_last_stage_completion_drains_queue(self, collaborators, clock):
        scheduler = Scheduler(get_importer("csv"), collaborators, clock=clock)
        scheduler.submit({"mapping": MAPPING}, _rows(1))

        assert _drain(scheduler) == 2
        assert state.get_option("csv", QUEUE_KEY) is None


class TestIdempotence:

    def test_reimporting_same_rows_updates_instead_of_duplicating(self, scheduler, directory):
        rows = _rows(12)
        scheduler.submit({"mapping": MAPPING}, rows)
        _drain(scheduler)
        first_ids = {record["id"] for record in directory.records()}

        scheduler.submit({"mapping": MAPPING}, rows)
        _drain(scheduler)

        stats = scheduler.progress.get_stats()
        assert stats.updated == 12
        assert stats.succeeded == 12
        assert {record["id"] for record in directory.records()} == first_ids
        assert log_lines(scheduler.progress.get_logs())[-1] == (
            "CSV: Import completed. Processed: 12, Imported: 0, Updated: 12, Skipped: 0, Failed: 0"
        )

    def test_changed_row_creates_a_new_record(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING}, _rows(2))
        _drain(scheduler)

        scheduler.submit({"mapping": MAPPING}, _rows(2, prefix="Renamed"))
        _drain(scheduler)

        assert len(directory.records()) == 4


class TestProgressAndAbort:

    def test_processed_is_monotonic_and_bounded(self, scheduler):
        scheduler.submit({"mapping": MAPPING, "import_chunk_size": 3}, _rows(10))

        previous = 0
        while scheduler.is_in_progress():
            scheduler.tick()
            stats = scheduler.progress.get_stats()
            assert stats.processed >= previous
            assert stats.processed <= stats.total
            previous = stats.processed

        assert previous == 10

    def test_empty_total_progress_convention(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(2))

        status = scheduler.poll_status()
        assert status.in_progress is True
        assert status.stats.total == 0
        assert status.progress == 0

        _drain(scheduler)
        status = scheduler.poll_status()
        assert status.in_progress is False
        assert status.progress == 100

    def test_abort_stops_before_the_next_unit(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(30))
        scheduler.tick()  # parse
        scheduler.tick()  # first chunk

        assert scheduler.abort() is True
        assert scheduler.is_in_progress() is False

        result = scheduler.tick()

        assert result.processed is False
        assert scheduler.progress.get_stats().processed == 10
        assert state.get_option("csv", QUEUE_KEY) is None
        assert log_lines(scheduler.progress.get_logs())[-1] == "Import aborted."
        assert scheduler.tick().processed is False

    def test_abort_without_job_is_rejected(self, scheduler):
        assert scheduler.abort() is False

    def test_new_job_can_start_after_abort(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(3))
        scheduler.abort()

        scheduler.submit({"mapping": MAPPING}, _rows(2))

        assert scheduler.is_in_progress()
        _drain(scheduler)
        assert scheduler.progress.get_stats().succeeded == 2

    def test_poll_status_returns_only_new_logs(self, scheduler):
        scheduler.submit({"mapping": MAPPING}, _rows(2))
        first = scheduler.poll_status()
        scheduler.tick()

        second = scheduler.poll_status(skip_logs=first.logs_shown)

        assert first.logs_shown == 1
        assert log_lines(second.logs) == ["Found 2 listings."]
        assert second.logs_shown == 2


class TestStageFailure:

    def test_handler_exception_halts_the_job(self, scheduler, monkeypatch):
        scheduler.submit({"mapping": MAPPING}, _rows(5))
        scheduler.tick()

        def broken_fetch(*args, **kwargs):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(state, "fetch_rows", broken_fetch)
        result = scheduler.tick()

        assert result.processed is True
        assert result.in_progress is False
        entries = scheduler.progress.get_logs()
        assert entries[-1].status == "error"
        assert log_lines(entries)[-1] == "Import stopped during import: storage unavailable"
        assert state.get_option("csv", QUEUE_KEY) is None

    def test_handler_may_not_change_the_action(self, collaborators, clock, monkeypatch):
        def hijacking_parse(self, task, context):
            return Task(action="import", stage=task.stage, offset=5)

        monkeypatch.setattr(CsvImporter, "task_parse", hijacking_parse)
        scheduler = Scheduler(CsvImporter(), collaborators, clock=clock)
        scheduler.submit({"mapping": MAPPING}, _rows(5))

        scheduler.tick()

        assert scheduler.is_in_progress() is False
        assert "tried to change the task action" in log_lines(scheduler.progress.get_logs())[-1]

    def test_importer_base_requires_handlers(self):
        with pytest.raises(TypeError):
            Importer()


class FlakyTermDirectory(InMemoryDirectory):
    """Term lookups time out on the configured call numbers."""

    def __init__(self, failing_calls, **kwargs):
        super().__init__(**kwargs)
        self.failing_calls = set(failing_calls)
        self.lookups = 0

    def term_exists(self, name, taxonomy):
        self.lookups += 1
        if self.lookups in self.failing_calls:
            raise CollaboratorError("term lookup timed out")
        return super().term_exists(name, taxonomy)


class TestCollaboratorFailures:

    CATEGORY_MAPPING = {"Name": "post_title", "Category": "post_category"}

    @staticmethod
    def _category_rows(count):
        return [{"Name": f"Listing {index}", "Category": "Cafes"} for index in range(count)]

    def _scheduler(self, directory, media, geocoder, clock):
        collaborators = ImportCollaborators(
            records=directory,
            taxonomies=directory,
            fields=directory,
            media=media,
            geocoder=geocoder,
        )
        return Scheduler(CsvImporter(), collaborators, clock=clock)

    def test_failed_term_lookup_skips_the_term_and_keeps_importing(self, media, geocoder, clock):
        directory = FlakyTermDirectory(failing_calls={2}, post_types=["gd_place"])
        scheduler = self._scheduler(directory, media, geocoder, clock)
        scheduler.submit({"mapping": self.CATEGORY_MAPPING}, self._category_rows(5))

        _drain(scheduler)

        stats = scheduler.progress.get_stats()
        assert (stats.total, stats.succeeded, stats.failed) == (5, 5, 0)
        records = directory.records()
        assert len(records) == 5
        assert "tax_input" not in records[1]
        assert records[2]["tax_input"]["gd_placecategory"] == records[0]["tax_input"]["gd_placecategory"]

        entries = scheduler.progress.get_logs()
        warnings = [entry.message for entry in entries if entry.status == "warning"]
        assert any('Could not look up term "Cafes"' in message for message in warnings)
        assert log_lines(entries)[-1].startswith("CSV: Import completed. Processed: 5, Imported: 5")

    def test_failed_option_lookup_keeps_the_value(self, directory, media, geocoder, clock, monkeypatch):
        def unavailable(field_key, post_type):
            raise CollaboratorError("field registry unavailable")

        monkeypatch.setattr(directory, "get_option_values", unavailable)
        scheduler = self._scheduler(directory, media, geocoder, clock)
        scheduler.submit({"mapping": {"Name": "post_title", "Price": "price_range"}}, [{"Name": "Cafe X", "Price": "$$$"}])

        _drain(scheduler)

        assert scheduler.progress.get_stats().succeeded == 1
        assert directory.records()[0]["price_range"] == "$$$"

    def test_collaborator_error_while_mapping_fails_only_that_row(self, scheduler, directory, monkeypatch):
        original_map_row = importers.map_row

        def map_row(row, *args, **kwargs):
            if row["Name"] == "Listing 1":
                raise CollaboratorError("directory unavailable")
            return original_map_row(row, *args, **kwargs)

        monkeypatch.setattr(importers, "map_row", map_row)
        scheduler.submit({"mapping": MAPPING}, _rows(3))

        _drain(scheduler)

        stats = scheduler.progress.get_stats()
        assert (stats.processed, stats.succeeded, stats.failed) == (3, 2, 1)
        assert len(directory.records()) == 2
        lines = log_lines(scheduler.progress.get_logs())
        assert "Failed to import listing: row 2 (directory unavailable)" in lines

    def test_fingerprint_field_is_registered_before_importing(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING}, _rows(2))
        scheduler.tick()

        assert directory.get_field_type("csv_id", "gd_place") == "hidden"

    def test_test_mode_registers_no_field(self, scheduler, directory):
        scheduler.submit({"mapping": MAPPING, "test_mode": True}, _rows(2))
        _drain(scheduler)

        assert directory.get_field_type("csv_id", "gd_place") is None
