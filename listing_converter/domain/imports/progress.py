"""
Progress counters and the operator-facing job log of one importer.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import List, Optional

from listing_converter.api.schemas.shared import ImportStats, LogEntry
from listing_converter.db import state

logger = logging.getLogger(__name__)

STATS_KEY = "stats"
START_TIME_KEY = "start_time"

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def format_elapsed_time(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class ProgressStore:
    """Stats and append-only log for the job slot of ``importer_id``."""

    def __init__(self, importer_id: str, clock=time.time):
        self.importer_id = importer_id
        self._clock = clock

    def start(self) -> None:
        """Reset counters and log and stamp the job start time."""
        self.reset()
        state.update_option(self.importer_id, START_TIME_KEY, int(self._clock()))

    def reset(self) -> None:
        state.delete_options(self.importer_id, [STATS_KEY, START_TIME_KEY])
        state.clear_log_entries(self.importer_id)

    def append_log(self, message: str, status: str = "info") -> LogEntry:
        now = self._clock()
        start_time = state.get_option(self.importer_id, START_TIME_KEY)
        elapsed = int(now - start_time) if start_time else 0
        entry = LogEntry(
            message=f"{format_elapsed_time(elapsed)} - {message}",
            status=status,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        )
        state.append_log_entry(self.importer_id, entry.message, entry.status, entry.timestamp)
        logger.log(_LOG_LEVELS.get(status, logging.INFO), "[%s] %s", self.importer_id, message)
        return entry

    def get_logs(self, skip: int = 0) -> List[LogEntry]:
        return [LogEntry(**entry) for entry in state.fetch_log_entries(self.importer_id, skip)]

    def increase(
        self,
        *,
        total: int = 0,
        succeeded: int = 0,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
    ) -> ImportStats:
        increments = {
            "total": total,
            "succeeded": succeeded,
            "updated": updated,
            "skipped": skipped,
            "failed": failed,
        }
        counters = state.increment_counters(
            self.importer_id,
            STATS_KEY,
            {key: value for key, value in increments.items() if value},
        )
        return ImportStats(**counters)

    def get_stats(self) -> ImportStats:
        return ImportStats(**(state.get_option(self.importer_id, STATS_KEY) or {}))

    def get_progress(self, in_progress: bool, stats: Optional[ImportStats] = None) -> int:
        """
        Percentage of processed rows.

        A job with nothing to do reports 0 while it runs and 100 once it has
        stopped; a stopped job always reports 100.
        """
        stats = stats or self.get_stats()
        if not in_progress:
            return 100
        if stats.total == 0:
            return 0
        percentage = int(stats.processed * 100 / stats.total + 0.5)
        return min(percentage, 100)
