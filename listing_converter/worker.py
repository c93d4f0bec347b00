#!/usr/bin/env python3
"""
Tick worker for import jobs.

Drives ``Scheduler.tick()`` on a timer until the queue of an importer drains,
printing new job log entries and progress as it goes. Optionally submits a
CSV export first, which makes it usable as a standalone converter.
"""

import argparse
import json
import sys
import time
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api.dependencies import get_collaborators
from .api.schemas.shared import ImportStats
from .core.config import settings
from .core.logging_config import configure_logging
from .domain.imports.errors import ImportPipelineError, NotFoundError, ValidationError
from .domain.imports.importers import get_importer
from .domain.imports.processors.csv_processor import process_csv
from .domain.imports.scheduler import Scheduler

STATUS_STYLES = {
    "info": "white",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


class TickWorker:
    """Runs ticks for one importer and renders the job log."""

    def __init__(self, scheduler: Scheduler, interval: float, console: Optional[Console] = None):
        self.scheduler = scheduler
        self.interval = interval
        self.console = console or Console()
        self.logs_shown = 0

    def print_new_logs(self) -> None:
        status = self.scheduler.poll_status(skip_logs=self.logs_shown)
        for entry in status.logs:
            self.console.print(f"[{STATUS_STYLES.get(entry.status, 'white')}]{entry.message}[/]")
        self.logs_shown = status.logs_shown

    def print_stats(self, stats: ImportStats) -> None:
        table = Table(title="Import summary")
        table.add_column("Counter", style="cyan", no_wrap=True)
        table.add_column("Value", style="white", justify="right")
        table.add_row("Total", str(stats.total))
        table.add_row("Succeeded", str(stats.succeeded))
        table.add_row("Updated", str(stats.updated))
        table.add_row("Skipped", str(stats.skipped))
        table.add_row("Failed", str(stats.failed))
        self.console.print(table)

    def run(self, forever: bool = False) -> None:
        """Tick until the queue drains, or keep polling when ``forever`` is set."""
        try:
            while True:
                result = self.scheduler.tick()
                self.print_new_logs()
                if result.processed and result.in_progress:
                    self.console.print(f"[dim]{result.action}: {result.progress}%[/dim]")

                if not result.in_progress and not forever:
                    break
                if not result.processed or forever:
                    time.sleep(self.interval)
        except KeyboardInterrupt:
            self.console.print("\n[yellow]Interrupted; the job resumes on the next tick[/yellow]")
            return

        self.print_stats(self.scheduler.progress.get_stats())


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Import worker - advances queued import jobs one tick at a time",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --importer csv                                   # Drain the queued csv job
  %(prog)s --importer csv --csv listings.csv --settings s.json
  %(prog)s --importer csv --forever --interval 2           # Keep polling for new jobs
        """
    )

    parser.add_argument('--importer', default='csv', help='Importer id (default: csv)')
    parser.add_argument(
        '--interval',
        type=float,
        default=settings.worker_interval_seconds,
        help='Seconds to wait between idle ticks'
    )
    parser.add_argument('--forever', action='store_true', help='Keep ticking after the queue drains')
    parser.add_argument('--csv', help='CSV export to submit before ticking')
    parser.add_argument('--settings', help='JSON file with import settings for --csv')
    parser.add_argument('--restart', action='store_true', help='Replace a running job when submitting')

    args = parser.parse_args()

    configure_logging(settings.log_level)
    console = Console()

    try:
        importer = get_importer(args.importer)
    except NotFoundError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        sys.exit(1)

    scheduler = Scheduler(importer, get_collaborators())

    if args.csv:
        raw_settings = {}
        if args.settings:
            with open(args.settings, encoding="utf-8") as handle:
                raw_settings = json.load(handle)
        try:
            with open(args.csv, "rb") as source:
                rows, headers = process_csv(source.read(), delimiter=str(raw_settings.get("delimiter") or ","))
            job = scheduler.submit(raw_settings, rows, restart=args.restart, file_name=args.csv)
        except ValidationError as e:
            details = "\n".join(f"• {err['field']}: {err['message']}" for err in e.errors)
            console.print(Panel(f"[red]{e.message}[/red]\n{details}", title="Invalid import", border_style="red"))
            sys.exit(1)
        except ImportPipelineError as e:
            console.print(f"[red]❌ {e.message}[/red]")
            sys.exit(1)
        console.print(f"[green]Queued {job.row_count} rows from {args.csv}[/green] (columns: {', '.join(headers)})")

    TickWorker(scheduler, args.interval, console).run(forever=args.forever)


if __name__ == "__main__":
    main()
