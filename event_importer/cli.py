#!/usr/bin/env python3
"""
Command-line interface for running imports and serving the API.

    event-importer import export.csv --site 42 --token $TOKEN
    event-importer serve --port 8000
"""
import argparse
import os
import sys
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from event_importer.client.api import ImportApiClient, ImportApiError
from event_importer.client.csv_worker import ImportFileError, validate_import_file
from event_importer.client.types import ImportPhase, ImportProgress
from event_importer.client.worker_manager import CSVWorkerManager
from event_importer.core.config import settings
from event_importer.core.logging_config import configure_logging

_STATUS_STYLES = {
    ImportPhase.IDLE: "dim",
    ImportPhase.PARSING: "cyan",
    ImportPhase.UPLOADING: "blue",
    ImportPhase.COMPLETED: "green",
    ImportPhase.FAILED: "red",
}


def render_progress(progress: ImportProgress) -> Table:
    table = Table(title="Import progress", show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    style = _STATUS_STYLES.get(progress.status, "white")
    table.add_row("Status", f"[{style}]{progress.status.value}[/{style}]")
    table.add_row("Parsed rows", f"{progress.parsed_rows:,}")
    table.add_row("Skipped rows", f"{progress.skipped_rows:,}")
    table.add_row("Imported events", f"{progress.imported_events:,}")
    table.add_row("Errors", f"{progress.errors:,}")
    return table


def run_import(
    path: str,
    site_id: int,
    *,
    api_url: Optional[str] = None,
    token: Optional[str] = None,
    console: Optional[Console] = None,
) -> bool:
    """Start an import, stream the file to the server and report the outcome."""
    console = console or Console()

    try:
        validate_import_file(path)
    except ImportFileError as e:
        console.print(f"[red]❌ {e}[/red]")
        return False

    api = ImportApiClient(api_url, token)
    try:
        started = api.start_import(site_id, file_name=os.path.basename(path))
    except ImportApiError as e:
        console.print(f"[red]❌ Could not start import: {e}[/red]")
        return False

    allowed = started.allowed_date_range
    console.print(
        f"Import [bold]{started.import_id}[/bold] accepts events from "
        f"{allowed.earliest_allowed_date} to {allowed.latest_allowed_date}"
    )

    outcome = {"success": False, "message": ""}

    def on_complete(success: bool, message: str) -> None:
        outcome["success"] = success
        outcome["message"] = message

    with Live(render_progress(ImportProgress()), console=console, refresh_per_second=4) as live:
        manager = CSVWorkerManager(
            api,
            on_progress=lambda progress: live.update(render_progress(progress)),
            on_complete=on_complete,
        )
        try:
            manager.start_import(
                path,
                site_id,
                started.import_id,
                allowed.earliest_allowed_date,
                allowed.latest_allowed_date,
            )
        except KeyboardInterrupt:
            manager.cancel()
            outcome["message"] = "Import cancelled"

    border = "green" if outcome["success"] else "red"
    console.print(Panel(outcome["message"] or "Import stopped", border_style=border))
    return outcome["success"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="event-importer", description="Import exported analytics events")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import", help="Import a CSV export into a site")
    import_parser.add_argument("file", help="Path to the CSV export")
    import_parser.add_argument("--site", type=int, required=True, help="Target site id")
    import_parser.add_argument("--api-url", default=None, help=f"API base URL (default: {settings.api_base_url})")
    import_parser.add_argument("--token", default=None, help="Bearer token (default: API_TOKEN)")

    serve_parser = subparsers.add_parser("serve", help="Run the import API server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or settings.log_level, force=args.log_level is not None)

    if args.command == "import":
        ok = run_import(args.file, args.site, api_url=args.api_url, token=args.token)
        return 0 if ok else 1

    if args.command == "serve":
        import uvicorn

        uvicorn.run("event_importer.main:app", host=args.host, port=args.port)
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
