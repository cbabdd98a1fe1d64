import json
from typing import Any, Dict, List, Optional

import typer
from pydantic import BaseModel
from rich.console import Console
from rich.table import Table

from dpiwarden.core.models import EngineRelease
from dpiwarden.sync.orchestrator import SyncReport

error_console = Console(stderr=True)


class OutputFormatter:
    """
    Handles output formatting for the CLI.
    Keeps System Logs (stderr) apart from Data (stdout).
    """

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[DPIWARDEN]"

        if severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{prefix} {message}[/{style}]", highlight=False)

    @staticmethod
    def print_versions(releases: List[EngineRelease], installed: Optional[str]) -> None:
        """Print available engine releases, newest first, marking the installed one."""
        if not releases:
            OutputFormatter.log("No engine releases found.", severity="warning")
            return

        table = Table(title="Engine Releases", header_style="bold")
        table.add_column("Tag", style="bold")
        table.add_column("Commit")
        table.add_column("Installed")

        for release in releases:
            marker = "[green]*[/green]" if release.tag == installed else ""
            table.add_row(release.tag, release.commit[:12], marker)

        error_console.print(table)

    @staticmethod
    def print_sync_report(report: SyncReport) -> None:
        changed = ", ".join(report.changed) or "nothing"
        OutputFormatter.log(f"Changed: {changed}", severity="info")
        if report.engine_updated:
            OutputFormatter.log("Engine updated.", severity="success")
        if report.restarted:
            OutputFormatter.log("Engine restarted.", severity="success")
        for error in report.errors:
            OutputFormatter.log(error, severity="error")

    @staticmethod
    def print_settings(settings: Dict[str, Any]) -> None:
        table = Table(title="Settings", header_style="bold")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in settings.items():
            table.add_row(key, json.dumps(value))
        error_console.print(table)

    @staticmethod
    def print_data(data: Any) -> None:
        """Print a string as is, anything else as indented JSON on stdout."""
        if isinstance(data, str):
            typer.echo(data)
            return

        def _default(obj: Any) -> Any:
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode="json")
            if hasattr(obj, "isoformat"):
                return obj.isoformat()
            return str(obj)

        typer.echo(json.dumps(data, indent=2, default=_default))
