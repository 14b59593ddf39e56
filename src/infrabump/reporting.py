"""
Reporting and output formatting for bump runs.

Provides color-coded console output using Rich library.
"""

from typing import Any, Dict, List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .bumper import ApplyResult, BumpOutcome, BumpReport, BumpStatus
from .dependency import Dependency
from .discovery import Technology


def dependency_status(dependency: Dependency) -> str:
    if dependency.is_error:
        return "error"
    if dependency.is_up_to_date:
        return "up_to_date"
    if dependency.is_updatable:
        return "update_available"
    return "unresolved"


class BumpReporter:
    """Formats and displays bump results."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_report(self, report: BumpReport) -> None:
        """
        Print what a run found before selection.

        Args:
            report: The collected report to display
        """
        self.console.print()
        self._print_header(report)

        if report.project_errors:
            self._print_project_errors(report)

        if report.dependencies:
            self._print_summary(report)
            self._print_dependencies(report.dependencies)

    def _print_header(self, report: BumpReport) -> None:
        terraform = sum(1 for p in report.projects if p.technology is Technology.TERRAFORM)
        helm = len(report.projects) - terraform
        self.console.print(
            Panel(
                f"📦 {report.root_path}\n"
                f"Found {terraform} Terraform project(s), {helm} Helm project(s)",
                title="[bold blue]infrabump[/bold blue]",
                border_style="blue",
            )
        )

    def _print_project_errors(self, report: BumpReport) -> None:
        self.console.print("\n❌ [bold red]Projects that could not be scanned:[/bold red]")
        for project_error in report.project_errors:
            self.console.print(
                f"  • {project_error.project.path}: {project_error.error}", style="red"
            )
        self.console.print()

    def _print_summary(self, report: BumpReport) -> None:
        table = Table(title="📊 Summary", box=box.ROUNDED, title_style="bold cyan")
        table.add_column("Status", style="bold")
        table.add_column("Count", justify="center")

        if report.updatable:
            table.add_row("↑ Update available", f"[bold yellow]{len(report.updatable)}[/bold yellow]")
        if report.up_to_date:
            table.add_row("✓ Up to date", f"[green]{len(report.up_to_date)}[/green]")
        if report.errored:
            table.add_row("✗ Failed", f"[red]{len(report.errored)}[/red]")

        hits = report.cache_stats.get("hits", 0)
        if hits:
            table.add_row("Cached lookups", str(hits))

        self.console.print(table)
        self.console.print()

    def _print_dependencies(self, dependencies: List[Dependency]) -> None:
        table = Table(box=box.SIMPLE_HEAVY)
        table.add_column("Dependency", style="cyan")
        table.add_column("Location", style="magenta")
        table.add_column("Current", style="yellow")
        table.add_column("Latest")
        table.add_column("Status")

        for dependency in dependencies:
            if dependency.is_error:
                latest = f"[red]{dependency.error}[/red]"
                status = "[red]✗ failed[/red]"
            elif dependency.is_up_to_date:
                latest = f"[green]{dependency.latest_version}[/green]"
                status = "[green]✓ up to date[/green]"
            else:
                latest = f"[bold green]{dependency.latest_version}[/bold green]"
                status = "[yellow]↑ update available[/yellow]"

            table.add_row(
                dependency.name,
                str(dependency.location),
                dependency.current_version,
                latest,
                status,
            )

        self.console.print(table)

    def print_outcome(self, outcome: BumpOutcome) -> None:
        """Print the closing message for a run."""
        status = outcome.status

        if status is BumpStatus.NO_PROJECTS:
            self.console.print("ℹ️  No Terraform or Helm projects found", style="cyan")
        elif status is BumpStatus.NO_DEPENDENCIES:
            self.console.print("ℹ️  No dependencies found", style="cyan")
        elif status is BumpStatus.ALL_FAILED:
            self.console.print(
                f"❌ All {len(outcome.dependencies)} dependencies failed to resolve",
                style="bold red",
            )
        elif status is BumpStatus.UP_TO_DATE:
            self.console.print("✅ All dependencies are up to date!", style="green")
        elif status is BumpStatus.NOTHING_SELECTED:
            self.console.print("ℹ️  No dependencies selected", style="cyan")
        elif outcome.apply_result is not None:
            self.print_apply_result(outcome.apply_result)

    def print_apply_result(self, result: ApplyResult) -> None:
        for dependency in result.applied:
            self.console.print(
                f"  [green]✓[/green] Updated [cyan]{dependency.name}[/cyan] "
                f"{dependency.current_version} → {dependency.latest_version} "
                f"in [magenta]{dependency.location.file_path}[/magenta]"
            )

        if result.failed is not None:
            self.console.print(
                f"  [red]✗[/red] Failed to update [cyan]{result.failed.name}[/cyan]: {result.error}",
                style="red",
            )
            if result.not_attempted:
                names = ", ".join(d.name for d in result.not_attempted)
                self.console.print(f"  ⚠️  Not attempted: {names}", style="yellow")

        style = "green" if result.success else "yellow"
        self.console.print(f"\n{len(result.applied)} dependencies updated", style=style)


def dependency_to_dict(dependency: Dependency) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": dependency.name,
        "ecosystem": dependency.ecosystem,
        "file_path": dependency.location.file_path,
        "line_number": dependency.location.line_number,
        "current_version": dependency.current_version,
        "latest_version": dependency.latest_version,
        "latest_app_version": dependency.latest_app_version,
        "status": dependency_status(dependency),
    }
    if dependency.is_error:
        data["error"] = str(dependency.error)
    return data


def outcome_to_dict(
    outcome: BumpOutcome,
    warnings: Optional[List[str]] = None,
    include_cache_entries: bool = False,
) -> Dict[str, Any]:
    """
    Build the JSON document for a run.

    ``warnings`` are the rendered problems reported during the run; per-key
    cache entries are only included on request (verbose runs).
    """
    report = outcome.report
    results: Dict[str, Any] = {
        "root_path": report.root_path,
        "status": outcome.status.value,
        "duration_ms": report.duration_ms,
        "projects": [
            {"path": str(p.path), "technology": p.technology.value} for p in report.projects
        ],
        "summary": {
            "total": len(report.dependencies),
            "updatable": len(report.updatable),
            "up_to_date": len(report.up_to_date),
            "errors": len(report.errored),
        },
        "cache": dict(report.cache_stats),
        "dependencies": [dependency_to_dict(d) for d in report.dependencies],
        "applied_count": outcome.applied_count,
    }

    if include_cache_entries:
        results["cache"]["entries"] = report.cache_entries

    if warnings:
        results["warnings"] = warnings

    if report.project_errors:
        results["project_errors"] = [
            {"path": str(e.project.path), "error": str(e.error)} for e in report.project_errors
        ]

    apply_result = outcome.apply_result
    if apply_result is not None and apply_result.failed is not None:
        results["update_failure"] = {
            "dependency": apply_result.failed.name,
            "error": str(apply_result.error),
            "not_attempted": [d.name for d in apply_result.not_attempted],
        }

    return results
