"""Rich output formatters for the simrunner CLI."""

from __future__ import annotations

from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..models import JobDescriptor, SyncResult
from ..templates import Template

console = Console()

# Color mapping for job states
STATE_COLORS: Dict[str, str] = {
    "CREATED": "white",
    "PENDING": "yellow",
    "RUNNING": "green",
    "COMPLETED": "blue",
    "FAILED": "red",
    "CANCELLED": "magenta",
}

# Scheduler logs can be long; only the tail is shown inline.
LOG_TAIL_LINES = 20


def _get_state_color(state: str) -> str:
    """Get color for job state."""
    return STATE_COLORS.get(state, "white")


def _styled_state(state: str) -> str:
    color = _get_state_color(state)
    return f"[{color}]{state}[/{color}]"


def print_jobs_table(jobs: List[JobDescriptor]) -> None:
    """Display cached jobs as a Rich table with color-coded states."""
    if not jobs:
        console.print("[dim]No jobs in the local cache. Try 'simrunner jobs sync'.[/dim]")
        return

    table = Table(title="Jobs")
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("State", style="white")
    table.add_column("Slurm ID", style="dim")
    table.add_column("Template", style="dim")
    table.add_column("Cores", justify="right", style="dim")
    table.add_column("Created", style="dim")

    for job in jobs:
        table.add_row(
            job.job_id,
            job.job_name,
            _styled_state(job.status.value),
            job.scheduler_job_id or "",
            job.template_id,
            str(job.resources.cores),
            job.created_at,
        )

    console.print(table)


def print_job_details(job: JobDescriptor, show_logs: bool = False) -> None:
    """Display detailed job info in a panel."""
    state = job.status.value
    color = _get_state_color(state)

    details: List[str] = []
    details.append(f"[bold]State:[/bold] [{color}]{state}[/{color}]")
    details.append(f"[bold]Name:[/bold] {job.job_name}")
    details.append(f"[bold]Template:[/bold] {job.template_id}")

    if job.scheduler_job_id:
        details.append(f"[bold]Slurm ID:[/bold] {job.scheduler_job_id}")

    resources = job.resources
    summary = f"{resources.cores} cores, {resources.memory}, {resources.walltime}"
    if resources.partition:
        summary += f", partition {resources.partition}"
    details.append(f"[bold]Resources:[/bold] {summary}")

    if job.project_dir:
        details.append(f"[bold]Project Dir:[/bold] {job.project_dir}")

    if job.scratch_dir:
        details.append(f"[bold]Scratch Dir:[/bold] {job.scratch_dir}")

    details.append(f"[bold]Created:[/bold] {job.created_at}")

    if job.submitted_at:
        details.append(f"[bold]Submitted:[/bold] {job.submitted_at}")

    if job.completed_at:
        details.append(f"[bold]Completed:[/bold] {job.completed_at}")

    if job.input_files:
        names = ", ".join(f.name for f in job.input_files)
        details.append(f"[bold]Inputs:[/bold] {names}")

    if job.output_files:
        details.append(f"[bold]Outputs:[/bold] {', '.join(job.output_files)}")

    if job.error_info:
        details.append(f"[bold]Error:[/bold] [red]{job.error_info}[/red]")

    if show_logs:
        for label, text in (("stdout", job.scheduler_stdout), ("stderr", job.scheduler_stderr)):
            if text:
                tail = "\n".join(text.splitlines()[-LOG_TAIL_LINES:])
                details.append(f"\n[bold]{label}:[/bold]\n[dim]{tail}[/dim]")

    panel = Panel("\n".join(details), title=f"Job {job.job_id}", border_style=color)
    console.print(panel)


def print_sync_result(result: SyncResult) -> None:
    print_jobs_table(result.jobs)
    if result.errors:
        console.print(f"[yellow]{len(result.errors)} job(s) could not be synchronized:[/yellow]")
        for error in result.errors:
            console.print(f"  [red]-[/red] {error}")


def print_environments_table(environments: List[Dict[str, Any]]) -> None:
    """List configured environments from the Runfile."""
    if not environments:
        console.print("[dim]No environments configured in Runfile.[/dim]")
        return

    table = Table(title="Environments")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Hostname", style="white")
    table.add_column("Runfile", style="dim")

    for env in environments:
        table.add_row(
            env.get("name", ""),
            env.get("hostname", "") or "[dim](inherited)[/dim]",
            env.get("runfile", ""),
        )

    console.print(table)


def print_templates_table(templates: List[Template]) -> None:
    if not templates:
        console.print("[dim]No templates found.[/dim]")
        return

    table = Table(title="Templates")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Variables", style="dim")
    table.add_column("Description", style="dim")

    for template in templates:
        table.add_row(
            template.id,
            template.name or template.id,
            ", ".join(template.placeholders()),
            template.description,
        )

    console.print(table)
