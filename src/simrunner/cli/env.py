"""Environment and template subcommands for the simrunner CLI."""

from __future__ import annotations

from typing import Annotated, Optional

import cyclopts
from rich.console import Console
from rich.panel import Panel

from .formatters import print_environments_table, print_templates_table
from .utils import get_engine, get_settings, list_runfile_environments

env_app = cyclopts.App(
    name="env",
    help="Inspect Runfile environments.",
)

templates_app = cyclopts.App(
    name="templates",
    help="Inspect simulation templates.",
)

console = Console()


@env_app.command(name="list")
def list_envs(
    runfile: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--runfile", "-f"],
            help="Path to Runfile.",
        ),
    ] = None,
) -> None:
    """List configured environments from the Runfile (offline, no connection)."""
    print_environments_table(list_runfile_environments(runfile=runfile))


@env_app.command(name="show")
def show_env(
    env: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--env", "-e"],
            help="Environment name from Runfile.",
        ),
    ] = None,
    runfile: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--runfile", "-f"],
            help="Path to Runfile.",
        ),
    ] = None,
) -> None:
    """Show the resolved settings of one environment."""
    settings = get_settings(env=env, runfile=runfile)
    lines = [
        f"[bold]Host:[/bold] {settings.username or '?'}@{settings.hostname or '?'}:{settings.port}",
        f"[bold]Project root:[/bold] {settings.project_root}",
        f"[bold]Scratch root:[/bold] {settings.scratch_root}",
        f"[bold]Jobs dir:[/bold] {settings.jobs_dirname}",
        f"[bold]Templates:[/bold] {settings.template_dir}",
        f"[bold]Cache:[/bold] {settings.cache_dir}",
        f"[bold]Modules:[/bold] {', '.join(settings.modules) or '(none)'}",
        f"[bold]Retry:[/bold] {settings.retry.max_attempts} attempts, "
        f"{settings.retry.base_delay}s base delay",
    ]
    console.print(Panel("\n".join(lines), title=f"Environment {settings.name}", border_style="cyan"))


@templates_app.command(name="list")
def list_templates(
    env: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--env", "-e"],
            help="Environment name from Runfile.",
        ),
    ] = None,
    runfile: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--runfile", "-f"],
            help="Path to Runfile.",
        ),
    ] = None,
) -> None:
    """List the templates available to 'jobs create'."""
    engine = get_engine(env=env, runfile=runfile)
    print_templates_table(engine.templates.list_templates())
