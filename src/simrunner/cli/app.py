"""Root application for the simrunner CLI."""

from __future__ import annotations

import logging
import sys

import cyclopts
from rich.console import Console

from ..logging import configure_logging
from .env import env_app, templates_app
from .jobs import jobs_app

console = Console(stderr=True)


def _get_version() -> str:
    """Get package version for --version flag."""
    try:
        from importlib.metadata import version

        return version("simrunner")
    except Exception:
        return "unknown"


app = cyclopts.App(
    name="simrunner",
    help="CLI for simrunner - create, submit and collect Slurm simulation jobs.",
    version=_get_version(),
)

app.command(jobs_app)
app.command(env_app)
app.command(templates_app)


def _handle_error(e: Exception) -> None:
    """Handle exceptions with user-friendly messages."""
    from ..errors import (
        AuthenticationError,
        AutomationError,
        ChainCancelled,
        RemoteStateError,
        RunfileEnvironmentNotFoundError,
        RunfileError,
        RunfileInvalidError,
        RunfileNotFoundError,
        SchedulerRejection,
        TransientNetworkError,
        ValidationError,
    )

    if isinstance(e, RunfileNotFoundError):
        console.print(f"[red]Error:[/red] {e}")
        console.print(
            "\n[dim]Hint: Create a Runfile in your project directory, "
            "or use --runfile to specify a path.[/dim]"
        )
    elif isinstance(e, RunfileEnvironmentNotFoundError):
        console.print(f"[red]Error:[/red] {e}")
        console.print(
            "\n[dim]Hint: Use 'simrunner env list' to see available environments.[/dim]"
        )
    elif isinstance(e, RunfileInvalidError):
        console.print(f"[red]Error:[/red] {e}")
        console.print("\n[dim]Hint: Check your Runfile for TOML syntax errors.[/dim]")
    elif isinstance(e, RunfileError):
        console.print(f"[red]Runfile Error:[/red] {e}")
    elif isinstance(e, AuthenticationError):
        console.print(f"[red]Authentication Error:[/red] {e}")
        console.print(
            "\n[dim]Hint: Check your username and password, then run the command again.[/dim]"
        )
    elif isinstance(e, TransientNetworkError):
        console.print(f"[red]Network Error:[/red] {e}")
        console.print(
            "\n[dim]Hint: Check network connectivity and cluster availability; "
            "the operation is safe to retry.[/dim]"
        )
    elif isinstance(e, SchedulerRejection):
        console.print(f"[red]Slurm rejected the job:[/red] {e}")
        console.print(
            "\n[dim]Hint: Adjust the job's resources and submit it again.[/dim]"
        )
    elif isinstance(e, ValidationError):
        console.print(f"[red]Invalid input:[/red] {e}")
    elif isinstance(e, RemoteStateError):
        console.print(f"[red]Remote Error:[/red] {e}")
        console.print(
            "\n[dim]Hint: Run 'simrunner jobs sync' to reconcile the local cache.[/dim]"
        )
    elif isinstance(e, ChainCancelled):
        console.print(f"[yellow]Cancelled:[/yellow] {e}")
    elif isinstance(e, AutomationError):
        console.print(f"[red]Automation Error:[/red] {e}")
    else:
        console.print(f"[red]Error:[/red] {e}")

    sys.exit(1)


def main() -> None:
    """Entry point for the simrunner CLI."""
    configure_logging(logging.WARNING)
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        _handle_error(e)
