"""Jobs subcommand for the simrunner CLI."""

from __future__ import annotations

import os
import sys
from typing import Annotated, List, Optional

import cyclopts
from rich.console import Console

from ..models import CreateJobParams, InputFile, ResourceRequest
from ..templates import coerce_string_values
from ..ui import progress_stream
from .formatters import print_job_details, print_jobs_table, print_sync_result
from .utils import get_engine, parse_assignments, run_connected

jobs_app = cyclopts.App(
    name="jobs",
    help="Create, submit and track simulation jobs.",
)

console = Console(stderr=True)

EnvOption = Annotated[
    Optional[str],
    cyclopts.Parameter(
        name=["--env", "-e"],
        help="Environment name from Runfile.",
    ),
]
RunfileOption = Annotated[
    Optional[str],
    cyclopts.Parameter(
        name=["--runfile", "-f"],
        help="Path to Runfile.",
    ),
]


@jobs_app.command(name="list")
def list_jobs(env: EnvOption = None, runfile: RunfileOption = None) -> None:
    """List jobs in the local cache (offline, no connection)."""
    engine = get_engine(env=env, runfile=runfile)
    print_jobs_table(engine.list_jobs())


@jobs_app.command(name="show")
def show_job(
    job_id: Annotated[
        str,
        cyclopts.Parameter(
            help="Job ID to show details for.",
        ),
    ],
    logs: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--logs", "-l"],
            help="Include the tail of the scheduler logs.",
        ),
    ] = False,
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Show details for a specific job (offline, no connection)."""
    engine = get_engine(env=env, runfile=runfile)
    job = engine.get_job(job_id)
    if job is None:
        console.print(f"[red]Unknown job:[/red] {job_id}")
        sys.exit(1)
    print_job_details(job, show_logs=logs)


@jobs_app.command(name="create")
def create_job(
    name: Annotated[
        str,
        cyclopts.Parameter(
            help="Human-readable job name (letters, digits, '-' and '_').",
        ),
    ],
    template: Annotated[
        str,
        cyclopts.Parameter(
            name=["--template", "-t"],
            help="Template id to render the simulation config from.",
        ),
    ],
    values: Annotated[
        Optional[List[str]],
        cyclopts.Parameter(
            name=["--set", "-s"],
            help="Template value as KEY=VALUE. Repeatable.",
        ),
    ] = None,
    inputs: Annotated[
        Optional[List[str]],
        cyclopts.Parameter(
            name=["--input", "-i"],
            help="Local input file to upload. Repeatable.",
        ),
    ] = None,
    cores: Annotated[
        int,
        cyclopts.Parameter(name=["--cores", "-n"], help="Number of tasks."),
    ] = 1,
    memory: Annotated[
        str,
        cyclopts.Parameter(name=["--memory", "-m"], help="Memory, e.g. 8GB."),
    ] = "4GB",
    walltime: Annotated[
        str,
        cyclopts.Parameter(name=["--walltime", "-w"], help="Walltime as HH:MM:SS."),
    ] = "01:00:00",
    partition: Annotated[
        Optional[str],
        cyclopts.Parameter(name=["--partition", "-p"], help="Slurm partition."),
    ] = None,
    qos: Annotated[
        Optional[str],
        cyclopts.Parameter(name=["--qos"], help="Slurm QOS."),
    ] = None,
    submit: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--submit"],
            help="Submit the job right after it is created.",
        ),
    ] = False,
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Create a job directory on the cluster from a template."""
    engine = get_engine(env=env, runfile=runfile)
    template_values = coerce_string_values(
        engine.templates.get(template), parse_assignments(values)
    )
    params = CreateJobParams(
        job_name=name,
        template_id=template,
        template_values=template_values,
        resources=ResourceRequest(
            cores=cores, memory=memory, walltime=walltime, partition=partition, qos=qos
        ),
        input_files=[InputFile(local_path=path) for path in inputs or []],
    )

    async def _create():
        with progress_stream(console, "Job Creation") as progress:
            job = await engine.create_job(params, progress)
        if submit:
            with progress_stream(console, "Job Submission") as progress:
                job = await engine.submit_job(job.job_id, progress)
        return job

    job = run_connected(engine, _create)
    print_job_details(job)


@jobs_app.command(name="submit")
def submit_job(
    job_id: Annotated[
        str,
        cyclopts.Parameter(
            help="Job ID to submit (must be CREATED or FAILED).",
        ),
    ],
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Stage a job to scratch and submit it to Slurm."""
    engine = get_engine(env=env, runfile=runfile)

    async def _submit():
        with progress_stream(console, "Job Submission") as progress:
            return await engine.submit_job(job_id, progress)

    job = run_connected(engine, _submit)
    console.print(f"[green]Job {job.job_id} submitted as Slurm job {job.scheduler_job_id}.[/green]")


@jobs_app.command(name="sync")
def sync_jobs(env: EnvOption = None, runfile: RunfileOption = None) -> None:
    """Poll Slurm for active jobs and collect results of finished ones."""
    engine = get_engine(env=env, runfile=runfile)

    async def _sync():
        with progress_stream(console, "Job Sync") as progress:
            return await engine.sync(progress)

    print_sync_result(run_connected(engine, _sync))


@jobs_app.command(name="logs")
def refetch_logs(
    job_id: Annotated[
        str,
        cyclopts.Parameter(
            help="Job ID whose scheduler logs should be fetched again.",
        ),
    ],
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Re-read the scheduler logs of a finished job."""
    engine = get_engine(env=env, runfile=runfile)
    job = run_connected(engine, lambda: engine.refetch_logs(job_id))
    print_job_details(job, show_logs=True)


@jobs_app.command(name="download")
def download_outputs(
    job_id: Annotated[
        str,
        cyclopts.Parameter(
            help="Job ID whose output files should be downloaded.",
        ),
    ],
    name: Annotated[
        Optional[str],
        cyclopts.Parameter(
            help="Single file in the job's outputs directory. Omit to download all.",
        ),
    ] = None,
    output: Annotated[
        Optional[str],
        cyclopts.Parameter(
            name=["--output", "-o"],
            help="Local file or directory to save to (default: ./<job_id> for all files).",
        ),
    ] = None,
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Download result files from a job's outputs directory."""
    engine = get_engine(env=env, runfile=runfile)
    if engine.get_job(job_id) is None:
        console.print(f"[red]Unknown job:[/red] {job_id}")
        sys.exit(1)

    async def _download():
        with progress_stream(console, "Job Download") as progress:
            if name is not None:
                path = await engine.download_output(
                    job_id, name, output or os.getcwd(), progress
                )
                return [path]
            destination = output or os.path.join(os.getcwd(), job_id)
            return await engine.download_outputs(job_id, destination, progress)

    saved = run_connected(engine, _download)
    if not saved:
        console.print("[yellow]No output files to download.[/yellow]")
        return
    for path in saved:
        console.print(f"[green]Saved[/green] {path}")


@jobs_app.command(name="delete")
def delete_job(
    job_id: Annotated[
        str,
        cyclopts.Parameter(
            help="Job ID to delete.",
        ),
    ],
    keep_remote: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--keep-remote"],
            help="Only forget the job locally; leave its remote directories.",
        ),
    ] = False,
    force: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--force", "-y"],
            help="Skip confirmation prompt.",
        ),
    ] = False,
    env: EnvOption = None,
    runfile: RunfileOption = None,
) -> None:
    """Delete a job, cancelling it first if it is still queued or running."""
    engine = get_engine(env=env, runfile=runfile)
    job = engine.get_job(job_id)
    if job is None:
        console.print(f"[red]Unknown job:[/red] {job_id}")
        sys.exit(1)

    console.print(f"[cyan]Job {job_id}:[/cyan] {job.job_name} ({job.status.value})")
    if not force:
        scope = "locally" if keep_remote else "locally and on the cluster"
        try:
            confirm = input(f"Delete job {job_id} {scope}? [y/N]: ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return
        except (EOFError, KeyboardInterrupt):
            console.print("\n[yellow]Cancelled.[/yellow]")
            return

    async def _delete():
        with progress_stream(console, "Job Deletion") as progress:
            await engine.delete_job(
                job_id, delete_remote=not keep_remote, confirmed=True, progress=progress
            )

    run_connected(engine, _delete)
    console.print(f"[green]Job {job_id} deleted.[/green]")
