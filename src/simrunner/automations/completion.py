"""Job Completion chain.

Copy results scratch -> project, and only once that copy has succeeded
record the final status in the COMPLETION metadata. A failure anywhere
before the metadata write leaves the SUBMISSION metadata and the cached
entry exactly as they were, so the next synchronization retries.
"""

from __future__ import annotations

import logging
import posixpath
from typing import List, Optional

from ..errors import AuthenticationError, RemoteStateError, TransientNetworkError, ValidationError
from ..metadata import METADATA_FILENAME, Boundary
from ..models import JobDescriptor, JobStatus, utc_now
from ..progress import ProgressStream
from ..rendering import log_filenames
from ..validation import ensure_within
from .base import CancelToken, ChainContext, ChainRun
from .creation import OUTPUTS_DIRNAME

logger = logging.getLogger(__name__)

# Cached log text is capped so a runaway job cannot bloat the cache.
MAX_LOG_CHARS = 256 * 1024


async def complete_job(
    ctx: ChainContext,
    descriptor: JobDescriptor,
    final_status: JobStatus,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> JobDescriptor:
    """Run the completion chain for a job the scheduler reports as finished."""
    run = ChainRun("Job Completion", progress, cancel, job_id=descriptor.job_id)
    try:
        completed = await _complete(ctx, descriptor, final_status, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Job {descriptor.job_id} finished as {completed.status.value}")
    return completed.snapshot()


async def _complete(
    ctx: ChainContext, descriptor: JobDescriptor, final_status: JobStatus, run: ChainRun
) -> JobDescriptor:
    async with run.step("check", "Checking job state...", 0):
        if not final_status.is_terminal:
            raise ValidationError(
                f"Cannot complete a job the scheduler reports as {final_status.value}"
            )
        if not descriptor.status.is_active:
            raise ValidationError(
                f"Cannot complete a job in status {descriptor.status.value}"
            )
        if not descriptor.project_dir or not descriptor.scratch_dir:
            raise RemoteStateError("Job has no project or scratch directory")
        project_dir = ensure_within(descriptor.project_dir, ctx.project_base())
        scratch_dir = ensure_within(descriptor.scratch_dir, ctx.scratch_base())

    async with run.step("copy_results", "Copying results to project storage...", 20):
        run.log("Rsyncing scratch->project: %s -> %s", scratch_dir, project_dir)
        await ctx.file_retry.call(
            ctx.session.mirror, scratch_dir, project_dir, (METADATA_FILENAME,)
        )
        run.remote_state["results_copied"] = True

    completed = descriptor.snapshot()

    async with run.step("fetch_logs", "Fetching scheduler logs...", 60):
        stdout, stderr = await _fetch_logs(ctx, completed, project_dir, run)
        completed.scheduler_stdout = stdout
        completed.scheduler_stderr = stderr

    async with run.step("list_outputs", "Collecting output files...", 70):
        completed.output_files = await _list_outputs(ctx, project_dir, run)

    completed.set_status(final_status)
    completed.completed_at = utc_now()
    if final_status is not JobStatus.COMPLETED and not completed.error_info:
        completed.error_info = f"Scheduler reported {final_status.value}"

    async with run.step("write_metadata", "Writing completion metadata...", 85):
        await ctx.metadata.write_boundary(completed, Boundary.COMPLETION)
        run.remote_state["metadata"] = Boundary.COMPLETION.value

    async with run.step("cache", "Updating job status...", 95):
        ctx.cache.put(completed)
    return completed


async def _fetch_logs(ctx: ChainContext, descriptor: JobDescriptor, project_dir: str, run: ChainRun):
    """Read the scheduler stdout/stderr logs. Best effort: missing logs are fine."""
    if not descriptor.scheduler_job_id:
        return None, None
    texts: List[Optional[str]] = []
    for name in log_filenames(descriptor.job_name, descriptor.scheduler_job_id):
        path = posixpath.join(project_dir, name)
        try:
            text = await ctx.command_retry.call(ctx.session.read_file, path)
        except AuthenticationError:
            raise
        except (RemoteStateError, TransientNetworkError) as e:
            run.log("Could not fetch %s: %s", name, e.message, level=logging.WARNING)
            texts.append(None)
            continue
        texts.append(text[-MAX_LOG_CHARS:])
    return texts[0], texts[1]


async def _list_outputs(ctx: ChainContext, project_dir: str, run: ChainRun) -> List[str]:
    outputs_dir = posixpath.join(project_dir, OUTPUTS_DIRNAME)
    try:
        names = await ctx.command_retry.call(ctx.session.list_files, outputs_dir)
    except RemoteStateError as e:
        run.log("No outputs directory: %s", e.message, level=logging.WARNING)
        return []
    run.log("Found %d output files", len(names))
    return names


async def refetch_logs(ctx: ChainContext, descriptor: JobDescriptor) -> JobDescriptor:
    """Re-read the scheduler logs of a finished job into the cache.

    Log text is not a boundary field, so no metadata is written.
    """
    if not descriptor.status.is_terminal:
        raise ValidationError(
            f"Logs are fetched after completion; job is {descriptor.status.value}",
            job_id=descriptor.job_id,
        )
    if not descriptor.project_dir:
        raise RemoteStateError("Job has no project directory", job_id=descriptor.job_id)
    run = ChainRun("Job Logs", job_id=descriptor.job_id)
    project_dir = ensure_within(descriptor.project_dir, ctx.project_base())
    updated = descriptor.snapshot()
    updated.scheduler_stdout, updated.scheduler_stderr = await _fetch_logs(
        ctx, updated, project_dir, run
    )
    ctx.cache.put(updated)
    run.succeed("Logs refreshed")
    return updated.snapshot()
