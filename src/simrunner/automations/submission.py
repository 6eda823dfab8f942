"""Job Submission chain.

check status -> ensure scratch directory -> mirror project to scratch ->
write batch script -> sbatch -> write SUBMISSION metadata -> update cache.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Optional

from ..errors import AutomationError, ValidationError
from ..metadata import METADATA_FILENAME, Boundary
from ..models import SUBMITTABLE_STATES, JobDescriptor, JobStatus, utc_now
from ..progress import ProgressStream
from ..rendering import SCRIPT_FILENAME, SCRIPTS_DIRNAME, render_job_script
from ..validation import ensure_within
from .base import CancelToken, ChainContext, ChainRun


def load_submittable(ctx: ChainContext, job_id: str) -> JobDescriptor:
    """Return the cached descriptor if it may be submitted.

    Runs before any remote call, so a double submission is rejected without
    touching the cluster.
    """
    descriptor = ctx.cache.get(job_id)
    if descriptor is None:
        raise ValidationError(f"Unknown job: {job_id}", step="load_job", job_id=job_id)
    if descriptor.status not in SUBMITTABLE_STATES:
        raise ValidationError(
            f"Job {job_id} cannot be submitted from status {descriptor.status.value}; "
            "only CREATED or FAILED jobs can be submitted",
            step="load_job",
            job_id=job_id,
        )
    if not descriptor.project_dir or not descriptor.scratch_dir:
        raise ValidationError(
            f"Job {job_id} has no project or scratch directory",
            step="load_job",
            job_id=job_id,
        )
    return descriptor


async def submit_job(
    ctx: ChainContext,
    job_id: str,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> JobDescriptor:
    """Run the submission chain and return the updated descriptor."""
    run = ChainRun("Job Submission", progress, cancel, job_id=job_id)
    try:
        descriptor = await _submit(ctx, job_id, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Job {job_id} submitted as {descriptor.scheduler_job_id}")
    return descriptor.snapshot()


async def _submit(ctx: ChainContext, job_id: str, run: ChainRun) -> JobDescriptor:
    async with run.step("load_job", "Loading job information...", 0):
        descriptor = load_submittable(ctx, job_id)
        scratch_dir = ensure_within(descriptor.scratch_dir, ctx.scratch_base())
        project_dir = ensure_within(descriptor.project_dir, ctx.project_base())

    async with run.step("prepare_scratch", "Preparing scratch directory...", 15):
        await ctx.command_retry.call(ctx.session.make_directory, scratch_dir)
        run.remote_state["scratch_dir"] = scratch_dir

    async with run.step("mirror_to_scratch", "Mirroring job directory to scratch...", 30):
        await ctx.file_retry.call(
            ctx.session.mirror, project_dir, scratch_dir, (METADATA_FILENAME,)
        )
        run.remote_state["scratch_populated"] = True

    script_rel = posixpath.join(SCRIPTS_DIRNAME, SCRIPT_FILENAME)
    async with run.step("write_script", "Generating SLURM batch script...", 50):
        script = render_job_script(
            descriptor,
            config_filename=ctx.settings.config_filename,
            run_command=ctx.settings.run_command,
            modules=ctx.settings.modules,
        )
        await ctx.command_retry.call(
            ctx.session.make_directory, posixpath.join(scratch_dir, SCRIPTS_DIRNAME)
        )
        await ctx.command_retry.call(
            ctx.session.write_text, posixpath.join(scratch_dir, script_rel), script
        )

    async with run.step("sbatch", "Submitting job to SLURM...", 70):
        # not retried: a lost reply could otherwise submit the job twice
        scheduler_job_id = await ctx.scheduler.submit(scratch_dir, script_rel, script=script)
        run.remote_state["scheduler_job_id"] = scheduler_job_id
        run.log("Job %s submitted with scheduler id %s", job_id, scheduler_job_id)

    updated = descriptor.snapshot()
    updated.set_status(JobStatus.PENDING)
    updated.scheduler_job_id = scheduler_job_id
    updated.submitted_at = utc_now()
    updated.completed_at = None
    updated.error_info = None

    try:
        async with run.step("write_metadata", "Updating job metadata...", 85):
            await ctx.metadata.write_boundary(updated, Boundary.SUBMISSION)
            run.remote_state["metadata"] = Boundary.SUBMISSION.value
    except AutomationError as e:
        await _withdraw(ctx, run, scheduler_job_id, e)
        raise

    async with run.step("cache", "Updating job status...", 95):
        ctx.cache.put(updated)
    return updated


async def _withdraw(
    ctx: ChainContext, run: ChainRun, scheduler_job_id: str, error: AutomationError
) -> None:
    """Cancel a scheduler job whose submission could not be recorded.

    The cached descriptor stays CREATED or FAILED, so leaving the job queued
    would let a resubmission run the same work twice.
    """
    try:
        await ctx.command_retry.call(ctx.scheduler.cancel, scheduler_job_id)
    except AutomationError as cancel_error:
        error.remote_state["scheduler_cancel_failed"] = cancel_error.message
        run.log(
            "Could not cancel scheduler job %s: %s",
            scheduler_job_id,
            cancel_error.message,
            level=logging.ERROR,
        )
        return
    error.remote_state["scheduler_cancelled"] = scheduler_job_id
    run.log("Cancelled scheduler job %s after failed metadata update", scheduler_job_id)
