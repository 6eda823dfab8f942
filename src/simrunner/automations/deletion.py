"""Job Deletion chain.

confirm -> cancel the scheduler job if it is still active -> validate
paths -> remove scratch and project directories -> drop the cache entry.

The cache entry goes last: if any remote step fails the job stays listed, so
the cache never loses track of remote artifacts that still exist.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from ..errors import ValidationError
from ..progress import ProgressStream
from ..validation import ensure_within, job_directory, normalize_remote_path
from .base import CancelToken, ChainContext, ChainRun


def deletion_targets(ctx: ChainContext, descriptor) -> List[Tuple[str, str]]:
    """Return ``(label, path)`` pairs that are safe to ``rm -rf``.

    Each directory must sit strictly inside its configured job root and be
    exactly ``<root>/<job_id>``; anything else is rejected before any
    deletion starts.
    """
    targets = []
    for label, path, root in (
        ("scratch", descriptor.scratch_dir, ctx.scratch_base()),
        ("project", descriptor.project_dir, ctx.project_base()),
    ):
        if not path:
            continue
        normalized = ensure_within(path, root)
        expected = job_directory(root, descriptor.job_id)
        if normalize_remote_path(normalized) != expected:
            raise ValidationError(
                f"Refusing to delete {label} directory {path!r}: expected {expected!r}",
                step="validate_paths",
                job_id=descriptor.job_id,
            )
        targets.append((label, normalized))
    return targets


async def delete_job(
    ctx: ChainContext,
    job_id: str,
    delete_remote: bool = True,
    confirmed: bool = False,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> None:
    """Run the deletion chain.

    Args:
        delete_remote: Also remove the job's scratch and project directories.
        confirmed: Must be True; the caller confirms with the user first.
    """
    run = ChainRun("Job Deletion", progress, cancel, job_id=job_id)
    try:
        await _delete(ctx, job_id, delete_remote, confirmed, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Job {job_id} deleted")


async def _delete(
    ctx: ChainContext, job_id: str, delete_remote: bool, confirmed: bool, run: ChainRun
) -> None:
    async with run.step("confirm", "Checking deletion request...", 0):
        if not confirmed:
            raise ValidationError("Deletion requires explicit confirmation")
        descriptor = ctx.cache.get(job_id)
        if descriptor is None:
            raise ValidationError(f"Unknown job: {job_id}")
        targets = deletion_targets(ctx, descriptor) if delete_remote else []

    if descriptor.status.is_active and descriptor.scheduler_job_id:
        async with run.step("cancel", "Cancelling scheduler job...", 20):
            await ctx.command_retry.call(ctx.scheduler.cancel, descriptor.scheduler_job_id)
            run.remote_state["scheduler_cancelled"] = descriptor.scheduler_job_id

    for index, (label, path) in enumerate(targets):
        async with run.step(
            f"delete_{label}", f"Deleting {label} directory...", 40 + 25 * index
        ):
            await ctx.command_retry.call(ctx.session.remove_tree, path)
            run.remote_state[f"{label}_deleted"] = path

    async with run.step("cache", "Removing job from local cache...", 95):
        ctx.cache.delete(job_id)
