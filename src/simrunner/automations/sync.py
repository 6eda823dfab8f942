"""Status Synchronization chain.

Polls the scheduler for every active job, updates the cache with what it
sees, and hands jobs that have finished to the completion chain. When the
cache is empty the remote job root is scanned first, so a fresh install
picks up jobs created elsewhere. Synchronization never writes metadata
itself.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..errors import AuthenticationError, AutomationError, ChainCancelled, ValidationError
from ..models import JobStatus, SyncResult
from ..progress import ProgressStream
from ..validation import job_directory, validate_job_id
from .base import CancelToken, ChainContext, ChainRun
from .completion import complete_job
from .transitions import Action, next_action

logger = logging.getLogger(__name__)


async def sync_jobs(
    ctx: ChainContext,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> SyncResult:
    """Run one synchronization pass.

    Per-job failures (a discovery import, a completion) are collected in
    :attr:`SyncResult.errors` and do not stop the pass; an expired session
    or a cancellation does.
    """
    run = ChainRun("Job Sync", progress, cancel)
    result = SyncResult()
    try:
        await _sync(ctx, run, result)
    except BaseException as e:
        run.fail(e)
        raise
    result.jobs = ctx.cache.list_all()
    summary = f"Synchronized {len(result.jobs)} jobs ({result.jobs_updated} updated)"
    if result.errors:
        summary += f", {len(result.errors)} errors"
    run.succeed(summary)
    return result


async def _sync(ctx: ChainContext, run: ChainRun, result: SyncResult) -> None:
    if ctx.cache.is_empty():
        async with run.step("discover", "Discovering jobs on the cluster...", 5):
            imported = await discover_jobs(ctx, run, result.errors)
            result.jobs_updated += imported

    active = [
        d for d in ctx.cache.list_all() if d.status.is_active and d.scheduler_job_id
    ]
    if not active:
        run.log("No active jobs to poll")
        return

    try:
        async with run.step("query", f"Querying scheduler for {len(active)} jobs...", 30):
            rows = await ctx.command_retry.call(
                ctx.scheduler.query, [d.scheduler_job_id for d in active]
            )
    except (AuthenticationError, ChainCancelled):
        raise
    except AutomationError as e:
        # eventually consistent: keep cached states and try again next pass
        result.errors.append(f"scheduler query: {e.message}")
        return
    observed: Dict[str, JobStatus] = {row.job_id: row.status for row in rows}

    for index, cached in enumerate(active):
        status = observed.get(cached.scheduler_job_id)
        if status is None:
            run.log("Scheduler has no record of %s yet", cached.scheduler_job_id, level=logging.DEBUG)
            continue
        percentage = 40 + int(55 * index / len(active))
        async with ctx.locks.for_job(cached.job_id):
            # re-read under the lock; another chain may have moved the job on
            current = ctx.cache.get(cached.job_id)
            if current is None:
                continue
            action = next_action(current.status, status)
            if action is Action.UPDATE:
                run.emit(f"{current.job_id}: {current.status.value} -> {status.value}", percentage)
                current.set_status(status)
                ctx.cache.put(current)
                result.jobs_updated += 1
            elif action is Action.COMPLETE:
                if run.cancel.cancelled:
                    raise ChainCancelled("Job Sync cancelled", step="complete")
                run.emit(f"{current.job_id} finished ({status.value}); completing...", percentage)
                try:
                    await complete_job(ctx, current, status, cancel=run.cancel)
                except (AuthenticationError, ChainCancelled):
                    raise
                except AutomationError as e:
                    run.log("Completion of %s failed: %s", current.job_id, e.message, level=logging.ERROR)
                    result.errors.append(f"{current.job_id}: {e.message}")
                    continue
                result.jobs_updated += 1


async def discover_jobs(ctx: ChainContext, run: ChainRun, errors: List[str]) -> int:
    """Import remote job directories that are not cached yet.

    Idempotent: ids already in the cache are skipped, so repeated scans
    never create duplicates. Returns the number of imported jobs.
    """
    base = ctx.project_base()
    if not await ctx.command_retry.call(ctx.session.exists, base):
        run.log("Job root %s does not exist yet", base)
        return 0

    names = await ctx.command_retry.call(ctx.session.list_directories, base)
    imported = 0
    for name in names:
        try:
            job_id = validate_job_id(name)
        except ValidationError:
            run.log("Skipping unexpected directory %s", name, level=logging.DEBUG)
            continue
        if ctx.cache.get(job_id) is not None:
            continue
        project_dir = job_directory(base, job_id)
        try:
            descriptor = await ctx.metadata.read(project_dir)
        except AuthenticationError:
            raise
        except AutomationError as e:
            errors.append(f"{job_id}: {e.message}")
            continue
        if descriptor.job_id != job_id:
            errors.append(
                f"{job_id}: metadata describes a different job ({descriptor.job_id})"
            )
            continue
        descriptor.project_dir = project_dir
        ctx.cache.put(descriptor)
        imported += 1
        run.log("Imported job %s (%s)", job_id, descriptor.status.value)
    return imported
