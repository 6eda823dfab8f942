"""Output download.

Copies result files from a job's project ``outputs/`` directory to the
local machine, one file at a time. Completion fills that directory, so a
job that has not finished yet simply has nothing to download.
"""

from __future__ import annotations

import os
import posixpath
from typing import List, Optional

from ..errors import RemoteStateError
from ..models import JobDescriptor
from ..progress import ProgressStream
from ..session import TransferDirection
from ..validation import ensure_within, validate_remote_filename
from .base import CancelToken, ChainContext, ChainRun
from .creation import OUTPUTS_DIRNAME


def outputs_directory(ctx: ChainContext, descriptor: JobDescriptor) -> str:
    if not descriptor.project_dir:
        raise RemoteStateError("Job has no project directory", job_id=descriptor.job_id)
    project_dir = ensure_within(descriptor.project_dir, ctx.project_base())
    return posixpath.join(project_dir, OUTPUTS_DIRNAME)


def output_path(ctx: ChainContext, descriptor: JobDescriptor, name: str) -> str:
    """Return the remote path of output file ``name``, refusing anything outside outputs/."""
    outputs_dir = outputs_directory(ctx, descriptor)
    name = validate_remote_filename(name)
    return ensure_within(posixpath.join(outputs_dir, name), outputs_dir)


async def download_output(
    ctx: ChainContext,
    descriptor: JobDescriptor,
    name: str,
    destination: str,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> str:
    """Download one output file and return the local path it was saved to.

    If ``destination`` is an existing directory the file keeps its name
    inside it.
    """
    run = ChainRun("Job Download", progress, cancel, job_id=descriptor.job_id)
    try:
        (local_path,) = await _download(ctx, descriptor, [name], destination, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Downloaded {name} to {local_path}")
    return local_path


async def download_outputs(
    ctx: ChainContext,
    descriptor: JobDescriptor,
    destination_dir: str,
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> List[str]:
    """Download every file in the job's outputs/ directory into ``destination_dir``."""
    run = ChainRun("Job Download", progress, cancel, job_id=descriptor.job_id)
    try:
        async with run.step("list_outputs", "Listing output files...", 0):
            outputs_dir = outputs_directory(ctx, descriptor)
            entries = await ctx.command_retry.call(ctx.session.list_files, outputs_dir)
            subdirs = await ctx.command_retry.call(ctx.session.list_directories, outputs_dir)
            names = [name for name in entries if name not in subdirs]
        run.log("Found %d output files", len(names))
        os.makedirs(destination_dir, exist_ok=True)
        saved = await _download(ctx, descriptor, names, destination_dir, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Downloaded {len(saved)} output files to {destination_dir}")
    return saved


async def _download(
    ctx: ChainContext,
    descriptor: JobDescriptor,
    names: List[str],
    destination: str,
    run: ChainRun,
) -> List[str]:
    saved: List[str] = []
    total = len(names)
    for index, name in enumerate(names):
        message = f"Downloading file {index + 1} of {total}: {name}"
        async with run.step("download", message, _download_percentage(index, total, 0)):
            remote_path = output_path(ctx, descriptor, name)
            local_path = destination
            if os.path.isdir(destination):
                local_path = os.path.join(destination, name)

            def on_progress(percent: int, index: int = index, name: str = name) -> None:
                run.emit(
                    f"Downloading {name}: {percent}%",
                    _download_percentage(index, total, percent),
                )

            await ctx.file_retry.call(
                ctx.session.transfer,
                local_path,
                remote_path,
                TransferDirection.DOWNLOAD,
                on_progress,
            )
            saved.append(local_path)
            run.remote_state["downloaded_files"] = list(saved)
    return saved


def _download_percentage(index: int, total: int, file_percent: int) -> int:
    if total == 0:
        return 100
    return 5 + int(90 * (index + file_percent / 100) / total)
