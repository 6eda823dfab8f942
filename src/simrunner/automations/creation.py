"""Job Creation chain.

validate inputs -> create project directories -> upload input files ->
render configuration -> write CREATION metadata -> insert into cache.

Nothing is rolled back on failure: remote partial state stays in place for
inspection and the error says which directories and files exist.
"""

from __future__ import annotations

import os
import posixpath
import uuid
from typing import Any, List, Mapping, Optional, Union

from ..errors import ValidationError
from ..metadata import Boundary
from ..models import CreateJobParams, InputFile, JobDescriptor, JobStatus
from ..progress import ProgressStream
from ..rendering import SCRIPTS_DIRNAME
from ..session import TransferDirection
from ..templates import INPUT_FILES_DIRNAME
from ..validation import (
    job_directory,
    validate_cores,
    validate_job_name,
    validate_memory,
    validate_remote_filename,
    validate_slurm_identifier,
    validate_walltime,
)
from .base import CancelToken, ChainContext, ChainRun

OUTPUTS_DIRNAME = "outputs"
JOB_SUBDIRECTORIES = (INPUT_FILES_DIRNAME, SCRIPTS_DIRNAME, OUTPUTS_DIRNAME)


def generate_job_id(job_name: str) -> str:
    return f"{job_name}_{uuid.uuid4().hex[:12]}"


def validate_params(params: CreateJobParams) -> CreateJobParams:
    """Validate creation parameters without touching the network."""
    params.job_name = validate_job_name(params.job_name)
    if not params.template_id:
        raise ValidationError("Template id cannot be empty")

    resources = params.resources
    resources.cores = validate_cores(resources.cores)
    resources.memory = validate_memory(resources.memory)
    resources.walltime = validate_walltime(resources.walltime)
    if resources.partition:
        resources.partition = validate_slurm_identifier(resources.partition, "Partition")
    if resources.qos:
        resources.qos = validate_slurm_identifier(resources.qos, "QOS")

    seen = set()
    for input_file in params.input_files:
        name = validate_remote_filename(input_file.name)
        if name in seen:
            raise ValidationError(f"Duplicate input file name: {name}")
        seen.add(name)
        if not os.path.isfile(input_file.local_path):
            raise ValidationError(f"Input file not found: {input_file.local_path}")
    return params


async def create_job(
    ctx: ChainContext,
    params: Union[CreateJobParams, Mapping[str, Any]],
    progress: Optional[ProgressStream] = None,
    cancel: Optional[CancelToken] = None,
) -> JobDescriptor:
    """Run the creation chain and return the cached descriptor."""
    if not isinstance(params, CreateJobParams):
        params = CreateJobParams.from_dict(dict(params))
    run = ChainRun("Job Creation", progress, cancel)
    try:
        descriptor = await _create(ctx, params, run)
    except BaseException as e:
        run.fail(e)
        raise
    run.succeed(f"Job {descriptor.job_id} created")
    return descriptor.snapshot()


async def _create(ctx: ChainContext, params: CreateJobParams, run: ChainRun) -> JobDescriptor:
    async with run.step("validate", "Validating job parameters...", 0):
        params = validate_params(params)
        template = ctx.templates.get(params.template_id)
        config_text = template.render(params.template_values)
        project_base = ctx.project_base()
        scratch_base = ctx.scratch_base()

    job_id = generate_job_id(params.job_name)
    run.job_id = job_id
    project_dir = job_directory(project_base, job_id)
    descriptor = JobDescriptor(
        job_id=job_id,
        job_name=params.job_name,
        status=JobStatus.CREATED,
        template_id=params.template_id,
        template_values=dict(params.template_values),
        resources=params.resources,
        input_files=[
            InputFile(local_path=f.local_path, remote_name=f.name) for f in params.input_files
        ],
        project_dir=project_dir,
        scratch_dir=job_directory(scratch_base, job_id),
    )
    run.log("Generated job ID %s at %s", job_id, project_dir)

    async with run.step("create_directories", "Creating project directories...", 10):
        await ctx.command_retry.call(ctx.session.make_directory, project_dir)
        run.remote_state["project_dir"] = project_dir
        for subdir in JOB_SUBDIRECTORIES:
            await ctx.command_retry.call(
                ctx.session.make_directory, posixpath.join(project_dir, subdir)
            )

    uploaded: List[str] = []
    total = len(params.input_files)
    for index, input_file in enumerate(params.input_files):
        remote_path = posixpath.join(project_dir, INPUT_FILES_DIRNAME, input_file.name)
        message = f"Uploading file {index + 1} of {total}: {input_file.name}"
        async with run.step("upload_inputs", message, _upload_percentage(index, total, 0)):

            def on_progress(percent: int, index: int = index, name: str = input_file.name) -> None:
                run.emit(
                    f"Uploading {name}: {percent}%",
                    _upload_percentage(index, total, percent),
                )

            await ctx.file_retry.call(
                ctx.session.transfer,
                input_file.local_path,
                remote_path,
                TransferDirection.UPLOAD,
                on_progress,
            )
            uploaded.append(input_file.name)
            run.remote_state["uploaded_files"] = list(uploaded)

    config_path = posixpath.join(project_dir, SCRIPTS_DIRNAME, ctx.settings.config_filename)
    async with run.step("render_config", "Generating simulation configuration...", 80):
        await ctx.command_retry.call(ctx.session.write_text, config_path, config_text)
        run.remote_state["config"] = config_path

    async with run.step("write_metadata", "Creating job metadata...", 90):
        await ctx.metadata.write_boundary(descriptor, Boundary.CREATION)
        run.remote_state["metadata"] = Boundary.CREATION.value

    async with run.step("cache", "Saving job...", 95):
        ctx.cache.put(descriptor)
    return descriptor


def _upload_percentage(index: int, total: int, file_percent: int) -> int:
    # uploads occupy the 20-80% band of the chain
    if total == 0:
        return 20
    return 20 + int(60 * (index + file_percent / 100) / total)
