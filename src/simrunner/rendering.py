"""
This module renders the SLURM batch script for a simulation job.
"""

import logging
import shlex
from typing import List, Optional, Sequence

from .config import DEFAULT_RUN_COMMAND
from .models import JobDescriptor
from .validation import (
    validate_cores,
    validate_job_name,
    validate_memory,
    validate_module_name,
    validate_slurm_identifier,
    validate_walltime,
)

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "job.sbatch"
SCRIPTS_DIRNAME = "scripts"


def log_filenames(job_name: str, scheduler_job_id: str) -> List[str]:
    """Names of the scheduler stdout/stderr logs for a submitted job."""
    return [f"{job_name}_{scheduler_job_id}.out", f"{job_name}_{scheduler_job_id}.err"]


def _memory_directive(memory: str) -> str:
    # sbatch wants 16G rather than 16GB
    memory = validate_memory(memory)
    if memory.upper().endswith("B"):
        memory = memory[:-1]
    return memory


def render_job_script(
    descriptor: JobDescriptor,
    *,
    config_filename: str = "config.namd",
    run_command: str = DEFAULT_RUN_COMMAND,
    modules: Optional[Sequence[str]] = None,
) -> str:
    """
    Render the sbatch script that runs ``descriptor`` inside its scratch directory.

    ``run_command`` may contain ``{config}``, replaced with the path of the
    rendered configuration relative to the job directory. Everything else in
    it is emitted verbatim so shell variables like ``${SLURM_NTASKS}`` survive.
    """
    job_name = validate_job_name(descriptor.job_name)
    resources = descriptor.resources
    cores = validate_cores(resources.cores)
    walltime = validate_walltime(resources.walltime)

    script_lines = ["#!/bin/bash"]
    script_lines.append(f"#SBATCH --job-name={job_name}")
    script_lines.append(f"#SBATCH --output={job_name}_%j.out")
    script_lines.append(f"#SBATCH --error={job_name}_%j.err")
    script_lines.append("#SBATCH --nodes=1")
    script_lines.append(f"#SBATCH --ntasks={cores}")
    script_lines.append(f"#SBATCH --mem={_memory_directive(resources.memory)}")
    script_lines.append(f"#SBATCH --time={walltime}")
    if resources.partition:
        partition = validate_slurm_identifier(resources.partition, "Partition")
        script_lines.append(f"#SBATCH --partition={partition}")
    if resources.qos:
        qos = validate_slurm_identifier(resources.qos, "QOS")
        script_lines.append(f"#SBATCH --qos={qos}")

    script_lines.append("")
    if descriptor.scratch_dir:
        script_lines.append(f"cd {shlex.quote(descriptor.scratch_dir)} || exit 1")
    script_lines.append('echo "SLURM Job ID: ${SLURM_JOB_ID:-}"')
    script_lines.append('echo "Running on host: $(hostname)"')
    script_lines.append('echo "Working directory: $(pwd)"')
    script_lines.append("")

    module_names = [validate_module_name(m) for m in modules or []]
    if module_names:
        script_lines.append("module purge")
        for module in module_names:
            script_lines.append(f"module load {shlex.quote(module)}")
        script_lines.append("")

    config_path = f"{SCRIPTS_DIRNAME}/{config_filename}"
    script_lines.append("mkdir -p outputs")
    script_lines.append(run_command.replace("{config}", shlex.quote(config_path)))
    script_lines.append("")

    script = "\n".join(script_lines)
    logger.debug("Rendered job script for %s:\n%s", descriptor.job_id, script)
    return script
