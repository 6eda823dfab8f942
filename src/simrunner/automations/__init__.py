"""The five job lifecycle chains: creation, submission, synchronization,
completion and deletion, plus output download."""

from .base import CancelToken, ChainContext, ChainRun, JobLocks
from .completion import complete_job, refetch_logs
from .creation import create_job, generate_job_id, validate_params
from .deletion import delete_job, deletion_targets
from .downloads import download_output, download_outputs, output_path
from .submission import load_submittable, submit_job
from .sync import discover_jobs, sync_jobs
from .transitions import Action, next_action

__all__ = [
    "Action",
    "CancelToken",
    "ChainContext",
    "ChainRun",
    "JobLocks",
    "complete_job",
    "create_job",
    "delete_job",
    "deletion_targets",
    "download_output",
    "download_outputs",
    "discover_jobs",
    "generate_job_id",
    "load_submittable",
    "next_action",
    "output_path",
    "refetch_logs",
    "submit_job",
    "sync_jobs",
    "validate_params",
]
