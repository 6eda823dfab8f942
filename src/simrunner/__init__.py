# simrunner/__init__.py

"""
This package automates the lifecycle of Slurm simulation jobs on a remote
cluster: creation, submission, status synchronization, result collection and
deletion.
"""

__version__ = "0.1.0"

from .config import RunnerSettings, load_settings
from .engine import JobEngine
from .errors import (
    AuthenticationError,
    AutomationError,
    RemoteStateError,
    SchedulerRejection,
    TransientNetworkError,
    ValidationError,
)
from .models import (
    CreateJobParams,
    InputFile,
    JobDescriptor,
    JobStatus,
    ResourceRequest,
    SyncResult,
)
from .progress import ProgressEvent, ProgressStream

__all__ = [
    "JobEngine",
    "RunnerSettings",
    "load_settings",
    "CreateJobParams",
    "InputFile",
    "JobDescriptor",
    "JobStatus",
    "ResourceRequest",
    "SyncResult",
    "ProgressEvent",
    "ProgressStream",
    "AutomationError",
    "AuthenticationError",
    "TransientNetworkError",
    "ValidationError",
    "RemoteStateError",
    "SchedulerRejection",
]
