"""Core data types shared by the session layer, the chains and the cache."""

from __future__ import annotations

import copy
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    """Lifecycle state of a job.

    ```
    CREATED --submit--> PENDING --scheduler--> RUNNING --> COMPLETED
                                                       \\-> FAILED
                                                       \\-> CANCELLED
    ```

    ``UNKNOWN`` is produced only by the status parser for scheduler codes it
    does not recognize ("needs next poll") and is never stored on a descriptor.
    """

    CREATED = "CREATED"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        """True while the scheduler owns the job (PENDING or RUNNING)."""
        return self in (JobStatus.PENDING, JobStatus.RUNNING)


TERMINAL_STATES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

SUBMITTABLE_STATES = frozenset({JobStatus.CREATED, JobStatus.FAILED})


@dataclass
class ResourceRequest:
    """Scheduler resources requested for a job."""

    cores: int = 1
    memory: str = "4GB"
    walltime: str = "01:00:00"
    partition: Optional[str] = None
    qos: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResourceRequest":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})


@dataclass
class InputFile:
    """A local file to upload into the job's ``input_files/`` directory."""

    local_path: str
    remote_name: Optional[str] = None

    @property
    def name(self) -> str:
        return self.remote_name or os.path.basename(self.local_path)

    @classmethod
    def from_value(cls, value: Any) -> "InputFile":
        if isinstance(value, InputFile):
            return value
        if isinstance(value, (str, os.PathLike)):
            return cls(local_path=os.fspath(value))
        if isinstance(value, dict):
            return cls(
                local_path=value["local_path"], remote_name=value.get("remote_name")
            )
        raise TypeError(f"Cannot build InputFile from {type(value).__name__}")


@dataclass
class CreateJobParams:
    """Parameters accepted by the job creation chain."""

    job_name: str
    template_id: str
    template_values: Dict[str, Any] = field(default_factory=dict)
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    input_files: List[InputFile] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateJobParams":
        resources = data.get("resources") or {}
        if not isinstance(resources, ResourceRequest):
            resources = ResourceRequest.from_dict(resources)
        return cls(
            job_name=data.get("job_name", ""),
            template_id=data.get("template_id", ""),
            template_values=dict(data.get("template_values") or {}),
            resources=resources,
            input_files=[InputFile.from_value(v) for v in data.get("input_files") or []],
        )


@dataclass
class JobDescriptor:
    """Canonical description of one job.

    Owned by the automation engine. The same structure is cached locally and
    written remotely as ``job_info.json`` at lifecycle boundaries; callers
    outside the engine only ever receive snapshots.
    """

    job_id: str
    job_name: str
    status: JobStatus = JobStatus.CREATED
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None
    submitted_at: Optional[str] = None
    completed_at: Optional[str] = None
    scheduler_job_id: Optional[str] = None
    template_id: str = ""
    template_values: Dict[str, Any] = field(default_factory=dict)
    resources: ResourceRequest = field(default_factory=ResourceRequest)
    input_files: List[InputFile] = field(default_factory=list)
    output_files: List[str] = field(default_factory=list)
    project_dir: Optional[str] = None
    scratch_dir: Optional[str] = None
    error_info: Optional[str] = None
    scheduler_stdout: Optional[str] = None
    scheduler_stderr: Optional[str] = None

    def snapshot(self) -> "JobDescriptor":
        return copy.deepcopy(self)

    def set_status(self, status: JobStatus) -> None:
        if status is JobStatus.UNKNOWN:
            raise ValueError("UNKNOWN is not a storable job status")
        self.status = status
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobDescriptor":
        """Build a descriptor, ignoring unknown keys and defaulting missing ones."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if "status" in values:
            values["status"] = JobStatus(str(values["status"]).upper())
        resources = values.get("resources")
        if isinstance(resources, dict):
            values["resources"] = ResourceRequest.from_dict(resources)
        elif not isinstance(resources, ResourceRequest):
            values["resources"] = ResourceRequest()
        values["input_files"] = [
            InputFile.from_value(v) for v in values.get("input_files") or []
        ]
        values["output_files"] = list(values.get("output_files") or [])
        values["template_values"] = dict(values.get("template_values") or {})
        return cls(**values)


@dataclass
class Session:
    """The single live remote session. Holds no credentials."""

    host: str
    username: str
    port: int = 22
    connected_at: str = field(default_factory=utc_now)
    expired: bool = False

    @property
    def is_live(self) -> bool:
        return not self.expired


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class SyncResult:
    """Result of a synchronization pass."""

    jobs: List[JobDescriptor] = field(default_factory=list)
    jobs_updated: int = 0
    errors: List[str] = field(default_factory=list)
