"""Reads and boundary-gated writes of the remote ``job_info.json`` file.

The remote descriptor is authoritative only at three lifecycle boundaries.
:meth:`MetadataManager.write_boundary` refuses to write a descriptor whose
status does not belong to the boundary being crossed, so a job observed as
RUNNING can never have its metadata rewritten.
"""

from __future__ import annotations

import json
import logging
import posixpath
from enum import Enum
from typing import Optional

from .errors import MetadataNotFound, RemoteStateError, ValidationError
from .models import JobDescriptor, JobStatus, TERMINAL_STATES
from .retry import RetryPolicy
from .session import SessionManager

logger = logging.getLogger(__name__)

METADATA_FILENAME = "job_info.json"


class Boundary(str, Enum):
    CREATION = "creation"
    SUBMISSION = "submission"
    COMPLETION = "completion"


_ALLOWED_STATUSES = {
    Boundary.CREATION: frozenset({JobStatus.CREATED}),
    Boundary.SUBMISSION: frozenset({JobStatus.PENDING}),
    Boundary.COMPLETION: TERMINAL_STATES,
}


def metadata_path(project_dir: str) -> str:
    return posixpath.join(project_dir, METADATA_FILENAME)


def check_boundary(descriptor: JobDescriptor, boundary: Boundary) -> None:
    """Raise :class:`ValidationError` if ``descriptor`` may not be written at ``boundary``."""
    boundary = Boundary(boundary)
    if descriptor.status not in _ALLOWED_STATUSES[boundary]:
        raise ValidationError(
            f"Refusing to write {boundary.value} metadata for a job in status "
            f"{descriptor.status.value}",
            step="write_metadata",
            job_id=descriptor.job_id,
        )
    if not descriptor.project_dir:
        raise ValidationError(
            "Job has no project directory", step="write_metadata", job_id=descriptor.job_id
        )
    if boundary is Boundary.SUBMISSION and not (
        descriptor.scheduler_job_id and descriptor.submitted_at
    ):
        raise ValidationError(
            "Submission metadata requires a scheduler job id and submission time",
            step="write_metadata",
            job_id=descriptor.job_id,
        )
    if boundary is Boundary.COMPLETION and not descriptor.completed_at:
        raise ValidationError(
            "Completion metadata requires a completion time",
            step="write_metadata",
            job_id=descriptor.job_id,
        )


class MetadataManager:
    """Serialize descriptors to and from ``<project_dir>/job_info.json``."""

    def __init__(self, session: SessionManager, retry: Optional[RetryPolicy] = None):
        self.session = session
        self.retry = retry or RetryPolicy()

    async def write_boundary(self, descriptor: JobDescriptor, boundary: Boundary) -> str:
        """Write the descriptor as it stands at ``boundary`` and return the path.

        The status check runs before any remote call. The write itself is an
        atomic replace, so retrying it is safe.
        """
        boundary = Boundary(boundary)
        check_boundary(descriptor, boundary)
        path = metadata_path(descriptor.project_dir)
        payload = json.dumps(descriptor.to_dict(), indent=2, sort_keys=True)
        logger.info(
            "Writing %s metadata for %s to %s", boundary.value, descriptor.job_id, path
        )
        await self.retry.call(self.session.write_text, path, payload + "\n")
        return path

    async def read(self, project_dir: str) -> JobDescriptor:
        """Load the descriptor stored in ``project_dir``.

        Raises:
            MetadataNotFound: There is no ``job_info.json`` in the directory.
            RemoteStateError: The file exists but cannot be parsed.
        """
        path = metadata_path(project_dir)
        if not await self.retry.call(self.session.exists, path):
            raise MetadataNotFound(f"No {METADATA_FILENAME} in {project_dir}")
        text = await self.retry.call(self.session.read_file, path)
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            descriptor = JobDescriptor.from_dict(data)
        except (ValueError, TypeError, KeyError) as e:
            raise RemoteStateError(f"Corrupt metadata in {path}: {e}") from e
        if descriptor.status is JobStatus.UNKNOWN:
            raise RemoteStateError(f"Metadata in {path} has no usable status")
        return descriptor
