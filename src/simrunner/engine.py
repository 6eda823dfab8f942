"""The automation engine exposed to the presentation layer.

:class:`JobEngine` wires the session, scheduler, metadata manager, cache
and template store together and runs one chain per call. Chains touching
the same job are serialized by a per-job lock; all remote I/O is
additionally serialized by the session lock.

Example:
    >>> engine = JobEngine.from_settings(load_settings())
    >>> await engine.connect(password=getpass())
    >>> job = await engine.create_job({"job_name": "run1", "template_id": "t1"})
    >>> await engine.submit_job(job.job_id)
    >>> result = await engine.sync()
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, List, Mapping, Optional, Union

from .automations import (
    CancelToken,
    ChainContext,
    JobLocks,
    complete_job,
    create_job,
    delete_job,
    download_output,
    download_outputs,
    refetch_logs,
    submit_job,
    sync_jobs,
)
from .cache import JobCache, JsonFileJobCache
from .config import RunnerSettings
from .errors import ValidationError
from .metadata import MetadataManager
from .models import CreateJobParams, JobDescriptor, JobStatus, Session, SyncResult
from .progress import ProgressStream
from .retry import RetryPolicy
from .scheduler import SlurmScheduler
from .session import SessionManager, ShellFactory
from .templates import FileTemplateStore, TemplateStore
from .validation import validate_job_id

logger = logging.getLogger(__name__)


class JobEngine:
    """Run job lifecycle chains against one cluster."""

    def __init__(
        self,
        settings: RunnerSettings,
        *,
        session: SessionManager,
        cache: JobCache,
        templates: TemplateStore,
        scheduler: Optional[SlurmScheduler] = None,
        metadata: Optional[MetadataManager] = None,
        command_retry: Optional[RetryPolicy] = None,
        file_retry: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.session = session
        self.cache = cache
        self.templates = templates
        retry = RetryPolicy.from_settings(settings.retry)
        self.command_retry = command_retry or retry
        self.file_retry = file_retry or RetryPolicy.files(
            max_attempts=max(settings.retry.max_attempts, 5)
        )
        self.scheduler = scheduler or SlurmScheduler(session, setup=settings.scheduler_setup)
        self.metadata = metadata or MetadataManager(session, self.command_retry)
        self.locks = JobLocks()
        self._sync_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: RunnerSettings,
        *,
        shell_factory: Optional[ShellFactory] = None,
        cache: Optional[JobCache] = None,
        templates: Optional[TemplateStore] = None,
    ) -> "JobEngine":
        """Build an engine with the default collaborators for ``settings``."""
        session_kwargs = dict(
            command_timeout=settings.command_timeout,
            connect_timeout=settings.connect_timeout,
            transfer_timeout=settings.transfer_timeout,
        )
        if shell_factory is not None:
            session_kwargs["shell_factory"] = shell_factory
        session = SessionManager(**session_kwargs)

        if templates is None:
            template_dir = settings.template_dir
            if settings.path is not None and not os.path.isabs(os.path.expanduser(template_dir)):
                template_dir = os.path.join(os.path.dirname(settings.path), template_dir)
            templates = FileTemplateStore(template_dir)
        if cache is None:
            cache = JsonFileJobCache(os.path.join(os.path.expanduser(settings.cache_dir), settings.name))
        return cls(settings, session=session, cache=cache, templates=templates)

    @property
    def context(self) -> ChainContext:
        return ChainContext(
            session=self.session,
            scheduler=self.scheduler,
            metadata=self.metadata,
            cache=self.cache,
            templates=self.templates,
            settings=self.settings,
            command_retry=self.command_retry,
            file_retry=self.file_retry,
            locks=self.locks,
        )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(
        self,
        password: str,
        *,
        host: Optional[str] = None,
        username: Optional[str] = None,
        port: Optional[int] = None,
    ) -> Session:
        host = host or self.settings.hostname
        username = username or self.settings.username
        if not host:
            raise ValidationError("No hostname configured; set 'hostname' in the Runfile")
        if not username:
            raise ValidationError("No username configured; set 'username' in the Runfile")
        return await self.session.establish(
            host, username, password, port=port or self.settings.port
        )

    async def disconnect(self) -> None:
        await self.session.disconnect()

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    async def create_job(
        self,
        params: Union[CreateJobParams, Mapping[str, Any]],
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> JobDescriptor:
        return await create_job(self.context, params, progress, cancel)

    async def submit_job(
        self,
        job_id: str,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> JobDescriptor:
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            return await submit_job(self.context, job_id, progress, cancel)

    async def sync(
        self,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> SyncResult:
        async with self._sync_lock:
            return await sync_jobs(self.context, progress, cancel)

    async def complete_job(
        self,
        job_id: str,
        final_status: JobStatus,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> JobDescriptor:
        """Complete a job explicitly, e.g. after a failed automatic completion."""
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            descriptor = self._require_job(job_id)
            return await complete_job(self.context, descriptor, final_status, progress, cancel)

    async def delete_job(
        self,
        job_id: str,
        delete_remote: bool = True,
        *,
        confirmed: bool = False,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            await delete_job(self.context, job_id, delete_remote, confirmed, progress, cancel)
        self.locks.discard(job_id)

    async def refetch_logs(self, job_id: str) -> JobDescriptor:
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            return await refetch_logs(self.context, self._require_job(job_id))

    async def download_output(
        self,
        job_id: str,
        name: str,
        destination: str,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> str:
        """Download one file from the job's outputs directory."""
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            descriptor = self._require_job(job_id)
            return await download_output(
                self.context, descriptor, name, destination, progress, cancel
            )

    async def download_outputs(
        self,
        job_id: str,
        destination_dir: str,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[str]:
        job_id = validate_job_id(job_id)
        async with self.locks.for_job(job_id):
            descriptor = self._require_job(job_id)
            return await download_outputs(
                self.context, descriptor, destination_dir, progress, cancel
            )

    # ------------------------------------------------------------------
    # Cache reads
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[JobDescriptor]:
        return self.cache.get(job_id)

    def list_jobs(self) -> List[JobDescriptor]:
        return self.cache.list_all()

    def _require_job(self, job_id: str) -> JobDescriptor:
        descriptor = self.cache.get(job_id)
        if descriptor is None:
            raise ValidationError(f"Unknown job: {job_id}", job_id=job_id)
        return descriptor
