"""Plumbing shared by the automation chains."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

from ..cache import JobCache
from ..config import RunnerSettings
from ..errors import AutomationError, ChainCancelled
from ..metadata import MetadataManager
from ..progress import ProgressStream
from ..retry import RetryPolicy
from ..scheduler import SlurmScheduler
from ..session import SessionManager
from ..templates import TemplateStore

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag, checked between chain steps only."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class JobLocks:
    """One ``asyncio.Lock`` per job id."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_job(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = self._locks[job_id] = asyncio.Lock()
        return lock

    def discard(self, job_id: str) -> None:
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]


@dataclass
class ChainContext:
    """Collaborators every chain needs, passed explicitly."""

    session: SessionManager
    scheduler: SlurmScheduler
    metadata: MetadataManager
    cache: JobCache
    templates: TemplateStore
    settings: RunnerSettings
    command_retry: RetryPolicy = field(default_factory=RetryPolicy.quick)
    file_retry: RetryPolicy = field(default_factory=RetryPolicy.files)
    locks: JobLocks = field(default_factory=JobLocks)

    def project_base(self) -> str:
        return self.settings.project_base(self.session.username)

    def scratch_base(self) -> str:
        return self.settings.scratch_base(self.session.username)


class ChainRun:
    """Bookkeeping for one chain invocation.

    Emits a progress event per step, checks the cancel token before each
    step, and attaches the failing step plus the known remote state to any
    :class:`AutomationError` raised inside it.
    """

    def __init__(
        self,
        name: str,
        progress: Optional[ProgressStream] = None,
        cancel: Optional[CancelToken] = None,
        job_id: Optional[str] = None,
    ):
        self.name = name
        self.progress = progress or ProgressStream(name)
        self.cancel = cancel or CancelToken()
        self.job_id = job_id
        self.remote_state: Dict[str, Any] = {}

    def log(self, message: str, *args: Any, level: int = logging.INFO) -> None:
        logger.log(level, f"[{self.name}] {message}", *args)

    def emit(self, message: str, percentage: Optional[int] = None) -> None:
        self.progress.emit(message, percentage)

    @asynccontextmanager
    async def step(
        self, step: str, message: str, percentage: Optional[int] = None
    ) -> AsyncIterator[None]:
        if self.cancel.cancelled:
            raise ChainCancelled(
                f"{self.name} cancelled before {step}",
                step=step,
                job_id=self.job_id,
                remote_state=self.remote_state,
            )
        self.log("%s", message)
        self.emit(message, percentage)
        try:
            yield
        except AutomationError as e:
            e.with_context(step=step, job_id=self.job_id, remote_state=self.remote_state)
            raise

    def succeed(self, message: str) -> None:
        self.log("%s", message)
        self.progress.finish(message)

    def fail(self, error: BaseException) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        self.log("Failed: %s", message, level=logging.ERROR)
        self.progress.fail(f"{self.name} failed: {message}")
