"""Local job cache.

Mirrors job descriptors for instant, offline access. The engine is the only
writer; every write replaces the whole descriptor (last writer wins per job
id). Readers always get copies.
"""

from __future__ import annotations

import abc
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ValidationError
from .models import JobDescriptor
from .validation import validate_job_id

logger = logging.getLogger(__name__)


class JobCache(abc.ABC):
    """Persistent store of job descriptors keyed by ``job_id``."""

    @abc.abstractmethod
    def get(self, job_id: str) -> Optional[JobDescriptor]:
        """Return a copy of the cached descriptor, or None."""

    @abc.abstractmethod
    def put(self, descriptor: JobDescriptor) -> None:
        """Insert or replace the descriptor for ``descriptor.job_id``."""

    @abc.abstractmethod
    def delete(self, job_id: str) -> None:
        """Remove the entry; a missing entry is not an error."""

    @abc.abstractmethod
    def list_all(self) -> List[JobDescriptor]:
        """Return copies of every cached descriptor, oldest first."""

    def __contains__(self, job_id: str) -> bool:
        return self.get(job_id) is not None

    def is_empty(self) -> bool:
        return not self.list_all()


def _sort_key(descriptor: JobDescriptor):
    return (descriptor.created_at or "", descriptor.job_id)


class MemoryJobCache(JobCache):
    def __init__(self) -> None:
        self._jobs: Dict[str, JobDescriptor] = {}

    def get(self, job_id: str) -> Optional[JobDescriptor]:
        descriptor = self._jobs.get(job_id)
        return descriptor.snapshot() if descriptor else None

    def put(self, descriptor: JobDescriptor) -> None:
        self._jobs[descriptor.job_id] = descriptor.snapshot()

    def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def list_all(self) -> List[JobDescriptor]:
        return sorted((d.snapshot() for d in self._jobs.values()), key=_sort_key)


class JsonFileJobCache(JobCache):
    """One ``<job_id>.json`` file per job in ``directory``.

    Files are written to a temporary name and renamed into place, so a crash
    never leaves a half-written entry.
    """

    def __init__(self, directory: Union[str, "os.PathLike[str]"]):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.directory / f"{validate_job_id(job_id)}.json"

    def _load(self, path: Path) -> Optional[JobDescriptor]:
        try:
            with path.open("r", encoding="utf-8") as handle:
                return JobDescriptor.from_dict(json.load(handle))
        except FileNotFoundError:
            return None
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", path.name, e)
            return None

    def get(self, job_id: str) -> Optional[JobDescriptor]:
        try:
            path = self._path(job_id)
        except ValidationError:
            return None
        return self._load(path)

    def put(self, descriptor: JobDescriptor) -> None:
        path = self._path(descriptor.job_id)
        fd, temp = tempfile.mkstemp(dir=self.directory, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(descriptor.to_dict(), handle, indent=2, sort_keys=True)
            os.replace(temp, path)
        except BaseException:
            if os.path.exists(temp):
                os.unlink(temp)
            raise

    def delete(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink()
        except FileNotFoundError:
            pass

    def list_all(self) -> List[JobDescriptor]:
        descriptors = []
        for path in self.directory.glob("*.json"):
            descriptor = self._load(path)
            if descriptor is not None:
                descriptors.append(descriptor)
        return sorted(descriptors, key=_sort_key)
