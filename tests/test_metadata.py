"""Tests for lifecycle-boundary metadata and the local job cache."""

import asyncio
import json

import pytest
from builders import fast_retry  # type: ignore

from simrunner.cache import JsonFileJobCache, MemoryJobCache
from simrunner.errors import MetadataNotFound, RemoteStateError, ValidationError
from simrunner.metadata import Boundary, MetadataManager, check_boundary
from simrunner.models import JobDescriptor, JobStatus, ResourceRequest, utc_now
from simrunner.session import SessionManager

PROJECT_DIR = "/projects/testuser/simrunner_jobs/run1_0123456789ab"


def _descriptor(**overrides) -> JobDescriptor:
    values = dict(
        job_id="run1_0123456789ab",
        job_name="run1",
        template_id="t1",
        resources=ResourceRequest(cores=4),
        project_dir=PROJECT_DIR,
        scratch_dir="/scratch/alpine/testuser/simrunner_jobs/run1_0123456789ab",
    )
    values.update(overrides)
    return JobDescriptor(**values)


def _manager(cluster) -> MetadataManager:
    session = SessionManager(cluster.factory)
    asyncio.run(session.establish("login.example.edu", "testuser", "secret"))
    cluster.add_dir(PROJECT_DIR)
    return MetadataManager(session, fast_retry())


@pytest.mark.parametrize(
    "boundary,descriptor",
    [
        (Boundary.CREATION, _descriptor(status=JobStatus.PENDING)),
        (Boundary.SUBMISSION, _descriptor(status=JobStatus.CREATED)),
        (Boundary.SUBMISSION, _descriptor(status=JobStatus.PENDING)),
        (Boundary.COMPLETION, _descriptor(status=JobStatus.RUNNING)),
        (Boundary.COMPLETION, _descriptor(status=JobStatus.COMPLETED)),
        (Boundary.CREATION, _descriptor(project_dir=None)),
    ],
)
def test_boundary_guards(boundary, descriptor):
    with pytest.raises(ValidationError):
        check_boundary(descriptor, boundary)


def test_guard_runs_before_any_remote_call(cluster):
    manager = _manager(cluster)
    operations_before = len(cluster.operations)

    with pytest.raises(ValidationError, match="RUNNING"):
        asyncio.run(
            manager.write_boundary(_descriptor(status=JobStatus.RUNNING), Boundary.SUBMISSION)
        )
    assert len(cluster.operations) == operations_before


def test_write_and_read_round_trip(cluster):
    manager = _manager(cluster)
    submitted = _descriptor(
        status=JobStatus.PENDING, scheduler_job_id="555", submitted_at=utc_now()
    )

    path = asyncio.run(manager.write_boundary(submitted, Boundary.SUBMISSION))

    assert path == PROJECT_DIR + "/job_info.json"
    data = json.loads(cluster.text(path))
    assert data["status"] == "PENDING"
    assert data["scheduler_job_id"] == "555"
    assert data["resources"]["cores"] == 4

    loaded = asyncio.run(manager.read(PROJECT_DIR))
    assert loaded == submitted


def test_write_retries_transient_failures(cluster):
    manager = _manager(cluster)
    cluster.fail_next("write_text", TimeoutError("stalled"), times=2)

    asyncio.run(manager.write_boundary(_descriptor(), Boundary.CREATION))

    assert json.loads(cluster.text(PROJECT_DIR + "/job_info.json"))["status"] == "CREATED"


def test_read_missing_and_corrupt(cluster):
    manager = _manager(cluster)
    with pytest.raises(MetadataNotFound):
        asyncio.run(manager.read(PROJECT_DIR))

    cluster.add_file(PROJECT_DIR + "/job_info.json", "{not json")
    with pytest.raises(RemoteStateError, match="Corrupt"):
        asyncio.run(manager.read(PROJECT_DIR))

    cluster.add_file(PROJECT_DIR + "/job_info.json", json.dumps({"job_id": "x", "status": "BOGUS"}))
    with pytest.raises(RemoteStateError):
        asyncio.run(manager.read(PROJECT_DIR))


def test_metadata_ignores_unknown_fields(cluster):
    manager = _manager(cluster)
    data = _descriptor().to_dict()
    data["written_by"] = "an older release"
    cluster.add_file(PROJECT_DIR + "/job_info.json", json.dumps(data))

    assert asyncio.run(manager.read(PROJECT_DIR)).job_id == "run1_0123456789ab"


@pytest.mark.parametrize("resources", [None, "missing"])
def test_metadata_without_resources_reads_defaults(cluster, resources):
    manager = _manager(cluster)
    data = _descriptor().to_dict()
    if resources == "missing":
        del data["resources"]
    else:
        data["resources"] = resources
    cluster.add_file(PROJECT_DIR + "/job_info.json", json.dumps(data))

    descriptor = asyncio.run(manager.read(PROJECT_DIR))

    assert descriptor.resources == ResourceRequest()


@pytest.mark.parametrize("factory", ["memory", "json"])
def test_cache_round_trip_and_isolation(factory, tmp_path):
    cache = MemoryJobCache() if factory == "memory" else JsonFileJobCache(tmp_path / "cache")
    assert cache.is_empty()

    older = _descriptor(job_id="a_1", created_at="2026-01-01T00:00:00+00:00")
    newer = _descriptor(job_id="b_2", created_at="2026-02-01T00:00:00+00:00")
    cache.put(newer)
    cache.put(older)

    assert [d.job_id for d in cache.list_all()] == ["a_1", "b_2"]
    assert "a_1" in cache

    # callers get copies, never the cached object
    copy = cache.get("a_1")
    copy.status = JobStatus.FAILED
    assert cache.get("a_1").status is JobStatus.CREATED

    cache.delete("a_1")
    cache.delete("a_1")
    assert cache.get("a_1") is None
    assert [d.job_id for d in cache.list_all()] == ["b_2"]


def test_json_cache_skips_unreadable_entries(tmp_path):
    cache = JsonFileJobCache(tmp_path)
    cache.put(_descriptor())
    (tmp_path / "broken_1.json").write_text("{", encoding="utf-8")

    assert [d.job_id for d in cache.list_all()] == ["run1_0123456789ab"]
    assert cache.get("../escape") is None
    assert not list(tmp_path.glob("*.tmp"))
