"""Tests for status synchronization, discovery and the completion chain."""

import asyncio
import json

import pytest
from builders import fast_retry, namd_template, submitted_job  # type: ignore

from simrunner.cache import MemoryJobCache
from simrunner.engine import JobEngine
from simrunner.errors import AuthenticationError, ValidationError
from simrunner.models import JobStatus
from simrunner.progress import ProgressStream
from simrunner.session import SessionManager
from simrunner.templates import MemoryTemplateStore

JOBS = "/projects/testuser/simrunner_jobs"


def _fresh_engine(cluster, settings) -> JobEngine:
    """A second client with an empty cache, talking to the same cluster."""
    return JobEngine(
        settings,
        session=SessionManager(cluster.factory),
        cache=MemoryJobCache(),
        templates=MemoryTemplateStore({"t1": namd_template()}),
        command_retry=fast_retry(),
        file_retry=fast_retry(max_attempts=5),
    )


def _metadata(cluster, job):
    return json.loads(cluster.text(f"{job.project_dir}/job_info.json"))


def test_pending_to_running_updates_cache_only(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.jobs[job.scheduler_job_id] = "RUNNING"
        return job, await engine.sync()

    job, result = asyncio.run(scenario())

    assert result.jobs_updated == 1
    assert result.errors == []
    assert engine.get_job(job.job_id).status is JobStatus.RUNNING
    assert _metadata(cluster, job)["status"] == "PENDING"


def test_status_never_moves_backwards(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.jobs[job.scheduler_job_id] = "RUNNING"
        await engine.sync()
        # requeued by the scheduler
        cluster.jobs[job.scheduler_job_id] = "PENDING"
        result = await engine.sync()
        return job, result

    job, result = asyncio.run(scenario())

    assert result.jobs_updated == 0
    assert engine.get_job(job.job_id).status is JobStatus.RUNNING


def test_unknown_scheduler_state_waits_for_next_poll(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.jobs[job.scheduler_job_id] = "SOMETHING_NEW"
        return job, await engine.sync()

    job, result = asyncio.run(scenario())

    assert result.jobs_updated == 0
    assert engine.get_job(job.job_id).status is JobStatus.PENDING


def test_finished_job_is_completed(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.finish_job(
            job.scheduler_job_id,
            "COMPLETED",
            {
                "run1_555.out": "Info: NAMD 3.0\nWallClock: 120.5\n",
                "run1_555.err": "",
                "outputs/run.dcd": "DCD",
                "outputs/namd_output.log": "ENERGY: 0",
            },
        )
        return job, await engine.sync()

    job, result = asyncio.run(scenario())

    completed = engine.get_job(job.job_id)
    assert result.jobs_updated == 1
    assert completed.status is JobStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.error_info is None
    assert "WallClock" in completed.scheduler_stdout
    assert completed.scheduler_stderr == ""
    assert completed.output_files == ["namd_output.log", "run.dcd"]
    assert cluster.text(f"{job.project_dir}/outputs/run.dcd") == "DCD"

    metadata = _metadata(cluster, job)
    assert metadata["status"] == "COMPLETED"
    assert metadata["output_files"] == ["namd_output.log", "run.dcd"]
    # scratch copy excludes metadata in both directions
    assert not any(c for c in cluster.commands_for("rsync") if "job_info.json" not in c)


@pytest.mark.parametrize("state", ["FAILED", "TIMEOUT", "CANCELLED"])
def test_unsuccessful_jobs_are_completed_with_error_info(engine, cluster, structure_file, state):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.finish_job(job.scheduler_job_id, state)
        await engine.sync()
        return job

    job = asyncio.run(scenario())

    finished = engine.get_job(job.job_id)
    expected = JobStatus.CANCELLED if state == "CANCELLED" else JobStatus.FAILED
    assert finished.status is expected
    assert finished.error_info == f"Scheduler reported {expected.value}"
    # missing logs are not an error
    assert finished.scheduler_stdout is None
    assert _metadata(cluster, job)["status"] == expected.value


def test_copy_failure_keeps_submission_state_and_retries_next_pass(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.finish_job(job.scheduler_job_id, "COMPLETED", {"outputs/run.dcd": "DCD"})
        cluster.fail_next("rsync", TimeoutError("stalled"), times=5)
        first = await engine.sync()
        assert engine.get_job(job.job_id).status is JobStatus.PENDING
        assert _metadata(cluster, job)["status"] == "PENDING"
        second = await engine.sync()
        return job, first, second

    job, first, second = asyncio.run(scenario())

    assert len(first.errors) == 1
    assert first.errors[0].startswith(job.job_id)
    assert first.jobs_updated == 0
    assert second.errors == []
    assert engine.get_job(job.job_id).status is JobStatus.COMPLETED
    assert _metadata(cluster, job)["status"] == "COMPLETED"


def test_scheduler_query_failure_is_reported_not_raised(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.fail_next("squeue", OSError("slurm_load_jobs error: Socket timed out"), times=3)
        return job, await engine.sync()

    job, result = asyncio.run(scenario())

    assert len(result.errors) == 1
    assert result.errors[0].startswith("scheduler query")
    assert engine.get_job(job.job_id).status is JobStatus.PENDING


def test_expired_session_aborts_sync(engine, cluster, structure_file):
    progress = ProgressStream("Job Sync")

    async def scenario():
        await submitted_job(engine, structure_file)
        cluster.alive = False
        cluster.fail_next("squeue", ConnectionResetError("Connection reset by peer"))
        await engine.sync(progress)

    with pytest.raises(AuthenticationError):
        asyncio.run(scenario())
    assert progress.history[-1].terminal
    assert not engine.is_connected


def test_discovery_imports_remote_jobs_once(engine, cluster, settings, structure_file):
    async def scenario():
        first = await submitted_job(engine, structure_file, "run1")
        await engine.create_job(
            {"job_name": "run2", "template_id": "t1",
             "template_values": {"structure": "protein.psf"},
             "input_files": [str(structure_file)]}
        )
        # leftovers that are not jobs
        cluster.add_dir(f"{JOBS}/not a job")
        cluster.add_dir(f"{JOBS}/orphan_1")

        other = _fresh_engine(cluster, settings)
        await other.connect("secret")
        result = await other.sync()
        again = await other.sync()
        return first, other, result, again

    first, other, result, again = asyncio.run(scenario())

    jobs = {job.job_name: job for job in other.list_jobs()}
    assert sorted(jobs) == ["run1", "run2"]
    assert jobs["run1"].status is JobStatus.PENDING
    assert jobs["run1"].scheduler_job_id == first.scheduler_job_id
    assert jobs["run2"].status is JobStatus.CREATED
    assert result.jobs_updated == 2
    assert any(e.startswith("orphan_1") for e in result.errors)
    # the cache is no longer empty, so nothing is scanned or duplicated
    assert len(other.list_jobs()) == 2
    assert again.errors == []


def test_discovery_on_empty_cluster(engine):
    async def scenario():
        await engine.connect("secret")
        return await engine.sync()

    result = asyncio.run(scenario())
    assert result.jobs == []
    assert result.errors == []


def test_manual_completion_requires_terminal_status(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        await engine.complete_job(job.job_id, JobStatus.RUNNING)

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_refetch_logs(engine, cluster, structure_file):
    async def scenario():
        job = await submitted_job(engine, structure_file)
        cluster.finish_job(job.scheduler_job_id, "COMPLETED")
        await engine.sync()
        cluster.add_file(f"{job.project_dir}/run1_555.out", "late output\n")
        return job, await engine.refetch_logs(job.job_id)

    job, refreshed = asyncio.run(scenario())

    assert refreshed.scheduler_stdout == "late output\n"
    assert engine.get_job(job.job_id).scheduler_stdout == "late output\n"
