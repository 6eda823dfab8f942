"""Full lifecycle against the in-memory cluster."""

import asyncio

from builders import fast_retry, namd_template  # type: ignore

from simrunner.cache import JsonFileJobCache
from simrunner.engine import JobEngine
from simrunner.models import JobStatus
from simrunner.session import SessionManager
from simrunner.templates import MemoryTemplateStore


def _engine(cluster, settings, cache_dir) -> JobEngine:
    return JobEngine(
        settings,
        session=SessionManager(cluster.factory),
        cache=JsonFileJobCache(cache_dir),
        templates=MemoryTemplateStore({"t1": namd_template()}),
        command_retry=fast_retry(),
        file_retry=fast_retry(max_attempts=5),
    )


def test_create_submit_sync_complete(cluster, settings, structure_file, tmp_path):
    engine = _engine(cluster, settings, tmp_path / "cache")

    async def scenario():
        await engine.connect("secret")
        created = await engine.create_job(
            {
                "job_name": "run1",
                "template_id": "t1",
                "template_values": {"structure": "protein.psf", "temperature": 300},
                "resources": {"cores": 4, "walltime": "01:00:00", "partition": "p1"},
                "input_files": [str(structure_file)],
            }
        )
        submitted = await engine.submit_job(created.job_id)
        cluster.finish_job(
            submitted.scheduler_job_id,
            "COMPLETED",
            {
                "run1_555.out": "Info: simulation finished\n",
                "outputs/run.dcd": "DCD",
                "outputs/run.coor": "COOR",
            },
        )
        result = await engine.sync()
        await engine.disconnect()
        return created, submitted, result

    created, submitted, result = asyncio.run(scenario())

    assert created.status is JobStatus.CREATED
    assert created.project_dir.endswith(f"/simrunner_jobs/{created.job_id}")
    assert created.job_id.startswith("run1_")

    assert submitted.status is JobStatus.PENDING
    assert submitted.scheduler_job_id == "555"
    assert "#SBATCH --partition=p1" in cluster.text(f"{submitted.scratch_dir}/scripts/job.sbatch")

    (final,) = result.jobs
    assert final.status is JobStatus.COMPLETED
    assert final.output_files == ["run.coor", "run.dcd"]
    assert cluster.text(f"{final.project_dir}/outputs/run.dcd") == "DCD"
    assert final.scheduler_stdout == "Info: simulation finished\n"
    assert not engine.is_connected

    # a later, offline process sees the same state from the persisted cache
    reopened = _engine(cluster, settings, tmp_path / "cache")
    persisted = reopened.get_job(final.job_id)
    assert persisted.status is JobStatus.COMPLETED
    assert persisted.scheduler_job_id == "555"
    assert persisted.output_files == final.output_files
