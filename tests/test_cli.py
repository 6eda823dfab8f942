"""Tests for the simrunner CLI."""

import asyncio
import textwrap
from pathlib import Path

import pytest
from builders import submitted_job  # type: ignore

from simrunner.cli.app import app, main
from simrunner.cli.formatters import (
    print_environments_table,
    print_job_details,
    print_jobs_table,
    print_sync_result,
)
from simrunner.cli.utils import list_runfile_environments, parse_assignments
from simrunner.models import JobDescriptor, JobStatus, ResourceRequest, SyncResult


def _write_sample_runfile(tmp_path: Path) -> Path:
    """Create a sample Runfile for testing."""
    content = textwrap.dedent(
        """
        [default]
        hostname = "login.example.edu"
        username = "testuser"

        [default.retry]
        max_attempts = 4

        [environments.testing]
        hostname = "test-login.example.edu"
        """
    )
    runfile = tmp_path / "Runfile.toml"
    runfile.write_text(content, encoding="utf-8")
    return runfile


def _job(status=JobStatus.RUNNING, **overrides) -> JobDescriptor:
    values = dict(
        job_id="run1_0123456789ab",
        job_name="run1",
        status=status,
        scheduler_job_id="555",
        template_id="t1",
        resources=ResourceRequest(cores=4, walltime="01:00:00", partition="p1"),
        project_dir="/projects/testuser/simrunner_jobs/run1_0123456789ab",
    )
    values.update(overrides)
    return JobDescriptor(**values)


class TestCLIHelp:
    """Test CLI help messages and basic command structure."""

    def test_main_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(["--help"])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        assert "jobs" in captured.out
        assert "env" in captured.out
        assert "templates" in captured.out

    def test_version(self):
        with pytest.raises(SystemExit) as exc_info:
            app(["--version"])
        assert exc_info.value.code == 0

    def test_jobs_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "--help"])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        for command in ("list", "show", "create", "submit", "sync", "download", "delete"):
            assert command in captured.out

    def test_jobs_create_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "create", "--help"])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        assert "--template" in captured.out
        assert "--runfile" in captured.out


class TestParseAssignments:
    def test_splits_on_first_equals(self):
        assert parse_assignments(["temperature=310", "note=a=b"]) == {
            "temperature": "310",
            "note": "a=b",
        }

    def test_empty(self):
        assert parse_assignments(None) == {}

    @pytest.mark.parametrize("bad", ["temperature", "=310"])
    def test_rejects_malformed(self, bad):
        with pytest.raises(ValueError, match="KEY=VALUE"):
            parse_assignments([bad])


class TestListRunfileEnvironments:
    def test_lists_default_and_named_environments(self, tmp_path):
        runfile = _write_sample_runfile(tmp_path)
        envs = list_runfile_environments(runfile=str(runfile))

        assert [e["name"] for e in envs] == ["default", "testing"]
        assert envs[1]["hostname"] == "test-login.example.edu"
        assert all(str(runfile) in e["runfile"] for e in envs)


class TestEnvCommands:
    def test_env_list(self, tmp_path, capsys):
        runfile = _write_sample_runfile(tmp_path)

        with pytest.raises(SystemExit) as exc_info:
            app(["env", "list", "-f", str(runfile)])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        assert "Environments" in captured.out
        assert "testing" in captured.out

    def test_env_show_merges_default(self, tmp_path, capsys):
        runfile = _write_sample_runfile(tmp_path)

        with pytest.raises(SystemExit) as exc_info:
            app(["env", "show", "-e", "testing", "-f", str(runfile)])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        assert "test-login.example.edu" in captured.out
        assert "testuser" in captured.out
        assert "4 attempts" in captured.out


class TestFormatters:
    def test_print_jobs_table_empty(self, capsys):
        print_jobs_table([])
        assert "No jobs in the local cache" in capsys.readouterr().out

    def test_print_jobs_table_with_jobs(self, capsys):
        print_jobs_table([_job(), _job(JobStatus.PENDING, job_name="run2")])
        captured = capsys.readouterr()
        assert "RUNNING" in captured.out
        assert "PENDING" in captured.out
        assert "run2" in captured.out

    def test_print_job_details_with_logs(self, capsys):
        job = _job(
            JobStatus.FAILED,
            error_info="Scheduler reported FAILED",
            scheduler_stdout="line\n" * 50 + "last line\n",
        )
        print_job_details(job, show_logs=True)
        captured = capsys.readouterr()
        assert "FAILED" in captured.out
        assert "partition p1" in captured.out
        assert "last line" in captured.out

    def test_print_sync_result_lists_errors(self, capsys):
        print_sync_result(SyncResult(jobs=[_job()], errors=["run9: Slurm query failed"]))
        captured = capsys.readouterr()
        assert "could not be synchronized" in captured.out
        assert "run9" in captured.out

    def test_print_environments_table_empty(self, capsys):
        print_environments_table([])
        assert "No environments configured" in capsys.readouterr().out


class TestJobsCommands:
    """Jobs commands with a test engine in place of the Runfile one."""

    @pytest.fixture
    def cli_engine(self, engine, monkeypatch):
        monkeypatch.setattr(
            "simrunner.cli.jobs.get_engine", lambda env=None, runfile=None: engine
        )
        monkeypatch.setattr("simrunner.cli.utils.prompt_password", lambda settings: "secret")
        return engine

    def test_jobs_list(self, cli_engine, capsys):
        cli_engine.cache.put(_job())

        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "list"])
        assert exc_info.value.code == 0

        captured = capsys.readouterr()
        assert "run1" in captured.out
        assert "RUNNING" in captured.out

    def test_jobs_show_unknown_job(self, cli_engine):
        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "show", "missing_job"])
        assert exc_info.value.code == 1

    def test_jobs_create_and_submit(self, cli_engine, cluster, structure_file, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(
                [
                    "jobs", "create", "run1",
                    "--template", "t1",
                    "--set", f"structure={structure_file.name}",
                    "--set", "temperature=310",
                    "--input", str(structure_file),
                    "--cores", "4",
                    "--submit",
                ]
            )
        assert exc_info.value.code == 0

        (job,) = cli_engine.list_jobs()
        assert job.status is JobStatus.PENDING
        assert job.template_values["temperature"] == 310
        assert job.scheduler_job_id == "555"
        assert not cli_engine.is_connected

    def test_jobs_download_all_outputs(self, cli_engine, cluster, structure_file, tmp_path, capsys):
        async def finished():
            job = await submitted_job(cli_engine, structure_file)
            cluster.finish_job(job.scheduler_job_id, "COMPLETED", {"outputs/run.dcd": "DCD"})
            await cli_engine.sync()
            await cli_engine.disconnect()
            return job

        job = asyncio.run(finished())
        destination = tmp_path / "results"

        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "download", job.job_id, "-o", str(destination)])
        assert exc_info.value.code == 0

        assert (destination / "run.dcd").read_text() == "DCD"
        assert "Saved" in capsys.readouterr().err

    def test_jobs_download_unknown_job(self, cli_engine, cluster):
        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "download", "missing_job"])
        assert exc_info.value.code == 1
        assert cluster.connections == 0

    def test_jobs_delete_declined(self, cli_engine, cluster, monkeypatch):
        cli_engine.cache.put(_job())
        monkeypatch.setattr("builtins.input", lambda prompt: "n")

        with pytest.raises(SystemExit) as exc_info:
            app(["jobs", "delete", "run1_0123456789ab"])
        assert exc_info.value.code == 0

        assert cli_engine.get_job("run1_0123456789ab") is not None
        assert cluster.connections == 0


class TestErrorHandling:
    def test_missing_runfile_error(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()

        with pytest.raises(SystemExit) as exc_info:
            main_with_args(["env", "list", "--runfile", str(empty)])
        assert exc_info.value.code == 1

    def test_unknown_environment_error(self, tmp_path, capsys):
        runfile = _write_sample_runfile(tmp_path)

        with pytest.raises(SystemExit) as exc_info:
            main_with_args(["env", "show", "-e", "nonexistent", "-f", str(runfile)])
        assert exc_info.value.code == 1
        assert "simrunner env list" in capsys.readouterr().err

    def test_invalid_template_value(self, engine, monkeypatch, capsys):
        monkeypatch.setattr(
            "simrunner.cli.jobs.get_engine", lambda env=None, runfile=None: engine
        )

        with pytest.raises(SystemExit) as exc_info:
            main_with_args(
                ["jobs", "create", "run1", "-t", "t1", "-s", "temperature=hot"]
            )
        assert exc_info.value.code == 1
        assert "Invalid input" in capsys.readouterr().err


def main_with_args(args):
    """Helper to run main() with specific arguments."""
    import sys

    original_argv = sys.argv
    try:
        sys.argv = ["simrunner"] + args
        main()
    finally:
        sys.argv = original_argv
