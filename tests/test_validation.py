"""Tests for input validation and shell quoting."""

import pytest

from simrunner.errors import ValidationError
from simrunner.validation import (
    ensure_within,
    job_directory,
    normalize_remote_path,
    quote,
    validate_command,
    validate_cores,
    validate_job_name,
    validate_memory,
    validate_module_name,
    validate_remote_filename,
    validate_scheduler_job_id,
    validate_walltime,
)


@pytest.mark.parametrize("name", ["run1", "my-job_2", "A"])
def test_valid_job_names(name):
    assert validate_job_name(name) == name


@pytest.mark.parametrize(
    "name", ["", "   ", "run 1", "../etc", "job;rm", "job$(id)", "a/b", "x" * 65]
)
def test_invalid_job_names(name):
    with pytest.raises(ValidationError):
        validate_job_name(name)


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_job_name("bad name")


@pytest.mark.parametrize("walltime", ["01:00:00", "2-12:00:00", "100:00:00"])
def test_valid_walltimes(walltime):
    assert validate_walltime(walltime) == walltime


@pytest.mark.parametrize("walltime", ["1h", "00:00:00", "01:60:00", "1:00"])
def test_invalid_walltimes(walltime):
    with pytest.raises(ValidationError):
        validate_walltime(walltime)


def test_memory_and_cores():
    assert validate_memory("16 GB") == "16GB"
    assert validate_memory("512M") == "512M"
    with pytest.raises(ValidationError):
        validate_memory("lots")
    with pytest.raises(ValidationError):
        validate_memory("0GB")

    assert validate_cores(4) == 4
    assert validate_cores("8") == 8
    for bad in (0, -1, True, "four", 2.5):
        with pytest.raises(ValidationError):
            validate_cores(bad)


@pytest.mark.parametrize("name", ["../x", ".hidden", "a/b", "a\\b", "line\nbreak", ".."])
def test_remote_filename_rejects_escapes(name):
    with pytest.raises(ValidationError):
        validate_remote_filename(name)


def test_scheduler_job_id_must_be_numeric():
    assert validate_scheduler_job_id("555") == "555"
    with pytest.raises(ValidationError):
        validate_scheduler_job_id("555; scancel -u me")


def test_quote_neutralizes_shell_metacharacters():
    assert quote("/projects/u/simrunner_jobs/run1") == "/projects/u/simrunner_jobs/run1"
    assert quote("a b") == "'a b'"
    assert quote("$(rm -rf ~)") == "'$(rm -rf ~)'"
    with pytest.raises(ValidationError):
        quote("nul\0byte")


def test_validate_command_rejects_newlines():
    assert validate_command("ls -la") == "ls -la"
    for bad in ("", "ls\nrm -rf /", "ls\0"):
        with pytest.raises(ValidationError):
            validate_command(bad)


def test_normalize_remote_path():
    assert normalize_remote_path("/scratch//u/./jobs/") == "/scratch/u/jobs"
    with pytest.raises(ValidationError):
        normalize_remote_path("relative/path")
    with pytest.raises(ValidationError):
        normalize_remote_path("/scratch/u/../other")


def test_ensure_within():
    root = "/projects/u/simrunner_jobs"
    assert ensure_within(root + "/run1_abc", root) == root + "/run1_abc"
    for bad in (root, "/projects/u", "/projects/u/simrunner_jobs_evil/x", "/"):
        with pytest.raises(ValidationError):
            ensure_within(bad, root)
    with pytest.raises(ValidationError):
        ensure_within("/anything", "/")


def test_job_directory():
    assert job_directory("/scratch/u/jobs", "run1_abc") == "/scratch/u/jobs/run1_abc"
    with pytest.raises(ValidationError):
        job_directory("/scratch/u/jobs", "../run1")


def test_module_names():
    assert validate_module_name("namd/3.0") == "namd/3.0"
    assert validate_module_name("gcc/11.2.0+cuda") == "gcc/11.2.0+cuda"
    for bad in ("namd; rm", "../namd", "namd 3"):
        with pytest.raises(ValidationError):
            validate_module_name(bad)
