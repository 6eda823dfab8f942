import os
import sys

import pytest


# Ensure 'src' and the test helpers are on sys.path for imports in tests
TESTS_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(TESTS_DIR, os.pardir))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")
HELPERS_DIR = os.path.join(TESTS_DIR, "helpers")
for path in (SRC_DIR, HELPERS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)

from builders import fast_retry, namd_template  # type: ignore  # noqa: E402
from fake_cluster import FakeCluster  # type: ignore  # noqa: E402

from simrunner.cache import MemoryJobCache  # noqa: E402
from simrunner.config import RunnerSettings  # noqa: E402
from simrunner.engine import JobEngine  # noqa: E402
from simrunner.session import SessionManager  # noqa: E402
from simrunner.templates import MemoryTemplateStore  # noqa: E402


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def settings():
    return RunnerSettings(
        hostname="login.example.edu",
        username="testuser",
        project_root="/projects/{username}",
        scratch_root="/scratch/alpine/{username}",
    )


@pytest.fixture
def engine(cluster, settings):
    """An engine wired to the in-memory cluster. Not connected yet."""
    return JobEngine(
        settings,
        session=SessionManager(cluster.factory),
        cache=MemoryJobCache(),
        templates=MemoryTemplateStore({"t1": namd_template()}),
        command_retry=fast_retry(),
        file_retry=fast_retry(max_attempts=5),
    )


@pytest.fixture
def structure_file(tmp_path):
    path = tmp_path / "protein.psf"
    path.write_text("PSF\n  3 !NATOM\n", encoding="utf-8")
    return path
