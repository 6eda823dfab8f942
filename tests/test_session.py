"""Tests for the session manager: error classification, expiry and atomic I/O."""

import asyncio
import threading
import time

import pytest
from fake_cluster import FakeShell  # type: ignore

from simrunner.errors import (
    AuthenticationError,
    RemoteStateError,
    TransientNetworkError,
    ValidationError,
)
from simrunner.session import SessionManager, TransferDirection


def _connected(cluster) -> SessionManager:
    session = SessionManager(cluster.factory)
    asyncio.run(session.establish("login.example.edu", "testuser", "secret"))
    return session


def test_establish_rejects_bad_password(cluster):
    session = SessionManager(cluster.factory)
    with pytest.raises(AuthenticationError):
        asyncio.run(session.establish("login.example.edu", "testuser", "wrong"))
    assert not session.is_connected


def test_establish_validates_inputs(cluster):
    session = SessionManager(cluster.factory)
    with pytest.raises(ValidationError):
        asyncio.run(session.establish("", "testuser", "secret"))
    with pytest.raises(ValidationError):
        asyncio.run(session.establish("host", "bad user", "secret"))


def test_operations_require_a_session(cluster):
    session = SessionManager(cluster.factory)
    with pytest.raises(AuthenticationError, match="Not connected"):
        asyncio.run(session.exists("/projects"))


def test_run_raises_on_non_zero_exit(cluster):
    session = _connected(cluster)
    assert asyncio.run(session.run("echo $HOME")) == "/home/testuser\n"
    with pytest.raises(RemoteStateError, match="exit status 127"):
        asyncio.run(session.run("frobnicate"))


def test_new_session_replaces_old_one(cluster):
    session = _connected(cluster)
    first = session.session

    async def scenario():
        await session.establish("login.example.edu", "testuser", "secret")

    asyncio.run(scenario())

    assert first.expired
    assert session.session is not first
    assert session.is_connected
    assert cluster.connections == 2


def test_dead_transport_expires_session_and_fails_fast(cluster):
    session = _connected(cluster)
    cluster.alive = False
    cluster.fail_next("listdir", ConnectionResetError("Connection reset by peer"))

    with pytest.raises(AuthenticationError, match="connection lost"):
        asyncio.run(session.list_directories("/"))
    assert not session.is_connected

    calls_before = len(cluster.operations)
    with pytest.raises(AuthenticationError, match="expired"):
        asyncio.run(session.exists("/"))
    assert len(cluster.operations) == calls_before

    # a fresh login recovers
    asyncio.run(session.establish("login.example.edu", "testuser", "secret"))
    assert asyncio.run(session.exists("/"))


def test_reset_on_live_transport_is_transient(cluster):
    session = _connected(cluster)
    cluster.fail_next("exists", TimeoutError("timed out"))

    with pytest.raises(TransientNetworkError):
        asyncio.run(session.exists("/"))
    assert session.is_connected


def test_missing_path_is_remote_state_error(cluster):
    session = _connected(cluster)
    with pytest.raises(RemoteStateError, match="not found"):
        asyncio.run(session.read_file("/projects/nothing.txt"))


def test_write_text_is_atomic(cluster):
    session = _connected(cluster)
    cluster.add_dir("/projects/testuser")
    target = "/projects/testuser/job_info.json"
    cluster.add_file(target, "old")
    cluster.fail_next("rename", OSError("No space left on device"))

    with pytest.raises(TransientNetworkError):
        asyncio.run(session.write_text(target, "new"))

    assert cluster.text(target) == "old"
    assert not [p for p in cluster.files if ".part-" in p]

    asyncio.run(session.write_text(target, "new"))
    assert cluster.text(target) == "new"
    assert not [p for p in cluster.files if ".part-" in p]


def test_upload_reports_progress_and_lands_atomically(cluster, tmp_path):
    session = _connected(cluster)
    cluster.add_dir("/projects/testuser/in")
    local = tmp_path / "protein.pdb"
    local.write_bytes(b"ATOM" * 64)
    percents = []

    asyncio.run(
        session.transfer(
            str(local), "/projects/testuser/in/protein.pdb", TransferDirection.UPLOAD, percents.append
        )
    )

    assert cluster.files["/projects/testuser/in/protein.pdb"] == b"ATOM" * 64
    assert percents[-1] == 100
    assert percents == sorted(percents)
    assert len(percents) == len(set(percents))
    assert not [p for p in cluster.files if ".part-" in p]


def test_failed_upload_leaves_no_partial_file(cluster, tmp_path):
    session = _connected(cluster)
    cluster.add_dir("/projects/testuser/in")
    local = tmp_path / "protein.pdb"
    local.write_text("ATOM")
    cluster.fail_next("rename", TimeoutError("stalled"))

    with pytest.raises(TransientNetworkError):
        asyncio.run(
            session.transfer(str(local), "/projects/testuser/in/protein.pdb", TransferDirection.UPLOAD)
        )
    assert cluster.under("/projects/testuser/in") == []


def test_upload_of_missing_local_file(cluster, tmp_path):
    session = _connected(cluster)
    with pytest.raises(ValidationError):
        asyncio.run(
            session.transfer(str(tmp_path / "nope"), "/projects/x", TransferDirection.UPLOAD)
        )


def test_download_replaces_destination_only_on_success(cluster, tmp_path):
    session = _connected(cluster)
    cluster.add_file("/projects/testuser/out.log", "step 100\n")
    local = tmp_path / "logs" / "out.log"

    asyncio.run(session.transfer(str(local), "/projects/testuser/out.log", TransferDirection.DOWNLOAD))
    assert local.read_text() == "step 100\n"

    cluster.fail_next("get", TimeoutError("stalled"))
    with pytest.raises(TransientNetworkError):
        asyncio.run(
            session.transfer(str(local), "/projects/testuser/out.log", TransferDirection.DOWNLOAD)
        )
    assert local.read_text() == "step 100\n"
    assert sorted(p.name for p in local.parent.iterdir()) == ["out.log"]


def test_remove_tree_and_mirror(cluster):
    session = _connected(cluster)
    cluster.add_file("/projects/testuser/jobs/a/job_info.json", "{}")
    cluster.add_file("/projects/testuser/jobs/a/scripts/config.namd", "run 10")

    asyncio.run(
        session.mirror("/projects/testuser/jobs/a", "/scratch/testuser/jobs/a", ["job_info.json"])
    )
    assert cluster.text("/scratch/testuser/jobs/a/scripts/config.namd") == "run 10"
    assert "/scratch/testuser/jobs/a/job_info.json" not in cluster.files

    asyncio.run(session.remove_tree("/scratch/testuser/jobs/a"))
    assert cluster.under("/scratch/testuser/jobs/a") == []

    with pytest.raises(ValidationError):
        asyncio.run(session.remove_tree("/scratch"))


class _RecordingShell(FakeShell):
    """FakeShell that records overlapping commands and the closing thread."""

    def __init__(self, cluster, record):
        super().__init__(cluster)
        self.record = record

    def execute(self, command, timeout=None):
        self.record["active"] += 1
        self.record["peak"] = max(self.record["peak"], self.record["active"])
        try:
            time.sleep(0.01)
            return super().execute(command, timeout)
        finally:
            self.record["active"] -= 1

    def close(self):
        self.record["closed_on"] = threading.get_ident()
        super().close()


def _recording_session(cluster, record) -> SessionManager:
    def factory(**kwargs):
        cluster.factory(**kwargs)
        return _RecordingShell(cluster, record)

    return SessionManager(factory)


def test_concurrent_calls_are_serialized(cluster):
    record = {"active": 0, "peak": 0}
    session = _recording_session(cluster, record)

    async def scenario():
        await session.establish("login.example.edu", "testuser", "secret")
        return await asyncio.gather(*(session.run("echo $HOME") for _ in range(5)))

    outputs = asyncio.run(scenario())

    assert outputs == ["/home/testuser\n"] * 5
    assert record["peak"] == 1


def test_expired_shell_is_closed_off_the_event_loop(cluster):
    record = {"active": 0, "peak": 0}
    session = _recording_session(cluster, record)

    async def scenario():
        await session.establish("login.example.edu", "testuser", "secret")
        cluster.alive = False
        cluster.fail_next("exists", TimeoutError("timed out"))
        with pytest.raises(AuthenticationError):
            await session.exists("/")
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())

    assert record["closed_on"] != loop_thread
