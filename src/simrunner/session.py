"""The single live remote session.

:class:`SessionManager` owns the one authenticated connection to the cluster.
Every remote operation of every chain goes through it and is serialized by
one ``asyncio.Lock``; blocking paramiko work runs in a worker thread via
``asyncio.to_thread``.

Failures coming back from the shell are classified into the error taxonomy:

- credentials rejected, or the transport found dead: the session is marked
  expired and :class:`~simrunner.errors.AuthenticationError` is raised; every
  later call fails fast until :meth:`SessionManager.establish` runs again;
- timeouts, resets on a still-live transport and other I/O hiccups:
  :class:`~simrunner.errors.TransientNetworkError`;
- missing remote paths: :class:`~simrunner.errors.RemoteStateError`.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import tempfile
import uuid
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from .api import RemoteShell, create_shell
from .errors import (
    AuthenticationError,
    AutomationError,
    RemoteStateError,
    TransientNetworkError,
    ValidationError,
)
from .models import CommandResult, Session
from .validation import normalize_remote_path, quote, validate_command, validate_username

logger = logging.getLogger(__name__)

ShellFactory = Callable[..., RemoteShell]
PercentCallback = Callable[[int], None]

# Per-call timeouts, in seconds.
DEFAULT_COMMAND_TIMEOUT = 120.0
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_TRANSFER_TIMEOUT = 300.0


class TransferDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class SessionManager:
    """Owns one remote session and serializes all I/O through it."""

    def __init__(
        self,
        shell_factory: ShellFactory = create_shell,
        *,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT,
    ):
        self._shell_factory = shell_factory
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout
        self.transfer_timeout = transfer_timeout
        self._shell: Optional[RemoteShell] = None
        self._session: Optional[Session] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._session.is_live

    @property
    def username(self) -> str:
        return self._require_session().username

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def establish(
        self, host: str, username: str, password: str, port: int = 22
    ) -> Session:
        """Authenticate and make the new session the only live one.

        Any prior session is invalidated and closed first.

        Raises:
            AuthenticationError: The credentials were rejected.
            TransientNetworkError: The host could not be reached.
            ValidationError: Host or username is malformed.
        """
        if not host or not str(host).strip():
            raise ValidationError("Host cannot be empty", step="establish")
        username = validate_username(username)

        async with self._lock:
            await self._drop_current("replaced by a new session")
            logger.info("Connecting to %s@%s:%s", username, host, port)
            try:
                shell = await _run_blocking(
                    lambda: self._shell_factory(
                        hostname=host,
                        username=username,
                        password=password,
                        port=port,
                        timeout=self.connect_timeout,
                        transfer_timeout=self.transfer_timeout,
                    )
                )
            except PermissionError as e:
                raise AuthenticationError(
                    f"Authentication failed for {username}@{host}", step="establish"
                ) from e
            except (TimeoutError, ConnectionError) as e:
                raise TransientNetworkError(
                    f"Could not reach {host}: {e}", step="establish"
                ) from e
            except OSError as e:
                raise TransientNetworkError(
                    f"Could not connect to {host}: {e}", step="establish"
                ) from e

            self._shell = shell
            self._session = Session(host=host, username=username, port=port)
            return self._session

    async def disconnect(self) -> None:
        async with self._lock:
            await self._drop_current("disconnected")
            self._session = None

    async def _drop_current(self, reason: str) -> None:
        if self._session is not None:
            self._session.expired = True
        shell, self._shell = self._shell, None
        if shell is not None:
            logger.debug("Closing session: %s", reason)
            try:
                await _run_blocking(shell.close)
            except OSError as e:
                logger.debug("Error closing previous session: %s", e)

    def _require_session(self) -> Session:
        if self._session is None:
            raise AuthenticationError("Not connected; call connect() first")
        if self._session.expired:
            raise AuthenticationError(
                f"Session to {self._session.host} has expired; reconnect to continue"
            )
        return self._session

    async def _expire(self, reason: str) -> None:
        logger.warning("Session expired: %s", reason)
        if self._session is not None:
            self._session.expired = True
        shell, self._shell = self._shell, None
        if shell is not None:
            try:
                await _run_blocking(shell.close)
            except OSError as e:
                logger.debug("Error closing expired session: %s", e)

    # ------------------------------------------------------------------
    # Serialized call path
    # ------------------------------------------------------------------

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run ``func(shell, *args)`` in a worker thread under the session lock."""
        async with self._lock:
            self._require_session()
            shell = self._shell
            assert shell is not None
            try:
                return await _run_blocking(func, shell, *args)
            except AutomationError:
                raise
            except FileNotFoundError as e:
                raise RemoteStateError(f"{operation}: remote path not found ({e})") from e
            except PermissionError as e:
                raise RemoteStateError(f"{operation}: permission denied ({e})") from e
            except (TimeoutError, ConnectionError, OSError, EOFError) as e:
                if not _still_alive(shell):
                    await self._expire(f"{operation} failed on a dead connection: {e}")
                    raise AuthenticationError(
                        f"{operation}: connection lost; reconnect to continue"
                    ) from e
                raise TransientNetworkError(f"{operation}: {e}") from e

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run a fully quoted command; non-zero exit codes are returned, not raised."""
        command = validate_command(command)
        effective_timeout = timeout if timeout is not None else self.command_timeout
        return await self._call(
            "execute",
            lambda shell: shell.execute(command, timeout=effective_timeout),
        )

    async def run(self, command: str, timeout: Optional[float] = None) -> str:
        """Like :meth:`execute` but raise :class:`RemoteStateError` on failure."""
        result = await self.execute(command, timeout=timeout)
        if not result.ok:
            raise RemoteStateError(
                f"Command failed with exit status {result.exit_code}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        return result.stdout

    async def transfer(
        self,
        local: str,
        remote: str,
        direction: TransferDirection,
        on_progress: Optional[PercentCallback] = None,
    ) -> None:
        """Copy one file between the local machine and the cluster.

        The destination path only ever holds a complete file: data goes to a
        temporary name beside it and is renamed into place at the end.
        Progress is reported as integer percentages on the event loop.
        """
        remote = normalize_remote_path(remote)
        direction = TransferDirection(direction)
        callback = (
            _ProgressBridge(asyncio.get_running_loop(), on_progress)
            if on_progress is not None
            else None
        )

        if direction is TransferDirection.UPLOAD:
            if not os.path.isfile(local):
                raise ValidationError(f"Local file not found: {local}", step="transfer")
            await self._call(
                f"upload {os.path.basename(local)}", _atomic_put, local, remote, callback
            )
        else:
            parent = os.path.dirname(os.path.abspath(local))
            os.makedirs(parent, exist_ok=True)
            await self._call(
                f"download {posixpath.basename(remote)}",
                _atomic_get,
                remote,
                local,
                callback,
            )
        if callback is not None:
            callback.finish()

    async def make_directory(self, path: str, recursive: bool = True) -> None:
        """Create ``path``; succeeds if it already exists."""
        path = normalize_remote_path(path)
        await self._call(
            f"mkdir {path}", lambda shell: shell.mkdir(path, recursive=recursive)
        )

    async def list_directories(self, path: str) -> List[str]:
        path = normalize_remote_path(path)
        return await self._call(
            f"list {path}", lambda shell: shell.listdir(path, directories_only=True)
        )

    async def list_files(self, path: str) -> List[str]:
        path = normalize_remote_path(path)
        return await self._call(f"list {path}", lambda shell: shell.listdir(path))

    async def exists(self, path: str) -> bool:
        path = normalize_remote_path(path)
        return await self._call(f"stat {path}", lambda shell: shell.exists(path))

    async def read_file(self, path: str) -> str:
        path = normalize_remote_path(path)
        return await self._call(f"read {path}", lambda shell: shell.read_text(path))

    async def write_text(self, path: str, content: str) -> None:
        """Atomically replace ``path`` with ``content``."""
        path = normalize_remote_path(path)
        await self._call(f"write {path}", _atomic_write, path, content)

    async def remove_tree(self, path: str) -> None:
        """Recursively delete ``path``.

        Callers validate containment; this only refuses paths that are not
        absolute or that are a filesystem root.
        """
        path = normalize_remote_path(path)
        if path.count("/") < 2:
            raise ValidationError(f"Refusing to remove top-level path {path!r}")
        await self.run(f"rm -rf {quote(path)}")

    async def mirror(
        self, source: str, destination: str, exclude: Iterable[str] = ()
    ) -> None:
        """Copy the contents of ``source`` into ``destination`` on the cluster."""
        source = normalize_remote_path(source)
        destination = normalize_remote_path(destination)
        parts = ["rsync", "-a"]
        for pattern in exclude:
            parts.append(f"--exclude={quote(pattern)}")
        parts.append(quote(source.rstrip("/") + "/"))
        parts.append(quote(destination.rstrip("/") + "/"))
        await self.run(" ".join(parts), timeout=self.transfer_timeout)


async def _run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    """Run blocking work in a thread; cancellation waits for it to finish.

    The worker thread cannot be interrupted, so if the awaiting task is
    cancelled the call still runs to completion (or failure) before the
    cancellation propagates and the session lock is released.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        try:
            await task
        except Exception as e:
            logger.debug("In-flight remote call failed after cancellation: %s", e)
        raise


def _still_alive(shell: RemoteShell) -> bool:
    try:
        return shell.is_active()
    except OSError:
        return False


class _ProgressBridge:
    """Turn ``(done, total)`` byte callbacks from a worker thread into
    de-duplicated percentages delivered on the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, on_progress: PercentCallback):
        self._loop = loop
        self._on_progress = on_progress
        self._last = -1

    def __call__(self, done: int, total: int) -> None:
        percent = 100 if total <= 0 else int(done * 100 / total)
        if percent != self._last:
            self._last = percent
            self._loop.call_soon_threadsafe(self._on_progress, percent)

    def finish(self) -> None:
        if self._last != 100:
            self._last = 100
            self._on_progress(100)


def _temp_name(path: str) -> str:
    return f"{path}.part-{uuid.uuid4().hex[:8]}"


def _discard_remote(shell: RemoteShell, path: str) -> None:
    try:
        shell.remove(path)
    except OSError as e:
        logger.debug("Could not remove temporary file %s: %s", path, e)


def _atomic_put(shell: RemoteShell, local: str, remote: str, callback) -> None:
    temp = _temp_name(remote)
    try:
        shell.put(local, temp, callback)
        shell.rename(temp, remote)
    except BaseException:
        _discard_remote(shell, temp)
        raise


def _atomic_write(shell: RemoteShell, remote: str, content: str) -> None:
    temp = _temp_name(remote)
    try:
        shell.write_text(temp, content)
        shell.rename(temp, remote)
    except BaseException:
        _discard_remote(shell, temp)
        raise


def _atomic_get(shell: RemoteShell, remote: str, local: str, callback) -> None:
    directory = os.path.dirname(os.path.abspath(local))
    fd, temp = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(local)}.part-"
    )
    os.close(fd)
    try:
        shell.get(remote, temp, callback)
        os.replace(temp, local)
    except BaseException:
        if os.path.exists(temp):
            os.unlink(temp)
        raise
