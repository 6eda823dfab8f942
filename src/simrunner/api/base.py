"""
Base module for remote shell backends.

This module defines the abstract base class for the remote shell/file
transfer channel used by :class:`simrunner.session.SessionManager`.
"""

import abc
from typing import Callable, List, Optional

from ..models import CommandResult

#: Called with ``(bytes_done, bytes_total)`` while a transfer is running.
TransferCallback = Callable[[int, int], None]


class RemoteShell(abc.ABC):
    """
    Abstract base class for remote shell backends.

    Implementations are blocking; the session manager runs them in a worker
    thread. They report failures using built-in exception types so the
    session manager can classify them without knowing the transport:

    - ``PermissionError`` when credentials are rejected on connect, or when
      access to a path is denied afterwards,
    - ``TimeoutError`` when a call exceeds its timeout,
    - ``ConnectionError`` when the connection drops or is reset,
    - ``FileNotFoundError`` when a remote path does not exist,
    - ``OSError`` for any other I/O failure.
    """

    @abc.abstractmethod
    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a shell command on the remote host.

        Args:
            command: A fully quoted command line.
            timeout: Seconds to wait before raising ``TimeoutError``.

        Returns:
            CommandResult: exit code, stdout and stderr of the command.
        """

    @abc.abstractmethod
    def put(
        self,
        local_path: str,
        remote_path: str,
        callback: Optional[TransferCallback] = None,
    ) -> None:
        """Upload ``local_path`` to exactly ``remote_path``."""

    @abc.abstractmethod
    def get(
        self,
        remote_path: str,
        local_path: str,
        callback: Optional[TransferCallback] = None,
    ) -> None:
        """Download ``remote_path`` to exactly ``local_path``."""

    @abc.abstractmethod
    def mkdir(self, path: str, recursive: bool = True) -> None:
        """Create a directory. Must succeed if it already exists."""

    @abc.abstractmethod
    def listdir(self, path: str, directories_only: bool = False) -> List[str]:
        """Return entry names inside ``path`` (not full paths)."""

    @abc.abstractmethod
    def read_text(self, path: str) -> str:
        """Return the contents of a remote text file."""

    @abc.abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Write ``content`` to exactly ``path``, replacing any existing file."""

    @abc.abstractmethod
    def rename(self, source: str, destination: str) -> None:
        """Atomically rename ``source`` to ``destination``, overwriting it."""

    @abc.abstractmethod
    def remove(self, path: str) -> None:
        """Remove a single remote file."""

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if ``path`` exists on the remote host."""

    @abc.abstractmethod
    def is_active(self) -> bool:
        """
        Return True while the underlying transport is alive.

        Used to tell a reset on a live connection (transient) from a dead
        transport (session expired).
        """

    @abc.abstractmethod
    def close(self) -> None:
        """Close the connection. Must be safe to call more than once."""
