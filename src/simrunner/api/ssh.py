"""
SSH-based remote shell backend.

This module provides a :class:`RemoteShell` implementation that executes
commands and transfers files over a single paramiko SSH/SFTP connection.
"""

import errno
import logging
import os
import posixpath
import socket
import stat
from contextlib import contextmanager
from typing import Iterator, List, Optional

import paramiko

from ..models import CommandResult
from .base import RemoteShell, TransferCallback

logger = logging.getLogger(__name__)


class ParamikoShell(RemoteShell):
    """
    Remote shell that uses paramiko to talk to a cluster login node.

    The connection is established in the constructor. Password
    authentication is used; the password is handed to paramiko and is not
    kept on the instance.
    """

    def __init__(
        self,
        hostname: str,
        username: str,
        password: Optional[str] = None,
        port: int = 22,
        timeout: float = 30.0,
        transfer_timeout: float = 300.0,
        banner_timeout: float = 15.0,
        auth_timeout: float = 30.0,
        allow_agent: bool = False,
        look_for_keys: bool = False,
    ):
        """
        Initialize the paramiko shell and connect.

        Args:
            hostname: The hostname of the cluster login node.
            username: The username to authenticate as.
            password: The password to authenticate with.
            port: The SSH port to connect to.
            timeout: Socket timeout in seconds for connecting.
            transfer_timeout: SFTP channel timeout in seconds for transfers.
            banner_timeout: Timeout for the SSH banner in seconds.
            auth_timeout: Timeout for SSH authentication in seconds.
            allow_agent: Whether to allow the use of the SSH agent.
            look_for_keys: Whether to search for private key files in ~/.ssh/.

        Raises:
            PermissionError: If the credentials are rejected.
            TimeoutError: If the host does not answer in time.
            ConnectionError: If the connection cannot be established.
        """
        self.hostname = hostname
        self.username = username
        self.port = port
        self.timeout = timeout
        self.transfer_timeout = transfer_timeout
        self.client: Optional[paramiko.SSHClient] = None
        self.sftp: Optional[paramiko.SFTPClient] = None

        self._connect(
            password=password,
            banner_timeout=banner_timeout,
            auth_timeout=auth_timeout,
            allow_agent=allow_agent,
            look_for_keys=look_for_keys,
        )

    def _connect(self, *, password: Optional[str], **options) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        ssh_config = paramiko.SSHConfig()
        user_config_file = os.path.expanduser("~/.ssh/config")
        if os.path.exists(user_config_file):
            with open(user_config_file) as f:
                ssh_config.parse(f)

        host_config = ssh_config.lookup(self.hostname)

        connect_kwargs = {
            "hostname": host_config.get("hostname", self.hostname),
            "port": int(host_config.get("port", self.port)),
            "username": self.username or host_config.get("user"),
            "password": password,
            "timeout": self.timeout,
        }
        connect_kwargs.update(options)

        logger.debug("Connecting to %s as %s...", self.hostname, self.username)
        try:
            client.connect(**connect_kwargs)
            self.sftp = client.open_sftp()
        except paramiko.AuthenticationException as e:
            client.close()
            raise PermissionError(
                f"Authentication failed for {self.username}@{self.hostname}: {e}"
            ) from e
        except socket.timeout as e:
            client.close()
            raise TimeoutError(f"Timed out connecting to {self.hostname}") from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionError(f"Failed to connect to {self.hostname}: {e}") from e

        self.client = client
        logger.info("Connected to %s", self.hostname)

    def _require_client(self) -> paramiko.SSHClient:
        if self.client is None or not self.is_active():
            raise ConnectionError(f"Connection to {self.hostname} is closed")
        return self.client

    def _require_sftp(self) -> paramiko.SFTPClient:
        self._require_client()
        if self.sftp is None:
            raise ConnectionError(f"SFTP channel to {self.hostname} is closed")
        self.sftp.get_channel().settimeout(self.transfer_timeout)
        return self.sftp

    def execute(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        client = self._require_client()
        logger.debug("Executing remote command: %s", command)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=timeout)
            channel = stdout.channel
            # reads honour the channel timeout, recv_exit_status does not
            stdout_str = stdout.read().decode("utf-8", errors="replace")
            stderr_str = stderr.read().decode("utf-8", errors="replace")
            if not channel.status_event.wait(timeout):
                channel.close()
                raise socket.timeout()
            exit_status = channel.recv_exit_status()
        except socket.timeout as e:
            raise TimeoutError(
                f"Command timed out after {timeout} seconds: {command}"
            ) from e
        except paramiko.SSHException as e:
            raise ConnectionError(f"Failed to execute command: {e}") from e
        return CommandResult(exit_code=exit_status, stdout=stdout_str, stderr=stderr_str)

    def put(
        self,
        local_path: str,
        remote_path: str,
        callback: Optional[TransferCallback] = None,
    ) -> None:
        sftp = self._require_sftp()
        logger.debug("Uploading %s to %s:%s", local_path, self.hostname, remote_path)
        with _translate_sftp_errors(remote_path):
            sftp.put(local_path, remote_path, callback=callback)

    def get(
        self,
        remote_path: str,
        local_path: str,
        callback: Optional[TransferCallback] = None,
    ) -> None:
        sftp = self._require_sftp()
        logger.debug("Downloading %s:%s to %s", self.hostname, remote_path, local_path)
        with _translate_sftp_errors(remote_path):
            sftp.get(remote_path, local_path, callback=callback)

    def mkdir(self, path: str, recursive: bool = True) -> None:
        sftp = self._require_sftp()
        parts = [path] if not recursive else _ancestors(path)
        with _translate_sftp_errors(path):
            for directory in parts:
                try:
                    sftp.stat(directory)
                except FileNotFoundError:
                    sftp.mkdir(directory)

    def listdir(self, path: str, directories_only: bool = False) -> List[str]:
        sftp = self._require_sftp()
        with _translate_sftp_errors(path):
            entries = sftp.listdir_attr(path)
        names = []
        for entry in entries:
            if directories_only and not _is_directory(entry):
                continue
            names.append(entry.filename)
        return sorted(names)

    def read_text(self, path: str) -> str:
        sftp = self._require_sftp()
        with _translate_sftp_errors(path):
            with sftp.open(path, "r") as remote_file:
                return remote_file.read().decode("utf-8")

    def write_text(self, path: str, content: str) -> None:
        sftp = self._require_sftp()
        with _translate_sftp_errors(path):
            with sftp.open(path, "w") as remote_file:
                remote_file.write(content.encode("utf-8"))

    def rename(self, source: str, destination: str) -> None:
        sftp = self._require_sftp()
        with _translate_sftp_errors(source):
            sftp.posix_rename(source, destination)

    def remove(self, path: str) -> None:
        sftp = self._require_sftp()
        with _translate_sftp_errors(path):
            sftp.remove(path)

    def exists(self, path: str) -> bool:
        sftp = self._require_sftp()
        try:
            with _translate_sftp_errors(path):
                sftp.stat(path)
        except FileNotFoundError:
            return False
        return True

    def is_active(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def close(self) -> None:
        if self.sftp is not None:
            try:
                self.sftp.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug("Error closing SFTP connection: %s", e)
            self.sftp = None
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Disconnected from %s", self.hostname)


@contextmanager
def _translate_sftp_errors(path: str) -> Iterator[None]:
    """Map paramiko/SFTP failures onto the built-in types RemoteShell promises."""
    try:
        yield
    except socket.timeout as e:
        raise TimeoutError(f"Timed out accessing {path}") from e
    except (FileNotFoundError, PermissionError, ConnectionError):
        raise
    except (EOFError, paramiko.SSHException) as e:
        raise ConnectionError(f"Connection lost accessing {path}: {e}") from e
    except IOError as e:
        # paramiko raises IOError with errno 2 for missing files
        if e.errno == errno.ENOENT:
            raise FileNotFoundError(f"Remote path not found: {path}") from e
        raise


def _ancestors(path: str) -> List[str]:
    normalized = posixpath.normpath(path)
    parts = []
    while normalized not in ("/", "", "."):
        parts.append(normalized)
        normalized = posixpath.dirname(normalized)
    return list(reversed(parts))


def _is_directory(entry: paramiko.SFTPAttributes) -> bool:
    return entry.st_mode is not None and stat.S_ISDIR(entry.st_mode)
