"""Input validation and shell-safety utilities.

Every value interpolated into a remote command line or a remote path passes
through one of these functions first. All validation functions raise
:class:`simrunner.errors.ValidationError` (a ``ValueError``) for invalid input.
"""

import posixpath
import re
import shlex
from typing import Optional

from .errors import ValidationError

# Job names become directory names, so they are restricted to a portable set.
_JOB_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")

# SLURM allows alphanumeric characters, underscores, hyphens, and periods
# for partitions, QOS and accounts.
_SLURM_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_\-\.]+$")

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-\.]+$")
_SCHEDULER_JOB_ID_PATTERN = re.compile(r"^\d+$")
_WALLTIME_PATTERN = re.compile(r"^(?:(\d+)-)?(\d{1,3}):([0-5]\d):([0-5]\d)$")
_MEMORY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGT]B?)?$", re.IGNORECASE)

MAX_IDENTIFIER_LENGTH = 64
_MAX_FILENAME_LENGTH = 255


def _check_common(value: Optional[str], field_name: str, max_length: int) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} cannot be empty")
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(
            f"{field_name} exceeds maximum length of {max_length} characters"
        )
    if "\0" in value:
        raise ValidationError(f"{field_name} contains null bytes")
    return value


def validate_job_name(job_name: Optional[str]) -> str:
    """Validate a user-supplied job name.

    Job names are embedded in directory names and scheduler log file names,
    so only ASCII letters, digits, underscores and hyphens are allowed.

    Returns:
        The validated job name (stripped of surrounding whitespace).
    """
    job_name = _check_common(job_name, "Job name", MAX_IDENTIFIER_LENGTH)
    if not _JOB_NAME_PATTERN.match(job_name):
        raise ValidationError(
            "Job name contains invalid characters "
            "(only letters, digits, underscore and hyphen are allowed)"
        )
    return job_name


def validate_job_id(job_id: Optional[str]) -> str:
    """Validate a job identifier (same alphabet as job names, longer limit)."""
    job_id = _check_common(job_id, "Job ID", MAX_IDENTIFIER_LENGTH * 2)
    if not _JOB_NAME_PATTERN.match(job_id):
        raise ValidationError(
            "Job ID contains invalid characters "
            "(only letters, digits, underscore and hyphen are allowed)"
        )
    return job_id


def validate_slurm_identifier(value: Optional[str], field_name: str) -> str:
    """Validate a SLURM identifier (partition, QOS, account)."""
    value = _check_common(value, field_name, MAX_IDENTIFIER_LENGTH)
    if not _SLURM_IDENTIFIER_PATTERN.match(value):
        raise ValidationError(
            f"{field_name} contains invalid characters. "
            "Only alphanumeric characters, underscores, hyphens, and periods are allowed."
        )
    return value


def validate_username(username: Optional[str]) -> str:
    """Validate a cluster username before it is used to build paths."""
    username = _check_common(username, "Username", MAX_IDENTIFIER_LENGTH)
    if ".." in username or not _USERNAME_PATTERN.match(username):
        raise ValidationError("Username contains invalid characters")
    return username


def validate_scheduler_job_id(job_id: Optional[str]) -> str:
    """Validate a numeric scheduler job id such as ``"12345"``."""
    job_id = _check_common(job_id, "Scheduler job ID", MAX_IDENTIFIER_LENGTH)
    if not _SCHEDULER_JOB_ID_PATTERN.match(job_id):
        raise ValidationError(f"Scheduler job ID must be numeric, got {job_id!r}")
    return job_id


def validate_walltime(walltime: Optional[str]) -> str:
    """Validate a walltime in ``HH:MM:SS`` or ``D-HH:MM:SS`` form."""
    walltime = _check_common(walltime, "Walltime", 16)
    match = _WALLTIME_PATTERN.match(walltime)
    if not match:
        raise ValidationError(
            f"Walltime must look like HH:MM:SS or D-HH:MM:SS, got {walltime!r}"
        )
    days, hours, minutes, seconds = match.groups()
    if not any(int(part or 0) for part in (days, hours, minutes, seconds)):
        raise ValidationError("Walltime must be greater than zero")
    return walltime


def validate_memory(memory: Optional[str]) -> str:
    """Validate a memory request such as ``"16GB"``, ``"4G"`` or ``"512M"``."""
    memory = _check_common(memory, "Memory", 16)
    match = _MEMORY_PATTERN.match(memory)
    if not match or float(match.group(1)) <= 0:
        raise ValidationError(f"Memory must look like 16GB, 4G or 512M, got {memory!r}")
    return memory.replace(" ", "")


def validate_cores(cores) -> int:
    """Validate a positive integer core count."""
    if isinstance(cores, int) and not isinstance(cores, bool):
        value = cores
    elif isinstance(cores, str) and cores.strip().isdigit():
        value = int(cores.strip())
    else:
        raise ValidationError(f"Cores must be a positive integer, got {cores!r}")
    if value < 1:
        raise ValidationError("Cores must be at least 1")
    return value


def validate_remote_filename(name: Optional[str]) -> str:
    """Validate a bare file name used inside a job directory.

    Rejects anything that could address a different directory: separators,
    ``..``, hidden names and control characters.
    """
    name = _check_common(name, "File name", _MAX_FILENAME_LENGTH)
    if "/" in name or "\\" in name:
        raise ValidationError(f"File name must not contain path separators: {name!r}")
    if name in (".", "..") or name.startswith("."):
        raise ValidationError(f"File name must not be hidden or relative: {name!r}")
    if any(ord(ch) < 32 for ch in name):
        raise ValidationError(f"File name contains control characters: {name!r}")
    return name


def validate_command(command: str) -> str:
    """Reject command strings that could smuggle extra commands.

    Commands are assembled from :func:`quote`-d fragments; a NUL byte or a
    newline can only come from an unquoted fragment.
    """
    if not command or not command.strip():
        raise ValidationError("Command cannot be empty")
    if "\0" in command or "\n" in command or "\r" in command:
        raise ValidationError("Command contains control characters")
    return command


def quote(value: str) -> str:
    """Quote a value for safe interpolation into a POSIX shell command."""
    if "\0" in str(value):
        raise ValidationError("Shell argument contains null bytes")
    return shlex.quote(str(value))


def normalize_remote_path(path: str) -> str:
    """Normalize an absolute remote path, refusing parent-directory references."""
    path = _check_common(path, "Remote path", 4096)
    if not path.startswith("/"):
        raise ValidationError(f"Remote path must be absolute: {path!r}")
    if ".." in path.split("/"):
        raise ValidationError(f"Remote path contains parent directory references: {path!r}")
    return posixpath.normpath(path)


def ensure_within(path: str, root: str) -> str:
    """Ensure ``path`` lies strictly inside ``root``.

    Both paths are normalized first. ``root`` itself is rejected, as is any
    path that would escape it.

    Returns:
        The normalized path.
    """
    normalized = normalize_remote_path(path)
    normalized_root = normalize_remote_path(root)
    if normalized_root == "/":
        raise ValidationError("Refusing to use '/' as a job root")
    prefix = normalized_root.rstrip("/") + "/"
    if not normalized.startswith(prefix) or normalized == normalized_root:
        raise ValidationError(
            f"Path {normalized!r} is not inside job root {normalized_root!r}"
        )
    return normalized


def job_directory(root: str, job_id: str) -> str:
    """Return ``<root>/<job_id>`` after validating both parts."""
    job_id = validate_job_id(job_id)
    return ensure_within(posixpath.join(normalize_remote_path(root), job_id), root)


_MODULE_PATTERN = re.compile(r"^[A-Za-z0-9_\-\.\+]+(?:/[A-Za-z0-9_\-\.\+]+)*$")


def validate_module_name(name: Optional[str]) -> str:
    """Validate an environment module name such as ``namd/3.0``."""
    name = _check_common(name, "Module name", 128)
    if not _MODULE_PATTERN.match(name) or ".." in name.split("/"):
        raise ValidationError(f"Module name contains invalid characters: {name!r}")
    return name
