"""Utilities for loading and resolving the project Runfile configuration.

A Runfile is a TOML file describing how to reach the cluster and where job
directories live on it. It may hold several environments::

    [default]
    hostname = "login.cluster.example.edu"
    project_root = "/projects/{username}"
    scratch_root = "/scratch/alpine/{username}"

    [default.retry]
    max_attempts = 3

    [environments.testing]
    hostname = "test-login.cluster.example.edu"

The ``[default]`` table is deep-merged with the selected environment.
"""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

try:  # pragma: no cover - import guard
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - python <3.11 fallback
    try:
        import tomli as tomllib  # type: ignore[assignment]
    except ModuleNotFoundError as exc:  # pragma: no cover - surface helpful error
        raise ImportError(
            "Parsing a Runfile requires 'tomllib' (Python 3.11+) or 'tomli'."
        ) from exc

TOMLDecodeError = getattr(tomllib, "TOMLDecodeError", ValueError)

from .errors import (
    RunfileEnvironmentNotFoundError,
    RunfileInvalidError,
    RunfileNotFoundError,
)
from .validation import validate_username


SIMRUNNER_ENV_VAR = "SIMRUNNER_ENV"
RUNFILE_ENV_VAR = "SIMRUNNER_RUNFILE"
DEFAULT_RUNFILE_NAMES = (
    "Runfile",
    "Runfile.toml",
    "runfile",
    "runfile.toml",
)

DEFAULT_RUN_COMMAND = "namd3 +p${SLURM_NTASKS} {config} > outputs/namd_output.log"


@dataclass
class RetrySettings:
    """Tuning for :class:`simrunner.retry.RetryPolicy`."""

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    max_elapsed: float = 60.0
    jitter: float = 0.5


@dataclass
class RunnerSettings:
    """Resolved configuration for one Runfile environment."""

    name: str = "default"
    path: Optional[Path] = None
    hostname: Optional[str] = None
    username: Optional[str] = None
    port: int = 22
    project_root: str = "/projects/{username}"
    scratch_root: str = "/scratch/alpine/{username}"
    jobs_dirname: str = "simrunner_jobs"
    cache_dir: str = "~/.simrunner/jobs"
    template_dir: str = "templates"
    config_filename: str = "config.namd"
    run_command: str = DEFAULT_RUN_COMMAND
    modules: List[str] = field(default_factory=list)
    scheduler_setup: str = ""
    connect_timeout: float = 30.0
    command_timeout: float = 120.0
    transfer_timeout: float = 300.0
    retry: RetrySettings = field(default_factory=RetrySettings)

    def project_base(self, username: str) -> str:
        """Directory holding every job's persistent project directory."""
        return self._job_root(self.project_root, username)

    def scratch_base(self, username: str) -> str:
        """Directory holding every job's scratch directory."""
        return self._job_root(self.scratch_root, username)

    def _job_root(self, template: str, username: str) -> str:
        username = validate_username(username)
        root = template.replace("{username}", username)
        return posixpath.join(root, self.jobs_dirname)


PathLike = Union[str, "os.PathLike[str]"]


def load_settings(
    runfile: Optional[PathLike] = None,
    *,
    env: Optional[str] = None,
    start_dir: Optional[PathLike] = None,
) -> RunnerSettings:
    """Load a Runfile environment and convert it into :class:`RunnerSettings`."""

    resolved_path = resolve_runfile_path(runfile, start_dir=start_dir)
    raw_data = _read_toml(resolved_path)
    root_table = _extract_root_table(raw_data)
    env_table = _extract_environment_table(root_table)

    env_name = (env or os.getenv(SIMRUNNER_ENV_VAR) or "default").strip() or "default"
    resolved_config = _resolve_environment_config(root_table, env_table, env_name)

    settings = settings_from_dict(resolved_config, name=env_name)
    settings.path = resolved_path
    return settings


def settings_from_dict(config: Dict[str, Any], *, name: str = "default") -> RunnerSettings:
    """Build settings from a plain mapping, rejecting unknown keys."""

    config = dict(config)
    retry_config = config.pop("retry", None) or {}
    if not isinstance(retry_config, dict):
        raise RunfileInvalidError("[retry] section must be a table.")

    known = {f.name for f in fields(RunnerSettings)} - {"name", "path", "retry"}
    unknown = sorted(set(config) - known)
    if unknown:
        raise RunfileInvalidError(f"Unknown Runfile keys: {', '.join(unknown)}.")

    retry_known = {f.name for f in fields(RetrySettings)}
    unknown_retry = sorted(set(retry_config) - retry_known)
    if unknown_retry:
        raise RunfileInvalidError(
            f"Unknown [retry] keys: {', '.join(unknown_retry)}."
        )

    try:
        retry = RetrySettings(**retry_config)
        settings = RunnerSettings(name=name, retry=retry, **config)
    except TypeError as exc:  # pragma: no cover - guarded by key checks above
        raise RunfileInvalidError(str(exc)) from exc

    if retry.max_attempts < 1:
        raise RunfileInvalidError("retry.max_attempts must be at least 1.")
    if retry.base_delay < 0 or retry.max_delay < 0 or retry.max_elapsed <= 0:
        raise RunfileInvalidError("retry delays must be non-negative.")
    if not isinstance(settings.modules, list):
        raise RunfileInvalidError("modules must be a list of module names.")
    return settings


def resolve_runfile_path(
    runfile: Optional[PathLike] = None,
    *,
    start_dir: Optional[PathLike] = None,
) -> Path:
    """Determine which Runfile to use, respecting explicit hints and discovery."""

    if runfile is not None:
        return _normalize_runfile_path(Path(runfile))

    env_path = os.getenv(RUNFILE_ENV_VAR)
    if env_path:
        return _normalize_runfile_path(Path(env_path))

    return discover_runfile(start_dir=start_dir)


def discover_runfile(start_dir: Optional[PathLike] = None) -> Path:
    """Search upwards from ``start_dir`` (or ``cwd``) for a Runfile."""

    start_candidate = Path(start_dir) if start_dir is not None else Path.cwd()
    start_candidate = start_candidate.expanduser()
    try:
        start_candidate = start_candidate.resolve()
    except FileNotFoundError:
        start_candidate = start_candidate.absolute()

    for directory in (start_candidate,) + tuple(start_candidate.parents):
        for name in DEFAULT_RUNFILE_NAMES:
            candidate = directory / name
            if candidate.is_file():
                return candidate

    raise RunfileNotFoundError(
        f"No Runfile found starting from '{start_candidate}'. Checked {DEFAULT_RUNFILE_NAMES}."
    )


def _normalize_runfile_path(path: Path) -> Path:
    expanded = path.expanduser()
    if expanded.is_dir():
        for name in DEFAULT_RUNFILE_NAMES:
            candidate = expanded / name
            if candidate.is_file():
                return candidate
        raise RunfileNotFoundError(
            f"Runfile not found inside directory '{expanded}'. Checked {DEFAULT_RUNFILE_NAMES}."
        )
    if expanded.is_file():
        return expanded
    raise RunfileNotFoundError(f"Runfile path '{expanded}' does not exist.")


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
    except TOMLDecodeError as exc:
        raise RunfileInvalidError(f"Invalid TOML in Runfile '{path}'.") from exc

    if not isinstance(data, dict):
        raise RunfileInvalidError(f"Runfile '{path}' must contain a top-level table.")
    return data


def _extract_root_table(data: Dict[str, Any]) -> Dict[str, Any]:
    tool_section = data.get("tool")
    if isinstance(tool_section, dict):
        section = tool_section.get("simrunner")
        if isinstance(section, dict):
            return section
    return data


def _extract_environment_table(root: Dict[str, Any]) -> Dict[str, Any]:
    environments = root.get("environments")
    if isinstance(environments, dict):
        return environments
    return root


def _resolve_environment_config(
    root_table: Dict[str, Any],
    env_table: Dict[str, Any],
    env_name: str,
) -> Dict[str, Any]:
    result: Dict[str, Any] = {}

    root_default = root_table.get("default")
    if root_default:
        if not isinstance(root_default, dict):
            raise RunfileInvalidError("[default] section must be a table.")
        result = _deep_merge(result, root_default)

    env_default = env_table.get("default")
    if env_default and env_default is not root_default:
        if not isinstance(env_default, dict):
            raise RunfileInvalidError("[default] environment must be a table.")
        result = _deep_merge(result, env_default)

    if env_name != "default":
        env_config = env_table.get(env_name)
        if env_config is None:
            raise RunfileEnvironmentNotFoundError(
                f"Environment '{env_name}' not defined in Runfile."
            )
        if not isinstance(env_config, dict):
            raise RunfileInvalidError(
                f"Environment '{env_name}' section must be a table."
            )
        result = _deep_merge(result, env_config)

    return result


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def list_environments(runfile: Optional[PathLike] = None) -> List[Dict[str, Any]]:
    """List environments defined in a Runfile without connecting anywhere."""

    resolved_path = resolve_runfile_path(runfile)
    root_table = _extract_root_table(_read_toml(resolved_path))
    env_table = _extract_environment_table(root_table)

    tables = list(env_table.items())
    if env_table is not root_table and isinstance(root_table.get("default"), dict):
        tables.insert(0, ("default", root_table["default"]))

    environments: List[Dict[str, Any]] = []
    for name, config in tables:
        if not isinstance(config, dict) or name == "retry":
            continue
        environments.append(
            {
                "name": name,
                "hostname": config.get("hostname", ""),
                "runfile": str(resolved_path),
            }
        )
    return environments
