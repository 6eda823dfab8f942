"""Shared utilities for the simrunner CLI."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from rich.console import Console
from rich.prompt import Prompt

from ..config import RunnerSettings, list_environments, load_settings
from ..engine import JobEngine
from ..ui import status

T = TypeVar("T")

console = Console(stderr=True)


def get_settings(
    env: Optional[str] = None,
    runfile: Optional[str] = None,
) -> RunnerSettings:
    """Load settings for one Runfile environment."""
    return load_settings(runfile, env=env)


def get_engine(
    env: Optional[str] = None,
    runfile: Optional[str] = None,
) -> JobEngine:
    """Create a JobEngine from CLI args.

    Args:
        env: Environment name to load from the Runfile.
        runfile: Path to the Runfile.

    Returns:
        An engine that is not connected yet.
    """
    return JobEngine.from_settings(get_settings(env=env, runfile=runfile))


def prompt_password(settings: RunnerSettings) -> str:
    """Ask for the cluster password. It is never stored."""
    return Prompt.ask(f"Password for {settings.username}@{settings.hostname}", password=True)


def run_connected(
    engine: JobEngine,
    operation: Callable[[], Awaitable[T]],
    password: Optional[str] = None,
) -> T:
    """Connect, run ``operation`` and disconnect, all in one event loop."""
    if password is None:
        password = prompt_password(engine.settings)

    async def _main() -> T:
        settings = engine.settings
        with status(console, f"Connecting to {settings.username}@{settings.hostname}..."):
            await engine.connect(password)
        try:
            return await operation()
        finally:
            await engine.disconnect()

    return asyncio.run(_main())


def list_runfile_environments(runfile: Optional[str] = None) -> List[Dict[str, Any]]:
    """Parse the Runfile to list environments without connecting."""
    return list_environments(runfile)


def parse_assignments(values: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``["key=value", ...]`` into a dict; values stay strings."""
    assignments: Dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got {item!r}")
        assignments[key.strip()] = value
    return assignments
