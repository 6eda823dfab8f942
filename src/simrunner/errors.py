"""Custom error types for simrunner."""

from __future__ import annotations

from typing import Any, Dict, Optional

from rich.console import Console


class SimrunnerError(Exception):
    """Base class for every error raised by simrunner."""


class AutomationError(SimrunnerError):
    """Base class for failures raised while driving a job lifecycle chain.

    Every chain-step failure is attributed to exactly one subclass and carries
    enough context to retry safely: which step failed, which job it concerned,
    and what remote state is known to exist at that point.

    Attributes:
        message: Error description.
        step: Name of the chain step that failed (e.g. ``"upload_inputs"``).
        job_id: Job identifier, when the failure concerns a specific job.
        remote_state: Free-form mapping describing remote artifacts that exist
            (directories created, files uploaded, metadata boundary reached).
    """

    #: Whether the retry policy may retry this error.
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        job_id: Optional[str] = None,
        remote_state: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.job_id = job_id
        self.remote_state = dict(remote_state or {})

    def with_context(
        self,
        *,
        step: Optional[str] = None,
        job_id: Optional[str] = None,
        remote_state: Optional[Dict[str, Any]] = None,
    ) -> "AutomationError":
        """Fill in missing context in place and return ``self``."""
        if self.step is None:
            self.step = step
        if self.job_id is None:
            self.job_id = job_id
        if remote_state:
            merged = dict(remote_state)
            merged.update(self.remote_state)
            self.remote_state = merged
        return self

    def _context_parts(self) -> list[str]:
        parts = []
        if self.job_id:
            parts.append(f"job: {self.job_id}")
        if self.step:
            parts.append(f"step: {self.step}")
        if self.remote_state:
            formatted = ", ".join(
                f"{key}={value}" for key, value in self.remote_state.items()
            )
            parts.append(f"remote state: {formatted}")
        return parts

    def __str__(self) -> str:
        parts = [self.message]
        parts.extend(self._context_parts())
        return "\n".join(parts)

    def __rich_console__(self, console: Console, options):  # pragma: no cover
        yield f"[bold]{self.message}[/bold]"
        for part in self._context_parts():
            yield f"[dim]{part}[/dim]"


class AuthenticationError(AutomationError):
    """Raised when the remote session is not authenticated.

    Fatal: never retried. Raised when credentials are rejected, when the
    session has expired (connection reset, dead transport), or when an
    operation is attempted without an established session.

    What to check:
        - Reconnect with ``JobEngine.connect()`` (``simrunner jobs ...`` prompts
          for the password on every invocation)
        - Verify the username and password work with a plain ``ssh`` login
    """


class TransientNetworkError(AutomationError):
    """Raised for timeouts, connection resets and transient I/O failures.

    Retried by :class:`simrunner.retry.RetryPolicy`; surfaced once the attempt
    budget is exhausted.

    Attributes:
        attempts: Number of attempts made before giving up (0 when raised
            directly by the session layer).
    """

    retryable = True

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.attempts = attempts


class ValidationError(AutomationError, ValueError):
    """Raised for invalid input: bad names, unsafe paths, missing values.

    Fatal and surfaced immediately, before any remote call is made where
    possible.
    """


class RemoteStateError(AutomationError):
    """Raised when an expected remote artifact is missing or inconsistent.

    Requires manual intervention; the message names the artifact.
    """


class MetadataNotFound(RemoteStateError):
    """Raised when a job directory has no ``job_info.json``."""


class SchedulerRejection(AutomationError):
    """Raised when the scheduler refuses a submission.

    Attributes:
        reason: The scheduler's raw stderr/stdout explaining the rejection.
        script: The rendered submission script, when available.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str = "",
        script: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason
        self.script = script

    def __str__(self) -> str:
        text = super().__str__()
        if self.reason:
            text += f"\nscheduler said: {self.reason.strip()}"
        return text


class ChainCancelled(AutomationError):
    """Raised when a chain observes a cancellation request between steps."""


class RunfileError(SimrunnerError):
    """Base class for Runfile configuration errors.

    Runfiles are TOML files describing the cluster connection, remote
    directory roots and retry tuning, optionally split into environments.
    """


class RunfileNotFoundError(RunfileError):
    """Raised when no Runfile can be located.

    simrunner searches for Runfile, Runfile.toml, runfile or runfile.toml in
    the current directory and its parents, unless ``SIMRUNNER_RUNFILE`` names
    an explicit path.
    """


class RunfileInvalidError(RunfileError):
    """Raised when a Runfile contains invalid TOML or an invalid value."""


class RunfileEnvironmentNotFoundError(RunfileError):
    """Raised when the requested environment is missing from the Runfile.

    Examples:
        >>> load_settings(env="producton")  # Typo!
        RunfileEnvironmentNotFoundError: Environment 'producton' not defined in Runfile.
    """
