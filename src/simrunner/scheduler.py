"""SLURM command-line collaborator.

Builds ``sbatch``/``squeue``/``sacct``/``scancel`` command lines from
validated fragments and runs them through the session manager.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .errors import RemoteStateError, SchedulerRejection
from .session import SessionManager
from .status import StatusRow, parse_rows
from .validation import (
    quote,
    validate_remote_filename,
    validate_scheduler_job_id,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULER_TIMEOUT = 60.0
SUBMIT_TIMEOUT = 30.0


def submit_command(working_dir: str, script_path: str) -> str:
    """``cd`` into ``working_dir`` and submit ``script_path`` (relative to it)."""
    parts = [validate_remote_filename(part) for part in script_path.split("/")]
    return f"cd {quote(working_dir)} && sbatch {quote('/'.join(parts))}"


def parse_sbatch_output(output: str) -> Optional[str]:
    """Return the job id from ``Submitted batch job 12345``, if present."""
    for line in (output or "").splitlines():
        line = line.strip()
        if line.startswith("Submitted batch job"):
            candidate = line.split()[-1]
            if candidate.isdigit():
                return candidate
    return None


def _id_list(job_ids: Iterable[str]) -> str:
    return ",".join(validate_scheduler_job_id(job_id) for job_id in job_ids)


def squeue_command(job_ids: Iterable[str]) -> str:
    return f"squeue -j {_id_list(job_ids)} --format='%i|%T' --noheader"


def sacct_command(job_ids: Iterable[str]) -> str:
    return (
        f"sacct -j {_id_list(job_ids)} "
        "--format=JobID,State,ExitCode,Elapsed --parsable2 --noheader"
    )


def scancel_command(job_id: str) -> str:
    return f"scancel {validate_scheduler_job_id(job_id)}"


class SlurmScheduler:
    """Submit, query and cancel jobs with the SLURM CLI over the session.

    Args:
        session: The session manager used to run commands.
        setup: Optional shell prefix run before every scheduler command,
            e.g. ``"module load slurm/alpine"`` on clusters that need it.
        timeout: Per-command timeout for queries and cancellation.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        setup: str = "",
        timeout: float = DEFAULT_SCHEDULER_TIMEOUT,
    ):
        self.session = session
        self.setup = setup.strip()
        self.timeout = timeout

    def _wrap(self, command: str) -> str:
        if not self.setup:
            return command
        return f"{self.setup} && {command}"

    async def submit(
        self,
        working_dir: str,
        script_path: str = "scripts/job.sbatch",
        script: Optional[str] = None,
    ) -> str:
        """Submit ``script_path`` from ``working_dir`` and return the scheduler job id.

        Raises:
            SchedulerRejection: sbatch failed or printed no job id. The raw
                scheduler output is attached as ``reason``.
        """
        command = self._wrap(submit_command(working_dir, script_path))
        result = await self.session.execute(command, timeout=SUBMIT_TIMEOUT)
        if not result.ok:
            raise SchedulerRejection(
                f"sbatch exited with status {result.exit_code}",
                reason=result.stderr or result.stdout,
                script=script,
            )
        job_id = parse_sbatch_output(result.stdout)
        if job_id is None:
            raise SchedulerRejection(
                "Could not find a job id in sbatch output",
                reason=(result.stdout + result.stderr).strip(),
                script=script,
            )
        logger.info("Submitted batch job %s", job_id)
        return job_id

    async def query(self, job_ids: Iterable[str]) -> List[StatusRow]:
        """Return one row per job id the scheduler still knows about.

        ``squeue`` only lists queued and running jobs, so ids it does not
        report are looked up again in the accounting history with ``sacct``.
        """
        ids = list(dict.fromkeys(job_ids))
        if not ids:
            return []

        rows: List[StatusRow] = []
        queued = await self.session.execute(
            self._wrap(squeue_command(ids)), timeout=self.timeout
        )
        if queued.ok:
            rows.extend(row for row in parse_rows(queued.stdout) if row.job_id in ids)
        else:
            # squeue rejects the whole batch if any id has left the queue
            logger.debug("squeue failed (%s); falling back to sacct", queued.stderr.strip())

        found = {row.job_id for row in rows}
        missing = [job_id for job_id in ids if job_id not in found]
        if missing:
            history = await self.session.execute(
                self._wrap(sacct_command(missing)), timeout=self.timeout
            )
            if not history.ok:
                if not queued.ok:
                    raise RemoteStateError(
                        f"Scheduler query failed: {history.stderr.strip() or queued.stderr.strip()}"
                    )
                logger.warning("sacct failed: %s", history.stderr.strip())
            else:
                rows.extend(
                    row for row in parse_rows(history.stdout) if row.job_id in missing
                )
        return rows

    async def cancel(self, job_id: str) -> None:
        result = await self.session.execute(
            self._wrap(scancel_command(job_id)), timeout=self.timeout
        )
        if not result.ok:
            raise RemoteStateError(
                f"Failed to cancel job {job_id}: {result.stderr.strip()}"
            )
        logger.info("Cancelled scheduler job %s", job_id)
