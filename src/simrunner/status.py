"""Normalize scheduler query output into :class:`~simrunner.models.JobStatus`.

Unrecognized state codes map to ``JobStatus.UNKNOWN`` ("look again on the
next poll") instead of raising, and malformed rows are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .models import JobStatus

logger = logging.getLogger(__name__)

_STATE_MAP: Dict[str, JobStatus] = {
    "PD": JobStatus.PENDING,
    "PENDING": JobStatus.PENDING,
    "CF": JobStatus.PENDING,
    "CONFIGURING": JobStatus.PENDING,
    "R": JobStatus.RUNNING,
    "RUNNING": JobStatus.RUNNING,
    # still cleaning up on the nodes
    "CG": JobStatus.RUNNING,
    "COMPLETING": JobStatus.RUNNING,
    "S": JobStatus.RUNNING,
    "SUSPENDED": JobStatus.RUNNING,
    "RQ": JobStatus.RUNNING,
    "REQUEUED": JobStatus.RUNNING,
    "CD": JobStatus.COMPLETED,
    "COMPLETED": JobStatus.COMPLETED,
    "F": JobStatus.FAILED,
    "FAILED": JobStatus.FAILED,
    "TO": JobStatus.FAILED,
    "TIMEOUT": JobStatus.FAILED,
    "NF": JobStatus.FAILED,
    "NODE_FAIL": JobStatus.FAILED,
    "PR": JobStatus.FAILED,
    "PREEMPTED": JobStatus.FAILED,
    "OOM": JobStatus.FAILED,
    "OUT_OF_MEMORY": JobStatus.FAILED,
    "BF": JobStatus.FAILED,
    "BOOT_FAIL": JobStatus.FAILED,
    "DL": JobStatus.FAILED,
    "DEADLINE": JobStatus.FAILED,
    "CA": JobStatus.CANCELLED,
    "CANCELLED": JobStatus.CANCELLED,
}

_JOB_ID = re.compile(r"^\d+(?:_\d+)?$")
_STEP_ID = re.compile(r"^(\d+)(?:_\d+)?\.\S+$")


@dataclass(frozen=True)
class StatusRow:
    """One parsed scheduler row."""

    job_id: str
    state: str
    status: JobStatus
    exit_code: Optional[str] = None
    elapsed: Optional[str] = None


def parse_state(code: Optional[str]) -> JobStatus:
    """Map one scheduler state code (short or long form) to a status.

    Trailing qualifiers such as ``CANCELLED by 1234`` or ``COMPLETED+`` are
    ignored. Anything unrecognized yields ``JobStatus.UNKNOWN``.
    """
    words = (code or "").split()
    if not words:
        return JobStatus.UNKNOWN
    status = _STATE_MAP.get(words[0].upper().rstrip("+"))
    if status is None:
        logger.warning("Unknown scheduler state: %r", code)
        return JobStatus.UNKNOWN
    return status


def _split_row(line: str) -> List[str]:
    if "|" in line:
        return [part.strip() for part in line.split("|")]
    return line.split(None, 1)


def parse_rows(text: str) -> List[StatusRow]:
    """Parse ``squeue``/``sacct`` output into :class:`StatusRow` objects.

    Accepts ``id|state|exit|elapsed`` rows (``--parsable2``) and
    whitespace-separated ``id state`` rows. Optional trailing columns may be
    missing. Job-step rows (``123.batch``) are used only when their parent
    row is absent. Duplicate ids keep the first row seen.
    """
    rows: Dict[str, StatusRow] = {}
    steps: Dict[str, StatusRow] = {}
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        columns = _split_row(line)
        if len(columns) < 2 or not columns[0]:
            logger.debug("Skipping malformed scheduler row: %r", raw)
            continue
        job_id, state = columns[0], columns[1]
        row = StatusRow(
            job_id=job_id,
            state=state,
            status=parse_state(state),
            exit_code=columns[2] if len(columns) > 2 and columns[2] else None,
            elapsed=columns[3] if len(columns) > 3 and columns[3] else None,
        )
        step = _STEP_ID.match(job_id)
        if step:
            parent = step.group(1)
            steps.setdefault(parent, StatusRow(parent, row.state, row.status, row.exit_code, row.elapsed))
            continue
        if not _JOB_ID.match(job_id):
            logger.debug("Skipping row with unexpected job id: %r", raw)
            continue
        rows.setdefault(job_id, row)

    for parent, row in steps.items():
        rows.setdefault(parent, row)
    return list(rows.values())

