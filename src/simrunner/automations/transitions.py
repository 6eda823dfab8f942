"""What synchronization does with a freshly observed scheduler state.

Kept as a pure function so the coupling between synchronization and
completion can be tested on its own.
"""

from enum import Enum

from ..models import JobStatus


class Action(str, Enum):
    NONE = "none"
    UPDATE = "update"
    COMPLETE = "complete"


def next_action(old_status: JobStatus, observed_status: JobStatus) -> Action:
    """Decide how to react to ``observed_status`` for a job cached as ``old_status``.

    ======================  ===================  ==========
    cached                  observed             action
    ======================  ===================  ==========
    PENDING                 RUNNING              UPDATE
    PENDING / RUNNING       terminal             COMPLETE
    anything else                                NONE
    ======================  ===================  ==========

    Status never moves backwards (a requeued job reported as PENDING keeps
    its RUNNING entry) and UNKNOWN always means "look again next poll".
    """
    if observed_status is JobStatus.UNKNOWN or not old_status.is_active:
        return Action.NONE
    if observed_status.is_terminal:
        return Action.COMPLETE
    if old_status is JobStatus.PENDING and observed_status is JobStatus.RUNNING:
        return Action.UPDATE
    return Action.NONE
