"""Job state machine: enforces the exact lifecycle transitions.

Job lifecycle:
    OPEN   --obtain-->  DOING
    DOING  --submit-->  REVIEW
    REVIEW --reject-->  REOPEN
    REOPEN --obtain-->  DOING   (re-claim by the assigned worker)
    REOPEN --submit-->  REVIEW
    REVIEW --approve--> FINISH

FINISH is terminal. Every (status, action) pair that is not a legal
transition maps to exactly one JobError, so callers never have to
guess why a transition was refused.
"""

from __future__ import annotations

import enum
from typing import Optional

from freelancer.models.job import JobError, JobStatus


class JobAction(str, enum.Enum):
    """Status-changing registry operations."""
    OBTAIN = "obtain"
    SUBMIT = "submit"
    REJECT = "reject"
    APPROVE = "approve"


# Legal transitions: (from_status, action) -> to_status
_TRANSITIONS: dict[tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.OPEN, JobAction.OBTAIN): JobStatus.DOING,
    (JobStatus.REOPEN, JobAction.OBTAIN): JobStatus.DOING,
    (JobStatus.DOING, JobAction.SUBMIT): JobStatus.REVIEW,
    (JobStatus.REOPEN, JobAction.SUBMIT): JobStatus.REVIEW,
    (JobStatus.REVIEW, JobAction.REJECT): JobStatus.REOPEN,
    (JobStatus.REVIEW, JobAction.APPROVE): JobStatus.FINISH,
}

# Refusals that are more specific than the per-action fallback
_REFUSALS: dict[tuple[JobStatus, JobAction], JobError] = {
    (JobStatus.REVIEW, JobAction.SUBMIT): JobError.ALREADY_SUBMITTED,
    (JobStatus.DOING, JobAction.REJECT): JobError.STILL_PROCESSING,
    (JobStatus.REOPEN, JobAction.REJECT): JobError.STILL_PROCESSING,
    (JobStatus.DOING, JobAction.APPROVE): JobError.STILL_PROCESSING,
    (JobStatus.REOPEN, JobAction.APPROVE): JobError.STILL_PROCESSING,
}

_FALLBACK: dict[JobAction, JobError] = {
    JobAction.OBTAIN: JobError.INVALID_STATE,
    JobAction.SUBMIT: JobError.JOB_FINISHED,
    JobAction.REJECT: JobError.JOB_FINISHED,
    JobAction.APPROVE: JobError.JOB_FINISHED,
}


class JobStateMachine:
    """Validates job status transitions.

    Pure computation: no side effects. Index bookkeeping, custody and
    audit logging are handled by the registry.
    """

    @staticmethod
    def target(status: JobStatus, action: JobAction) -> Optional[JobStatus]:
        """Return the status reached by ``action``, or None if illegal."""
        return _TRANSITIONS.get((status, action))

    @staticmethod
    def refusal(status: JobStatus, action: JobAction) -> Optional[JobError]:
        """Return the error for an illegal transition (None = allowed)."""
        if (status, action) in _TRANSITIONS:
            return None
        return _REFUSALS.get((status, action), _FALLBACK[action])

    @staticmethod
    def is_terminal(status: JobStatus) -> bool:
        """Check if a status is terminal (no further transitions)."""
        return status == JobStatus.FINISH

    @staticmethod
    def terminal_refusal(action: JobAction) -> JobError:
        """Error reported for any action attempted on a terminal job."""
        return _FALLBACK[action]

    @staticmethod
    def valid_actions(status: JobStatus) -> set[JobAction]:
        """Return the set of actions allowed from the given status."""
        return {action for (s, action) in _TRANSITIONS if s == status}
