"""Index invariant checks: proves the derived indices agree with the jobs.

Returns human-readable violations; an empty list means the store is
consistent. Used by JobRegistry.check_invariants() and the CLI.
"""

from __future__ import annotations

from freelancer.models.job import JobStatus
from freelancer.persistence.store import JobStore

_ASSIGNED = (JobStatus.DOING, JobStatus.REVIEW, JobStatus.REOPEN, JobStatus.FINISH)


def check_store(store: JobStore) -> list[str]:
    errors: list[str] = []
    next_id = store.get_next_job_id()

    for job_id in range(next_id):
        job = store.get_job(job_id)
        if job is None:
            errors.append(f"Job {job_id} missing below counter {next_id}")
            continue
        if job.job_id != job_id:
            errors.append(f"Job stored under {job_id} has id {job.job_id}")
        assignee = store.get_assignee(job_id)
        if job.status in _ASSIGNED and assignee is None:
            errors.append(f"Job {job_id} is {job.status.value} without an assignee")
        if job.status == JobStatus.OPEN and assignee is not None:
            errors.append(f"Job {job_id} is open but assigned to {assignee}")
        if job.status == JobStatus.REVIEW and job.result is None:
            errors.append(f"Job {job_id} is in review without a result")
        if job.status in (JobStatus.OPEN, JobStatus.REOPEN) and job.result is not None:
            errors.append(f"Job {job_id} is {job.status.value} but holds a result")
    if store.get_job(next_id) is not None:
        errors.append(f"Job {next_id} exists at or above counter {next_id}")

    for (owner, role), job_id in store.owner_entries().items():
        job = store.get_job(job_id)
        if job is None:
            errors.append(f"Owner index ({owner}, {role}) points at missing job {job_id}")
            continue
        if job.status == JobStatus.FINISH:
            errors.append(f"Owner index ({owner}, {role}) still holds finished job {job_id}")
        if job.owner != owner or job.role != role:
            errors.append(
                f"Owner index ({owner}, {role}) points at job {job_id} "
                f"created by ({job.owner}, {job.role})"
            )

    for worker, job_id in store.worker_entries().items():
        job = store.get_job(job_id)
        if job is None:
            errors.append(f"Worker index {worker} points at missing job {job_id}")
            continue
        if job.status == JobStatus.FINISH:
            errors.append(f"Worker index {worker} still holds finished job {job_id}")
        if store.get_assignee(job_id) != worker:
            errors.append(f"Worker index {worker} points at job {job_id} assigned elsewhere")

    for job_id, worker in store.assignee_entries().items():
        job = store.get_job(job_id)
        if job is None:
            errors.append(f"Assignment of {worker} to missing job {job_id}")
            continue
        if job.status != JobStatus.FINISH and store.get_worker_job(worker) != job_id:
            errors.append(f"Worker {worker} assigned to job {job_id} but not indexed")

    return errors
