"""Job registry: escrowed job lifecycle for a peer-to-peer marketplace.

This is the primary interface for the marketplace. An owner posts a job
and deposits its budget; a worker obtains it, submits a result; the owner
approves (releasing the budget to the worker) or rejects (reopening the
job for rework).

Five operations mutate state (create, obtain, submit, reject, approve)
and one query reads it (list_by_status). Every operation:
1. Validates all guards against current state.
2. Applies its mutations only if every guard passed.
3. Persists, and rolls the in-memory mutation back if persisting fails.
4. Records an audit event.

Expected failures are returned as RegistryResult values carrying a
JobError; nothing is raised for a missing job or a wrong status.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from freelancer.compensation.custody import (
    IdentityProvider,
    TransferError,
    TransferUnconfirmed,
    ValueCustody,
)
from freelancer.engine.invariants import check_store
from freelancer.engine.state_machine import JobAction, JobStateMachine
from freelancer.models.job import (
    Job,
    JobError,
    JobStatus,
    OwnerRole,
    RegistryResult,
)
from freelancer.persistence.event_log import EventKind, EventLog, EventRecord
from freelancer.persistence.store import InMemoryJobStore, JobStore

logger = logging.getLogger(__name__)


class JobRegistry:
    """Escrow/lifecycle state machine over jobs and their three indices.

    Usage:
        host = LocalHost()
        registry = JobRegistry(identity=host, custody=host)

        host.fund("owner", Decimal("50"))
        host.invoke("owner", registry.create, "Logo", "Vector logo",
                    OwnerRole.individual(), value=Decimal("50"))
        host.invoke("worker", registry.obtain, 0)
        host.invoke("worker", registry.submit, 0, "logo.svg")
        host.invoke("owner", registry.approve, 0, OwnerRole.individual())

    Persistence (optional):
        registry = JobRegistry(identity, custody,
                               store=JsonFileJobStore(path),
                               event_log=EventLog(storage_path=log_path))
    """

    def __init__(
        self,
        identity: IdentityProvider,
        custody: ValueCustody,
        store: Optional[JobStore] = None,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._identity = identity
        self._custody = custody
        self._store: JobStore = store if store is not None else InMemoryJobStore()
        self._event_log = event_log
        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        # One lock for every operation: a threaded host sees the same
        # all-or-nothing transitions as a serialized one.
        self._lock = threading.RLock()
        self._persistence_degraded = False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, name: str, description: str, role: OwnerRole) -> RegistryResult:
        """Post a new job. The value attached to the call becomes its budget."""
        with self._lock:
            caller = self._identity.caller()
            existing = self._store.get_owner_job(caller, role)
            if existing is not None:
                return _fail(
                    JobError.ALREADY_HAS_ACTIVE_JOB,
                    f"{caller} already has active job {existing} as {role}",
                )

            job_id = self._store.get_next_job_id()
            job = Job(
                job_id=job_id,
                name=name,
                description=description,
                budget=Decimal(self._custody.transferred_value()),
                owner=caller,
                role=role,
                status=JobStatus.OPEN,
                created_utc=datetime.now(timezone.utc),
            )
            self._store.put_job(job)
            self._store.put_owner_job(caller, role, job_id)
            self._store.set_next_job_id(job_id + 1)

            def _rollback() -> None:
                self._store.remove_job(job_id)
                self._store.remove_owner_job(caller, role)
                self._store.set_next_job_id(job_id)

            err = self._safe_persist(on_rollback=_rollback)
            if err:
                return _fail(JobError.PERSISTENCE_FAILED, err)

            logger.info(
                "Job %d created by %s as %s with budget %s",
                job_id, caller, role, job.budget,
            )
            return self._committed(
                EventKind.JOB_CREATED, caller,
                {"job_id": job_id, "role": role.key, "budget": str(job.budget)},
            )

    def list_by_status(
        self,
        status: JobStatus,
        owner: Optional[str] = None,
    ) -> list[Job]:
        """Return copies of all jobs in ``status``, in ascending id order.

        If ``owner`` is given, only jobs created by that identity are
        returned. O(n) scan over every job ever created.
        """
        with self._lock:
            jobs: list[Job] = []
            for job_id in range(self._store.get_next_job_id()):
                job = self._store.get_job(job_id)
                if job is None or job.status != status:
                    continue
                if owner is not None and job.owner != owner:
                    continue
                jobs.append(replace(job))
            return jobs

    def obtain(self, job_id: int) -> RegistryResult:
        """Claim an OPEN job, or re-claim one's own REOPEN job."""
        with self._lock:
            caller = self._identity.caller()
            job = self._store.get_job(job_id) if self._exists(job_id) else None
            if job is None:
                return _not_found(job_id)
            if JobStateMachine.is_terminal(job.status):
                return _fail(
                    JobStateMachine.terminal_refusal(JobAction.OBTAIN),
                    f"Job {job_id} is finished",
                )

            assignee = self._store.get_assignee(job_id)
            reclaim = assignee == caller and job.status == JobStatus.REOPEN
            if assignee is not None and not reclaim:
                return _fail(
                    JobError.ALREADY_ASSIGNED,
                    f"Job {job_id} is already assigned to {assignee}",
                )
            held = self._store.get_worker_job(caller)
            if held is not None and held != job_id:
                return _fail(
                    JobError.WORKER_BUSY,
                    f"{caller} must finish job {held} first",
                )
            refusal = JobStateMachine.refusal(job.status, JobAction.OBTAIN)
            if refusal is not None:
                return _fail(
                    refusal, f"Job {job_id} cannot be obtained while {job.status.value}",
                )

            self._store.put_job(replace(job, status=JobStatus.DOING))
            self._store.put_assignee(job_id, caller)
            self._store.put_worker_job(caller, job_id)

            def _rollback() -> None:
                self._store.put_job(job)
                if assignee is None:
                    self._store.remove_assignee(job_id)
                if held is None:
                    self._store.remove_worker_job(caller)

            err = self._safe_persist(on_rollback=_rollback)
            if err:
                return _fail(JobError.PERSISTENCE_FAILED, err)

            logger.info("Job %d obtained by %s", job_id, caller)
            return self._committed(
                EventKind.JOB_OBTAINED, caller,
                {"job_id": job_id, "status": JobStatus.DOING.value, "reclaim": reclaim},
            )

    def submit(self, job_id: int, result: str) -> RegistryResult:
        """Submit a result for review. Only the assigned worker may submit."""
        with self._lock:
            caller = self._identity.caller()
            job = self._store.get_job(job_id) if self._exists(job_id) else None
            if job is None:
                return _not_found(job_id)
            if JobStateMachine.is_terminal(job.status):
                return _fail(
                    JobStateMachine.terminal_refusal(JobAction.SUBMIT),
                    f"Job {job_id} is finished",
                )
            if self._store.get_assignee(job_id) != caller:
                return _fail(
                    JobError.NOT_ASSIGNED_WORKER,
                    f"{caller} is not the worker assigned to job {job_id}",
                )
            refusal = JobStateMachine.refusal(job.status, JobAction.SUBMIT)
            if refusal is not None:
                return _fail(
                    refusal, f"Job {job_id} cannot take a submission while {job.status.value}",
                )

            self._store.put_job(replace(job, result=result, status=JobStatus.REVIEW))

            err = self._safe_persist(on_rollback=lambda: self._store.put_job(job))
            if err:
                return _fail(JobError.PERSISTENCE_FAILED, err)

            logger.info("Job %d submitted for review by %s", job_id, caller)
            return self._committed(
                EventKind.RESULT_SUBMITTED, caller,
                {"job_id": job_id, "status": JobStatus.REVIEW.value},
            )

    def reject(self, job_id: int, role: OwnerRole) -> RegistryResult:
        """Reject a submitted result, reopening the job for rework."""
        with self._lock:
            caller = self._identity.caller()
            job, failure = self._owned_job(caller, job_id, role, JobAction.REJECT)
            if failure is not None:
                return failure

            self._store.put_job(replace(job, result=None, status=JobStatus.REOPEN))

            err = self._safe_persist(on_rollback=lambda: self._store.put_job(job))
            if err:
                return _fail(JobError.PERSISTENCE_FAILED, err)

            logger.info("Job %d rejected by %s, reopened", job_id, caller)
            return self._committed(
                EventKind.RESULT_REJECTED, caller,
                {"job_id": job_id, "status": JobStatus.REOPEN.value},
            )

    def approve(self, job_id: int, role: OwnerRole) -> RegistryResult:
        """Approve a submitted result and release the budget to the worker.

        Bookkeeping is applied and persisted first; the value transfer is
        the last effect. If custody refuses the transfer, every status
        and index change is rolled back and TRANSFER_FAILED is returned;
        any other custody exception is rolled back the same way and
        re-raised. A transfer that was sent but not confirmed leaves the
        job finished (it cannot be approved and paid again) and returns
        success with ``confirmed`` False.
        """
        with self._lock:
            caller = self._identity.caller()
            job, failure = self._owned_job(caller, job_id, role, JobAction.APPROVE)
            if failure is not None:
                return failure
            worker = self._store.get_assignee(job_id)
            if worker is None:
                raise RuntimeError(f"Job {job_id} is in review without an assignee")

            self._store.put_job(replace(job, status=JobStatus.FINISH))
            self._store.remove_owner_job(caller, role)
            self._store.remove_worker_job(worker)

            def _rollback() -> None:
                self._store.put_job(job)
                self._store.put_owner_job(caller, role, job_id)
                self._store.put_worker_job(worker, job_id)

            err = self._safe_persist(on_rollback=_rollback)
            if err:
                return _fail(JobError.PERSISTENCE_FAILED, err)

            try:
                transfer_ref = self._custody.transfer(worker, job.budget)
            except TransferUnconfirmed as e:
                # Sent but unsettled: the job stays finished.
                logger.warning("Payout for job %d unconfirmed: %s", job_id, e)
                return self._approved(
                    caller, job, worker, e.reference, confirmed=False, warning=str(e),
                )
            except TransferError as e:
                warning = self._undo_approval(_rollback)
                logger.warning("Approval of job %d rolled back: %s", job_id, e)
                data: dict[str, Any] = {"job_id": job_id}
                if warning:
                    data["warning"] = warning
                return RegistryResult(
                    success=False,
                    error=JobError.TRANSFER_FAILED,
                    errors=[f"Transfer to {worker} failed: {e}"],
                    data=data,
                )
            except Exception:
                self._undo_approval(_rollback)
                logger.exception("Custody error during approval of job %d", job_id)
                raise

            logger.info(
                "Job %d approved by %s; %s released to %s",
                job_id, caller, job.budget, worker,
            )
            return self._approved(caller, job, worker, transfer_ref, confirmed=True)

    # ------------------------------------------------------------------
    # Read-only inspection
    # ------------------------------------------------------------------

    @property
    def next_job_id(self) -> int:
        return self._store.get_next_job_id()

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    def get_job(self, job_id: int) -> Optional[Job]:
        """Return a copy of a job, or None if it does not exist."""
        with self._lock:
            job = self._store.get_job(job_id) if self._exists(job_id) else None
            return replace(job) if job is not None else None

    def owner_job(self, owner: str, role: OwnerRole) -> Optional[int]:
        with self._lock:
            return self._store.get_owner_job(owner, role)

    def assignee(self, job_id: int) -> Optional[str]:
        with self._lock:
            return self._store.get_assignee(job_id)

    def worker_job(self, worker: str) -> Optional[int]:
        with self._lock:
            return self._store.get_worker_job(worker)

    def check_invariants(self) -> list[str]:
        """Return index consistency violations (empty = consistent)."""
        with self._lock:
            return check_store(self._store)

    def status(self) -> dict[str, Any]:
        """Return a registry-wide status summary."""
        with self._lock:
            by_status = {s.value: 0 for s in JobStatus}
            for job_id in range(self._store.get_next_job_id()):
                job = self._store.get_job(job_id)
                if job is not None:
                    by_status[job.status.value] += 1
            return {
                "jobs": {
                    "total": self._store.get_next_job_id(),
                    "by_status": by_status,
                },
                "indices": {
                    "owners": len(self._store.owner_entries()),
                    "assignments": len(self._store.assignee_entries()),
                    "workers": len(self._store.worker_entries()),
                },
                "events": self._event_log.count if self._event_log else 0,
                "persistence_degraded": self._persistence_degraded,
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _exists(self, job_id: int) -> bool:
        return 0 <= job_id < self._store.get_next_job_id()

    def _owned_job(
        self,
        caller: str,
        job_id: int,
        role: OwnerRole,
        action: JobAction,
    ) -> tuple[Optional[Job], Optional[RegistryResult]]:
        """Shared guards for reject/approve: existence, terminal, owner, status."""
        job = self._store.get_job(job_id) if self._exists(job_id) else None
        if job is None:
            return None, _not_found(job_id)
        if JobStateMachine.is_terminal(job.status):
            return None, _fail(
                JobStateMachine.terminal_refusal(action), f"Job {job_id} is finished",
            )
        if self._store.get_owner_job(caller, role) != job_id:
            return None, _fail(
                JobError.NOT_OWNER_OF_RECORD,
                f"{caller} is not the owner of job {job_id} as {role}",
            )
        refusal = JobStateMachine.refusal(job.status, action)
        if refusal is not None:
            return None, _fail(
                refusal, f"Cannot {action.value} job {job_id} while {job.status.value}",
            )
        return job, None

    def _committed(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
    ) -> RegistryResult:
        """Record the audit event for a persisted mutation.

        The mutation is already durable, so an audit write failure is
        reported as a warning rather than undoing it.
        """
        data = dict(payload)
        try:
            self._record_event(kind, actor, payload)
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("Audit event %s not recorded: %s", kind.value, e)
            data["warning"] = f"Audit log degraded: {e}"
        return RegistryResult(success=True, data=data)

    def _record_event(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
    ) -> None:
        if self._event_log is None:
            return
        event = EventRecord.create(
            event_id=f"evt-{self._event_counter + 1:06d}",
            event_kind=kind,
            actor_id=actor,
            payload=payload,
        )
        self._event_log.append(event)
        self._event_counter += 1

    def _safe_persist(
        self,
        on_rollback: Optional[Callable[[], None]] = None,
    ) -> Optional[str]:
        """Persist state with fail-closed error handling.

        On failure, executes the rollback callback to undo in-memory
        mutations and returns an error string. On success, returns None.
        """
        try:
            self._store.save()
            return None
        except OSError as e:
            if on_rollback is not None:
                on_rollback()
            logger.warning("Persistence failure, mutation rolled back: %s", e)
            return f"Persistence failure: {e}"

    def _undo_approval(self, rollback: Callable[[], None]) -> Optional[str]:
        """Revert a persisted approval whose payout did not happen.

        On a save failure the store still shows the job finished while
        memory shows it in review: sets the degraded flag and returns a
        warning string.
        """
        rollback()
        try:
            self._store.save()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("Approval rollback not persisted: %s", e)
            return f"Approval rolled back in memory but not persisted: {e}"

    def _approved(
        self,
        caller: str,
        job: Job,
        worker: str,
        transfer_ref: Optional[str],
        confirmed: bool,
        warning: Optional[str] = None,
    ) -> RegistryResult:
        """Record the approval and payout events for a finished job."""
        result = self._committed(
            EventKind.JOB_APPROVED, caller,
            {"job_id": job.job_id, "status": JobStatus.FINISH.value},
        )
        payment = self._committed(
            EventKind.PAYMENT_RELEASED if confirmed else EventKind.PAYMENT_PENDING,
            caller,
            {
                "job_id": job.job_id,
                "worker": worker,
                "amount": str(job.budget),
                "transfer_ref": transfer_ref,
            },
        )
        data = {**result.data, **payment.data, "confirmed": confirmed}
        if warning:
            data["warning"] = f"{warning}; {data['warning']}" if "warning" in data else warning
        return RegistryResult(success=True, data=data)


def _fail(error: JobError, message: str) -> RegistryResult:
    logger.debug("Refused (%s): %s", error.value, message)
    return RegistryResult(success=False, error=error, errors=[message])


def _not_found(job_id: int) -> RegistryResult:
    return _fail(JobError.NOT_FOUND, f"Job not found: {job_id}")
