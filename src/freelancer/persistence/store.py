"""Job store: point key-value persistence for jobs and the three indices.

The registry only needs point get/put/remove on:
- jobs:        job_id -> Job
- owner index: (owner, role) -> job_id
- assignments: job_id -> worker
- worker index: worker -> job_id
plus the job-id counter. Enumeration of jobs is done by the registry
over ids 0..next_job_id.

Two backends:
- InMemoryJobStore: tests and embedded use.
- JsonFileJobStore: whole-state JSON document, replaced atomically on
  every save. A malformed document raises ValueError on load (fail-closed).
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional, Protocol

from freelancer.models.job import Job, JobStatus, OwnerRole

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    """Protocol for registry persistence backends."""

    def get_next_job_id(self) -> int:
        ...

    def set_next_job_id(self, value: int) -> None:
        ...

    def get_job(self, job_id: int) -> Optional[Job]:
        ...

    def put_job(self, job: Job) -> None:
        ...

    def remove_job(self, job_id: int) -> None:
        """Discard an uncommitted job (rollback of a failed create only)."""
        ...

    def get_owner_job(self, owner: str, role: OwnerRole) -> Optional[int]:
        ...

    def put_owner_job(self, owner: str, role: OwnerRole, job_id: int) -> None:
        ...

    def remove_owner_job(self, owner: str, role: OwnerRole) -> None:
        ...

    def get_assignee(self, job_id: int) -> Optional[str]:
        ...

    def put_assignee(self, job_id: int, worker: str) -> None:
        ...

    def remove_assignee(self, job_id: int) -> None:
        ...

    def get_worker_job(self, worker: str) -> Optional[int]:
        ...

    def put_worker_job(self, worker: str, job_id: int) -> None:
        ...

    def remove_worker_job(self, worker: str) -> None:
        ...

    def owner_entries(self) -> dict[tuple[str, OwnerRole], int]:
        """Snapshot of the owner index."""
        ...

    def assignee_entries(self) -> dict[int, str]:
        """Snapshot of the assignment index."""
        ...

    def worker_entries(self) -> dict[str, int]:
        """Snapshot of the worker index."""
        ...

    def save(self) -> None:
        """Make all pending changes durable. May raise OSError."""
        ...


class InMemoryJobStore:
    """In-memory job store for testing and embedded use."""

    def __init__(self) -> None:
        self._next_job_id = 0
        self._jobs: dict[int, Job] = {}
        self._owner_jobs: dict[tuple[str, OwnerRole], int] = {}
        self._assignees: dict[int, str] = {}
        self._worker_jobs: dict[str, int] = {}

    def get_next_job_id(self) -> int:
        return self._next_job_id

    def set_next_job_id(self, value: int) -> None:
        self._next_job_id = value

    # === Jobs ===

    def get_job(self, job_id: int) -> Optional[Job]:
        return self._jobs.get(job_id)

    def put_job(self, job: Job) -> None:
        self._jobs[job.job_id] = job

    def remove_job(self, job_id: int) -> None:
        self._jobs.pop(job_id, None)

    # === Owner index ===

    def get_owner_job(self, owner: str, role: OwnerRole) -> Optional[int]:
        return self._owner_jobs.get((owner, role))

    def put_owner_job(self, owner: str, role: OwnerRole, job_id: int) -> None:
        self._owner_jobs[(owner, role)] = job_id

    def remove_owner_job(self, owner: str, role: OwnerRole) -> None:
        self._owner_jobs.pop((owner, role), None)

    # === Assignment index ===

    def get_assignee(self, job_id: int) -> Optional[str]:
        return self._assignees.get(job_id)

    def put_assignee(self, job_id: int, worker: str) -> None:
        self._assignees[job_id] = worker

    def remove_assignee(self, job_id: int) -> None:
        self._assignees.pop(job_id, None)

    # === Worker index ===

    def get_worker_job(self, worker: str) -> Optional[int]:
        return self._worker_jobs.get(worker)

    def put_worker_job(self, worker: str, job_id: int) -> None:
        self._worker_jobs[worker] = job_id

    def remove_worker_job(self, worker: str) -> None:
        self._worker_jobs.pop(worker, None)

    # === Snapshots ===

    def owner_entries(self) -> dict[tuple[str, OwnerRole], int]:
        return dict(self._owner_jobs)

    def assignee_entries(self) -> dict[int, str]:
        return dict(self._assignees)

    def worker_entries(self) -> dict[str, int]:
        return dict(self._worker_jobs)

    def save(self) -> None:
        """Nothing to flush for the in-memory backend."""


class JsonFileJobStore(InMemoryJobStore):
    """Job store persisted as a single JSON document.

    The document is rewritten in full on every save() through a
    temporary file and os.replace, so a crash mid-write leaves the
    previous state intact.
    """

    def __init__(self, storage_path: Path) -> None:
        super().__init__()
        self._storage_path = storage_path
        if storage_path.exists():
            self._load_from_file(storage_path)

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    def save(self) -> None:
        document = {
            "next_job_id": self._next_job_id,
            "jobs": [_job_to_dict(self._jobs[k]) for k in sorted(self._jobs)],
            "owner_jobs": [
                {"owner": owner, "role": role.key, "job_id": job_id}
                for (owner, role), job_id in self._owner_jobs.items()
            ],
            "assignees": {str(k): v for k, v in sorted(self._assignees.items())},
            "worker_jobs": dict(sorted(self._worker_jobs.items())),
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(tmp_path, self._storage_path)
        logger.debug("Saved %d jobs to %s", len(self._jobs), self._storage_path)

    def _load_from_file(self, path: Path) -> None:
        """Load state, rejecting malformed documents with ValueError."""
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            self._next_job_id = int(document["next_job_id"])
            for raw in document["jobs"]:
                job = _job_from_dict(raw)
                self._jobs[job.job_id] = job
            for entry in document["owner_jobs"]:
                role = OwnerRole.parse(entry["role"])
                self._owner_jobs[(entry["owner"], role)] = int(entry["job_id"])
            self._assignees = {
                int(k): v for k, v in document["assignees"].items()
            }
            self._worker_jobs = {
                k: int(v) for k, v in document["worker_jobs"].items()
            }
        except (KeyError, TypeError, AttributeError, InvalidOperation) as e:
            raise ValueError(f"Malformed job store {path}: {e!r}") from e
        logger.debug("Loaded %d jobs from %s", len(self._jobs), path)


def _job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "name": job.name,
        "description": job.description,
        "budget": str(job.budget),
        "owner": job.owner,
        "role": job.role.key,
        "status": job.status.value,
        "result": job.result,
        "created_utc": job.created_utc.isoformat() if job.created_utc else None,
    }


def _job_from_dict(data: dict[str, Any]) -> Job:
    created = data.get("created_utc")
    return Job(
        job_id=int(data["job_id"]),
        name=data["name"],
        description=data["description"],
        budget=Decimal(data["budget"]),
        owner=data["owner"],
        role=OwnerRole.parse(data["role"]),
        status=JobStatus(data["status"]),
        result=data.get("result"),
        created_utc=datetime.fromisoformat(created) if created else None,
    )
