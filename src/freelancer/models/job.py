"""Job marketplace models: jobs, owner roles, and registry results.

Job lifecycle: OPEN → DOING → REVIEW → FINISH
                       REVIEW → REOPEN → DOING / REVIEW

All monetary values use Decimal for exact arithmetic. The budget
deposited at creation is the exact payout on approval.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class JobStatus(str, enum.Enum):
    """Lifecycle state of a job."""
    OPEN = "open"
    DOING = "doing"
    REVIEW = "review"
    REOPEN = "reopen"
    FINISH = "finish"


class RoleKind(str, enum.Enum):
    """Capacity in which an owner posts a job."""
    INDIVIDUAL = "individual"
    ENTERPRISE = "enterprise"


class EnterpriseRole(str, enum.Enum):
    """Sub-role of an owner acting for an enterprise."""
    TEAMLEAD = "teamlead"
    ACCOUNTANT = "accountant"


@dataclass(frozen=True)
class OwnerRole:
    """Owner role: INDIVIDUAL, or ENTERPRISE with a sub-role.

    Value object. Two roles are equal iff they share the same kind and,
    for ENTERPRISE, the same sub-role. Hashable, so (identity, role)
    pairs can key the owner index.
    """
    kind: RoleKind = RoleKind.INDIVIDUAL
    sub_role: Optional[EnterpriseRole] = None

    def __post_init__(self) -> None:
        if self.kind == RoleKind.INDIVIDUAL and self.sub_role is not None:
            raise ValueError("INDIVIDUAL role does not take a sub-role")
        if self.kind == RoleKind.ENTERPRISE and self.sub_role is None:
            raise ValueError("ENTERPRISE role requires a sub-role")

    @staticmethod
    def individual() -> OwnerRole:
        return OwnerRole(RoleKind.INDIVIDUAL)

    @staticmethod
    def enterprise(sub_role: EnterpriseRole) -> OwnerRole:
        return OwnerRole(RoleKind.ENTERPRISE, sub_role)

    @property
    def key(self) -> str:
        """Canonical text form: 'individual' or 'enterprise:<sub-role>'."""
        if self.sub_role is None:
            return self.kind.value
        return f"{self.kind.value}:{self.sub_role.value}"

    @staticmethod
    def parse(text: str) -> OwnerRole:
        """Parse the canonical text form produced by ``key``.

        Raises ValueError on unknown kinds or sub-roles.
        """
        kind_text, _, sub_text = text.strip().lower().partition(":")
        kind = RoleKind(kind_text)
        if kind == RoleKind.INDIVIDUAL:
            if sub_text:
                raise ValueError(f"INDIVIDUAL role does not take a sub-role: {text}")
            return OwnerRole.individual()
        if not sub_text:
            raise ValueError(f"ENTERPRISE role requires a sub-role: {text}")
        return OwnerRole.enterprise(EnterpriseRole(sub_text))

    def __str__(self) -> str:
        return self.key


@dataclass
class Job:
    """A unit of work posted by an owner with an escrowed budget.

    Mutable: status and result change during the lifecycle. Name,
    description, budget, owner and role are fixed at creation.
    """
    job_id: int
    name: str
    description: str
    budget: Decimal
    owner: str
    role: OwnerRole = field(default_factory=OwnerRole.individual)
    status: JobStatus = JobStatus.OPEN
    result: Optional[str] = None
    created_utc: Optional[datetime] = None


class JobError(str, enum.Enum):
    """Closed set of expected registry failures."""
    ALREADY_HAS_ACTIVE_JOB = "already_has_active_job"
    NOT_FOUND = "not_found"
    ALREADY_ASSIGNED = "already_assigned"
    WORKER_BUSY = "worker_busy"
    INVALID_STATE = "invalid_state"
    NOT_ASSIGNED_WORKER = "not_assigned_worker"
    ALREADY_SUBMITTED = "already_submitted"
    JOB_FINISHED = "job_finished"
    STILL_PROCESSING = "still_processing"
    NOT_OWNER_OF_RECORD = "not_owner_of_record"
    TRANSFER_FAILED = "transfer_failed"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass(frozen=True)
class RegistryResult:
    """Result of a registry operation.

    ``error`` is set iff ``success`` is False; ``errors`` carries the
    human-readable detail.
    """
    success: bool
    error: Optional[JobError] = None
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
