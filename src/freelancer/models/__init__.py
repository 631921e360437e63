"""Core data models for the freelancer job registry."""

from freelancer.models.job import (
    EnterpriseRole,
    Job,
    JobError,
    JobStatus,
    OwnerRole,
    RegistryResult,
    RoleKind,
)

__all__ = [
    "EnterpriseRole",
    "Job",
    "JobError",
    "JobStatus",
    "OwnerRole",
    "RegistryResult",
    "RoleKind",
]
