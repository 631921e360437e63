"""Lifecycle engine: job state machine and index invariant checks."""

from freelancer.engine.invariants import check_store
from freelancer.engine.state_machine import JobAction, JobStateMachine

__all__ = ["JobAction", "JobStateMachine", "check_store"]
