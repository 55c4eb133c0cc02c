"""Plan — the ordered state transitions the Reconciler will perform."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from hostconverge.models.resource import ObservedState, Resource


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"
    NOOP = "noop"


def classify(observed: Any, desired: Any) -> Action:
    """Classify the transition from an observed value to a desired one."""
    if observed == desired:
        return Action.NOOP
    if observed is None:
        return Action.CREATE
    if desired is None:
        return Action.REMOVE
    return Action.UPDATE


class Operation(BaseModel):
    """One planned state transition for one resource."""

    resource: Resource
    observed: ObservedState
    desired: Any = None
    action: Action

    @model_validator(mode="after")
    def _noop_iff_converged(self) -> "Operation":
        converged = self.observed.value == self.desired
        if converged != (self.action == Action.NOOP):
            raise ValueError(
                f"{self.resource.key}: action {self.action.value} does not match "
                f"observed={self.observed.value!r} desired={self.desired!r}"
            )
        return self

    @property
    def key(self) -> str:
        return self.resource.key

    @property
    def sensitive(self) -> bool:
        return self.resource.sensitive

    @property
    def changes(self) -> bool:
        return self.action != Action.NOOP


class Plan(BaseModel):
    """Operations in dependency order. Each resource key appears at most once."""

    id: str
    operations: List[Operation] = []
    created_at: datetime

    @model_validator(mode="after")
    def _unique_keys(self) -> "Plan":
        seen = set()
        for op in self.operations:
            if op.key in seen:
                raise ValueError(f"Operation for {op.key} appears more than once")
            seen.add(op.key)
        return self

    @property
    def changes(self) -> List[Operation]:
        return [op for op in self.operations if op.changes]

    def is_converged(self) -> bool:
        return not self.changes


class Backup(BaseModel):
    """Pre-change snapshot of a resource, consulted on rollback."""

    model_config = ConfigDict(frozen=True)

    key: str
    prior: Any = None                       # Observed value before the change
    content: Optional[Any] = None           # Raw content for file-backed resources
    path: Optional[str] = None              # Persisted copy, never deleted by the core
    taken_at: datetime


class AppliedChange(BaseModel):
    """What apply() did, and what rollback() needs to undo it."""

    operation: Operation
    backup: Backup
    complete: bool = True                   # False when apply raised partway
